"""WhatsApp Web session microservice."""

from .api import create_app
from .manager import WhatsAppSessionManager

__all__ = ["create_app", "WhatsAppSessionManager"]
