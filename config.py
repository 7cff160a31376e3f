"""Lightweight configuration helpers for the WhatsApp worker."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_AUTH_DIR = "auth_info"
DEFAULT_ALLOWED_IPS = ("::1", "127.0.0.1")
DEFAULT_PREVIEW_TITLE = "Klik untuk membuka tautan"
DEFAULT_PREVIEW_DESCRIPTION = "Pratinjau tautan tidak tersedia"
IPV4_MAPPED_PREFIX = "::ffff:"


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def normalize_ip(raw: str | None) -> str:
    """Strip the IPv4-mapped IPv6 prefix (``::ffff:1.2.3.4`` -> ``1.2.3.4``)."""

    cleaned = (raw or "").strip()
    if cleaned.lower().startswith(IPV4_MAPPED_PREFIX):
        cleaned = cleaned[len(IPV4_MAPPED_PREFIX):]
    return cleaned


def _parse_allowed_ips(raw: str | None) -> frozenset[str]:
    if raw is None or not raw.strip():
        return frozenset(DEFAULT_ALLOWED_IPS)
    items = (normalize_ip(part) for part in raw.replace(";", ",").split(","))
    return frozenset(item for item in items if item)


def _resolve_auth_dir(raw: str | None) -> Path:
    candidate = Path(raw or DEFAULT_AUTH_DIR)
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path("/tmp/wa-auth")
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class WhatsAppConfig:
    auth_dir: Path
    allowed_ips: frozenset[str]
    reconnect_delay: float
    http_timeout: float
    preview_title: str
    preview_description: str
    port: int


def whatsapp_config() -> WhatsAppConfig:
    auth_dir = _resolve_auth_dir(os.getenv("WA_AUTH_DIR"))
    allowed_ips = _parse_allowed_ips(os.getenv("WA_ALLOWED_IPS"))

    reconnect_delay = _parse_duration(os.getenv("WA_RECONNECT_DELAY"), default=3.0)
    http_timeout = _parse_duration(os.getenv("WA_HTTP_TIMEOUT"), default=15.0)

    preview_title = (
        os.getenv("WA_PREVIEW_TITLE", DEFAULT_PREVIEW_TITLE).strip() or DEFAULT_PREVIEW_TITLE
    )
    preview_description = (
        os.getenv("WA_PREVIEW_DESCRIPTION", DEFAULT_PREVIEW_DESCRIPTION).strip()
        or DEFAULT_PREVIEW_DESCRIPTION
    )

    return WhatsAppConfig(
        auth_dir=auth_dir,
        allowed_ips=allowed_ips,
        reconnect_delay=reconnect_delay,
        http_timeout=http_timeout,
        preview_title=preview_title,
        preview_description=preview_description,
        port=_coerce_int(os.getenv("WA_PORT"), 3000),
    )


__all__ = [
    "WhatsAppConfig",
    "DEFAULT_PREVIEW_TITLE",
    "DEFAULT_PREVIEW_DESCRIPTION",
    "normalize_ip",
    "whatsapp_config",
]
