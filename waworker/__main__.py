"""Executable entrypoint for the WhatsApp worker service."""

from __future__ import annotations

import logging
import os
from logging import StreamHandler

import uvicorn

from config import whatsapp_config


def _init_logging() -> None:
    level_name = (os.getenv("LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    fmt = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)

    for logger_name in ("uvicorn", "uvicorn.access"):
        lg = logging.getLogger(logger_name)
        lg.setLevel(level)
        if not lg.handlers:
            handler = StreamHandler()
            handler.setFormatter(logging.Formatter(fmt))
            lg.addHandler(handler)


def main() -> None:
    _init_logging()
    uvicorn.run(
        "waworker.api:create_app",
        host=os.getenv("WA_HOST", "0.0.0.0"),
        port=whatsapp_config().port,
        factory=True,
        workers=1,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
