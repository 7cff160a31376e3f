from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import WhatsAppConfig, whatsapp_config

from .access import ip_allowlist_middleware
from .connection import open_connection
from .manager import (
    LogoutError,
    MediaFetchError,
    NotConnectedError,
    SessionStartError,
    WhatsAppSessionManager,
)


logger = logging.getLogger("waworker.api")
_access_logger = logging.getLogger("waworker.access")

SENT_MESSAGE = "Pesan dikirim"
SEND_FAILED_MESSAGE = "Gagal mengirim pesan"
IMAGE_FETCH_FAILED_MESSAGE = "Gagal mengambil gambar"
MISSING_FIELDS_MESSAGE = "Data tidak lengkap"

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class _SendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    number: str = Field(..., min_length=1)

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_numbers(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("number")
    @classmethod
    def _strip_number(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("number_required")
        return cleaned


class SendTextRequest(_SendRequest):
    message: str = Field(..., min_length=1)


class SendImageRequest(_SendRequest):
    imagelink: str = Field(..., min_length=1)
    message: Optional[str] = None


class SendContactRequest(_SendRequest):
    contact_phone: str = Field(..., alias="contactPhone", min_length=1)
    display_name: str = Field(..., alias="displayName", min_length=1)
    organization: str = ""


class SendLinkPreviewRequest(_SendRequest):
    message: str = Field(..., min_length=1)
    link: str = Field(..., min_length=1)


RequestT = TypeVar("RequestT", bound=_SendRequest)


def _build_http_client(cfg: WhatsAppConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=cfg.http_timeout)


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    body: dict[str, Any] = {"error": message}
    body.update({key: value for key, value in extra.items() if value is not None})
    return JSONResponse(body, status_code=status_code, headers=dict(NO_STORE_HEADERS))


async def _log_requests(request: Request, call_next):
    start = time.time()
    try:
        response = await call_next(request)
    except Exception:
        took = (time.time() - start) * 1000.0
        _access_logger.exception(
            "%s %s -> 500 %.1fms",
            request.method,
            request.url.path,
            took,
        )
        return JSONResponse({"detail": "internal_error"}, status_code=500)

    took = (time.time() - start) * 1000.0
    _access_logger.info(
        "%s %s -> %s %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        took,
    )
    return response


def create_app() -> FastAPI:
    cfg = whatsapp_config()
    manager = WhatsAppSessionManager(
        cfg.auth_dir,
        reconnect_delay=cfg.reconnect_delay,
        preview_title=cfg.preview_title,
        preview_description=cfg.preview_description,
        connection_factory=open_connection,
        http_client=_build_http_client(cfg),
    )

    app = FastAPI(title="waworker")
    app.state.session_manager = manager
    app.state.config = cfg

    # Registered first so the access log middleware wraps it.
    app.middleware("http")(ip_allowlist_middleware(cfg.allowed_ips))
    app.middleware("http")(_log_requests)

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        logger.info(
            "stage=startup auth_dir=%s allowed_ips=%s",
            cfg.auth_dir,
            ",".join(sorted(cfg.allowed_ips)),
        )
        try:
            await manager.start()
        except SessionStartError as exc:
            logger.warning("stage=startup_connect_failed error=%s", exc)

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    async def _read_payload(
        request: Request, model: type[RequestT]
    ) -> RequestT | JSONResponse:
        try:
            raw = await request.json()
        except ValueError:
            raw = {}
        if not isinstance(raw, dict):
            raw = {}
        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            missing: list[str] = []
            for item in exc.errors():
                loc = item.get("loc") or ()
                name = str(loc[0]) if loc else "body"
                if name not in missing:
                    missing.append(name)
            logger.info(
                "event=validation_failed route=%s missing=%s",
                request.url.path,
                ",".join(missing),
            )
            return _error(400, MISSING_FIELDS_MESSAGE, missing=missing)

    async def _deliver(
        route: str, number: str, send: Callable[[], Awaitable[Any]]
    ) -> JSONResponse:
        manager.trigger_start()
        try:
            await send()
        except NotConnectedError as exc:
            logger.warning("event=send_rejected route=%s reason=not_connected", route)
            return _error(500, str(exc))
        except MediaFetchError as exc:
            return _error(
                400,
                IMAGE_FETCH_FAILED_MESSAGE,
                status=exc.status_code,
                detail=exc.detail,
            )
        except Exception as exc:
            logger.exception("event=send_failed route=%s to=%s", route, number)
            return _error(500, SEND_FAILED_MESSAGE, detail=str(exc) or exc.__class__.__name__)
        return JSONResponse({"status": SENT_MESSAGE, "to": number}, headers=dict(NO_STORE_HEADERS))

    @app.get("/v1/login")
    async def login():
        try:
            await manager.start()
        except SessionStartError as exc:
            return _error(500, "Gagal memulai sesi WhatsApp", detail=str(exc))
        return JSONResponse(manager.login_payload(), headers=dict(NO_STORE_HEADERS))

    @app.api_route("/v1/logout", methods=["GET", "POST"])
    async def logout():
        try:
            await manager.logout()
        except LogoutError as exc:
            logger.error("event=logout_failed error=%s", exc)
            return _error(500, "Gagal logout", detail=str(exc))
        return JSONResponse(
            {"status": "ok", "message": "Berhasil logout dan hapus session"},
            headers=dict(NO_STORE_HEADERS),
        )

    @app.get("/v1/status")
    async def status():
        manager.trigger_start()
        return JSONResponse(manager.snapshot().to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.post("/v1/send")
    async def send_text(request: Request):
        payload = await _read_payload(request, SendTextRequest)
        if isinstance(payload, JSONResponse):
            return payload
        return await _deliver(
            "/v1/send",
            payload.number,
            lambda: manager.send_text(payload.number, payload.message),
        )

    async def _send_image(request: Request, *, group: bool):
        payload = await _read_payload(request, SendImageRequest)
        if isinstance(payload, JSONResponse):
            return payload
        return await _deliver(
            request.url.path,
            payload.number,
            lambda: manager.send_image(
                payload.number,
                payload.imagelink,
                caption=payload.message,
                group=group,
            ),
        )

    @app.post("/v1/send-image")
    async def send_image(request: Request):
        return await _send_image(request, group=False)

    @app.post("/v1/group/send")
    async def send_group_image(request: Request):
        return await _send_image(request, group=True)

    @app.post("/v1/send-contact")
    async def send_contact(request: Request):
        payload = await _read_payload(request, SendContactRequest)
        if isinstance(payload, JSONResponse):
            return payload
        return await _deliver(
            "/v1/send-contact",
            payload.number,
            lambda: manager.send_contact(
                payload.number,
                payload.contact_phone,
                payload.display_name,
                organization=payload.organization,
            ),
        )

    @app.post("/v1/send-embeded-link-preview")
    async def send_link_preview(request: Request):
        payload = await _read_payload(request, SendLinkPreviewRequest)
        if isinstance(payload, JSONResponse):
            return payload
        return await _deliver(
            "/v1/send-embeded-link-preview",
            payload.number,
            lambda: manager.send_link_preview(payload.number, payload.message, payload.link),
        )

    @app.get("/health")
    async def health():
        snapshot = manager.snapshot()
        return {"ok": True, "state": snapshot.state, "connected": snapshot.connected}

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
