from __future__ import annotations

import asyncio
import base64
import contextlib
import functools
import io
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx
import qrcode

from config import DEFAULT_PREVIEW_DESCRIPTION, DEFAULT_PREVIEW_TITLE

from .connection import ConnectionFactory, ConnectionUpdate, open_connection
from .messages import (
    GROUP_SERVER,
    USER_SERVER,
    build_vcard,
    compose_link_message,
    normalize_jid,
)
from .metrics import (
    WA_CONNECTED_TOTAL,
    WA_DISCONNECT_TOTAL,
    WA_QR_ISSUED_TOTAL,
    WA_RECONNECT_SCHEDULED_TOTAL,
    WA_SEND_TOTAL,
    WA_SESSION_CONNECTED,
)
from .preview import LinkPreview, fetch_link_preview


LOGGER = logging.getLogger("waworker")


STATE_ABSENT = "absent"
STATE_STARTING = "starting"
STATE_PENDING_QR = "pending_qr"
STATE_CONNECTED = "connected"
STATE_CLOSING = "closing"

NOT_CONNECTED_MESSAGE = "WhatsApp belum terhubung"
PENDING_MESSAGE = "QR belum tersedia, coba lagi beberapa detik lagi"


class WhatsAppWorkerError(Exception):
    """Base class for errors raised by the session manager."""


class NotConnectedError(WhatsAppWorkerError):
    def __init__(self) -> None:
        super().__init__(NOT_CONNECTED_MESSAGE)


class SessionStartError(WhatsAppWorkerError):
    """Raised when the external connection could not be opened."""


class LogoutError(WhatsAppWorkerError):
    """Raised when local credential cleanup fails during logout."""


class MediaFetchError(WhatsAppWorkerError):
    def __init__(
        self, url: str, *, status_code: Optional[int] = None, detail: Optional[str] = None
    ) -> None:
        super().__init__(detail or f"status={status_code}")
        self.url = url
        self.status_code = status_code
        self.detail = detail


@dataclass(slots=True)
class SessionSnapshot:
    """Read-only view of the session manager state."""

    state: str
    user: Optional[dict[str, Any]]
    has_qr: bool
    last_error: Optional[str]
    reconnect_pending: bool = False

    @property
    def connected(self) -> bool:
        return self.state == STATE_CONNECTED

    def to_payload(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "connected": self.connected,
            "user": self.user,
            "has_qr": self.has_qr,
            "last_error": self.last_error,
            "reconnect_pending": self.reconnect_pending,
        }


class WhatsAppSessionManager:
    """Own the single WhatsApp connection and its QR/connected state.

    Lifecycle events from the connection are fed into :meth:`handle_update`,
    tagged with the generation of the connection that produced them; events
    from replaced or logged out connections are dropped.
    """

    def __init__(
        self,
        auth_dir: Path,
        *,
        reconnect_delay: float = 3.0,
        preview_title: str = DEFAULT_PREVIEW_TITLE,
        preview_description: str = DEFAULT_PREVIEW_DESCRIPTION,
        connection_factory: Optional[ConnectionFactory] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        http_timeout: float = 15.0,
    ) -> None:
        self._auth_dir = Path(auth_dir)
        self._reconnect_delay = max(float(reconnect_delay), 0.0)
        self._preview_title = preview_title
        self._preview_description = preview_description
        self._factory = connection_factory or open_connection
        self._http = http_client or httpx.AsyncClient(timeout=http_timeout)
        self._state = STATE_ABSENT
        self._connection: Any | None = None
        self._qr: Optional[str] = None
        self._qr_image: Optional[str] = None
        self._user: Optional[dict[str, Any]] = None
        self._last_error: Optional[str] = None
        self._generation = 0
        self._starting = False
        self._start_task: Optional[asyncio.Task[Any]] = None
        self._reconnect_task: Optional[asyncio.Task[Any]] = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == STATE_CONNECTED

    @property
    def auth_dir(self) -> Path:
        return self._auth_dir

    def _set_state(self, state: str, *, reason: str | None = None) -> None:
        previous = self._state
        if previous != state:
            if reason:
                LOGGER.info(
                    "stage=state_transition from=%s to=%s reason=%s", previous, state, reason
                )
            else:
                LOGGER.info("stage=state_transition from=%s to=%s", previous, state)
        self._state = state
        WA_SESSION_CONNECTED.set(1 if state == STATE_CONNECTED else 0)

    def _clear_qr(self) -> None:
        self._qr = None
        self._qr_image = None

    def snapshot(self) -> SessionSnapshot:
        task = self._reconnect_task
        return SessionSnapshot(
            state=self._state,
            user=dict(self._user) if self._user else None,
            has_qr=self._qr is not None,
            last_error=self._last_error,
            reconnect_pending=bool(task and not task.done()),
        )

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> SessionSnapshot:
        if self._starting or self._state != STATE_ABSENT:
            return self.snapshot()
        await self._open(reason="start_request")
        return self.snapshot()

    def trigger_start(self) -> bool:
        """Schedule :meth:`start` in the background when no session exists."""

        if self._starting or self._state != STATE_ABSENT:
            return False
        if self._start_task is not None and not self._start_task.done():
            return False
        self._start_task = asyncio.get_running_loop().create_task(self._start_in_background())
        return True

    async def _start_in_background(self) -> None:
        try:
            await self.start()
        except SessionStartError as exc:
            LOGGER.warning("stage=background_start_failed error=%s", exc)

    async def _open(self, *, reason: str) -> None:
        self._starting = True
        self._generation += 1
        generation = self._generation
        self._set_state(STATE_STARTING, reason=reason)
        listener = functools.partial(self.handle_update, generation)
        try:
            connection = await self._factory(self._auth_dir, listener)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            if generation == self._generation:
                self._connection = None
                self._last_error = error
                self._set_state(STATE_ABSENT, reason="start_failed")
            LOGGER.exception("stage=start_failed reason=%s error=%s", reason, error)
            self._starting = False
            self._resume_reconnect()
            raise SessionStartError(error) from exc
        finally:
            self._starting = False

        if generation != self._generation:
            LOGGER.info("stage=start_superseded generation=%s", generation)
            with contextlib.suppress(Exception):
                await connection.close()
            self._resume_reconnect()
            return
        self._connection = connection
        LOGGER.info("stage=started generation=%s state=%s", generation, self._state)

    async def handle_update(self, generation: int, update: ConnectionUpdate) -> None:
        if generation != self._generation:
            LOGGER.debug(
                "event=stale_update generation=%s current=%s", generation, self._generation
            )
            return
        if self._state in {STATE_CLOSING, STATE_ABSENT}:
            return
        if update.qr:
            self._on_qr(update.qr)
        if update.connection == "open":
            self._on_open(update.user)
        elif update.connection == "close":
            await self._on_close(update)

    def _on_qr(self, payload: str) -> None:
        if payload != self._qr:
            self._qr = payload
            self._qr_image = None
            WA_QR_ISSUED_TOTAL.inc()
            LOGGER.info("event=qr_issued hint=/v1/login")
        self._set_state(STATE_PENDING_QR, reason="qr")

    def _on_open(self, user: Optional[dict[str, Any]]) -> None:
        self._clear_qr()
        if user is None and self._connection is not None:
            user = self._connection.user
        self._user = user
        self._last_error = None
        WA_CONNECTED_TOTAL.inc()
        self._set_state(STATE_CONNECTED, reason="connection_open")
        LOGGER.info("event=connected user=%s", (user or {}).get("id"))

    async def _on_close(self, update: ConnectionUpdate) -> None:
        connection = self._connection
        self._connection = None
        self._user = None
        self._clear_qr()
        self._last_error = update.reason
        # Ignore anything else the closed socket still emits.
        self._generation += 1

        reason = "logged_out" if update.logged_out else str(update.status_code or "closed")
        WA_DISCONNECT_TOTAL.labels(reason).inc()
        LOGGER.warning(
            "event=connection_closed status_code=%s reason=%s reconnect=%s",
            update.status_code,
            update.reason,
            not update.logged_out,
        )

        if update.logged_out:
            if connection is not None:
                with contextlib.suppress(Exception):
                    await connection.close()
            try:
                self._remove_credentials()
            except LogoutError as exc:
                LOGGER.error("stage=credentials_cleanup_failed error=%s", exc)
            self._set_state(STATE_ABSENT, reason="logged_out")
            return

        if connection is not None:
            try:
                await connection.save_credentials()
            except Exception:
                LOGGER.exception("stage=credentials_flush_failed")
            with contextlib.suppress(Exception):
                await connection.close()
        self._set_state(STATE_STARTING, reason=f"connection_closed:{reason}")
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        task = self._reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            return
        WA_RECONNECT_SCHEDULED_TOTAL.inc()
        LOGGER.info("stage=reconnect_scheduled delay=%.1f", self._reconnect_delay)
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_later())

    def _resume_reconnect(self) -> None:
        """Re-arm the reconnect when a close landed while a connect was in flight."""

        if self._starting or self._state != STATE_STARTING or self._connection is not None:
            return
        self._schedule_reconnect()

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        # an in-flight _open re-arms the reconnect itself if it gets superseded
        if self._starting or self._state != STATE_STARTING or self._connection is not None:
            return
        try:
            await self._open(reason="reconnect")
        except SessionStartError as exc:
            LOGGER.warning("stage=reconnect_failed error=%s", exc)

    async def _cancel_background(self) -> None:
        current = asyncio.current_task()
        for task in (self._reconnect_task, self._start_task):
            if task is None or task.done() or task is current:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reconnect_task = None
        self._start_task = None

    def _remove_credentials(self) -> None:
        try:
            shutil.rmtree(self._auth_dir)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise LogoutError(str(exc)) from exc
        LOGGER.info("stage=credentials_removed path=%s", self._auth_dir)

    async def logout(self) -> None:
        """Invalidate the session; safe to call repeatedly."""

        connection = self._connection
        self._generation += 1
        self._set_state(STATE_CLOSING, reason="logout_request")
        await self._cancel_background()
        try:
            if connection is not None:
                try:
                    await connection.logout()
                except Exception as exc:
                    LOGGER.warning("stage=logout_failed error=%s", exc)
                with contextlib.suppress(Exception):
                    await connection.close()
            self._remove_credentials()
        finally:
            self._connection = None
            self._user = None
            self._clear_qr()
            self._set_state(STATE_ABSENT, reason="logout")
        LOGGER.info("stage=logout had_connection=%s", connection is not None)

    async def shutdown(self) -> None:
        connection = self._connection
        self._generation += 1
        await self._cancel_background()
        if connection is not None:
            try:
                await connection.save_credentials()
            except Exception:
                LOGGER.exception("stage=credentials_flush_failed")
            with contextlib.suppress(Exception):
                await connection.close()
        self._connection = None
        self._user = None
        self._clear_qr()
        self._set_state(STATE_ABSENT, reason="shutdown")
        await self._http.aclose()

    # -- login -------------------------------------------------------------

    @staticmethod
    def _build_qr_png(payload: str) -> bytes:
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
        )
        qr.add_data(payload)
        qr.make(fit=True)
        img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()

    def qr_data_uri(self) -> Optional[str]:
        if self._qr is None:
            return None
        if self._qr_image is None:
            encoded = base64.b64encode(self._build_qr_png(self._qr)).decode("ascii")
            self._qr_image = f"data:image/png;base64,{encoded}"
        return self._qr_image

    def login_payload(self) -> dict[str, Any]:
        if self._state == STATE_CONNECTED:
            return {"status": "connected", "user": dict(self._user) if self._user else None}
        qr_image = self.qr_data_uri()
        if qr_image is not None:
            return {"status": "scan_qr", "qr": qr_image}
        return {"status": "pending", "message": PENDING_MESSAGE}

    # -- sends -------------------------------------------------------------

    def _require_connection(self) -> Any:
        connection = self._connection
        if self._state != STATE_CONNECTED or connection is None:
            raise NotConnectedError()
        return connection

    async def _deliver(self, kind: str, jid: str, send: Callable[[], Awaitable[Any]]) -> None:
        try:
            await send()
        except Exception as exc:
            WA_SEND_TOTAL.labels(kind, "error").inc()
            LOGGER.error("stage=send_fail kind=%s jid=%s error=%s", kind, jid, exc)
            raise
        WA_SEND_TOTAL.labels(kind, "ok").inc()
        LOGGER.info("stage=send_ok kind=%s jid=%s", kind, jid)

    async def send_text(self, number: str, message: str) -> None:
        connection = self._require_connection()
        jid = normalize_jid(number)
        await self._deliver("text", jid, lambda: connection.send_text(jid, message))

    async def fetch_image(self, url: str) -> tuple[bytes, str]:
        try:
            response = await self._http.get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise MediaFetchError(url, detail=str(exc) or exc.__class__.__name__) from exc
        if response.status_code != 200:
            raise MediaFetchError(url, status_code=response.status_code)
        content_type = response.headers.get("content-type", "")
        mimetype = content_type.split(";", 1)[0].strip() or "image/jpeg"
        return response.content, mimetype

    async def send_image(
        self,
        number: str,
        image_url: str,
        *,
        caption: Optional[str] = None,
        group: bool = False,
    ) -> None:
        connection = self._require_connection()
        jid = normalize_jid(number, server=GROUP_SERVER if group else USER_SERVER)
        try:
            data, mimetype = await self.fetch_image(image_url)
        except MediaFetchError as exc:
            WA_SEND_TOTAL.labels("image", "fetch_error").inc()
            LOGGER.warning(
                "stage=image_fetch_failed url=%s status=%s detail=%s",
                image_url,
                exc.status_code,
                exc.detail,
            )
            raise
        await self._deliver(
            "image",
            jid,
            lambda: connection.send_image(jid, data, mimetype=mimetype, caption=caption or None),
        )

    async def send_contact(
        self,
        number: str,
        contact_phone: str,
        display_name: str,
        *,
        organization: str = "",
    ) -> None:
        connection = self._require_connection()
        jid = normalize_jid(number)
        vcard = build_vcard(display_name, contact_phone, organization)
        await self._deliver(
            "contact",
            jid,
            lambda: connection.send_contact(jid, display_name=display_name, vcard=vcard),
        )

    async def send_link_preview(self, number: str, message: str, link: str) -> LinkPreview:
        connection = self._require_connection()
        jid = normalize_jid(number)
        extracted = await fetch_link_preview(link, client=self._http)
        preview = LinkPreview(
            url=link,
            title=extracted.title or self._preview_title,
            description=extracted.description or self._preview_description,
        )
        text = compose_link_message(
            message, link, title=preview.title or "", description=preview.description or ""
        )
        await self._deliver("link_preview", jid, lambda: connection.send_text(jid, text))
        return preview


__all__ = [
    "LogoutError",
    "MediaFetchError",
    "NotConnectedError",
    "SessionSnapshot",
    "SessionStartError",
    "WhatsAppSessionManager",
    "WhatsAppWorkerError",
    "STATE_ABSENT",
    "STATE_STARTING",
    "STATE_PENDING_QR",
    "STATE_CONNECTED",
    "STATE_CLOSING",
]
