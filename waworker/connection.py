"""Adapter around the ``pyaileys`` WhatsApp Web client.

The adapter is the only place that knows about the library. It translates
library events into :class:`ConnectionUpdate` values and persists credentials
on every ``creds.update`` event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from .metrics import WA_MESSAGES_IN_TOTAL


LOGGER = logging.getLogger("waworker.connection")

# Baileys-compatible DisconnectReason.loggedOut
LOGGED_OUT_STATUS = 401


def _field(source: Any, *names: str) -> Any:
    if source is None:
        return None
    for name in names:
        if isinstance(source, dict):
            value = source.get(name)
        else:
            value = getattr(source, name, None)
        if value is not None:
            return value
    return None


def _status_code(last_disconnect: Any) -> Optional[int]:
    error = _field(last_disconnect, "error")
    candidates = (
        _field(error, "status_code", "statusCode"),
        _field(_field(error, "output"), "status_code", "statusCode"),
        _field(last_disconnect, "status_code", "statusCode"),
    )
    for candidate in candidates:
        if candidate is None:
            continue
        try:
            return int(candidate)
        except (TypeError, ValueError):
            continue
    return None


@dataclass(frozen=True, slots=True)
class ConnectionUpdate:
    connection: Optional[str] = None
    qr: Optional[str] = None
    user: Optional[dict[str, Any]] = None
    status_code: Optional[int] = None
    reason: Optional[str] = None

    @property
    def logged_out(self) -> bool:
        return self.status_code == LOGGED_OUT_STATUS

    @classmethod
    def from_event(cls, payload: Any) -> "ConnectionUpdate":
        last_disconnect = _field(payload, "last_disconnect", "lastDisconnect")
        error = _field(last_disconnect, "error")
        reason = str(error).strip() if error is not None else None
        connection = _field(payload, "connection")
        return cls(
            connection=str(connection) if connection is not None else None,
            qr=_field(payload, "qr") or None,
            user=None,
            status_code=_status_code(last_disconnect),
            reason=reason or None,
        )


UpdateListener = Callable[[ConnectionUpdate], Awaitable[None]]
ConnectionFactory = Callable[[Path, UpdateListener], Awaitable["PyaileysConnection"]]


class PyaileysConnection:
    """Session handle exposing only what the worker needs."""

    def __init__(self, client: Any, auth_state: Any) -> None:
        self._client = client
        self._auth_state = auth_state

    @property
    def user(self) -> Optional[dict[str, Any]]:
        me = _field(_field(_field(_field(self._client, "socket"), "auth"), "creds"), "me")
        jid = _field(me, "id")
        if not jid:
            return None
        return {"id": str(jid), "name": _field(me, "name", "notify")}

    async def send_text(self, jid: str, text: str) -> Any:
        return await self._client.send_text(jid, text)

    async def send_image(
        self, jid: str, data: bytes, *, mimetype: str, caption: Optional[str] = None
    ) -> Any:
        return await self._client.send_image(jid, data, mimetype=mimetype, caption=caption)

    async def send_contact(self, jid: str, *, display_name: str, vcard: str) -> Any:
        return await self._client.send_contact(jid, display_name=display_name, vcard=vcard)

    async def save_credentials(self) -> None:
        await self._auth_state.save_creds()

    async def logout(self) -> None:
        for target in (self._client, _field(self._client, "socket")):
            logout = getattr(target, "logout", None)
            if logout is not None:
                await logout()
                return
        raise RuntimeError("logout_unsupported")

    async def close(self) -> None:
        await self._client.disconnect()


async def open_connection(auth_dir: Path, on_update: UpdateListener) -> PyaileysConnection:
    # The library pulls in the generated protobuf module; import on first use.
    from pyaileys import WhatsAppClient

    client, auth_state = await WhatsAppClient.from_auth_folder(str(auth_dir))
    connection = PyaileysConnection(client, auth_state)

    async def _on_connection_update(payload: Any) -> None:
        update = ConnectionUpdate.from_event(payload)
        if update.connection == "open":
            update = ConnectionUpdate(connection="open", user=connection.user)
        await on_update(update)

    async def _on_creds_update(*_: Any) -> None:
        await connection.save_credentials()

    async def _on_messages_upsert(payload: Any) -> None:
        messages = _field(payload, "messages") or []
        for message in messages:
            WA_MESSAGES_IN_TOTAL.inc()
            LOGGER.info(
                "event=message_in from=%s type=%s",
                _field(_field(message, "key"), "remote_jid", "remoteJid"),
                _field(payload, "type"),
            )

    client.on("connection.update", _on_connection_update)
    client.on("creds.update", _on_creds_update)
    client.on("messages.upsert", _on_messages_upsert)
    await client.connect()
    LOGGER.info("stage=connect auth_dir=%s", auth_dir)
    return connection


__all__ = [
    "ConnectionFactory",
    "ConnectionUpdate",
    "LOGGED_OUT_STATUS",
    "PyaileysConnection",
    "UpdateListener",
    "open_connection",
]
