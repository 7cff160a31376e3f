from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Any, Callable, Optional, Union

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from config import WhatsAppConfig
from waworker.api import create_app
from waworker.connection import ConnectionUpdate, UpdateListener
from waworker.manager import WhatsAppSessionManager


STUB_USER = {"id": "6281111@s.whatsapp.net", "name": "Stub Device"}
OPEN = ConnectionUpdate(connection="open", user=STUB_USER)
QR = ConnectionUpdate(qr="2@stub-qr-payload,abc,def")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class StubConnection:
    def __init__(self, listener: UpdateListener) -> None:
        self.listener = listener
        self.user: Optional[dict[str, Any]] = dict(STUB_USER)
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.send_error: Optional[Exception] = None
        self.logout_error: Optional[Exception] = None
        self.logout_calls = 0
        self.close_calls = 0
        self.saved = 0

    async def emit(self, update: ConnectionUpdate) -> None:
        await self.listener(update)

    async def _record(self, kind: str, jid: str, **payload: Any) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((kind, jid, payload))
        return f"msg-{len(self.sent)}"

    async def send_text(self, jid: str, text: str) -> str:
        return await self._record("text", jid, text=text)

    async def send_image(
        self, jid: str, data: bytes, *, mimetype: str, caption: Optional[str] = None
    ) -> str:
        return await self._record("image", jid, data=data, mimetype=mimetype, caption=caption)

    async def send_contact(self, jid: str, *, display_name: str, vcard: str) -> str:
        return await self._record("contact", jid, display_name=display_name, vcard=vcard)

    async def save_credentials(self) -> None:
        self.saved += 1

    async def logout(self) -> None:
        self.logout_calls += 1
        if self.logout_error is not None:
            raise self.logout_error

    async def close(self) -> None:
        self.close_calls += 1


class StubFactory:
    """Connection factory that replays scripted updates while connecting."""

    def __init__(self) -> None:
        self.connections: list[StubConnection] = []
        self.auth_dirs: list[Path] = []
        self.script: list[ConnectionUpdate] = []
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    @property
    def calls(self) -> int:
        return len(self.auth_dirs)

    @property
    def latest(self) -> StubConnection:
        return self.connections[-1]

    async def __call__(self, auth_dir: Path, listener: UpdateListener) -> StubConnection:
        self.auth_dirs.append(auth_dir)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        connection = StubConnection(listener)
        self.connections.append(connection)
        for update in self.script:
            await listener(update)
        return connection


Route = Union[httpx.Response, httpx.TransportError]


def mock_http_client(routes: dict[str, Route], seen: list[str]) -> httpx.AsyncClient:
    def _handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        seen.append(url)
        response = routes.get(url)
        if response is None:
            return httpx.Response(404, text="not found")
        if isinstance(response, httpx.TransportError):
            raise type(response)(str(response), request=request)
        return response

    return httpx.AsyncClient(transport=httpx.MockTransport(_handler))


@pytest.fixture
def stub_factory() -> StubFactory:
    return StubFactory()


@pytest.fixture
def http_routes() -> dict[str, Route]:
    return {}


@pytest.fixture
def fetched_urls() -> list[str]:
    return []


@pytest.fixture
def auth_dir(tmp_path: Path) -> Path:
    path = tmp_path / "auth_info"
    path.mkdir()
    (path / "creds.json").write_text("{}", encoding="utf-8")
    return path


@pytest.fixture
def session_manager(stub_factory, http_routes, fetched_urls, auth_dir):
    return WhatsAppSessionManager(
        auth_dir,
        reconnect_delay=0.0,
        preview_title="Placeholder title",
        preview_description="Placeholder description",
        connection_factory=stub_factory,
        http_client=mock_http_client(http_routes, fetched_urls),
    )


class WorkerEnv:
    def __init__(self, client: TestClient, app: FastAPI, factory: StubFactory) -> None:
        self.client = client
        self.app = app
        self.factory = factory
        self.manager: WhatsAppSessionManager = app.state.session_manager

    def emit(self, update: ConnectionUpdate) -> None:
        self.client.portal.call(self.factory.latest.emit, update)


@pytest.fixture
def worker(
    monkeypatch: pytest.MonkeyPatch,
    stub_factory: StubFactory,
    http_routes,
    fetched_urls,
    auth_dir: Path,
) -> Callable[..., contextlib.AbstractContextManager[WorkerEnv]]:
    """Build the app around stubbed collaborators.

    ``worker(*updates)`` replays ``updates`` while the startup connect runs.
    """

    def _config(allowed_ips: frozenset[str]) -> WhatsAppConfig:
        return WhatsAppConfig(
            auth_dir=auth_dir,
            allowed_ips=allowed_ips,
            reconnect_delay=0.0,
            http_timeout=5.0,
            preview_title="Placeholder title",
            preview_description="Placeholder description",
            port=3000,
        )

    @contextlib.contextmanager
    def _build(*script: ConnectionUpdate, allowed_ips=frozenset({"testclient", "127.0.0.1"})):
        stub_factory.script = list(script)
        monkeypatch.setattr("waworker.api.whatsapp_config", lambda: _config(allowed_ips))
        monkeypatch.setattr("waworker.api.open_connection", stub_factory)
        monkeypatch.setattr(
            "waworker.api._build_http_client",
            lambda _cfg: mock_http_client(http_routes, fetched_urls),
        )
        app = create_app()
        with TestClient(app) as client:
            yield WorkerEnv(client, app, stub_factory)

    return _build
