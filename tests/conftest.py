"""Pytest configuration and shared fixtures."""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio
from aiohttp import web

from qrpair.credential_store import CredentialStore
from qrpair.gateway import Gateway


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from qrpair.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def cleanup_aiohttp_sessions():
    """Give aiohttp sessions time to clean up their connectors.

    aiohttp's ClientSession.close() doesn't wait for the underlying
    connector to fully close. This can cause "Unclosed client session"
    warnings when the event loop closes before cleanup completes.
    """
    yield
    await asyncio.sleep(0)


@dataclass
class RecordedRequest:
    """A request received by the fake pairing server."""

    method: str
    path: str
    headers: Any  # case-insensitive CIMultiDict
    body: Any


@dataclass
class FakePairingServer:
    """Minimal web application honouring the pairing contract.

    Responses are configured per (method, path) as raw status + text so
    tests can return bodies that are not JSON.
    """

    responses: dict[tuple[str, str], tuple[int, str]] = field(default_factory=dict)
    requests: list[RecordedRequest] = field(default_factory=list)
    port: int = 0
    _runner: Optional[web.AppRunner] = None

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def respond_json(self, method: str, path: str, status: int, data: Any) -> None:
        self.responses[(method, path)] = (status, json.dumps(data))

    def respond_text(self, method: str, path: str, status: int, text: str) -> None:
        self.responses[(method, path)] = (status, text)

    def requests_to(self, path: str) -> list[RecordedRequest]:
        return [r for r in self.requests if r.path == path]

    async def _handle(self, request: web.Request) -> web.Response:
        text = await request.text()
        try:
            body = json.loads(text) if text else None
        except ValueError:
            body = text
        self.requests.append(
            RecordedRequest(
                method=request.method,
                path=request.path,
                headers=request.headers.copy(),
                body=body,
            )
        )
        status, response_text = self.responses.get(
            (request.method, request.path),
            (404, json.dumps({"error": "Not found"})),
        )
        return web.Response(status=status, text=response_text)

    async def start(self) -> None:
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self._handle)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "127.0.0.1", 0)
        await site.start()
        self.port = site._server.sockets[0].getsockname()[1]

    async def close(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None


@pytest_asyncio.fixture
async def api_server():
    """Start a fake pairing server on a random local port."""
    server = FakePairingServer()
    await server.start()
    yield server
    await server.close()


@pytest.fixture
def store(tmp_path) -> CredentialStore:
    """Credential store in a temporary directory."""
    return CredentialStore(tmp_path / "credentials")


@pytest_asyncio.fixture
async def gateway(store):
    """Gateway over the temporary store."""
    gw = Gateway(store, request_timeout=5.0)
    yield gw
    await gw.close()


@pytest.fixture
def make_payload():
    """Build QR payload text."""

    def _make(api_url: str = "https://x.test", expires_in: Optional[timedelta] = timedelta(hours=1), **overrides) -> str:
        data = {
            "pairingCode": "ABC123",
            "deviceSessionId": "sess-1",
            "apiUrl": api_url,
            "endpoint": "/api/devices/validate",
        }
        if expires_in is not None:
            expires_at = datetime.now(timezone.utc) + expires_in
            data["expiresAt"] = expires_at.isoformat().replace("+00:00", "Z")
        data.update(overrides)
        return json.dumps(data)

    return _make
