"""
tests.conftest
~~~~~~~~~~~~~~

Shared fixtures: an in-memory websocket, a connector that hands it out,
and settings with zero backoff so reconnect tests run instantly.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, List, Optional

import pytest

from roomsync.core.config import settings as base_settings
from roomsync.models.models import LocalUser

_CLOSED = object()


class FakeWebSocket:
    """Stands in for websockets' ClientConnection: send / async iteration / close."""

    def __init__(self) -> None:
        self.sent: List[dict] = []
        self.closed = False
        self.fail_sends = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed or self.fail_sends:
            raise OSError("socket is closed")
        self.sent.append(json.loads(data))

    def push(self, payload: Any) -> None:
        """Deliver a server frame (dicts are JSON encoded)."""
        self._inbox.put_nowait(json.dumps(payload) if isinstance(payload, dict) else payload)

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._inbox.put_nowait(_CLOSED)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Async callable with the signature of websockets.asyncio.client.connect."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.urls: List[str] = []
        self.kwargs: List[dict] = []
        self.sockets: List[FakeWebSocket] = []

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.urls.append(url)
        self.kwargs.append(kwargs)
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    @property
    def current(self) -> Optional[FakeWebSocket]:
        return self.sockets[-1] if self.sockets else None


@pytest.fixture()
def fast_settings():
    return base_settings.override(
        API_BASE_URL="http://chat.test",
        CHANNEL_URL="ws://chat.test/ws",
        RECONNECT_MAX_ATTEMPTS=3,
        RECONNECT_BASE_DELAY=0,
        RECONNECT_MAX_DELAY=0,
        SEND_ACK_TIMEOUT=0.05,
    )


@pytest.fixture()
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture()
def ann() -> LocalUser:
    return LocalUser(id="u1", name="Ann")


@pytest.fixture()
def eventually() -> Callable:
    """Poll a predicate until it holds, yielding to the event loop in between."""

    async def _eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _eventually


@pytest.fixture()
def make_connector() -> Callable[..., FakeConnector]:
    return FakeConnector
