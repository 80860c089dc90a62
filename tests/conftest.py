"""Shared fixtures for daemontop tests."""

import threading
import time
from queue import Queue
from typing import Any, Callable

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

_CLOSE = object()
_DROP = object()


class FakeConnection:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.sent: list[str] = []
        self.closed = threading.Event()
        self._inbox: Queue[Any] = Queue()

    def send(self, text: str) -> None:
        if self.closed.is_set():
            raise ConnectionClosedOK(None, None)
        self.sent.append(text)

    def recv(self) -> str:
        item = self._inbox.get()
        if item is _CLOSE:
            raise ConnectionClosedOK(None, None)
        if item is _DROP:
            self.closed.set()
            raise ConnectionClosedError(None, None)
        return item

    def close(self) -> None:
        self.closed.set()
        self._inbox.put(_CLOSE)

    def push(self, raw: str | bytes) -> None:
        """Deliver a frame from the server."""
        self._inbox.put(raw)

    def drop(self) -> None:
        """Simulate the server dropping the connection."""
        self._inbox.put(_DROP)


class FakeServer:
    """Connector handing out FakeConnections, or refusing them."""

    def __init__(self, refuse: bool = False) -> None:
        self.refuse = refuse
        self.connections: list[FakeConnection] = []
        self.kwargs: list[dict[str, Any]] = []

    def __call__(self, url: str, **kwargs: Any) -> FakeConnection:
        self.kwargs.append(kwargs)
        if self.refuse:
            raise ConnectionRefusedError("connection refused")
        connection = FakeConnection(url)
        self.connections.append(connection)
        return connection

    @property
    def live(self) -> list[FakeConnection]:
        """Connections not closed yet."""
        return [c for c in self.connections if not c.closed.is_set()]


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll until the predicate holds or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def fake_server() -> FakeServer:
    """A connector that accepts every connection."""
    return FakeServer()


@pytest.fixture
def refusing_server() -> FakeServer:
    """A connector that refuses every connection."""
    return FakeServer(refuse=True)


@pytest.fixture
def container_payload() -> dict[str, Any]:
    """Container stats as served by cAdvisor, oldest sample first."""
    return {
        "spec": {"has_cpu": True, "has_memory": True, "memory": {"limit": 10_000_000_000}},
        "stats": [
            {
                "timestamp": "2016-06-01T10:00:00Z",
                "cpu": {"usage": {"total": 1000}},
                "memory": {"usage": 5_000_000},
            },
            {
                "timestamp": "2016-06-01T10:00:01Z",
                "cpu": {"usage": {"total": 1_500_000_000}},
                "memory": {"usage": 6_000_000},
            },
        ],
    }
