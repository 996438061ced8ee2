import asyncio
import json
import os
from typing import Any, Optional

import pytest
from unittest.mock import patch

from realtime_voice.errors import NotConnectedError
from realtime_voice.transport import Transport


# Set test environment variables before any imports
@pytest.fixture(autouse=True)
def mock_env():
    """Mock environment variables for all tests."""
    with patch.dict(os.environ, {
        "OPENAI_API_KEY": "sk-test-key-123",
    }):
        yield


class FakeTransport(Transport):
    """In-memory transport that records writes and lets tests inject frames."""

    def __init__(self):
        super().__init__()
        self.sent: list[dict] = []
        self.tokens: list[str] = []
        self.open_calls = 0
        self.open_failures: list[Exception] = []
        self.frames_on_open: list[Any] = []
        self.replies: dict[str, list[Any]] = {}
        self.closed_with: list[tuple] = []
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    async def open(self, token: str) -> None:
        self.open_calls += 1
        self.tokens.append(token)
        if self.open_failures:
            raise self.open_failures.pop(0)
        self._open = True
        await self._listener.on_open()
        for frame in self.frames_on_open:
            await self.deliver(frame)

    async def send(self, frame: str) -> None:
        if not self._open:
            raise NotConnectedError("fake transport closed")
        message = json.loads(frame)
        self.sent.append(message)
        for reply in self.replies.get(message["type"], []):
            await self.deliver(reply)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if not self._open:
            return
        self._open = False
        self.closed_with.append((code, reason))
        await self._listener.on_close(code, reason)

    async def deliver(self, frame: Any) -> None:
        """Push one inbound frame (dict or raw text) to the client."""
        if not isinstance(frame, str):
            frame = json.dumps(frame)
        await self._listener.on_frame(frame)

    async def drop(self, code: int = 1006, reason: str = "") -> None:
        """Simulate the remote end going away."""
        self._open = False
        await self._listener.on_close(code, reason)

    def sent_types(self) -> list[str]:
        return [message["type"] for message in self.sent]


@pytest.fixture
def fake_transport():
    return FakeTransport()


async def settle(rounds: int = 20) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def run_pending():
    return settle


class Recorder:
    """Collects events passed to it as a handler."""

    def __init__(self):
        self.events: list = []

    def __call__(self, event) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [event.type for event in self.events]

    def last(self, kind: Optional[str] = None):
        matching = [e for e in self.events if kind is None or e.type == kind]
        return matching[-1] if matching else None


@pytest.fixture
def recorder():
    return Recorder()
