"""Pytest fixtures for tab-relay tests."""

import asyncio
import json
import os
import sys
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from tab_relay.config import RelayConfig  # noqa: E402
from tab_relay.errors import TargetHostError  # noqa: E402
from tab_relay.host.base import TabInfo, TabStatus, TargetHost  # noqa: E402
from tab_relay.indicator import BadgeIndicator  # noqa: E402
from tab_relay.session import AttachmentManager, AttachmentRegistry  # noqa: E402

_CLOSE = object()
_ERROR = object()


async def settle(rounds: int = 10) -> None:
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTargetHost(TargetHost):
    """In-memory target host."""

    def __init__(self, tabs: list[TabInfo] | None = None):
        self.tabs: dict[Any, TabInfo] = {t.id: t for t in tabs or []}
        self.attached: set = set()
        self.attach_calls: list = []
        self.detach_calls: list = []
        self.commands: list[tuple] = []
        self.command_results: dict[str, Any] = {}
        self.attach_error: Exception | None = None
        self.command_error: Exception | None = None
        self.attach_gate: asyncio.Event | None = None
        self.started = False
        self.closed = False
        self._debugger_queue: asyncio.Queue = asyncio.Queue()
        self._tab_queue: asyncio.Queue = asyncio.Queue()

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True
        self.finish()

    async def attach(self, target, protocol_version="1.3") -> None:
        self.attach_calls.append(target)
        if self.attach_gate is not None:
            await self.attach_gate.wait()
        if self.attach_error is not None:
            raise self.attach_error
        if target in self.attached:
            raise TargetHostError(f"Another debugger is already attached to the tab with id: {target}.")
        self.attached.add(target)

    async def send_command(self, target, method, params=None, session_id=None):
        self.commands.append((target, method, params, session_id))
        if target not in self.attached:
            raise TargetHostError(f"Debugger is not attached to the tab with id: {target}.")
        if self.command_error is not None:
            raise self.command_error
        return self.command_results.get(method, {})

    async def detach(self, target) -> None:
        self.detach_calls.append(target)
        if target not in self.attached:
            raise TargetHostError(f"Debugger is not attached to the tab with id: {target}.")
        self.attached.discard(target)

    async def query_tabs(self) -> list[TabInfo]:
        return list(self.tabs.values())

    async def get_tab(self, target):
        return self.tabs.get(target)

    async def user_agent(self) -> str:
        return "FakeBrowser/1.0"

    async def debugger_events(self):
        while True:
            item = await self._debugger_queue.get()
            if item is None:
                return
            yield item

    async def tab_events(self):
        while True:
            item = await self._tab_queue.get()
            if item is None:
                return
            yield item

    def emit_debugger(self, notice) -> None:
        self._debugger_queue.put_nowait(notice)

    def emit_tab(self, notice) -> None:
        self._tab_queue.put_nowait(notice)

    def finish(self) -> None:
        self._debugger_queue.put_nowait(None)
        self._tab_queue.put_nowait(None)


class FakeWebSocket:
    """Stand-in for a websockets ClientConnection."""

    def __init__(self):
        self.sent: list[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def sent_json(self) -> list[dict[str, Any]]:
        return [json.loads(s) for s in self.sent]

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def feed(self, message: Any) -> None:
        """Queue an inbound frame; dicts are JSON-encoded."""
        self._incoming.put_nowait(json.dumps(message) if isinstance(message, dict) else message)

    def drop(self) -> None:
        """Simulate an abnormal connection loss."""
        self.closed = True
        self._incoming.put_nowait(_ERROR)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if item is _ERROR:
            raise ConnectionClosedError(None, None)
        return item


@pytest.fixture
def tabs():
    """Sample tabs."""
    return [
        TabInfo(id=42, url="https://example.com/", title="Example", status=TabStatus.COMPLETE),
        TabInfo(id=7, url="http://localhost:3000/app", title="App", status=TabStatus.COMPLETE),
        TabInfo(id=3, url="chrome://settings/", title="Settings", status=TabStatus.COMPLETE),
        TabInfo(id=9, url="about:blank", title="", status=TabStatus.LOADING),
    ]


@pytest.fixture
def host(tabs):
    return FakeTargetHost(tabs)


@pytest.fixture
def registry():
    return AttachmentRegistry()


@pytest.fixture
def indicator():
    return BadgeIndicator()


@pytest.fixture
def emitted():
    """Envelopes emitted upstream."""
    return []


@pytest.fixture
def manager(host, registry, indicator, emitted):
    return AttachmentManager(host, registry, indicator, emitted.append)


@pytest.fixture
def fast_config():
    """Config with short poll timings."""
    return RelayConfig(
        poll_interval=0.001,
        poll_backoff=1.0,
        poll_max_interval=0.001,
        poll_max_attempts=5,
        sweep_interval=0.01,
    )


@pytest.fixture
def fake_ws():
    return FakeWebSocket()


class FakeChannel:
    """Stand-in for CommandChannel used by supervisor-level tests."""

    def __init__(self, url: str, open_error: Exception | None = None, **kwargs):
        self.url = url
        self.kwargs = kwargs
        self.open_error = open_error
        self.is_open = False
        self.sent: list = []
        self.command_handler = None
        self._close_listeners: list = []

    def on_command(self, handler) -> None:
        self.command_handler = handler

    def on_close(self, listener) -> None:
        self._close_listeners.append(listener)

    async def open(self) -> None:
        await asyncio.sleep(0)
        if self.open_error is not None:
            raise self.open_error
        self.is_open = True

    async def close(self) -> None:
        self.simulate_close("closed")

    def send(self, envelope) -> None:
        if self.is_open:
            self.sent.append(envelope)

    def simulate_close(self, reason: str = "error") -> None:
        if not self.is_open:
            return
        self.is_open = False
        for listener in self._close_listeners:
            listener(reason)


class ChannelFactory:
    """Records every FakeChannel it creates."""

    def __init__(self):
        self.created: list[FakeChannel] = []
        self.open_error: Exception | None = None

    def __call__(self, url: str, **kwargs) -> FakeChannel:
        channel = FakeChannel(url, open_error=self.open_error, **kwargs)
        self.created.append(channel)
        return channel

    @property
    def last(self) -> FakeChannel:
        return self.created[-1]


@pytest.fixture
def channel_factory():
    return ChannelFactory()
