"""Command channel - WebSocket connection to the upstream controller."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..errors import CallTimeoutError, ChannelClosedError, ConnectivityError
from .protocol import (
    CommandEnvelope,
    Envelope,
    EventEnvelope,
    ResponseEnvelope,
    encode,
    parse_envelope,
)

logger = logging.getLogger(__name__)

# Limits for security
MAX_MESSAGE_SIZE = 64 * 1024 * 1024  # CDP screenshots can be large

CommandHandler = Callable[[CommandEnvelope], Awaitable[None]]
CloseListener = Callable[[str], None]


@dataclass
class PendingCall:
    """Relay-initiated call awaiting its correlated response."""
    method: str
    future: asyncio.Future[Any]
    deadline: float


class CommandChannel:
    """Duplex, message-oriented connection to a single controller."""

    def __init__(
        self,
        url: str,
        connect_timeout: float = 5.0,
        call_timeout: float = 30.0,
        sweep_interval: float = 1.0,
    ):
        self.url = url
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self.sweep_interval = sweep_interval
        self._ws: ClientConnection | None = None
        self._next_id = 0
        self._pending: dict[int, PendingCall] = {}
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._command_handler: CommandHandler | None = None
        self._close_listeners: list[CloseListener] = []
        self._command_tasks: set[asyncio.Task] = set()
        self._read_task: asyncio.Task | None = None
        self._write_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        """Check if the channel is usable."""
        return self._ws is not None and not self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def on_command(self, handler: CommandHandler) -> None:
        """Register the handler for controller-initiated commands."""
        self._command_handler = handler

    def on_close(self, listener: CloseListener) -> None:
        """Register a listener called once with the close reason."""
        self._close_listeners.append(listener)

    async def open(self) -> None:
        """Open the WebSocket within connect_timeout.

        Raises:
            ConnectivityError: If the handshake fails or times out
        """
        if self.is_open:
            return

        logger.info(f"Connecting to {self.url}")
        try:
            ws = await connect(
                self.url,
                open_timeout=self.connect_timeout,
                max_size=MAX_MESSAGE_SIZE,
                ping_interval=20,
                ping_timeout=20,
            )
        except asyncio.TimeoutError:
            raise ConnectivityError("WebSocket connect timeout") from None
        except (OSError, InvalidHandshake, InvalidURI) as e:
            raise ConnectivityError(f"WebSocket connect failed: {e}") from e

        self._ws = ws
        self._closed = False
        self._read_task = asyncio.create_task(self._read_loop())
        self._write_task = asyncio.create_task(self._write_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Connected to {self.url}")

    async def close(self) -> None:
        """Close the channel; close listeners fire with reason 'closed'."""
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("Error while closing WebSocket", exc_info=True)
        self._handle_closed("closed")
        if self._read_task:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None

    def send(self, envelope: Envelope) -> None:
        """Queue an envelope for delivery; dropped if the channel is closed."""
        if not self.is_open:
            logger.debug(f"Channel closed, dropping {type(envelope).__name__}")
            return
        self._outbox.put_nowait(encode(envelope))

    async def call(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> Any:
        """Issue a relay-initiated command and wait for its response.

        Raises:
            ChannelClosedError: If the channel is closed before a response arrives
            CallTimeoutError: If the deadline passes first
            RuntimeError: If the controller answers with an error
        """
        if not self.is_open:
            raise ChannelClosedError("Channel is not open")

        loop = asyncio.get_running_loop()
        self._next_id += 1
        call_id = self._next_id
        future: asyncio.Future[Any] = loop.create_future()
        self._pending[call_id] = PendingCall(
            method=method,
            future=future,
            deadline=loop.time() + (timeout if timeout is not None else self.call_timeout),
        )
        self.send(CommandEnvelope(id=call_id, method=method, params=params or {}))

        try:
            return await future
        finally:
            self._pending.pop(call_id, None)

    def sweep_expired(self, now: float | None = None) -> int:
        """Reject pending calls whose deadline has passed. Returns count removed."""
        if now is None:
            now = asyncio.get_running_loop().time()
        expired = [cid for cid, call in self._pending.items() if call.deadline <= now]
        for cid in expired:
            call = self._pending.pop(cid)
            if not call.future.done():
                call.future.set_exception(
                    CallTimeoutError(f"Call {call.method} (id={cid}) timed out")
                )
        return len(expired)

    async def _read_loop(self) -> None:
        """Read frames from the controller until the connection ends."""
        assert self._ws is not None
        reason = "closed"
        try:
            async for raw in self._ws:
                self._handle_message(raw)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed:
            reason = "error"
        except Exception:
            logger.exception("Error reading from command channel")
            reason = "error"
        finally:
            self._handle_closed(reason)

    async def _write_loop(self) -> None:
        """Drain the outbox in order."""
        assert self._ws is not None
        ws = self._ws
        while True:
            text = await self._outbox.get()
            try:
                await ws.send(text)
            except ConnectionClosed:
                # Read loop reports the close
                return
            except Exception:
                logger.exception("Error sending on command channel")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            count = self.sweep_expired()
            if count:
                logger.warning(f"Expired {count} pending call(s)")

    def _handle_message(self, raw: str | bytes) -> None:
        """Handle one inbound frame."""
        try:
            envelope = parse_envelope(raw)
        except (ValueError, UnicodeDecodeError, RecursionError):
            logger.debug("Dropping malformed frame")
            return

        if isinstance(envelope, CommandEnvelope):
            logger.debug(f"<<< command {envelope.method} (id={envelope.id})")
            if self._command_handler is None:
                logger.warning(f"No command handler, ignoring {envelope.method}")
                return
            task = asyncio.create_task(self._command_handler(envelope))
            self._command_tasks.add(task)
            task.add_done_callback(self._command_tasks.discard)

        elif isinstance(envelope, ResponseEnvelope):
            if not isinstance(envelope.id, (int, str)) or isinstance(envelope.id, bool):
                logger.debug(f"Dropping response with invalid id {envelope.id!r}")
                return
            call = self._pending.pop(envelope.id, None)
            if call is None or call.future.done():
                logger.debug(f"Dropping unmatched response id={envelope.id}")
                return
            if envelope.error:
                call.future.set_exception(RuntimeError(envelope.error))
            else:
                call.future.set_result(envelope.result)

        elif isinstance(envelope, EventEnvelope):
            logger.debug(f"Ignoring inbound event {envelope.method}")

    def _handle_closed(self, reason: str) -> None:
        """Tear down tasks, reject pending calls and notify listeners once."""
        if self._closed or self._ws is None:
            return
        self._closed = True
        logger.warning(f"Command channel {reason}")

        current = asyncio.current_task()
        for task in (self._write_task, self._sweep_task):
            if task is not None and task is not current:
                task.cancel()
        self._write_task = None
        self._sweep_task = None

        for call in list(self._pending.values()):
            if not call.future.done():
                call.future.set_exception(
                    ChannelClosedError(f"Channel {reason} before response to {call.method}")
                )
        self._pending.clear()

        for listener in self._close_listeners:
            try:
                listener(reason)
            except Exception:
                logger.exception("Close listener error")
