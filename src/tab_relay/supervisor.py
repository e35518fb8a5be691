"""Connection supervisor - owns the command channel lifecycle."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable

import httpx

from .channel import CommandChannel
from .channel.protocol import CommandEnvelope
from .config import RelayConfig
from .errors import ConnectivityError
from .indicator import BadgeIndicator, IndicatorState
from .session import AttachmentRegistry

logger = logging.getLogger(__name__)

ChannelFactory = Callable[..., CommandChannel]


class ConnectionSupervisor:
    """Lazily connects the command channel and tears down state on loss.

    Reconnection is never automatic: the next ensure_connected() call after a
    loss opens a fresh channel.
    """

    def __init__(
        self,
        config: RelayConfig,
        registry: AttachmentRegistry,
        indicator: BadgeIndicator,
        command_handler: Callable[[CommandEnvelope], Awaitable[None]],
        channel_factory: ChannelFactory = CommandChannel,
    ):
        self._config = config
        self._registry = registry
        self._indicator = indicator
        self._command_handler = command_handler
        self._channel_factory = channel_factory
        self._channel: CommandChannel | None = None
        self._connect_task: asyncio.Task[CommandChannel] | None = None

    @property
    def channel(self) -> CommandChannel | None:
        return self._channel

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and self._channel.is_open

    @property
    def is_connecting(self) -> bool:
        return self._connect_task is not None

    async def ensure_connected(self) -> CommandChannel:
        """Return an open channel, connecting if needed.

        Concurrent callers share one in-flight attempt.

        Raises:
            ConnectivityError: If the relay server is unreachable or the handshake fails
        """
        if self.is_connected:
            assert self._channel is not None
            return self._channel
        if self._connect_task is None:
            self._connect_task = asyncio.create_task(self._connect())
        return await asyncio.shield(self._connect_task)

    async def close(self) -> None:
        """Close the channel (shutdown)."""
        if self._connect_task is not None:
            self._connect_task.cancel()
            try:
                await self._connect_task
            except (asyncio.CancelledError, Exception):
                pass
        if self._channel is not None:
            await self._channel.close()
            self._channel = None

    async def probe(self, base_url: str) -> None:
        """Bounded-time reachability check of the relay server.

        Raises:
            ConnectivityError: On any failure, including timeout
        """
        try:
            async with httpx.AsyncClient(timeout=self._config.probe_timeout) as client:
                await client.head(f"{base_url}/")
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Relay server not reachable at {base_url}") from e

    async def _connect(self) -> CommandChannel:
        try:
            port = self._config.relay_port
            await self.probe(self._config.http_base(port))

            channel = self._channel_factory(
                self._config.ws_url(port),
                connect_timeout=self._config.connect_timeout,
                call_timeout=self._config.call_timeout,
                sweep_interval=self._config.sweep_interval,
            )
            channel.on_command(self._command_handler)
            channel.on_close(functools.partial(self._on_channel_closed, channel))
            await channel.open()
            self._channel = channel
            return channel
        finally:
            self._connect_task = None

    def _on_channel_closed(self, channel: CommandChannel, reason: str) -> None:
        """Full teardown: every attached tab goes to error, all state is cleared."""
        if self._channel is not None and self._channel is not channel:
            return
        self._channel = None
        attached = self._registry.teardown()
        for target in attached:
            self._indicator.set(target, IndicatorState.ERROR)
        logger.warning(f"Relay connection {reason}; cleared {len(attached)} session(s)")
