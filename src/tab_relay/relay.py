"""Relay - wires the registry, supervisor, manager, router and policy together."""

from __future__ import annotations

import asyncio
import logging

from .autoattach import AutoAttachPolicy
from .channel import CommandChannel
from .channel.protocol import CommandEnvelope, Envelope
from .config import RelayConfig
from .host.base import TargetHost
from .indicator import BadgeIndicator
from .router import CommandRouter
from .session import AttachmentManager, AttachmentRegistry
from .supervisor import ChannelFactory, ConnectionSupervisor

logger = logging.getLogger(__name__)


class Relay:
    """One relay process: a controller connection bridged to one target host."""

    def __init__(
        self,
        host: TargetHost,
        config: RelayConfig | None = None,
        indicator: BadgeIndicator | None = None,
        channel_factory: ChannelFactory = CommandChannel,
    ):
        self.config = config or RelayConfig()
        self.host = host
        self.registry = AttachmentRegistry()
        self.indicator = indicator or BadgeIndicator()
        self.supervisor = ConnectionSupervisor(
            self.config, self.registry, self.indicator, self._on_command, channel_factory
        )
        self.manager = AttachmentManager(host, self.registry, self.indicator, self._emit)
        self.router = CommandRouter(self.manager, self.registry, host)
        self.policy = AutoAttachPolicy(
            host, self.manager, self.registry, self.supervisor, self.indicator, self.config
        )

    def _emit(self, envelope: Envelope) -> None:
        """Send an envelope upstream; dropped while disconnected."""
        channel = self.supervisor.channel
        if channel is not None:
            channel.send(envelope)

    async def _on_command(self, command: CommandEnvelope) -> None:
        await self.router.handle_command(command, self._emit)

    async def run(self) -> None:
        """Run until the host's event streams end."""
        await self.host.start()
        pumps = [
            asyncio.create_task(self.manager.run(), name="debugger-events"),
            asyncio.create_task(self.policy.run(), name="tab-events"),
        ]
        try:
            try:
                if self.config.auto_attach:
                    await self.policy.attach_existing()
                else:
                    await self.supervisor.ensure_connected()
            except Exception as e:
                logger.error(f"Startup attach failed: {e}")
            await asyncio.gather(*pumps)
        finally:
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            await self.supervisor.close()
            await self.host.close()
            logger.info("Relay stopped")
