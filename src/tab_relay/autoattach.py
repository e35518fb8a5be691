"""Auto-attach policy - attaches to tabs on lifecycle triggers."""

from __future__ import annotations

import asyncio
import logging

from .config import RelayConfig
from .host.base import (
    TabCreated,
    TabInfo,
    TabRemoved,
    TabStatus,
    TabUpdated,
    TargetHandle,
    TargetHost,
)
from .indicator import BadgeIndicator, IndicatorState
from .session import AttachmentManager, AttachmentRegistry
from .supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

# Browser UI, extension pages and DevTools are never auto-attached
EXCLUDED_PREFIXES = ("chrome://", "chrome-extension://", "devtools://")


def is_excluded(url: str | None) -> bool:
    return bool(url) and url.startswith(EXCLUDED_PREFIXES)  # type: ignore[union-attr]


class AutoAttachPolicy:
    """Drives the attachment manager from tab lifecycle notifications."""

    def __init__(
        self,
        host: TargetHost,
        manager: AttachmentManager,
        registry: AttachmentRegistry,
        supervisor: ConnectionSupervisor,
        indicator: BadgeIndicator,
        config: RelayConfig | None = None,
    ):
        self._host = host
        self._manager = manager
        self._registry = registry
        self._supervisor = supervisor
        self._indicator = indicator
        self._config = config or RelayConfig()
        self._in_progress: set[TargetHandle] = set()
        self._pollers: dict[TargetHandle, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_progress(self) -> frozenset[TargetHandle]:
        return frozenset(self._in_progress)

    async def auto_attach(self, target: TargetHandle, url: str | None) -> bool:
        """Attach to a tab unless excluded or already handled.

        Returns:
            True if this call attached the tab
        """
        if not url or is_excluded(url):
            return False
        if self._registry.is_auto_attached(target) or target in self._in_progress:
            return False

        self._in_progress.add(target)
        try:
            self._indicator.set(target, IndicatorState.CONNECTING)
            await self._supervisor.ensure_connected()
            await self._manager.attach(target)
        except Exception as e:
            logger.error(f"Auto-attach failed for tab {target}: {e}")
            self._indicator.set(target, IndicatorState.ERROR)
            return False
        finally:
            self._in_progress.discard(target)

        self._registry.mark_auto_attached(target)
        logger.info(f"Auto-attached to tab {target}: {url}")
        return True

    async def on_tab_updated(self, tab: TabInfo, status: TabStatus | None) -> bool:
        """Tab finished loading."""
        if status != TabStatus.COMPLETE or not tab.url:
            return False
        if self._registry.is_auto_attached(tab.id):
            return False
        return await self.auto_attach(tab.id, tab.url)

    def on_tab_created(self, tab: TabInfo) -> asyncio.Task:
        """Start polling a new tab until it loads, is removed, or attempts run out."""
        existing = self._pollers.get(tab.id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self._poll_until_loaded(tab.id))
        self._pollers[tab.id] = task
        task.add_done_callback(lambda _t, target=tab.id: self._forget_poller(target, _t))
        return task

    def on_tab_removed(self, target: TargetHandle) -> None:
        task = self._pollers.pop(target, None)
        if task is not None:
            task.cancel()

    async def attach_existing(self) -> int:
        """Attach to every loaded tab (startup enumeration). Returns count attached."""
        tabs = await self._host.query_tabs()
        candidates = [t for t in tabs if t.id and t.url and t.is_complete]
        results = await asyncio.gather(*(self.auto_attach(t.id, t.url) for t in candidates))
        count = sum(1 for attached in results if attached)
        logger.info(f"Startup enumeration: attached {count} of {len(candidates)} tab(s)")
        return count

    async def run(self) -> None:
        """Consume host tab lifecycle notifications until the stream ends."""
        try:
            async for notice in self._host.tab_events():
                if isinstance(notice, TabCreated):
                    self.on_tab_created(notice.tab)
                elif isinstance(notice, TabUpdated):
                    task = asyncio.create_task(self.on_tab_updated(notice.tab, notice.status))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                elif isinstance(notice, TabRemoved):
                    self.on_tab_removed(notice.target)
        finally:
            for task in list(self._pollers.values()):
                task.cancel()
            self._pollers.clear()

    async def _poll_until_loaded(self, target: TargetHandle) -> bool:
        """Bounded poll with exponential backoff."""
        delay = self._config.poll_interval
        for _ in range(self._config.poll_max_attempts):
            await asyncio.sleep(delay)
            tab = await self._host.get_tab(target)
            if tab is None:
                return False  # closed
            if tab.is_complete and tab.url:
                return await self.auto_attach(tab.id, tab.url)
            delay = min(delay * self._config.poll_backoff, self._config.poll_max_interval)
        logger.debug(f"Tab {target} never finished loading, giving up")
        return False

    def _forget_poller(self, target: TargetHandle, task: asyncio.Task) -> None:
        if self._pollers.get(target) is task:
            del self._pollers[target]
