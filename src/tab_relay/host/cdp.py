"""Chrome DevTools Protocol target host.

Drives a running Chromium-family browser through its browser-level DevTools
WebSocket. Page targets are exposed as small integer tab handles; attachments
use flattened sessions so child targets (iframes, workers) share one session
id space with their owning tab.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..config import DEFAULT_CDP_URL
from ..errors import ConnectivityError, TargetHostError
from .base import (
    PROTOCOL_VERSION,
    DebuggerDetached,
    DebuggerEvent,
    DebuggerNotice,
    TabCreated,
    TabInfo,
    TabNotice,
    TabRemoved,
    TabStatus,
    TabUpdated,
    TargetHandle,
    TargetHost,
)

logger = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 64 * 1024 * 1024

PAGE_TARGET = "page"
BLANK_URL = "about:blank"


def _is_page(info: Any) -> bool:
    return isinstance(info, dict) and info.get("type") == PAGE_TARGET and bool(info.get("targetId"))


def status_for_url(url: str) -> TabStatus:
    """CDP reports no load status; a page counts as loaded once it has a real URL."""
    if url and url != BLANK_URL:
        return TabStatus.COMPLETE
    return TabStatus.LOADING


class CdpTargetHost(TargetHost):
    """Target host backed by the browser's DevTools WebSocket."""

    def __init__(self, cdp_url: str = DEFAULT_CDP_URL, connect_timeout: float = 5.0):
        self.cdp_url = cdp_url.rstrip("/")
        self.connect_timeout = connect_timeout
        self._ws: ClientConnection | None = None
        self._read_task: asyncio.Task | None = None
        self._seq = 0
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._user_agent = ""

        self._next_tab_id = 0
        self._tab_ids: dict[str, int] = {}  # CDP targetId -> tab handle
        self._target_ids: dict[int, str] = {}  # tab handle -> CDP targetId
        self._tabs: dict[int, TabInfo] = {}

        self._sessions: dict[TargetHandle, str] = {}  # tab -> top-level CDP session
        self._session_tabs: dict[str, TargetHandle] = {}  # top-level and child sessions -> tab

        self._debugger_queue: asyncio.Queue[DebuggerNotice | None] = asyncio.Queue()
        self._tab_queue: asyncio.Queue[TabNotice | None] = asyncio.Queue()

    @property
    def is_connected(self) -> bool:
        return self._ws is not None

    async def start(self) -> None:
        """Discover the browser WebSocket and subscribe to target lifecycle.

        Raises:
            ConnectivityError: If the DevTools endpoint cannot be reached
        """
        if self.is_connected:
            return

        version_url = f"{self.cdp_url}/json/version"
        try:
            async with httpx.AsyncClient(timeout=self.connect_timeout) as client:
                response = await client.get(version_url)
                response.raise_for_status()
                info = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ConnectivityError(f"Browser DevTools not reachable at {self.cdp_url}") from e

        ws_url = info.get("webSocketDebuggerUrl")
        if not ws_url:
            raise ConnectivityError(f"No webSocketDebuggerUrl in {version_url}")
        self._user_agent = info.get("User-Agent", "")

        logger.info(f"Connecting to browser: {ws_url}")
        try:
            self._ws = await connect(
                ws_url, open_timeout=self.connect_timeout, max_size=MAX_MESSAGE_SIZE
            )
        except asyncio.TimeoutError:
            raise ConnectivityError("Browser WebSocket connect timeout") from None
        except (OSError, InvalidHandshake, InvalidURI) as e:
            raise ConnectivityError(f"Browser WebSocket connect failed: {e}") from e

        self._read_task = asyncio.create_task(self._read_loop())

        # Seed the cache first so discovery does not report existing tabs as new
        await self._refresh_targets()
        await self._call("Target.setDiscoverTargets", {"discover": True})
        logger.info(f"Browser connected, {len(self._tabs)} page(s)")

    async def close(self) -> None:
        """Disconnect from the browser and end both event streams."""
        ws = self._ws
        if self._read_task:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None

        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("Error closing browser WebSocket", exc_info=True)
        self._connection_lost("closed")

    # Target host primitives

    async def attach(self, target: TargetHandle, protocol_version: str = PROTOCOL_VERSION) -> None:
        if target in self._sessions:
            raise TargetHostError(f"Another debugger is already attached to the tab with id: {target}.")
        target_id = self._target_ids.get(target)  # type: ignore[arg-type]
        if target_id is None:
            raise TargetHostError(f"No tab with given id {target}.")

        result = await self._call("Target.attachToTarget", {"targetId": target_id, "flatten": True})
        session_id = result.get("sessionId")
        if not session_id:
            raise TargetHostError(f"Attach to tab {target} returned no session")
        self._sessions[target] = session_id
        self._session_tabs[session_id] = target
        logger.debug(f"Attached tab {target} (protocol {protocol_version}) as {session_id}")

    async def send_command(
        self,
        target: TargetHandle,
        method: str,
        params: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> Any:
        top_session = self._sessions.get(target)
        if top_session is None:
            raise TargetHostError(f"Debugger is not attached to the tab with id: {target}.")
        if session_id and self._session_tabs.get(session_id) == target:
            return await self._call(method, params, session_id)
        return await self._call(method, params, top_session)

    async def detach(self, target: TargetHandle) -> None:
        session_id = self._sessions.pop(target, None)
        if session_id is None:
            raise TargetHostError(f"Debugger is not attached to the tab with id: {target}.")
        self._forget_sessions(target)
        await self._call("Target.detachFromTarget", {"sessionId": session_id})

    async def query_tabs(self) -> list[TabInfo]:
        await self._refresh_targets()
        return list(self._tabs.values())

    async def get_tab(self, target: TargetHandle) -> TabInfo | None:
        return self._tabs.get(target)  # type: ignore[arg-type]

    async def user_agent(self) -> str:
        return self._user_agent

    async def debugger_events(self) -> AsyncIterator[DebuggerNotice]:
        while True:
            item = await self._debugger_queue.get()
            if item is None:
                return
            yield item

    async def tab_events(self) -> AsyncIterator[TabNotice]:
        while True:
            item = await self._tab_queue.get()
            if item is None:
                return
            yield item

    # Wire handling

    async def _call(
        self, method: str, params: dict[str, Any] | None = None, session_id: str | None = None
    ) -> Any:
        """Send one CDP command and wait for its result."""
        if self._ws is None:
            raise TargetHostError("Browser connection is not open")

        self._seq += 1
        seq = self._seq
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[seq] = future

        message: dict[str, Any] = {"id": seq, "method": method}
        if params:
            message["params"] = params
        if session_id:
            message["sessionId"] = session_id

        logger.debug(f">>> {method} ({session_id or 'browser'})")
        try:
            await self._ws.send(json.dumps(message, separators=(",", ":")))
        except ConnectionClosed as e:
            self._pending.pop(seq, None)
            raise TargetHostError("Browser connection closed") from e

        try:
            return await future
        finally:
            self._pending.pop(seq, None)

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for raw in self._ws:
                try:
                    data = json.loads(raw)
                except (ValueError, RecursionError):
                    logger.debug("Dropping malformed CDP frame")
                    continue
                if not isinstance(data, dict):
                    continue
                self._handle_message(data)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed:
            logger.warning("Browser connection closed")
        except Exception:
            logger.exception("Error reading CDP message")
        finally:
            self._connection_lost("browser disconnected")

    def _handle_message(self, data: dict[str, Any]) -> None:
        """Route a CDP response or event."""
        if "id" in data:
            seq = data["id"]
            if not isinstance(seq, int):
                return
            future = self._pending.pop(seq, None)
            if future is None or future.done():
                return
            if "error" in data:
                error = data["error"]
                message = error.get("message") if isinstance(error, dict) else str(error)
                future.set_exception(TargetHostError(message or "Unknown CDP error"))
            else:
                future.set_result(data.get("result", {}))
            return

        method = data.get("method")
        if not method:
            return
        params = data.get("params")
        if not isinstance(params, dict):
            params = {}
        session_id = data.get("sessionId")

        if session_id is None:
            self._handle_browser_event(method, params)
        elif isinstance(session_id, str):
            self._handle_session_event(session_id, method, params)

    def _handle_session_event(self, session_id: str, method: str, params: dict[str, Any]) -> None:
        tab = self._session_tabs.get(session_id)
        if tab is None:
            return

        if method == "Target.attachedToTarget":
            child = params.get("sessionId")
            if child:
                self._session_tabs[child] = tab
        elif method == "Target.detachedFromTarget":
            child = params.get("sessionId")
            if child and child != self._sessions.get(tab):
                self._session_tabs.pop(child, None)

        self._debugger_queue.put_nowait(DebuggerEvent(tab, method, params, session_id))

    def _handle_browser_event(self, method: str, params: dict[str, Any]) -> None:
        if method == "Target.targetCreated":
            info = params.get("targetInfo")
            if _is_page(info):
                tab, is_new = self._register_target(info)
                if is_new:
                    self._tab_queue.put_nowait(TabCreated(tab))

        elif method == "Target.targetInfoChanged":
            info = params.get("targetInfo")
            if _is_page(info):
                tab, is_new = self._register_target(info)
                if is_new:
                    self._tab_queue.put_nowait(TabCreated(tab))
                else:
                    self._tab_queue.put_nowait(TabUpdated(tab, tab.status))

        elif method == "Target.targetDestroyed":
            handle = self._tab_ids.pop(params.get("targetId", ""), None)
            if handle is not None:
                self._target_ids.pop(handle, None)
                self._tabs.pop(handle, None)
                self._tab_queue.put_nowait(TabRemoved(handle))

        elif method == "Target.detachedFromTarget":
            # Only reaches here for attachments we did not release ourselves
            session_id = params.get("sessionId")
            tab = self._session_tabs.get(session_id) if session_id else None
            if tab is not None and self._sessions.get(tab) == session_id:
                del self._sessions[tab]
                self._forget_sessions(tab)
                self._debugger_queue.put_nowait(DebuggerDetached(tab, "target closed"))

    def _register_target(self, info: dict[str, Any]) -> tuple[TabInfo, bool]:
        """Create or update the cached tab for a page target."""
        target_id = info["targetId"]
        url = info.get("url", "")
        handle = self._tab_ids.get(target_id)
        if handle is None:
            self._next_tab_id += 1
            handle = self._next_tab_id
            self._tab_ids[target_id] = handle
            self._target_ids[handle] = target_id
            tab = TabInfo(id=handle, url=url, title=info.get("title", ""), status=status_for_url(url))
            self._tabs[handle] = tab
            return tab, True

        tab = self._tabs[handle]
        tab.url = url
        tab.title = info.get("title", "")
        tab.status = status_for_url(url)
        return tab, False

    async def _refresh_targets(self) -> None:
        result = await self._call("Target.getTargets")
        seen: set[str] = set()
        for info in result.get("targetInfos", []):
            if _is_page(info):
                self._register_target(info)
                seen.add(info["targetId"])
        for target_id in [t for t in self._tab_ids if t not in seen]:
            handle = self._tab_ids.pop(target_id)
            self._target_ids.pop(handle, None)
            self._tabs.pop(handle, None)

    def _forget_sessions(self, tab: TargetHandle) -> None:
        for sid in [s for s, owner in self._session_tabs.items() if owner == tab]:
            del self._session_tabs[sid]

    def _connection_lost(self, reason: str) -> None:
        """Fail pending calls, report attachments as detached, end streams."""
        if self._ws is None:
            return
        self._ws = None

        for future in self._pending.values():
            if not future.done():
                future.set_exception(TargetHostError(f"Browser connection {reason}"))
        self._pending.clear()

        for tab in list(self._sessions):
            self._debugger_queue.put_nowait(DebuggerDetached(tab, "target closed"))
        self._sessions.clear()
        self._session_tabs.clear()

        self._debugger_queue.put_nowait(None)
        self._tab_queue.put_nowait(None)
