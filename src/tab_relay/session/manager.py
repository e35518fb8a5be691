"""Attachment manager - orchestrates tab attachments and event fan-out."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from ..channel.protocol import CdpEvents, EventEnvelope
from ..errors import AttachAbortedError, RelayError, TargetHostError, ValidationError
from ..host.base import (
    PROTOCOL_VERSION,
    DebuggerDetached,
    DebuggerEvent,
    TargetHandle,
    TargetHost,
)
from ..indicator import BadgeIndicator, IndicatorState
from .state import AttachmentRegistry, Session

logger = logging.getLogger(__name__)

# Minimum capability set enabled on every attachment
ATTACH_COMMANDS: list[tuple[str, dict[str, Any] | None]] = [
    ("Runtime.enable", None),
    ("Page.enable", None),
    (
        "Target.setAutoAttach",
        {"autoAttach": True, "waitForDebuggerOnStart": False, "flatten": True},
    ),
]

EventSink = Callable[[EventEnvelope], None]


def make_session_id(target: TargetHandle, order: int) -> str:
    return f"tab_{target}_{order}"


class AttachmentManager:
    """Owns the lifecycle of every tab attachment."""

    def __init__(
        self,
        host: TargetHost,
        registry: AttachmentRegistry,
        indicator: BadgeIndicator,
        emit: EventSink,
    ):
        self._host = host
        self._registry = registry
        self._indicator = indicator
        self._emit = emit

    @property
    def registry(self) -> AttachmentRegistry:
        return self._registry

    async def attach(self, target: TargetHandle, session_id: str | None = None) -> dict[str, Any]:
        """Attach to a tab, or return its existing session.

        Args:
            target: Tab handle
            session_id: Controller-chosen session id; generated when omitted

        Returns:
            {"sessionId", "attached": True} or {"sessionId", "alreadyAttached": True}

        Raises:
            ValidationError: If session_id is already used by another tab
            TargetHostError: If the host rejects the attach or a setup command
            AttachAbortedError: If the tab was detached, torn down or cancelled mid-attach
        """
        existing = self._registry.get(target)
        if existing is not None:
            return {"sessionId": existing.session_id, "alreadyAttached": True}

        in_flight = self._registry.attaching(target)
        if in_flight is not None:
            session = await asyncio.shield(in_flight)
            return {"sessionId": session.session_id, "alreadyAttached": True}

        if session_id:
            self._check_session_id(target, session_id)

        order = self._registry.next_order()
        future: asyncio.Future[Session] = asyncio.get_running_loop().create_future()
        self._registry.mark_attaching(target, future, session_id)

        host_attached = False
        try:
            await self._host.attach(target, PROTOCOL_VERSION)
            host_attached = True
            for method, params in ATTACH_COMMANDS:
                await self._host.send_command(target, method, params)
        except asyncio.CancelledError:
            self._registry.clear_attaching(target, future)
            _fail(future, AttachAbortedError(f"Attach to tab {target} was cancelled"))
            if host_attached:
                await self._release(target)
            raise
        except Exception as e:
            self._registry.clear_attaching(target, future)
            error = e if isinstance(e, RelayError) else TargetHostError(str(e))
            _fail(future, error)
            if host_attached:
                await self._release(target)
            if error is e:
                raise
            raise error from e

        # Re-validate after suspension: a detach, teardown or rival attach may have intervened
        try:
            if self._registry.attaching(target) is not future:
                raise AttachAbortedError(f"Attach to tab {target} was aborted")
            if session_id:
                self._check_session_id(target, session_id)
        except RelayError as e:
            self._registry.clear_attaching(target, future)
            _fail(future, e)
            await self._release(target)
            raise

        session = Session(
            session_id=session_id or make_session_id(target, order),
            target_id=str(target),
            attach_order=order,
        )
        self._registry.register(target, session)
        self._registry.mark_auto_attached(target)
        self._indicator.set(target, IndicatorState.ON)
        future.set_result(session)
        logger.info(f"Attached tab {target} as {session.session_id}")
        return {"sessionId": session.session_id, "attached": True}

    async def detach(self, target: TargetHandle) -> dict[str, Any]:
        """Detach from a tab. Always succeeds once bookkeeping is cleared."""
        session = self._registry.remove(target)
        self._indicator.set(target, IndicatorState.OFF)
        await self._release(target)
        if session is not None:
            logger.info(f"Detached tab {target} ({session.session_id})")
        return {"detached": True}

    async def send(
        self, target: TargetHandle, message: dict[str, Any], session_id: str | None = None
    ) -> Any:
        """Forward a protocol command to a tab and return its result verbatim.

        A session_id naming one of the tab's child sessions routes the command
        to that child; anything else goes to the tab itself.
        """
        child = None
        if session_id and self._registry.child_owner(session_id) == target:
            child = session_id
        return await self._host.send_command(
            target, message.get("method"), message.get("params"), session_id=child
        )

    def handle_event(self, target: TargetHandle, method: str, params: Any) -> bool:
        """Fan a debugger event out to the tab's session. Returns False if dropped."""
        session = self._registry.get(target)
        if session is None:
            return False

        if method == CdpEvents.ATTACHED_TO_TARGET:
            child = (params or {}).get("sessionId")
            child_target = ((params or {}).get("targetInfo") or {}).get("targetId")
            if child and child_target:
                self._registry.add_child(child, target)
        elif method == CdpEvents.DETACHED_FROM_TARGET:
            child = (params or {}).get("sessionId")
            if child:
                self._registry.remove_child(child)

        self._emit(
            EventEnvelope(
                session_id=session.session_id,
                target_id=session.target_id,
                method=method,
                params=params,
            )
        )
        return True

    def handle_detached(self, target: TargetHandle, reason: str = "target closed") -> None:
        """Handle an attachment closed by something other than detach()."""
        session = self._registry.remove(target)
        self._indicator.set(target, IndicatorState.OFF)
        if session is None:
            return
        logger.info(f"Tab {target} detached unexpectedly: {reason}")
        self._emit(
            EventEnvelope(
                session_id=session.session_id,
                method=CdpEvents.INSPECTOR_DETACHED,
                params={"reason": reason},
            )
        )

    async def run(self) -> None:
        """Consume host debugger notifications until the stream ends."""
        async for notice in self._host.debugger_events():
            try:
                if isinstance(notice, DebuggerEvent):
                    self.handle_event(notice.target, notice.method, notice.params)
                elif isinstance(notice, DebuggerDetached):
                    self.handle_detached(notice.target, notice.reason)
            except Exception:
                logger.exception("Error handling debugger notification")

    def _check_session_id(self, target: TargetHandle, session_id: str) -> None:
        owner = self._registry.session_owner(session_id)
        if owner is not None and owner != target:
            raise ValidationError(f"sessionId {session_id} is already used by tab {owner}")

    async def _release(self, target: TargetHandle) -> None:
        """Best-effort host detach; the tab may already be gone."""
        try:
            await self._host.detach(target)
        except Exception as e:
            logger.debug(f"Ignoring detach error for tab {target}: {e}")


def _fail(future: asyncio.Future[Session], error: Exception) -> None:
    """Fail an in-flight attach without warning when nobody awaits it."""
    if not future.done():
        future.set_exception(error)
        future.exception()
