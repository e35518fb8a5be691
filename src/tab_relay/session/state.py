"""Attachment registry - sessions, sub-sessions and auto-attach bookkeeping."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

from ..host.base import TargetHandle


class AttachState(str, Enum):
    """Per-tab attachment states."""
    UNATTACHED = "unattached"  # No session
    ATTACHING = "attaching"  # Attach in flight
    CONNECTED = "connected"  # Session registered


@dataclass
class Session:
    """Logical attachment record for one tab."""
    session_id: str
    target_id: str
    attach_order: int
    state: AttachState = AttachState.CONNECTED


class AttachmentRegistry:
    """Owns every session, sub-session and auto-attach record.

    One instance is the whole relay state: the supervisor clears it on
    connection loss, the attachment manager is the only writer otherwise.
    """

    def __init__(self):
        self._sessions: dict[TargetHandle, Session] = {}
        self._by_session: dict[str, TargetHandle] = {}
        self._attaching: dict[TargetHandle, asyncio.Future[Session]] = {}
        self._claims: dict[str, TargetHandle] = {}  # session id requested by an in-flight attach
        self._child_sessions: dict[str, TargetHandle] = {}  # child session -> owning tab
        self._auto_attached: set[TargetHandle] = set()
        self._next_order = 1

    def next_order(self) -> int:
        """Allocate the next attach order. Never reused."""
        order = self._next_order
        self._next_order += 1
        return order

    def state_of(self, target: TargetHandle) -> AttachState:
        if target in self._sessions:
            return AttachState.CONNECTED
        if target in self._attaching:
            return AttachState.ATTACHING
        return AttachState.UNATTACHED

    # Sessions

    def get(self, target: TargetHandle) -> Session | None:
        return self._sessions.get(target)

    def find_by_session(self, session_id: str) -> TargetHandle | None:
        return self._by_session.get(session_id)

    def session_owner(self, session_id: str) -> TargetHandle | None:
        """Tab that holds or is attaching with this session id."""
        owner = self._by_session.get(session_id)
        if owner is None:
            owner = self._claims.get(session_id)
        return owner

    def is_connected(self, target: TargetHandle) -> bool:
        session = self._sessions.get(target)
        return session is not None and session.state == AttachState.CONNECTED

    def sessions(self) -> dict[TargetHandle, Session]:
        return dict(self._sessions)

    def register(self, target: TargetHandle, session: Session) -> None:
        """Register a connected session, replacing the in-flight marker."""
        self._attaching.pop(target, None)
        self._drop_claims(target)
        self._sessions[target] = session
        self._by_session[session.session_id] = target

    def remove(self, target: TargetHandle) -> Session | None:
        """Remove every record tied to a tab. Returns the removed session, if any."""
        session = self._sessions.pop(target, None)
        if session is not None:
            self._by_session.pop(session.session_id, None)
        self._attaching.pop(target, None)
        self._drop_claims(target)
        for child in self.children_of(target):
            del self._child_sessions[child]
        self._auto_attached.discard(target)
        return session

    # In-flight attaches

    def attaching(self, target: TargetHandle) -> asyncio.Future[Session] | None:
        return self._attaching.get(target)

    def mark_attaching(
        self, target: TargetHandle, future: asyncio.Future[Session], session_id: str | None = None
    ) -> None:
        self._attaching[target] = future
        if session_id:
            self._claims[session_id] = target

    def clear_attaching(self, target: TargetHandle, future: asyncio.Future[Session]) -> None:
        """Clear the in-flight marker only if it still belongs to this attempt."""
        if self._attaching.get(target) is future:
            del self._attaching[target]
            self._drop_claims(target)

    # Sub-sessions

    def add_child(self, child_session_id: str, target: TargetHandle) -> None:
        self._child_sessions[child_session_id] = target

    def remove_child(self, child_session_id: str) -> None:
        self._child_sessions.pop(child_session_id, None)

    def child_owner(self, child_session_id: str) -> TargetHandle | None:
        return self._child_sessions.get(child_session_id)

    def children_of(self, target: TargetHandle) -> list[str]:
        return [sid for sid, owner in self._child_sessions.items() if owner == target]

    # Auto-attach

    def mark_auto_attached(self, target: TargetHandle) -> None:
        self._auto_attached.add(target)

    def is_auto_attached(self, target: TargetHandle) -> bool:
        return target in self._auto_attached

    @property
    def auto_attached(self) -> frozenset[TargetHandle]:
        return frozenset(self._auto_attached)

    # Lifecycle

    @property
    def is_empty(self) -> bool:
        return not (
            self._sessions or self._by_session or self._attaching or self._claims
            or self._child_sessions or self._auto_attached
        )

    def teardown(self) -> list[TargetHandle]:
        """Clear all state. Returns the tabs that had a connected session."""
        attached = list(self._sessions)
        self._sessions.clear()
        self._by_session.clear()
        self._attaching.clear()
        self._claims.clear()
        self._child_sessions.clear()
        self._auto_attached.clear()
        return attached

    def __len__(self) -> int:
        return len(self._sessions)

    def _drop_claims(self, target: TargetHandle) -> None:
        for sid in [s for s, owner in self._claims.items() if owner == target]:
            del self._claims[sid]
