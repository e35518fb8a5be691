"""Target host interface - the browser side of the relay."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

# Opaque tab identifier supplied by the host
TargetHandle = Union[int, str]

PROTOCOL_VERSION = "1.3"


class TabStatus(str, Enum):
    """Tab load status."""
    LOADING = "loading"
    COMPLETE = "complete"


@dataclass
class TabInfo:
    """One addressable browser tab."""
    id: TargetHandle
    url: str = ""
    title: str = ""
    status: TabStatus = TabStatus.LOADING

    @property
    def is_complete(self) -> bool:
        return self.status == TabStatus.COMPLETE


@dataclass
class DebuggerEvent:
    """Protocol event emitted by an attached tab or one of its child sessions."""
    target: TargetHandle
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None


@dataclass
class DebuggerDetached:
    """Attachment closed by something other than an explicit detach."""
    target: TargetHandle
    reason: str = "target closed"


@dataclass
class TabCreated:
    tab: TabInfo


@dataclass
class TabUpdated:
    tab: TabInfo
    status: TabStatus | None = None


@dataclass
class TabRemoved:
    target: TargetHandle


DebuggerNotice = Union[DebuggerEvent, DebuggerDetached]
TabNotice = Union[TabCreated, TabUpdated, TabRemoved]


class TargetHost(ABC):
    """Browser primitives consumed by the relay core."""

    async def start(self) -> None:
        """Connect to the browser. Default is a no-op."""

    async def close(self) -> None:
        """Release browser resources. Default is a no-op."""

    @abstractmethod
    async def attach(self, target: TargetHandle, protocol_version: str = PROTOCOL_VERSION) -> None:
        """Open a debugging attachment to a tab."""

    @abstractmethod
    async def send_command(
        self,
        target: TargetHandle,
        method: str,
        params: dict[str, Any] | None = None,
        session_id: str | None = None,
    ) -> Any:
        """Send a protocol command to a tab (or one of its child sessions)."""

    @abstractmethod
    async def detach(self, target: TargetHandle) -> None:
        """Close the debugging attachment to a tab."""

    @abstractmethod
    async def query_tabs(self) -> list[TabInfo]:
        """Enumerate all tabs."""

    @abstractmethod
    async def get_tab(self, target: TargetHandle) -> TabInfo | None:
        """Get one tab, or None if it no longer exists."""

    @abstractmethod
    async def user_agent(self) -> str:
        """Browser user agent string."""

    @abstractmethod
    def debugger_events(self) -> AsyncIterator[DebuggerNotice]:
        """Stream of debugger events and unexpected detaches, in emission order."""

    @abstractmethod
    def tab_events(self) -> AsyncIterator[TabNotice]:
        """Stream of tab lifecycle notifications."""
