"""Browser target host collaborators."""

from .base import (
    PROTOCOL_VERSION,
    DebuggerDetached,
    DebuggerEvent,
    TabCreated,
    TabInfo,
    TabRemoved,
    TabStatus,
    TabUpdated,
    TargetHandle,
    TargetHost,
)
from .cdp import CdpTargetHost

__all__ = [
    "PROTOCOL_VERSION",
    "CdpTargetHost",
    "DebuggerDetached",
    "DebuggerEvent",
    "TabCreated",
    "TabInfo",
    "TabRemoved",
    "TabStatus",
    "TabUpdated",
    "TargetHandle",
    "TargetHost",
]
