"""Tab attachment management."""

from .manager import AttachmentManager
from .state import AttachmentRegistry, AttachState, Session

__all__ = ["AttachState", "AttachmentManager", "AttachmentRegistry", "Session"]
