"""Command channel to the upstream controller."""

from .client import CommandChannel
from .protocol import CommandEnvelope, EventEnvelope, ResponseEnvelope

__all__ = ["CommandChannel", "CommandEnvelope", "EventEnvelope", "ResponseEnvelope"]
