"""Command channel envelope types and serialization."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass
class CommandEnvelope:
    """Command envelope, sent by the controller or issued by the relay."""
    id: Any
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": EnvelopeTypes.COMMAND,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CommandEnvelope:
        params = data.get("params")
        return cls(
            id=data.get("id"),
            method=data.get("method") or "",
            params=params if isinstance(params, dict) else {},
        )


@dataclass
class ResponseEnvelope:
    """Response envelope correlated with a command by id."""
    id: Any
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.error

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": EnvelopeTypes.RESPONSE, "id": self.id}
        # result and error are mutually exclusive on the wire
        if self.error is not None:
            d["error"] = self.error
        else:
            d["result"] = self.result
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResponseEnvelope:
        error = data.get("error")
        return cls(
            id=data.get("id"),
            result=data.get("result"),
            error=str(error) if error else None,
        )


@dataclass
class EventEnvelope:
    """Unsolicited event envelope tagged with the owning session."""
    session_id: str
    method: str
    params: Any = None
    target_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": EnvelopeTypes.EVENT, "sessionId": self.session_id}
        if self.target_id is not None:
            d["targetId"] = self.target_id
        d["method"] = self.method
        d["params"] = self.params
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventEnvelope:
        return cls(
            session_id=data.get("sessionId") or "",
            method=data.get("method") or "",
            params=data.get("params"),
            target_id=data.get("targetId"),
        )


Envelope = CommandEnvelope | ResponseEnvelope | EventEnvelope


def encode(envelope: Envelope) -> str:
    """Serialize an envelope to one compact JSON text frame."""
    return json.dumps(envelope.to_dict(), separators=(",", ":"))


def parse_envelope(raw: str | bytes) -> Envelope:
    """Parse one inbound frame.

    Raises:
        ValueError: If the frame is not JSON, not an object, or of unknown type
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    data = json.loads(raw)  # JSONDecodeError is a ValueError
    if not isinstance(data, dict):
        raise ValueError("Envelope must be a JSON object")

    msg_type = data.get("type")
    if msg_type == EnvelopeTypes.COMMAND:
        return CommandEnvelope.from_dict(data)
    elif msg_type == EnvelopeTypes.RESPONSE:
        return ResponseEnvelope.from_dict(data)
    elif msg_type == EnvelopeTypes.EVENT:
        return EventEnvelope.from_dict(data)
    else:
        raise ValueError(f"Unknown envelope type: {msg_type}")


class EnvelopeTypes:
    COMMAND = "command"
    RESPONSE = "response"
    EVENT = "event"


# Controller-facing command methods
class Methods:
    ATTACH = "attach"
    DETACH = "detach"
    SEND = "send"
    GET_TARGETS = "getTargets"
    GET_VERSION = "getVersion"


# DevTools events the relay inspects or synthesizes
class CdpEvents:
    ATTACHED_TO_TARGET = "Target.attachedToTarget"
    DETACHED_FROM_TARGET = "Target.detachedFromTarget"
    INSPECTOR_DETACHED = "Inspector.detached"
