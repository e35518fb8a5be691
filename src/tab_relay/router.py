"""Command router - the five controller-facing operations."""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

from .channel.protocol import CommandEnvelope, Methods, ResponseEnvelope
from .errors import UnknownMethodError, ValidationError
from .host.base import PROTOCOL_VERSION, TargetHost
from .session import AttachmentManager, AttachmentRegistry

logger = logging.getLogger(__name__)

PRODUCT = "Chrome/ExtensionRelay"
VERSION_TAG = "1.0"

_HTTP_URL = re.compile(r"^https?://")

Reply = Callable[[ResponseEnvelope], None]


class CommandRouter:
    """Dispatches controller commands and converts outcomes to responses."""

    def __init__(self, manager: AttachmentManager, registry: AttachmentRegistry, host: TargetHost):
        self._manager = manager
        self._registry = registry
        self._host = host
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[Any]]] = {
            Methods.ATTACH: self.attach,
            Methods.DETACH: self.detach,
            Methods.SEND: self.send,
            Methods.GET_TARGETS: self.get_targets,
            Methods.GET_VERSION: self.get_version,
        }

    async def dispatch(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Run one command.

        Raises:
            UnknownMethodError: If the method is not one of the five operations
        """
        handler = self._handlers.get(method)
        if handler is None:
            raise UnknownMethodError(f"Unknown method: {method}")
        return await handler(params or {})

    async def handle_command(self, command: CommandEnvelope, reply: Reply) -> None:
        """Run a command and send exactly one response with the same id."""
        try:
            result = await self.dispatch(command.method, command.params)
        except Exception as e:
            logger.debug(f"Command {command.method} (id={command.id}) failed: {e}")
            reply(ResponseEnvelope(id=command.id, error=str(e) or type(e).__name__))
            return
        reply(ResponseEnvelope(id=command.id, result=result))

    async def attach(self, params: dict[str, Any]) -> dict[str, Any]:
        tab_id = params.get("tabId")
        if not tab_id:
            raise ValidationError("attach requires tabId")
        return await self._manager.attach(tab_id, params.get("sessionId") or None)

    async def detach(self, params: dict[str, Any]) -> dict[str, Any]:
        tab_id = params.get("tabId")
        if not tab_id:
            raise ValidationError("detach requires tabId")
        return await self._manager.detach(tab_id)

    async def send(self, params: dict[str, Any]) -> Any:
        tab_id = params.get("tabId")
        message = params.get("message")
        if not tab_id or not message:
            raise ValidationError("send requires tabId and message")
        if not isinstance(message, dict) or not message.get("method"):
            raise ValidationError("send message requires a method")
        return await self._manager.send(tab_id, message, params.get("sessionId"))

    async def get_targets(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        tabs = await self._host.query_tabs()
        targets = [
            {
                "targetId": str(tab.id),
                "type": "page",
                "title": tab.title or "",
                "url": tab.url or "",
                "attached": self._registry.is_connected(tab.id),
            }
            for tab in tabs
            if tab.id is not None and _HTTP_URL.match(tab.url or "")
        ]
        return {"targetInfos": targets}

    async def get_version(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "product": PRODUCT,
            "userAgent": await self._host.user_agent(),
            "jsVersion": VERSION_TAG,
        }
