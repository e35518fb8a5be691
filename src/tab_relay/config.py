"""Relay configuration."""

from __future__ import annotations

import argparse
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

DEFAULT_PORT = 18792
DEFAULT_HOST = "127.0.0.1"
DEFAULT_CDP_URL = "http://127.0.0.1:9222"

ENV_HOST = "TAB_RELAY_HOST"
ENV_PORT = "TAB_RELAY_PORT"
ENV_CDP_URL = "TAB_RELAY_CDP_URL"


def parse_port(raw: Any) -> int:
    """Parse a configured port, falling back to DEFAULT_PORT when invalid."""
    if raw is None:
        return DEFAULT_PORT
    try:
        port = int(str(raw).strip(), 10)
    except ValueError:
        return DEFAULT_PORT
    if port <= 0 or port > 65535:
        return DEFAULT_PORT
    return port


@dataclass
class RelayConfig:
    """Settings shared by the supervisor, channel and auto-attach policy."""
    host: str = DEFAULT_HOST
    port: Any = None  # raw value, validated on every read
    cdp_url: str = DEFAULT_CDP_URL
    probe_timeout: float = 2.0
    connect_timeout: float = 5.0
    call_timeout: float = 30.0
    sweep_interval: float = 1.0
    poll_interval: float = 0.5
    poll_backoff: float = 1.5
    poll_max_interval: float = 5.0
    poll_max_attempts: int = 60
    auto_attach: bool = True

    @property
    def relay_port(self) -> int:
        return parse_port(self.port)

    def http_base(self, port: int | None = None) -> str:
        return f"http://{self.host}:{port or self.relay_port}"

    def ws_url(self, port: int | None = None) -> str:
        return f"ws://{self.host}:{port or self.relay_port}/extension"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RelayConfig:
        """Build config from TAB_RELAY_* environment variables."""
        env = os.environ if environ is None else environ
        return cls(
            host=env.get(ENV_HOST) or DEFAULT_HOST,
            port=env.get(ENV_PORT),
            cdp_url=env.get(ENV_CDP_URL) or DEFAULT_CDP_URL,
        )

    @classmethod
    def from_args(
        cls, args: argparse.Namespace, environ: Mapping[str, str] | None = None
    ) -> RelayConfig:
        """Build config from CLI arguments; flags override the environment."""
        config = cls.from_env(environ)
        if getattr(args, "host", None):
            config.host = args.host
        if getattr(args, "port", None) is not None:
            config.port = args.port
        if getattr(args, "cdp_url", None):
            config.cdp_url = args.cdp_url
        if getattr(args, "no_auto_attach", False):
            config.auto_attach = False
        return config
