"""Relay between a single upstream controller and per-tab DevTools attachments."""

__version__ = "0.1.0"
