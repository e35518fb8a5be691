"""Per-tab attachment indicator (badge)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .host.base import TargetHandle

logger = logging.getLogger(__name__)


class IndicatorState(str, Enum):
    """Visual attachment states."""
    ON = "on"
    OFF = "off"
    CONNECTING = "connecting"
    ERROR = "error"


@dataclass(frozen=True)
class Badge:
    text: str
    color: str
    text_color: str = "#FFFFFF"


BADGES: dict[IndicatorState, Badge] = {
    IndicatorState.ON: Badge("ON", "#FF5A36"),
    IndicatorState.OFF: Badge("", "#000000"),
    IndicatorState.CONNECTING: Badge("…", "#F59E0B"),
    IndicatorState.ERROR: Badge("!", "#B91C1C"),
}


class BadgeIndicator:
    """Tracks the indicator state of every tab."""

    def __init__(self):
        self._states: dict[TargetHandle, IndicatorState] = {}

    def get(self, target: TargetHandle) -> IndicatorState:
        return self._states.get(target, IndicatorState.OFF)

    def set(self, target: TargetHandle, state: IndicatorState) -> None:
        """Set the indicator for a tab; off clears it."""
        badge = BADGES[state]
        if state == IndicatorState.OFF:
            self._states.pop(target, None)
        else:
            self._states[target] = state
        logger.debug(f"Badge tab={target}: {state.value} text={badge.text!r} color={badge.color}")
