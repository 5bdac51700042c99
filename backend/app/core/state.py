"""Runtime operating mode (mock | live), switchable without restart."""
from __future__ import annotations

import logging

logger = logging.getLogger("fatigue.state")

MODES = ("mock", "live")


def normalize_mode(mode: str | None) -> str | None:
    value = (mode or "").strip().lower()
    if value == "real":
        return "live"
    return value if value in MODES else None


class RuntimeState:
    """Mode plus a generation counter bumped on every switch.

    A poll pass captures the generation before its network I/O and
    discards its results if the generation moved in the meantime.
    """

    def __init__(self, mode: str = "mock") -> None:
        self.mode = normalize_mode(mode) or "mock"
        self.generation = 0

    def switch(self, mode: str) -> str:
        normalized = normalize_mode(mode)
        if normalized is None:
            raise ValueError(f"Invalid mode: {mode!r}")
        self.mode = normalized
        self.generation += 1
        logger.info("Sensor API mode switched to: %s", normalized)
        return normalized
