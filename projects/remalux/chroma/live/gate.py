"""
Admission control for segmentation runs.

The gate is consulted once per camera frame. A denial is the normal outcome
for most frames and is never treated as an error.
"""

from __future__ import annotations

from typing import Dict, Optional

from .config import QualityTier

DENY_PAUSED = "paused"
DENY_IN_FLIGHT = "in-flight"
DENY_FRAME_SKIP = "frame-skip"
DENY_INTERVAL = "interval"


class FrameGate:
    """
    Decide whether a new inference may start for the current frame.

    A frame is admitted only when no inference is in flight, more than
    ``tier.frame_skip`` frames arrived since the last admission, and at least
    ``tier.run_interval`` seconds elapsed since the last admission.
    """

    def __init__(self) -> None:
        self.frame_counter = 0
        self.last_submit_time: Optional[float] = None
        self.last_denial: Optional[str] = None
        self.paused = False
        self._force = False
        self.stats: Dict[str, int] = {
            "admitted": 0,
            DENY_PAUSED: 0,
            DENY_IN_FLIGHT: 0,
            DENY_FRAME_SKIP: 0,
            DENY_INTERVAL: 0,
        }

    def should_submit(self, now: float, tier: QualityTier, *, in_flight: bool) -> bool:
        self.frame_counter += 1
        if self.paused:
            return self._deny(DENY_PAUSED)
        if in_flight:
            return self._deny(DENY_IN_FLIGHT)
        if not self._force:
            if self.frame_counter <= tier.frame_skip:
                return self._deny(DENY_FRAME_SKIP)
            if self.last_submit_time is not None and now - self.last_submit_time < tier.run_interval:
                return self._deny(DENY_INTERVAL)
        self._force = False
        self.frame_counter = 0
        self.last_submit_time = now
        self.last_denial = None
        self.stats["admitted"] += 1
        return True

    def _deny(self, reason: str) -> bool:
        self.last_denial = reason
        self.stats[reason] += 1
        return False

    def force_next(self) -> None:
        """Admit the next frame regardless of interval and skip count."""
        self._force = True

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def toggle_pause(self) -> bool:
        self.paused = not self.paused
        return self.paused

    def reset(self) -> None:
        self.frame_counter = 0
        self.last_submit_time = None
        self.last_denial = None
        self._force = False
