"""
Latency-driven quality controller.

Consumes measured inference latencies (and a periodic thermal/FPS proxy) and
publishes the active :class:`~chroma.live.config.QualityTier`. Tier changes
need sustained evidence (consecutive slow/fast evaluations), move one step at
a time, and are rate limited by a minimum dwell time.

The published tier is an immutable value; readers grab ``controller.tier``
once per frame and keep using that snapshot even if a timer tick moves the
controller in the meantime.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, replace
import logging
import math
import threading
import time
from typing import Callable, Deque, List, Optional, Sequence, Tuple

from .config import PRESETS, OverlayConfig, QualityTier, clamp_latency_ms, tiers_for

LOGGER = logging.getLogger(__name__)

# A failed run is recorded as a sample this many times over the latency ceiling.
FAILURE_LATENCY_FACTOR = 3.0

TierListener = Callable[[QualityTier, QualityTier], None]


@dataclass(frozen=True)
class LatencySample:
    measured_ms: float
    timestamp: float


@dataclass
class ControllerState:
    current_tier_index: int
    consecutive_slow_count: int = 0
    consecutive_fast_count: int = 0
    last_transition_time: Optional[float] = None


def _log(event: str, **info: object) -> None:
    detail = " ".join(f"{key}={info[key]}" for key in sorted(info) if info[key] is not None)
    if detail:
        LOGGER.info("%s %s", event, detail)
    else:
        LOGGER.info("%s", event)


class PerformanceFeedbackController:
    """
    Hysteresis controller over an ordered tier table.

    Args:
        config: Validated startup configuration.
        tiers: Optional explicit tier table (defaults to ``tiers_for(config)``).
        clock: Monotonic time source in seconds; injectable for tests.
    """

    def __init__(
        self,
        config: OverlayConfig,
        *,
        tiers: Optional[Sequence[QualityTier]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tiers: Tuple[QualityTier, ...] = tuple(tiers) if tiers is not None else tiers_for(config)
        if not self._tiers:
            raise ValueError("PerformanceFeedbackController requires at least one tier")
        self._config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._window: Deque[LatencySample] = deque(maxlen=max(1, int(config.window_size)))
        index = max(0, min(len(self._tiers) - 1, int(config.initial_tier)))
        self._state = ControllerState(current_tier_index=index)
        self._tier = self._tiers[index]
        self._auto = bool(config.auto_optimization)
        self._thermal = 0.0
        self._max_override: Optional[float] = None
        self._listeners: List[TierListener] = []

    # -------------------------------
    #  Published state
    # -------------------------------
    @property
    def tier(self) -> QualityTier:
        return self._tier

    @property
    def tiers(self) -> Tuple[QualityTier, ...]:
        return self._tiers

    @property
    def tier_index(self) -> int:
        return self._state.current_tier_index

    @property
    def state(self) -> ControllerState:
        with self._lock:
            return replace(self._state)

    @property
    def auto_enabled(self) -> bool:
        return self._auto

    @property
    def thermal_proxy(self) -> float:
        return self._thermal

    @property
    def average_latency_ms(self) -> Optional[float]:
        with self._lock:
            return self._average()

    def samples(self) -> List[LatencySample]:
        with self._lock:
            return list(self._window)

    def add_listener(self, callback: TierListener) -> None:
        self._listeners.append(callback)

    def thermal_scale(self) -> float:
        """Monotonic threshold multiplier in ``[1 - tightening, 1]``."""
        return 1.0 - self._config.thermal_tightening * self._thermal * self._thermal

    def thresholds(self) -> Tuple[float, float]:
        """Return the effective ``(target_ms, max_ms)`` for the active tier."""
        tier = self._tier
        max_ms = tier.max_latency_ms
        target_ms = tier.target_latency_ms
        if self._max_override is not None:
            ratio = target_ms / max_ms if max_ms > 0 else 1.0
            max_ms = self._max_override
            target_ms = max_ms * ratio
        scale = self.thermal_scale()
        return target_ms * scale, max_ms * scale

    # -------------------------------
    #  Inputs
    # -------------------------------
    def record_latency(self, latency_ms: float, now: Optional[float] = None) -> QualityTier:
        """Feed one completed inference; returns the (possibly new) tier."""
        with self._lock:
            now = self._clock() if now is None else float(now)
            self._window.append(LatencySample(float(latency_ms), now))
            average = self._average()
            target_ms, max_ms = self.thresholds()
            state = self._state
            if average is not None and average > max_ms:
                state.consecutive_slow_count += 1
                state.consecutive_fast_count = 0
            elif average is not None and average <= target_ms:
                state.consecutive_fast_count += 1
                state.consecutive_slow_count = 0
            else:
                state.consecutive_slow_count = 0
                state.consecutive_fast_count = 0
            change = self._evaluate(now)
        return self._emit(change)

    def record_failure(self, elapsed_ms: Optional[float] = None, now: Optional[float] = None) -> QualityTier:
        """Count a failed inference as several consecutive slow samples."""
        with self._lock:
            now = self._clock() if now is None else float(now)
            _, max_ms = self.thresholds()
            severe = max(float(elapsed_ms or 0.0), max_ms * FAILURE_LATENCY_FACTOR)
            self._window.append(LatencySample(severe, now))
            state = self._state
            state.consecutive_slow_count += max(1, int(self._config.failure_penalty))
            state.consecutive_fast_count = 0
            change = self._evaluate(now)
        _log("live.controller.failure", severe_ms=f"{severe:.1f}", slow=self._state.consecutive_slow_count)
        return self._emit(change)

    def update_thermal(self, proxy: float) -> None:
        """Set the thermal/FPS load proxy (0 = cool, 1 = saturated)."""
        try:
            value = float(proxy)
        except (TypeError, ValueError):
            return
        if math.isnan(value):
            return
        self._thermal = max(0.0, min(1.0, value))

    # -------------------------------
    #  Manual control
    # -------------------------------
    def set_auto(self, enabled: bool) -> None:
        self._auto = bool(enabled)
        _log("live.controller.auto", enabled=self._auto)

    def set_max_latency(self, latency_ms: float) -> float:
        """Override the latency ceiling while running; the value is clamped."""
        value = clamp_latency_ms(latency_ms)
        with self._lock:
            self._max_override = value
            self._state.consecutive_slow_count = 0
            self._state.consecutive_fast_count = 0
        return value

    def set_tier(self, index: int, now: Optional[float] = None) -> QualityTier:
        """Jump to ``index`` (clamped); counts as a transition for dwell purposes."""
        with self._lock:
            now = self._clock() if now is None else float(now)
            target = max(0, min(len(self._tiers) - 1, int(index)))
            change = None
            if target != self._state.current_tier_index:
                change = self._transition(target, now, reason="manual")
        return self._emit(change)

    def apply_preset(self, name: str, now: Optional[float] = None) -> QualityTier:
        preset = PRESETS.get(name.strip().lower())
        if preset is None:
            raise KeyError(f"unknown preset {name!r} (known: {', '.join(PRESETS)})")
        self.set_max_latency(preset.max_latency_ms)
        self.set_auto(preset.auto_optimization)
        if preset.tier_index is not None:
            index = preset.tier_index if preset.tier_index >= 0 else len(self._tiers) + preset.tier_index
            return self.set_tier(index, now=now)
        return self._tier

    # -------------------------------
    #  Internals (lock held)
    # -------------------------------
    def _average(self) -> Optional[float]:
        if not self._window:
            return None
        return sum(s.measured_ms for s in self._window) / len(self._window)

    def _dwell_elapsed(self, now: float) -> bool:
        last = self._state.last_transition_time
        if last is None:
            return True
        return (now - last) * 1000.0 >= self._config.min_dwell_time_ms

    def _evaluate(self, now: float) -> Optional[Tuple[QualityTier, QualityTier]]:
        state = self._state
        if not self._auto or not self._dwell_elapsed(now):
            return None
        slow_needed = max(1, int(self._config.slow_frame_threshold))
        fast_needed = max(1, int(self._config.fast_frame_threshold))
        if state.consecutive_slow_count >= slow_needed:
            if state.current_tier_index > 0:
                return self._transition(state.current_tier_index - 1, now, reason="slow")
            state.consecutive_slow_count = slow_needed
        elif state.consecutive_fast_count >= fast_needed:
            if state.current_tier_index < len(self._tiers) - 1:
                return self._transition(state.current_tier_index + 1, now, reason="fast")
            state.consecutive_fast_count = fast_needed
        return None

    def _transition(self, index: int, now: float, *, reason: str) -> Tuple[QualityTier, QualityTier]:
        old = self._tier
        new = self._tiers[index]
        self._state = ControllerState(
            current_tier_index=index,
            consecutive_slow_count=0,
            consecutive_fast_count=0,
            last_transition_time=now,
        )
        self._window.clear()
        self._tier = new
        _log("live.controller.tier", old=old.tier_id, new=new.tier_id, reason=reason)
        return old, new

    def _emit(self, change: Optional[Tuple[QualityTier, QualityTier]]) -> QualityTier:
        if change is not None:
            old, new = change
            for callback in list(self._listeners):
                try:
                    callback(old, new)
                except Exception:
                    LOGGER.exception("live.controller.listener_failed")
        return self._tier
