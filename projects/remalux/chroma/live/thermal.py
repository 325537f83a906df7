"""
Thermal/FPS load proxy.

Sampled about once per second by the pipeline and fed to
``PerformanceFeedbackController.update_thermal``. The proxy is the larger of
the frame-rate shortfall against the target and the normalized CPU package
temperature (when ``psutil`` exposes sensors on this platform).
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Optional, Tuple

import psutil

LOGGER = logging.getLogger(__name__)

_PREFERRED_SENSORS = ("coretemp", "k10temp", "cpu_thermal", "cpu-thermal", "acpitz", "soc_thermal")


def cpu_temperature() -> Optional[float]:
    """Hottest current CPU temperature in °C, or ``None`` when unavailable."""
    if not hasattr(psutil, "sensors_temperatures"):
        return None
    try:
        readings = psutil.sensors_temperatures()
    except (OSError, RuntimeError) as exc:
        LOGGER.debug("live.thermal.sensors_unavailable error=%s", exc)
        return None
    if not readings:
        return None
    names = [n for n in _PREFERRED_SENSORS if n in readings] or list(readings)
    values = [
        float(entry.current)
        for name in names
        for entry in readings.get(name, ())
        if entry.current is not None and not math.isnan(float(entry.current))
    ]
    return max(values) if values else None


class ThermalProbe:
    """
    Args:
        target_fps: Frame rate considered fully healthy.
        temp_range: ``(cool, hot)`` °C mapped onto 0..1.
        temperature: Temperature reader; injectable for tests.
    """

    def __init__(
        self,
        target_fps: float = 30.0,
        temp_range: Tuple[float, float] = (55.0, 90.0),
        temperature: Callable[[], Optional[float]] = cpu_temperature,
    ) -> None:
        self.target_fps = max(1.0, float(target_fps))
        self.temp_range = (float(temp_range[0]), float(temp_range[1]))
        self._temperature = temperature
        self.last_temperature: Optional[float] = None

    def fps_shortfall(self, fps: float) -> float:
        if fps <= 0.0 or math.isnan(fps):
            return 1.0
        return max(0.0, min(1.0, 1.0 - fps / self.target_fps))

    def temperature_load(self) -> float:
        temp = self._temperature()
        self.last_temperature = temp
        if temp is None:
            return 0.0
        cool, hot = self.temp_range
        if hot <= cool:
            return 0.0
        return max(0.0, min(1.0, (temp - cool) / (hot - cool)))

    def sample(self, fps: float) -> float:
        """Return the combined proxy in ``[0, 1]``."""
        return max(self.fps_shortfall(fps), self.temperature_load())
