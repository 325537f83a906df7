"""
Tap-to-select state for the overlay.

The tap handler is the only writer; the decoder and HUD only read
``selected_class``.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable, Optional, Tuple

import numpy as np

from ._types import ScoreTensor
from .colors import ClassColorTable
from .decoder import dominant_classes

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectedClass:
    index: int
    name: str


def tensor_coords(point: Tuple[float, float], width: int, height: int, *, flip_y: bool = False) -> Tuple[int, int]:
    """Normalized ``(x, y)`` -> clamped integer tensor ``(col, row)``."""
    nx, ny = float(point[0]), float(point[1])
    if flip_y:
        ny = 1.0 - ny
    col = min(max(int(nx * width), 0), width - 1)
    row = min(max(int(ny * height), 0), height - 1)
    return col, row


class SelectionState:
    """
    Args:
        double_tap_window_ms: A tap this soon after the previous one clears
            the selection instead of re-selecting.
        flip_y: Treat tap points as bottom-left origin.
        clock: Monotonic time source in seconds.
    """

    def __init__(
        self,
        *,
        double_tap_window_ms: float = 300.0,
        flip_y: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.selected_class: Optional[int] = None
        self.double_tap_window_ms = float(double_tap_window_ms)
        self.flip_y = flip_y
        self._clock = clock
        self._last_tap: Optional[float] = None

    def is_active(self) -> bool:
        return self.selected_class is not None

    def select(self, index: int) -> None:
        if index < 0:
            raise ValueError(f"class index must be non-negative, got {index}")
        self.selected_class = int(index)

    def clear(self) -> None:
        self.selected_class = None
        self._last_tap = None

    def resolve_tap(
        self,
        point: Tuple[float, float],
        tensor: Optional[ScoreTensor],
        now: Optional[float] = None,
    ) -> Optional[int]:
        """Select the dominant class under ``point``; returns the new selection."""
        if tensor is None:
            return self.selected_class
        now = self._clock() if now is None else float(now)
        last = self._last_tap
        if last is not None and self.is_active() and (now - last) * 1000.0 <= self.double_tap_window_ms:
            LOGGER.info("live.selection.clear reason=double-tap")
            self.clear()
            return None
        shape = np.shape(tensor)
        if len(shape) != 4 or min(shape[1:]) <= 0:
            return self.selected_class
        col, row = tensor_coords(point, int(shape[2]), int(shape[1]), flip_y=self.flip_y)
        scores = np.asarray(tensor)[:, row : row + 1, col : col + 1, :]
        index = int(dominant_classes(scores)[0, 0])
        self.selected_class = index
        self._last_tap = now
        LOGGER.info("live.selection.select class=%s col=%s row=%s", index, col, row)
        return index

    def describe(self, color_table: ClassColorTable) -> Optional[SelectedClass]:
        if self.selected_class is None:
            return None
        return SelectedClass(self.selected_class, color_table.name_for(self.selected_class))
