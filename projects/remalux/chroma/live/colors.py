"""
Class index -> display color mapping for the segmentation overlay.

The fixed palette covers the classes the bundled model ships with. Indices
beyond the palette get a color from a golden-angle hue walk, so every class a
model can emit resolves to a stable color without bounds errors.
"""

from __future__ import annotations

import colorsys
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from ._types import NDArrayU8, RGB

GOLDEN_ANGLE_DEG = 137.508
FALLBACK_SATURATION = 0.65
FALLBACK_VALUE = 0.95

DEFAULT_COLORS: Tuple[RGB, ...] = (
    (0, 0, 0), (230, 51, 51), (51, 230, 51),
    (51, 51, 230), (230, 230, 51), (230, 51, 230),
    (51, 230, 230), (179, 128, 51), (230, 153, 102),
    (102, 230, 153), (153, 102, 230), (230, 204, 153),
    (153, 230, 204), (204, 153, 230), (255, 128, 0),
    (0, 255, 128), (128, 0, 255), (255, 0, 128),
    (128, 255, 0), (0, 128, 255), (204, 204, 204),
    (128, 128, 128), (230, 26, 128), (26, 230, 128),
    (128, 26, 230), (230, 128, 26), (26, 128, 230),
    (128, 230, 26), (77, 179, 102), (179, 77, 102),
    (102, 77, 179), (179, 102, 77), (77, 102, 179),
    (102, 179, 77),
)


def fallback_color(index: int) -> RGB:
    """Deterministic color for ``index`` by rotating the hue by the golden angle."""
    hue = (index * GOLDEN_ANGLE_DEG) % 360.0
    r, g, b = colorsys.hsv_to_rgb(hue / 360.0, FALLBACK_SATURATION, FALLBACK_VALUE)
    return (int(round(r * 255)), int(round(g * 255)), int(round(b * 255)))


class ClassColorTable:
    """
    Immutable palette plus optional human-readable class names.

    Args:
        colors: RGB triples (0..255), one per known class index.
        names: Optional display names; missing entries read ``"Class N"``.
    """

    def __init__(
        self,
        colors: Sequence[RGB] = DEFAULT_COLORS,
        names: Optional[Sequence[str]] = None,
    ) -> None:
        self._colors: Tuple[RGB, ...] = tuple(
            (int(c[0]) & 0xFF, int(c[1]) & 0xFF, int(c[2]) & 0xFF) for c in colors
        )
        self._names: Tuple[str, ...] = tuple(str(n) for n in (names or ()))
        self._lut_cache: Dict[int, NDArrayU8] = {}

    def __len__(self) -> int:
        return len(self._colors)

    @property
    def colors(self) -> Tuple[RGB, ...]:
        return self._colors

    def color_for(self, index: int) -> RGB:
        index = int(index)
        if index < 0:
            raise ValueError(f"class index must be non-negative, got {index}")
        if index < len(self._colors):
            return self._colors[index]
        return fallback_color(index)

    def name_for(self, index: int) -> str:
        index = int(index)
        if 0 <= index < len(self._names) and self._names[index]:
            return self._names[index]
        return f"Class {index}"

    def lut(self, count: int) -> NDArrayU8:
        """Return a read-only ``(count, 3)`` uint8 table for indices ``0..count-1``."""
        count = max(0, int(count))
        cached = self._lut_cache.get(count)
        if cached is not None:
            return cached
        table = np.zeros((count, 3), dtype=np.uint8)
        for idx in range(count):
            table[idx] = self.color_for(idx)
        table.setflags(write=False)
        self._lut_cache[count] = table
        return table
