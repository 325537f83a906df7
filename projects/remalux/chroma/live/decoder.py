"""
Class-score tensor -> styled RGBA overlay texture.

Each destination pixel maps linearly into tensor space, looks at the dominant
class of its four floor/ceil neighbours and keeps the majority (ties go to
the first neighbour in top-left, bottom-left, top-right, bottom-right order).
The voted class is coloured through :class:`ClassColorTable` and styled by
the current selection.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import numpy as np

from ._types import RGB, NDArrayI64, NDArrayU8, ScoreTensor, Size
from .colors import ClassColorTable
from .config import DECODE_MODES

LOGGER = logging.getLogger(__name__)

ALPHA_NEUTRAL = 128
ALPHA_HIGHLIGHT = 230
ALPHA_DIMMED = 60
HIGHLIGHT_GAIN = 1.25
HIGHLIGHT_LIFT = 40.0
DIM_GAIN = 0.4


class DimensionMismatch(ValueError):
    """Tensor layout does not match what the decoder can map onto a texture."""


def dominant_classes(tensor: ScoreTensor) -> NDArrayI64:
    """
    Per-location argmax over the class axis of a ``(1, H, W, C)`` tensor.

    Ties resolve to the lowest class index and NaN scores never win.
    """
    scores = np.asarray(tensor)
    if scores.ndim == 4:
        scores = scores[0]
    if scores.ndim != 3:
        raise DimensionMismatch(f"expected (1, H, W, C) scores, got shape {tuple(np.shape(tensor))}")
    if np.issubdtype(scores.dtype, np.floating) and np.isnan(scores).any():
        scores = np.where(np.isnan(scores), -np.inf, scores)
    return np.argmax(scores, axis=-1)


def vote(tl: NDArrayI64, bl: NDArrayI64, tr: NDArrayI64, br: NDArrayI64) -> NDArrayI64:
    """Majority of four class maps; ties go to the earliest argument."""
    c_tl = 1 + (tl == bl).astype(np.int8) + (tl == tr) + (tl == br)
    c_bl = 1 + (bl == tl).astype(np.int8) + (bl == tr) + (bl == br)
    c_tr = 1 + (tr == tl).astype(np.int8) + (tr == bl) + (tr == br)
    c_br = 1 + (br == tl).astype(np.int8) + (br == bl) + (br == tr)
    winner = np.argmax(np.stack((c_tl, c_bl, c_tr, c_br)), axis=0)
    return np.choose(winner, (tl, bl, tr, br))


def _axis_maps(src: int, dst: int) -> Tuple[NDArrayI64, NDArrayI64]:
    coords = np.arange(dst, dtype=np.float64) / float(dst) * float(src)
    lo = np.clip(np.floor(coords), 0, src - 1).astype(np.int64)
    hi = np.clip(np.ceil(coords), 0, src - 1).astype(np.int64)
    return lo, hi


def styled_palette(color_table: ClassColorTable, count: int, selected: Optional[int]) -> NDArrayU8:
    """``(count, 4)`` RGBA lookup table for the given selection."""
    rgb = color_table.lut(count).astype(np.float32)
    out = np.empty((count, 4), dtype=np.uint8)
    if selected is None:
        out[:, :3] = rgb.astype(np.uint8)
        out[:, 3] = ALPHA_NEUTRAL
        return out
    out[:, :3] = np.clip(rgb * DIM_GAIN, 0, 255).astype(np.uint8)
    out[:, 3] = ALPHA_DIMMED
    if 0 <= selected < count:
        bright = np.clip(rgb[selected] * HIGHLIGHT_GAIN + HIGHLIGHT_LIFT, 0, 255)
        out[selected, :3] = bright.astype(np.uint8)
        out[selected, 3] = ALPHA_HIGHLIGHT
    return out


def _selected_index(selection: object) -> Optional[int]:
    value = getattr(selection, "selected_class", selection)
    # negative means no selection (show every class)
    if value is None or int(value) < 0:  # type: ignore[call-overload]
        return None
    return int(value)  # type: ignore[call-overload]


class OverlayDecoder:
    """
    Args:
        target_size: Texture size ``(w, h)``; ``None`` decodes at tensor size.
        mode: ``"vote"`` (four-neighbour majority) or ``"argmax"`` (nearest
            neighbour, sharp boundaries).
    """

    def __init__(self, target_size: Optional[Size] = None, *, mode: str = "vote") -> None:
        if mode not in DECODE_MODES:
            raise ValueError(f"unknown decode mode {mode!r} (known: {', '.join(DECODE_MODES)})")
        self.mode = mode
        self._target: Optional[Size] = None
        self._buffer: Optional[NDArrayU8] = None
        self._maps: Dict[Tuple[int, int, int, int], Tuple[NDArrayI64, ...]] = {}
        self._palettes: Dict[Tuple[Tuple[RGB, ...], int, Optional[int]], NDArrayU8] = {}
        self._skipped_logged = False
        self.allocations = 0
        if target_size is not None:
            self.set_target_size(*target_size)

    @property
    def target_size(self) -> Optional[Size]:
        return self._target

    def set_target_size(self, width: int, height: int) -> None:
        self._target = (int(width), int(height))

    def decode(
        self,
        tensor: Optional[ScoreTensor],
        selection: object,
        color_table: ClassColorTable,
    ) -> Optional[NDArrayU8]:
        """
        Return the RGBA texture ``(texH, texW, 4)`` or ``None`` when skipped.

        The returned array is reused by the next call with the same texture
        size; copy it if it must outlive that call.
        """
        if tensor is None:
            return None
        shape = tuple(np.shape(tensor))
        if len(shape) != 4 or shape[0] != 1:
            raise DimensionMismatch(f"expected (1, H, W, C) scores, got shape {shape}")
        _, h, w, c = (int(d) for d in shape)
        tex_w, tex_h = self._target if self._target is not None else (w, h)
        if min(h, w, c, tex_w, tex_h) <= 0:
            if not self._skipped_logged:
                LOGGER.warning(
                    "live.decoder.skip tensor=%s texture=%sx%s reason=zero-dimension",
                    shape,
                    tex_w,
                    tex_h,
                )
                self._skipped_logged = True
            return None

        dominant = dominant_classes(tensor)
        y0, y1, x0, x1 = self._index_maps(h, w, tex_h, tex_w)
        if self.mode == "argmax":
            voted = dominant[y0[:, None], x0[None, :]]
        else:
            voted = vote(
                dominant[y0[:, None], x0[None, :]],
                dominant[y1[:, None], x0[None, :]],
                dominant[y0[:, None], x1[None, :]],
                dominant[y1[:, None], x1[None, :]],
            )

        selected = _selected_index(selection)
        palette = self._palette(color_table, c, selected)
        buffer = self._ensure_buffer(tex_h, tex_w)
        np.take(palette, voted, axis=0, out=buffer)
        return buffer

    def _index_maps(self, h: int, w: int, tex_h: int, tex_w: int) -> Tuple[NDArrayI64, ...]:
        key = (h, w, tex_h, tex_w)
        maps = self._maps.get(key)
        if maps is None:
            y0, y1 = _axis_maps(h, tex_h)
            x0, x1 = _axis_maps(w, tex_w)
            maps = (y0, y1, x0, x1)
            self._maps = {key: maps}
        return maps

    def _palette(self, color_table: ClassColorTable, classes: int, selected: Optional[int]) -> NDArrayU8:
        count = max(classes, (selected + 1) if selected is not None else 0)
        key = (color_table.colors, count, selected)
        palette = self._palettes.get(key)
        if palette is None:
            palette = styled_palette(color_table, count, selected)
            if len(self._palettes) > 16:
                self._palettes.clear()
            self._palettes[key] = palette
        return palette

    def _ensure_buffer(self, tex_h: int, tex_w: int) -> NDArrayU8:
        if self._buffer is None or self._buffer.shape[:2] != (tex_h, tex_w):
            self._buffer = np.empty((tex_h, tex_w, 4), dtype=np.uint8)
            self.allocations += 1
        return self._buffer
