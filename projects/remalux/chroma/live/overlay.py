"""
BGR drawing helpers for live:
  • aspect-fit placement of a frame inside the preview window,
  • window pixel -> normalized overlay coordinate mapping for taps,
  • RGBA overlay compositing onto BGR frames,
  • tiny HUD: "FPS | TIER | LATENCY | BACKEND" (top-left) plus a toast line.
"""

from __future__ import annotations

from typing import NamedTuple, Optional, Tuple

import cv2
import numpy as np

from ._types import NDArrayU8, PixelBuffer


class Rect(NamedTuple):
    x: int
    y: int
    w: int
    h: int


def fit_rect(texture_size: Tuple[int, int], surface_size: Tuple[int, int]) -> Rect:
    """
    Largest rectangle with the texture's aspect ratio centered in the surface.

    Both sizes are ``(w, h)``. A wider surface shrinks the width, a taller one
    shrinks the height.
    """
    tex_w, tex_h = max(1, int(texture_size[0])), max(1, int(texture_size[1]))
    surf_w, surf_h = max(1, int(surface_size[0])), max(1, int(surface_size[1]))
    surface_aspect = surf_w / surf_h
    image_aspect = tex_w / tex_h
    if surface_aspect > image_aspect:
        w, h = max(1, int(round(surf_w * image_aspect / surface_aspect))), surf_h
    else:
        w, h = surf_w, max(1, int(round(surf_h * surface_aspect / image_aspect)))
    return Rect((surf_w - w) // 2, (surf_h - h) // 2, w, h)


def normalize_point(point: Tuple[float, float], rect: Rect) -> Optional[Tuple[float, float]]:
    """Map a pixel inside ``rect`` to ``[0, 1)`` coordinates; ``None`` when outside."""
    px, py = float(point[0]), float(point[1])
    if rect.w <= 0 or rect.h <= 0:
        return None
    nx = (px - rect.x) / rect.w
    ny = (py - rect.y) / rect.h
    if not (0.0 <= nx < 1.0 and 0.0 <= ny < 1.0):
        return None
    return nx, ny


def blend_rgba_onto_bgr(frame: NDArrayU8, overlay_rgba: PixelBuffer, rect: Optional[Rect] = None) -> NDArrayU8:
    """
    Alpha-blend an RGBA texture onto a BGR frame inside ``rect`` (whole frame by default).

    The texture is scaled with nearest-neighbour sampling so class boundaries
    stay crisp. Returns a new frame.
    """
    H, W = int(frame.shape[0]), int(frame.shape[1])
    if rect is None:
        rect = Rect(0, 0, W, H)
    x0, y0 = max(0, rect.x), max(0, rect.y)
    x1, y1 = min(W, rect.x + rect.w), min(H, rect.y + rect.h)
    out = frame.copy()
    if x1 <= x0 or y1 <= y0 or overlay_rgba.size == 0:
        return out
    tex = overlay_rgba
    if tex.shape[:2] != (rect.h, rect.w):
        tex = cv2.resize(tex, (rect.w, rect.h), interpolation=cv2.INTER_NEAREST)
    tex = tex[y0 - rect.y : y1 - rect.y, x0 - rect.x : x1 - rect.x]
    color_bgr = tex[..., 2::-1].astype(np.float32)
    alpha = tex[..., 3:4].astype(np.float32) / 255.0
    roi = out[y0:y1, x0:x1].astype(np.float32)
    out[y0:y1, x0:x1] = np.clip(roi * (1.0 - alpha) + color_bgr * alpha, 0, 255).astype(np.uint8)
    return out


def hud(
    frame: NDArrayU8,
    *,
    fps: float,
    tier: str,
    latency_ms: Optional[float],
    backend: str,
    notice: Optional[str] = None,
    status: Optional[str] = None,
) -> None:
    """Draw a tiny HUD in the top-left corner (optionally with a toast line)."""
    latency = f"{latency_ms:6.1f} ms" if latency_ms is not None else "   -- ms"
    text = f"{fps:5.1f} FPS | {tier} | {latency} | {backend}"
    if status:
        text = f"{text} | {status}"
    cv2.putText(frame, text, (8, 20), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (255, 245, 200), 2)
    if notice:
        cv2.putText(frame, notice, (8, 38), cv2.FONT_HERSHEY_SIMPLEX, 0.45, (255, 220, 200), 2)
