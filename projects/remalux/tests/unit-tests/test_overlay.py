from __future__ import annotations

import numpy as np
import pytest

from chroma.live.overlay import Rect, blend_rgba_onto_bgr, fit_rect, hud, normalize_point
from chroma.live.thermal import ThermalProbe


def test_fit_rect_letterboxes_wide_surface() -> None:
    assert fit_rect((640, 480), (1280, 480)) == Rect(320, 0, 640, 480)


def test_fit_rect_pillarboxes_tall_surface() -> None:
    assert fit_rect((640, 480), (640, 960)) == Rect(0, 240, 640, 480)


def test_fit_rect_same_aspect_fills_surface() -> None:
    assert fit_rect((320, 240), (640, 480)) == Rect(0, 0, 640, 480)


def test_normalize_point_inside_and_outside() -> None:
    rect = Rect(100, 0, 200, 100)
    assert normalize_point((150, 50), rect) == (0.25, 0.5)
    assert normalize_point((50, 50), rect) is None
    assert normalize_point((300, 50), rect) is None


def test_blend_respects_alpha() -> None:
    frame = np.zeros((2, 2, 3), dtype=np.uint8)
    overlay = np.zeros((2, 2, 4), dtype=np.uint8)
    overlay[..., 0] = 255  # red in RGBA
    overlay[0, 0, 3] = 255
    overlay[1, 1, 3] = 0
    out = blend_rgba_onto_bgr(frame, overlay)
    assert out is not frame
    assert tuple(out[0, 0]) == (0, 0, 255)
    assert tuple(out[1, 1]) == (0, 0, 0)
    assert frame.sum() == 0


def test_blend_scales_overlay_into_rect() -> None:
    frame = np.zeros((4, 8, 3), dtype=np.uint8)
    overlay = np.full((1, 1, 4), 255, dtype=np.uint8)
    out = blend_rgba_onto_bgr(frame, overlay, Rect(2, 0, 4, 4))
    assert out[:, 2:6].min() == 255
    assert out[:, :2].max() == 0 and out[:, 6:].max() == 0


def test_hud_draws_in_place() -> None:
    frame = np.zeros((60, 400, 3), dtype=np.uint8)
    hud(frame, fps=29.5, tier="balanced 256x256", latency_ms=42.0, backend="cpu", notice="Selected: wall")
    assert frame.any()


def test_thermal_probe_combines_fps_and_temperature() -> None:
    probe = ThermalProbe(target_fps=30, temp_range=(50.0, 90.0), temperature=lambda: None)
    assert probe.sample(30.0) == 0.0
    assert probe.sample(15.0) == pytest.approx(0.5)
    assert probe.sample(0.0) == 1.0
    hot = ThermalProbe(target_fps=30, temp_range=(50.0, 90.0), temperature=lambda: 80.0)
    assert hot.sample(30.0) == pytest.approx(0.75)
    assert hot.last_temperature == 80.0
