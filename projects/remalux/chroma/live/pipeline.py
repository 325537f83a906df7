"""
LivePipeline: source -> gate -> segment -> decode -> composite -> sink(s).

The capture thread only delivers frames. Every frame arrival runs one
non-blocking scheduling step on the main loop: poll the in-flight inference,
decode a freshly completed tensor, ask the gate whether to start another run,
and composite the latest overlay onto the frame.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import logging
from pathlib import Path
from queue import Empty, Full, Queue
import threading
import time
from typing import Callable, Deque, Dict, Optional, Tuple, Union

import numpy as np

from ._types import NDArrayU8, PixelBuffer
from .camera import FrameSource, open_camera, synthetic_source
from .colors import ClassColorTable
from .config import PRESETS, OverlayConfig, QualityTier
from .controller import PerformanceFeedbackController
from .decoder import DimensionMismatch, OverlayDecoder
from .executors import ExecutorFactory, executor_factory
from .gate import FrameGate
from .overlay import Rect, blend_rgba_onto_bgr, fit_rect, hud, normalize_point
from .selection import SelectionState
from .session import InferenceHandle, InferenceSession, PollStatus
from .sinks import DisplaySink, MultiSink, VideoSink
from .thermal import ThermalProbe
from chroma.logging_config import bind_context

LOGGER = logging.getLogger(__name__)

FramePacket = Tuple[NDArrayU8, float]

PRESET_KEYS: Dict[int, str] = {
    ord("1"): "ultra-fast",
    ord("2"): "balanced",
    ord("3"): "quality",
}
_QUIT_KEYS = (ord("q"), 27)
THERMAL_PERIOD_S = 1.0
TOAST_SECONDS = 3.0


def _log(event: str, **info: object) -> None:
    detail = " ".join(f"{key}={info[key]}" for key in sorted(info) if info[key] is not None)
    if detail:
        LOGGER.info("%s %s", event, detail)
    else:
        LOGGER.info("%s", event)


@dataclass
class LivePipeline:
    source: Union[str, int] = "synthetic"
    model: Optional[str] = None
    backend: str = "auto"
    config: OverlayConfig = field(default_factory=OverlayConfig)
    preset: Optional[str] = None
    size: Optional[Tuple[int, int]] = None
    fps: Optional[int] = None
    headless: bool = False
    duration: Optional[float] = None  # seconds; None = until user closes
    out_path: Optional[str] = None
    display_name: Optional[str] = None
    num_classes: int = 8
    synthetic_cost_ms_per_kpx: float = 1.0
    ort_threads: Optional[int] = None
    overlay_max_side: int = 480
    color_table: ClassColorTable = field(default_factory=ClassColorTable)
    executor_factory: Optional[ExecutorFactory] = None
    frame_source: Optional[FrameSource] = None
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        self.backend = (self.backend or "auto").strip().lower()
        factory = self.executor_factory or executor_factory(
            self.model,
            threads=self.ort_threads,
            num_classes=self.num_classes,
            cost_ms_per_kpx=self.synthetic_cost_ms_per_kpx,
        )
        self.controller = PerformanceFeedbackController(self.config, clock=self.clock)
        if self.preset:
            self.controller.apply_preset(self.preset)
        self.controller.add_listener(self._on_tier_change)
        self.gate = FrameGate()
        self.session = InferenceSession(factory, backend=self.backend, controller=self.controller)
        self.decoder = OverlayDecoder(mode=self.config.decode_mode)
        self.selection = SelectionState(double_tap_window_ms=self.config.double_tap_window_ms, clock=self.clock)
        self.thermal = ThermalProbe(target_fps=float(self.fps or 30))
        self.frames_done = 0
        self.fps_estimate = 0.0
        self._handle: Optional[InferenceHandle] = None
        self._overlay: Optional[PixelBuffer] = None
        self._overlay_dirty = False
        self._taps: Deque[Tuple[float, float]] = deque(maxlen=8)
        self._window_size: Optional[Tuple[int, int]] = None
        self._last_frame_at: Optional[float] = None
        self._next_thermal_at: Optional[float] = None
        self._notice: Optional[str] = None
        self._notice_until = 0.0
        self._stop = False
        self._closed = False

    # -------------------------------
    #  Toasts
    # -------------------------------
    def _register_toast(self, message: str, now: Optional[float] = None) -> None:
        _log("live.pipeline.toast", message=message)
        self._notice = message
        self._notice_until = (self.clock() if now is None else now) + TOAST_SECONDS

    def _active_notice(self, now: float) -> Optional[str]:
        if self._notice and now <= self._notice_until:
            return self._notice
        self._notice = None
        return None

    def _on_tier_change(self, old: QualityTier, new: QualityTier) -> None:
        self._register_toast(f"Quality {old.tier_id} -> {new.label}")

    # -------------------------------
    #  Input events
    # -------------------------------
    def handle_tap(self, point: Tuple[float, float], window_size: Optional[Tuple[int, int]] = None) -> None:
        """Queue a tap given in window pixels; resolved on the next frame step."""
        self._taps.append((float(point[0]), float(point[1])))
        self._window_size = window_size

    def handle_key(self, key: int, now: Optional[float] = None) -> bool:
        """Apply a keyboard control; returns False when the loop should stop."""
        if key < 0:
            return True
        now = self.clock() if now is None else now
        key &= 0xFF
        if key in _QUIT_KEYS:
            self._stop = True
            return False
        if key == ord("p"):
            paused = self.gate.toggle_pause()
            self._register_toast("Segmentation paused" if paused else "Segmentation resumed", now)
        elif key == ord("f"):
            self.gate.force_next()
            self._register_toast("Forced segmentation run", now)
        elif key in PRESET_KEYS:
            name = PRESET_KEYS[key]
            self.controller.apply_preset(name, now=now)
            budget = PRESETS[name].max_latency_ms
            self._register_toast(f"Preset {name}: {budget:.0f} ms budget", now)
        elif key == ord("a"):
            self.controller.set_auto(not self.controller.auto_enabled)
            self._register_toast(f"Auto optimization {'on' if self.controller.auto_enabled else 'off'}", now)
        elif key == ord("c"):
            self.selection.clear()
            self._overlay_dirty = True
            self._register_toast("Selection cleared", now)
        elif key == ord("g"):
            target = "cpu" if self.session.backend != "cpu" else self.backend
            try:
                self.session.set_acceleration_backend(target)
            except Exception as exc:
                LOGGER.warning("live.pipeline.backend_switch_failed target=%s error=%s", target, exc)
                self._register_toast(f"Backend {target} unavailable", now)
            else:
                self._register_toast(f"Backend: {self.session.backend}", now)
        return True

    # -------------------------------
    #  Per-frame scheduling step
    # -------------------------------
    def process_frame(self, frame_bgr: NDArrayU8, now: Optional[float] = None) -> NDArrayU8:
        """Run one scheduling step and return the annotated frame."""
        now = self.clock() if now is None else now
        tier = self.controller.tier  # one snapshot per frame
        self._update_fps(now)
        self._sync_texture_size(frame_bgr)

        if self._handle is not None:
            result = self.session.poll(self._handle)
            if result.status is not PollStatus.PENDING:
                self._handle = None
            if result.status is PollStatus.READY:
                self._overlay_dirty = True

        self._resolve_taps(frame_bgr, now)

        if self._overlay_dirty:
            self._decode()

        if self.gate.should_submit(now, tier, in_flight=self.session.in_flight):
            handle = self.session.submit(frame_bgr, tier)
            if handle is not None:
                self._handle = handle

        self._thermal_tick(now)
        return self._compose(frame_bgr, tier, now)

    def _update_fps(self, now: float) -> None:
        if self._last_frame_at is not None:
            dt = max(1e-6, now - self._last_frame_at)
            inst = 1.0 / dt
            self.fps_estimate = 0.9 * self.fps_estimate + 0.1 * inst if self.fps_estimate > 0 else inst
        self._last_frame_at = now

    def _texture_size(self, frame_bgr: NDArrayU8) -> Tuple[int, int]:
        h, w = int(frame_bgr.shape[0]), int(frame_bgr.shape[1])
        longest = max(w, h, 1)
        scale = min(1.0, self.overlay_max_side / float(longest))
        return max(1, int(round(w * scale))), max(1, int(round(h * scale)))

    def _sync_texture_size(self, frame_bgr: NDArrayU8) -> None:
        size = self._texture_size(frame_bgr)
        if self.decoder.target_size != size:
            self.decoder.set_target_size(*size)
            self._overlay_dirty = True

    def _resolve_taps(self, frame_bgr: NDArrayU8, now: float) -> None:
        if not self._taps:
            return
        frame_size = (int(frame_bgr.shape[1]), int(frame_bgr.shape[0]))
        window_size = self._window_size or frame_size
        rect = fit_rect(frame_size, window_size)
        tensor = self.session.latest_tensor
        while self._taps:
            point = self._taps.popleft()
            normalized = normalize_point(point, rect)
            if normalized is None or tensor is None:
                continue
            before = self.selection.selected_class
            self.selection.resolve_tap(normalized, tensor, now=now)
            if self.selection.selected_class != before:
                self._overlay_dirty = True
            described = self.selection.describe(self.color_table)
            if described is not None:
                self._register_toast(f"Selected: {described.name} (class {described.index})", now)
            elif before is not None:
                self._register_toast("Selection cleared", now)

    def _decode(self) -> None:
        try:
            decoded = self.decoder.decode(self.session.latest_tensor, self.selection, self.color_table)
        except DimensionMismatch as exc:
            LOGGER.warning("live.pipeline.decode_skipped error=%s", exc)
            return
        self._overlay_dirty = False
        if decoded is not None:
            self._overlay = decoded

    def _thermal_tick(self, now: float) -> None:
        if self._next_thermal_at is None:
            self._next_thermal_at = now + THERMAL_PERIOD_S
            return
        if now < self._next_thermal_at:
            return
        self._next_thermal_at = now + THERMAL_PERIOD_S
        proxy = self.thermal.sample(self.fps_estimate)
        self.controller.update_thermal(proxy)
        LOGGER.debug("live.pipeline.thermal proxy=%.2f temp=%s", proxy, self.thermal.last_temperature)

    def _status(self) -> Optional[str]:
        flags = []
        if self.gate.paused:
            flags.append("PAUSED")
        if not self.controller.auto_enabled:
            flags.append("AUTO off")
        return " ".join(flags) or None

    def _compose(self, frame_bgr: NDArrayU8, tier: QualityTier, now: float) -> NDArrayU8:
        if self._overlay is not None:
            h, w = int(frame_bgr.shape[0]), int(frame_bgr.shape[1])
            out = blend_rgba_onto_bgr(frame_bgr, self._overlay, Rect(0, 0, w, h))
        else:
            out = np.array(frame_bgr, copy=True)
        hud(
            out,
            fps=self.fps_estimate,
            tier=tier.label,
            latency_ms=self.session.last_latency_ms,
            backend=self.session.backend,
            notice=self._active_notice(now),
            status=self._status(),
        )
        return out

    # -------------------------------
    #  Run loop
    # -------------------------------
    def _build_source(self) -> FrameSource:
        if self.frame_source is not None:
            return self.frame_source
        if isinstance(self.source, str) and self.source.lower().startswith("synthetic"):
            return synthetic_source(size=self.size or (640, 480), fps=self.fps or 30)
        return open_camera(
            self.source,
            width=(self.size[0] if self.size else None),
            height=(self.size[1] if self.size else None),
            fps=self.fps,
        )

    def close(self) -> None:
        """Drain the in-flight inference and release the executor."""
        if self._closed:
            return
        self._closed = True
        self.session.close()
        self._handle = None
        _log("live.pipeline.gate", **{k.replace("-", "_"): v for k, v in self.gate.stats.items()})

    def run(self) -> Optional[str]:
        """
        Run until the source ends, the duration elapses or the user quits.
        Returns the saved video path when ``out_path`` was given.
        """
        with bind_context(live_source=str(self.source), backend=self.backend):
            return self._run_loop()

    def _run_loop(self) -> Optional[str]:
        _log(
            "live.pipeline.start",
            source=str(self.source),
            model=self.model or "synthetic",
            tier=self.controller.tier.tier_id,
        )
        src = self._build_source()
        display: Optional[DisplaySink] = None
        if not self.headless:
            display = DisplaySink(self.display_name or f"Remalux Live ({self.source})")
            display.on_tap(lambda x, y: self.handle_tap((x, y), display.window_size() if display else None))
        video: Optional[VideoSink] = None
        sinks: Optional[MultiSink] = None
        saved_path = self.out_path

        stop_event = threading.Event()
        frame_queue: "Queue[Optional[FramePacket]]" = Queue(maxsize=5)

        def _capture_loop() -> None:
            try:
                for frame_bgr, ts in src.frames():
                    if stop_event.is_set():
                        break
                    try:
                        frame_queue.put((frame_bgr, ts), timeout=0.1)
                    except Full:
                        continue
            except Exception as exc:
                LOGGER.error("live.pipeline.capture.error error=%s message=%s", type(exc).__name__, exc)
            finally:
                stop_event.set()
                try:
                    frame_queue.put_nowait(None)
                except Full:
                    LOGGER.debug("live.pipeline.capture.sentinel_dropped")

        capture_thread = threading.Thread(target=_capture_loop, name="chroma-live-capture", daemon=True)
        capture_thread.start()
        t0 = self.clock()

        try:
            while not self._stop:
                try:
                    item = frame_queue.get(timeout=0.1)
                except Empty:
                    if stop_event.is_set() and frame_queue.empty():
                        break
                    continue
                if item is None:
                    break

                frame_bgr, _ts = item
                now = self.clock()
                if sinks is None:
                    if saved_path:
                        Path(saved_path).parent.mkdir(parents=True, exist_ok=True)
                        h_px, w_px = frame_bgr.shape[:2]
                        video = VideoSink(saved_path, (w_px, h_px), float(self.fps or 30))
                    sinks = MultiSink(*(x for x in (display, video) if x is not None))

                annotated = self.process_frame(frame_bgr, now)
                sinks.write(annotated)
                self.frames_done += 1

                if self.duration is not None and (now - t0) >= self.duration:
                    _log("live.pipeline.stop", reason="duration", frames=self.frames_done)
                    break
                if display is not None:
                    if not display.is_open():
                        _log("live.pipeline.stop", reason="window-closed", frames=self.frames_done)
                        break
                    if not self.handle_key(display.poll_key(), now):
                        _log("live.pipeline.stop", reason="user-exit", frames=self.frames_done)
                        break
        finally:
            stop_event.set()
            capture_thread.join(timeout=1.0)
            self.close()
            src.release()
            if sinks is not None:
                sinks.close()
            elif display is not None:
                display.close()
            _log("live.pipeline.end", saved_path=saved_path, frames=self.frames_done)

        if video is not None:
            return video.actual_path
        return None
