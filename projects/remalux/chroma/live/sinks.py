"""
Output sinks:
  • DisplaySink  : OpenCV HighGUI preview window with key polling and tap (mouse) callbacks,
  • VideoSink    : MP4 writer with codec fallback (mp4v -> avc1 -> MJPG/AVI),
  • MultiSink    : broadcast to multiple sinks.

Display and writer errors are logged and never stop the live loop.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, List, Optional, Tuple

import cv2

from ._types import NDArrayU8

LOGGER = logging.getLogger(__name__)

TapCallback = Callable[[int, int], None]


def _log(event: str, **info: object) -> None:
    if info:
        detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
        LOGGER.info("%s %s", event, detail)
    else:
        LOGGER.info(event)


class DisplaySink:
    """
    Preview window. ``headless=True`` (or a HighGUI-less OpenCV build) turns
    every method into a no-op.

      • poll_key() → int: OpenCV keycode or -1
      • is_open() → bool: false once the user closed the window
      • on_tap(cb): cb(x, y) in window pixels on left click
    """

    def __init__(self, title: str = "Remalux Live", headless: bool = False) -> None:
        self.title = title
        self.headless = bool(headless)
        self._window_ready = False
        self._failed = False
        self._tap_callbacks: List[TapCallback] = []
        self._closed = False
        _log("live.display.init", headless=self.headless)

    @property
    def active(self) -> bool:
        return not (self.headless or self._failed or self._closed)

    def on_tap(self, callback: TapCallback) -> None:
        self._tap_callbacks.append(callback)

    def _on_mouse(self, event: int, x: int, y: int, _flags: int, _param: object) -> None:
        if event != cv2.EVENT_LBUTTONDOWN:
            return
        for callback in list(self._tap_callbacks):
            try:
                callback(int(x), int(y))
            except Exception:
                LOGGER.exception("live.display.tap_callback_failed")

    def _ensure_window(self) -> None:
        if self._window_ready:
            return
        cv2.namedWindow(self.title, cv2.WINDOW_NORMAL)
        cv2.setMouseCallback(self.title, self._on_mouse)
        self._window_ready = True

    def write(self, frame_bgr: NDArrayU8) -> None:
        self.show(frame_bgr)

    def show(self, frame_bgr: NDArrayU8) -> None:
        if not self.active:
            return
        try:
            self._ensure_window()
            cv2.imshow(self.title, frame_bgr)
        except cv2.error as exc:
            # opencv-python-headless: HighGUI not implemented
            self._failed = True
            _log("live.display.disabled", reason=type(exc).__name__)

    def poll_key(self) -> int:
        if not self.active or not self._window_ready:
            return -1
        try:
            return int(cv2.waitKey(1)) & 0xFF
        except cv2.error:
            return -1

    def is_open(self) -> bool:
        if not self.active:
            return False
        if not self._window_ready:
            return True
        try:
            return cv2.getWindowProperty(self.title, cv2.WND_PROP_VISIBLE) >= 1
        except cv2.error:
            return True

    def window_size(self) -> Optional[Tuple[int, int]]:
        """Current client area (w, h), when the backend reports it."""
        if not self.active or not self._window_ready:
            return None
        try:
            _, _, w, h = cv2.getWindowImageRect(self.title)
        except (cv2.error, AttributeError):
            return None
        if w <= 0 or h <= 0:
            return None
        return int(w), int(h)

    def close(self) -> None:
        if self._window_ready:
            try:
                cv2.destroyWindow(self.title)
            except cv2.error:
                LOGGER.debug("live.display.destroy_failed title=%s", self.title)
        self._window_ready = False
        self._closed = True


class VideoSink:
    """Try MP4 codecs, then fall back to MJPG in an AVI next to the requested path."""

    def __init__(self, path: str, size: Tuple[int, int], fps: float) -> None:
        self.path = path
        self.size = (int(size[0]), int(size[1]))
        self.fps = float(max(1.0, fps))
        self.actual_path = path
        self._writer: Optional[cv2.VideoWriter] = None
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        candidates = [(self.path, "mp4v"), (self.path, "avc1"), (os.path.splitext(self.path)[0] + ".avi", "MJPG")]
        for target, codec in candidates:
            writer = cv2.VideoWriter(target, cv2.VideoWriter_fourcc(*codec), self.fps, self.size)
            if writer.isOpened():
                self._writer = writer
                self.actual_path = target
                _log("live.sink.video.opened", path=target, codec=codec, size=f"{self.size[0]}x{self.size[1]}")
                break
            writer.release()
        if self._writer is None:
            LOGGER.warning("live.sink.video.unavailable path=%s", self.path)

    @property
    def opened(self) -> bool:
        return self._writer is not None and bool(self._writer.isOpened())

    def write(self, frame_bgr: NDArrayU8) -> None:
        if self._writer is None:
            return
        if (frame_bgr.shape[1], frame_bgr.shape[0]) != self.size:
            frame_bgr = cv2.resize(frame_bgr, self.size, interpolation=cv2.INTER_LINEAR)
        self._writer.write(frame_bgr)

    def close(self) -> None:
        if self._writer is not None:
            self._writer.release()
            self._writer = None
            _log("live.sink.video.closed", path=self.actual_path)


class MultiSink:
    def __init__(self, *sinks: object) -> None:
        self.sinks = [s for s in sinks if s is not None]

    def write(self, frame_bgr: NDArrayU8) -> None:
        for s in self.sinks:
            method = getattr(s, "write", None)
            if callable(method):
                method(frame_bgr)

    def close(self) -> None:
        for s in self.sinks:
            method = getattr(s, "close", None)
            if callable(method):
                try:
                    method()
                except Exception:
                    LOGGER.exception("live.sink.close_failed sink=%s", type(s).__name__)
