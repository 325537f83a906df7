"""
Live capture sources.

OpenCV camera/video capture with OS backend hints, plus a deterministic
synthetic scene for CI/headless runs.
"""

from __future__ import annotations

import logging
import math
import sys
import time
from typing import Any, Iterator, List, Optional, Protocol, Tuple, Union

import cv2
import numpy as np

from ._types import NDArrayU8
from chroma.logging_config import bind_context

LOGGER = logging.getLogger(__name__)

_WARMUP_READS = 30


def _log(event: str, **info: object) -> None:
    if info:
        detail = " ".join(f"{k}={info[k]}" for k in sorted(info) if info[k] is not None)
        LOGGER.info("%s %s", event, detail)
    else:
        LOGGER.info(event)


class FrameSource(Protocol):
    def frames(self) -> Iterator[Tuple[NDArrayU8, float]]: ...
    def release(self) -> None: ...


def _guess_backend_ids() -> List[int]:
    """Platform-appropriate OpenCV capture backends, default last."""
    ids: List[int] = []
    plat = sys.platform
    if plat.startswith("win"):
        ids.append(getattr(cv2, "CAP_MSMF", 0))
        ids.append(getattr(cv2, "CAP_DSHOW", 0))
    elif plat == "darwin":
        ids.append(getattr(cv2, "CAP_AVFOUNDATION", 0))
    elif "linux" in plat:
        ids.append(getattr(cv2, "CAP_V4L2", 0))
    out: List[int] = []
    for i in ids:
        if i and i not in out:
            out.append(i)
    out.append(0)
    return out


class _CVCamera:
    cap: Any

    def __init__(
        self,
        source: Union[str, int],
        width: Optional[int] = None,
        height: Optional[int] = None,
        fps: Optional[int] = None,
    ) -> None:
        self._source = str(source)
        if isinstance(source, str):
            try:
                src_val: Union[str, int] = int(source)
            except ValueError:
                src_val = source
        else:
            src_val = source
        backends = _guess_backend_ids() if isinstance(src_val, int) else [0]

        with bind_context(component="camera", source=self._source):
            _log(
                "live.camera.open.start",
                source=self._source,
                backends=",".join(str(b) for b in backends),
                width=width,
                height=height,
                fps=fps,
            )
            self.cap = None
            for backend in backends:
                cap = cv2.VideoCapture(src_val, backend) if backend else cv2.VideoCapture(src_val)
                if cap is not None and cap.isOpened():
                    self.cap = cap
                    _log("live.camera.open.ok", source=self._source, backend=backend)
                    break
                if cap is not None:
                    cap.release()
            if self.cap is None:
                _log("live.camera.open.error", source=self._source)
                raise RuntimeError(f"Unable to open video source {source!r}")
            if width:
                self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(width))
            if height:
                self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(height))
            if fps:
                self.cap.set(cv2.CAP_PROP_FPS, int(fps))

    def frames(self) -> Iterator[Tuple[NDArrayU8, float]]:
        cap = self.cap
        failures = 0
        while cap is not None:
            ok, frame = cap.read()
            if not ok or frame is None:
                failures += 1
                if failures <= _WARMUP_READS:
                    time.sleep(0.01)
                    continue
                _log("live.camera.read.error", source=self._source, failures=failures)
                break
            failures = 0
            if frame.ndim == 2:
                frame = cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
            elif frame.ndim == 3 and frame.shape[2] == 4:
                frame = cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)
            yield frame, time.time()

    def release(self) -> None:
        cap = getattr(self, "cap", None)
        if cap is not None:
            cap.release()
            self.cap = None


class _SyntheticSource:
    """Deterministic room-like scene: flat regions of distinct brightness plus a moving block."""

    def __init__(self, size: Tuple[int, int] = (640, 480), fps: int = 30) -> None:
        self.w, self.h = int(size[0]), int(size[1])
        self.fps = max(1, int(fps))
        self._t0 = time.time()
        self._n = 0
        self._base = self._scene()
        _log("live.camera.synthetic", size=f"{self.w}x{self.h}", fps=self.fps)

    def _scene(self) -> NDArrayU8:
        frame = np.empty((self.h, self.w, 3), dtype=np.uint8)
        horizon = self.h * 2 // 3
        frame[:horizon] = (200, 190, 180)  # wall
        frame[horizon:] = (70, 90, 110)  # floor
        door_w = max(1, self.w // 6)
        frame[self.h // 5 : horizon, self.w // 8 : self.w // 8 + door_w] = (40, 60, 90)
        win = (self.h // 8, self.h // 3, self.w // 2, self.w // 2 + self.w // 4)
        frame[win[0] : win[1], win[2] : win[3]] = (250, 240, 230)
        return frame

    def frames(self) -> Iterator[Tuple[NDArrayU8, float]]:
        period = 1.0 / self.fps
        block = max(2, min(self.w, self.h) // 6)
        while True:
            now = time.time()
            phase = now - self._t0
            frame = self._base.copy()
            x = int((math.sin(phase * 0.8) + 1.0) * 0.5 * max(0, self.w - block))
            y = self.h - block - max(1, self.h // 20)
            frame[max(0, y) : y + block, x : x + block] = (20, 20, 20)
            self._n += 1
            yield frame, now
            delay = period - (time.time() - now)
            if delay > 0:
                time.sleep(delay)

    def release(self) -> None:
        return


def open_camera(
    source: Union[str, int],
    *,
    width: Optional[int] = None,
    height: Optional[int] = None,
    fps: Optional[int] = None,
) -> FrameSource:
    """Open a camera index, video file or stream URL."""
    _log("live.camera.request", source=str(source), width=width, height=height, fps=fps)
    return _CVCamera(source, width=width, height=height, fps=fps)


def synthetic_source(size: Tuple[int, int] = (640, 480), fps: int = 30) -> FrameSource:
    return _SyntheticSource(size=size, fps=fps)
