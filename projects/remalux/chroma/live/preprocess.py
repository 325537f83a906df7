"""
Frame preparation for the segmentation executor.

``resize_rgb`` turns a captured BGR frame into the RGB image size the active
tier expects. ``Preprocessor`` converts that image into the float tensor a
model consumes, reusing one buffer per input size.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from ._types import NDArrayF32, NDArrayU8, Size


def resize_rgb(frame_bgr: NDArrayU8, size: Size) -> NDArrayU8:
    """Resize a BGR/gray frame to ``size`` (w, h) and return it as RGB uint8."""
    image = np.asarray(frame_bgr)
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)
    if image.ndim == 2:
        image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    elif image.ndim == 3 and image.shape[2] == 1:
        image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    elif image.ndim == 3 and image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    w, h = int(size[0]), int(size[1])
    if w <= 0 or h <= 0:
        raise ValueError(f"invalid input size {size!r}")
    if image.shape[1] != w or image.shape[0] != h:
        shrinking = image.shape[1] > w or image.shape[0] > h
        interp = cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR
        image = cv2.resize(image, (w, h), interpolation=interp)
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


@dataclass
class _PreprocessConfig:
    channels_first: bool = False
    normalize: bool = True
    mean: Optional[Tuple[float, float, float]] = None
    std: Optional[Tuple[float, float, float]] = None


class Preprocessor:
    """
    RGB uint8 image -> batched float32 tensor with buffer reuse.

    Parameters
    ----------
    channels_first:
        Produce ``(1, 3, H, W)`` when True, ``(1, H, W, 3)`` otherwise.
    normalize:
        Divide pixel values by 255 when True.
    mean/std:
        Optional per-channel normalization (values in 0-1 space).
    """

    def __init__(
        self,
        *,
        channels_first: bool = False,
        normalize: bool = True,
        mean: Optional[Tuple[float, float, float]] = None,
        std: Optional[Tuple[float, float, float]] = None,
    ) -> None:
        self.cfg = _PreprocessConfig(channels_first=channels_first, normalize=normalize, mean=mean, std=std)
        self._scale = 1.0 / 255.0 if normalize else 1.0
        self._mean = np.asarray(mean, dtype=np.float32) if mean is not None else None
        self._std = np.asarray(std, dtype=np.float32) if std is not None else None
        self._buffer: Optional[NDArrayF32] = None

    def _ensure_buffer(self, h: int, w: int) -> NDArrayF32:
        shape = (1, 3, h, w) if self.cfg.channels_first else (1, h, w, 3)
        if self._buffer is None or self._buffer.shape != shape:
            self._buffer = np.empty(shape, dtype=np.float32)
        return self._buffer

    def process(self, image_rgb: NDArrayU8) -> NDArrayF32:
        if image_rgb.ndim != 3 or image_rgb.shape[2] != 3:
            raise ValueError(f"expected an (H, W, 3) image, got shape {image_rgb.shape}")
        h, w = int(image_rgb.shape[0]), int(image_rgb.shape[1])
        buffer = self._ensure_buffer(h, w)
        hwc = image_rgb.astype(np.float32)
        if self._scale != 1.0:
            hwc *= self._scale
        if self._mean is not None:
            hwc -= self._mean
        if self._std is not None:
            hwc /= self._std
        if self.cfg.channels_first:
            buffer[0] = hwc.transpose(2, 0, 1)
        else:
            buffer[0] = hwc
        return buffer
