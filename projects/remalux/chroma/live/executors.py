"""
Segmentation executors and acceleration backend selection.

An executor is the opaque network: it receives an RGB image already sized to
the active tier and returns class scores shaped ``(1, H, W, C)``. The ONNX
Runtime executor runs a real model; the synthetic executor is a no-ML stand-in
that keeps headless and CI runs exercising the full pipeline.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

import numpy as np

from ._types import NDArrayU8, ScoreTensor, Size
from .preprocess import Preprocessor, resize_rgb

LOGGER = logging.getLogger(__name__)

BACKEND_KINDS = ("auto", "cpu", "cuda", "tensorrt", "directml", "coreml")
_BACKEND_ALIASES = {
    "gpu": "cuda",
    "trt": "tensorrt",
    "dml": "directml",
    "mps": "coreml",
}
_PROVIDERS: Dict[str, Tuple[str, ...]] = {
    "cpu": ("CPUExecutionProvider",),
    "cuda": ("CUDAExecutionProvider", "CPUExecutionProvider"),
    "tensorrt": ("TensorrtExecutionProvider", "CUDAExecutionProvider", "CPUExecutionProvider"),
    "directml": ("DmlExecutionProvider", "CPUExecutionProvider"),
    "coreml": ("CoreMLExecutionProvider", "CPUExecutionProvider"),
}
_AUTO_ORDER = ("tensorrt", "cuda", "directml", "coreml", "cpu")


class Executor(Protocol):
    def run(self, image_rgb: NDArrayU8) -> ScoreTensor: ...
    def close(self) -> None: ...


ExecutorFactory = Callable[[str], Executor]


def normalize_backend(kind: Optional[str]) -> str:
    token = (kind or "auto").strip().lower()
    token = _BACKEND_ALIASES.get(token, token)
    if token not in BACKEND_KINDS:
        raise ValueError(f"unknown acceleration backend {kind!r} (known: {', '.join(BACKEND_KINDS)})")
    return token


def _tensorrt_disabled() -> bool:
    return os.environ.get("ORT_DISABLE_TENSORRT", "").strip().lower() in {"1", "true", "yes", "on"}


def available_providers() -> List[str]:
    """Return ONNX Runtime's available execution providers (empty if unusable)."""
    try:
        import onnxruntime as ort  # type: ignore[import]
    except ImportError as exc:
        LOGGER.warning("onnxruntime unavailable: %s", exc)
        return []
    return [str(p) for p in ort.get_available_providers()]


def providers_for_backend(kind: str, available: Optional[Sequence[str]] = None) -> List[str]:
    """
    Ordered provider list for ``kind``, restricted to what is installed.

    ``auto`` picks the first accelerator present (TensorRT, CUDA, DirectML,
    CoreML) and always keeps the CPU provider as the final fallback.
    """
    backend = normalize_backend(kind)
    present = list(available) if available is not None else available_providers()
    if backend == "auto":
        for candidate in _AUTO_ORDER:
            if candidate == "tensorrt" and _tensorrt_disabled():
                continue
            if _PROVIDERS[candidate][0] in present:
                backend = candidate
                break
        else:
            backend = "cpu"
    chosen = [p for p in _PROVIDERS[backend] if p in present]
    if "CPUExecutionProvider" not in chosen:
        chosen.append("CPUExecutionProvider")
    return chosen


def _static_dim(value: object) -> Optional[int]:
    if isinstance(value, int) and value > 0:
        return value
    return None


class OnnxSegmentationExecutor:
    """
    ONNX Runtime segmentation model.

    Args:
        model_path: ``.onnx`` file producing per-pixel class scores.
        backend: Acceleration backend kind (see :data:`BACKEND_KINDS`).
        threads: Optional intra-op thread count.
        mean/std: Optional per-channel normalization in 0-1 space.
    """

    def __init__(
        self,
        model_path: Union[str, Path],
        *,
        backend: str = "auto",
        threads: Optional[int] = None,
        mean: Optional[Tuple[float, float, float]] = None,
        std: Optional[Tuple[float, float, float]] = None,
    ) -> None:
        import onnxruntime as ort  # type: ignore[import]

        path = Path(model_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"segmentation model not found: {path}")
        options = ort.SessionOptions()
        if threads:
            options.intra_op_num_threads = max(1, int(threads))
        self.backend = normalize_backend(backend)
        self.providers = providers_for_backend(self.backend, ort.get_available_providers())
        self._session: Any = ort.InferenceSession(str(path), sess_options=options, providers=self.providers)
        model_input = self._session.get_inputs()[0]
        self._input_name = str(model_input.name)
        shape = list(model_input.shape)
        # (N, 3, H, W) vs (N, H, W, 3)
        self._channels_first = len(shape) == 4 and shape[1] == 3 and shape[-1] != 3
        if self._channels_first:
            h, w = _static_dim(shape[2]), _static_dim(shape[3])
        else:
            h, w = (_static_dim(shape[1]), _static_dim(shape[2])) if len(shape) == 4 else (None, None)
        self.fixed_size: Optional[Size] = (w, h) if w and h else None
        self._pre = Preprocessor(channels_first=self._channels_first, mean=mean, std=std)
        LOGGER.info(
            "live.executor.onnx model=%s providers=%s layout=%s fixed=%s",
            path.name,
            ",".join(self.providers),
            "nchw" if self._channels_first else "nhwc",
            self.fixed_size,
        )

    def run(self, image_rgb: NDArrayU8) -> ScoreTensor:
        if self.fixed_size is not None and (image_rgb.shape[1], image_rgb.shape[0]) != self.fixed_size:
            image_rgb = resize_rgb(np.ascontiguousarray(image_rgb[..., ::-1]), self.fixed_size)
        batch = self._pre.process(image_rgb)
        outputs = self._session.run(None, {self._input_name: batch})
        scores = np.asarray(outputs[0])
        if scores.ndim == 3:
            scores = scores[None]
        if self._channels_first and scores.ndim == 4:
            scores = scores.transpose(0, 2, 3, 1)
        return scores

    def close(self) -> None:
        self._session = None


class SyntheticSegmentationExecutor:
    """
    Deterministic no-ML executor.

    Bins each pixel by brightness into ``num_classes`` bands and emits scores
    peaking at the matching band. ``cost_ms_per_kpx`` adds a simulated compute
    cost proportional to the input area so tier changes have a visible effect.
    """

    label = "synthetic-bands (no-ML)"

    def __init__(
        self,
        *,
        num_classes: int = 8,
        cost_ms_per_kpx: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.num_classes = max(1, int(num_classes))
        self.cost_ms_per_kpx = max(0.0, float(cost_ms_per_kpx))
        self._sleep = sleep
        self._centers = (np.arange(self.num_classes, dtype=np.float32) + 0.5) * (255.0 / self.num_classes)

    def run(self, image_rgb: NDArrayU8) -> ScoreTensor:
        gray = np.asarray(image_rgb, dtype=np.float32).mean(axis=2)
        scores = -np.abs(gray[..., None] - self._centers[None, None, :])
        if self.cost_ms_per_kpx > 0.0:
            self._sleep(self.cost_ms_per_kpx * gray.size / 1000.0 / 1000.0)
        return scores[None].astype(np.float32)

    def close(self) -> None:
        return None


def build_executor(
    model: Optional[Union[str, Path]],
    backend: str = "auto",
    *,
    threads: Optional[int] = None,
    num_classes: int = 8,
    cost_ms_per_kpx: float = 0.0,
) -> Executor:
    """Return an ONNX executor for ``model`` or the synthetic one when no model is given."""
    if model:
        return OnnxSegmentationExecutor(model, backend=backend, threads=threads)
    return SyntheticSegmentationExecutor(num_classes=num_classes, cost_ms_per_kpx=cost_ms_per_kpx)


def executor_factory(
    model: Optional[Union[str, Path]],
    *,
    threads: Optional[int] = None,
    num_classes: int = 8,
    cost_ms_per_kpx: float = 0.0,
) -> ExecutorFactory:
    """Bind everything but the backend kind so sessions can rebuild executors."""

    def _factory(backend: str) -> Executor:
        return build_executor(
            model,
            backend,
            threads=threads,
            num_classes=num_classes,
            cost_ms_per_kpx=cost_ms_per_kpx,
        )

    return _factory
