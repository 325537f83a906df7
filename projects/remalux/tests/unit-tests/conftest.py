# projects/remalux/tests/unit-tests/conftest.py
from __future__ import annotations

import threading
from typing import Callable, List, Optional

import numpy as np
import pytest

from chroma.live.config import QualityTier


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep logs in tmp and ignore any developer-level configuration."""
    monkeypatch.setenv("CHROMA_LOG_FILE", str(tmp_path / "logs" / "chroma.log"))
    monkeypatch.delenv("CHROMA_CONFIG", raising=False)
    monkeypatch.delenv("CHROMA_BACKEND", raising=False)
    monkeypatch.delenv("ORT_DISABLE_TENSORRT", raising=False)


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += float(seconds)
        return self.now


class FakeExecutor:
    """
    Executor stub returning a fixed score tensor.

    ``block`` holds ``run`` until the test sets the event, so an inference
    can be kept in flight deterministically.
    """

    def __init__(
        self,
        output: Optional[np.ndarray] = None,
        *,
        error: Optional[Exception] = None,
        block: Optional[threading.Event] = None,
        on_run: Optional[Callable[[], None]] = None,
    ) -> None:
        self.output = output
        self.error = error
        self.block = block
        self.on_run = on_run
        self.calls: List[tuple] = []
        self.closed = False

    def run(self, image_rgb: np.ndarray) -> np.ndarray:
        self.calls.append(tuple(image_rgb.shape))
        if self.on_run is not None:
            self.on_run()
        if self.block is not None:
            self.block.wait(5.0)
        if self.error is not None:
            raise self.error
        if self.output is not None:
            return self.output
        h, w = image_rgb.shape[:2]
        scores = np.zeros((1, h, w, 3), dtype=np.float32)
        scores[..., 1] = 1.0
        return scores

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def small_tier() -> QualityTier:
    return QualityTier("test", (8, 8), run_interval=0.5, frame_skip=0, target_latency_ms=50.0, max_latency_ms=100.0)


def frame(h: int = 24, w: int = 32, value: int = 128) -> np.ndarray:
    return np.full((h, w, 3), value, dtype=np.uint8)
