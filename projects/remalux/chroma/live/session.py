"""
Single-flight inference session.

``InferenceSession`` owns at most one outstanding executor call. Work runs on
a one-thread pool so the frame-delivery path never blocks; the caller polls
the returned handle once per frame. Completed runs report their wall-clock
latency to the controller, failed runs report a severe sample instead, and
the last good tensor stays available for decoding and tap lookups.
"""

from __future__ import annotations

from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
import itertools
import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, Optional, Set, Tuple

import numpy as np

from ._types import NDArrayU8, ScoreTensor
from .config import QualityTier
from .executors import Executor, ExecutorFactory, normalize_backend
from .preprocess import resize_rgb

if TYPE_CHECKING:  # pragma: no cover
    from .controller import PerformanceFeedbackController

LOGGER = logging.getLogger(__name__)


class ExecutorFailure(RuntimeError):
    """The executor raised or produced an output that is not a score tensor."""


class PollStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class PollResult:
    status: PollStatus
    tensor: Optional[ScoreTensor] = None
    reason: Optional[str] = None
    latency_ms: Optional[float] = None


@dataclass(frozen=True)
class _Outcome:
    output: Optional[object]
    error: Optional[BaseException]
    finished_at: float


@dataclass
class InferenceHandle:
    handle_id: int
    submitted_at: float
    tier: QualityTier
    future: "Future[_Outcome]" = field(repr=False)
    cancelled: bool = False
    result: Optional[PollResult] = None


_PENDING = PollResult(PollStatus.PENDING)


def coerce_scores(raw: object) -> ScoreTensor:
    """Validate executor output and return an owned ``(1, H, W, C)`` float32 array."""
    try:
        arr = np.asarray(raw)
    except Exception as exc:  # noqa: BLE001 - arbitrary executor objects
        raise ExecutorFailure(f"output is not array-like: {type(raw).__name__}") from exc
    if arr.dtype == object or not np.issubdtype(arr.dtype, np.number):
        raise ExecutorFailure(f"output dtype {arr.dtype} is not numeric")
    if arr.ndim == 3:
        arr = arr[None]
    if arr.ndim != 4 or arr.shape[0] != 1:
        raise ExecutorFailure(f"invalid output shape {tuple(arr.shape)}; expected (1, H, W, C)")
    return np.array(arr, dtype=np.float32, copy=True)


class InferenceSession:
    """
    Args:
        executor_factory: Builds an executor for a backend kind.
        backend: Initial acceleration backend kind.
        controller: Receives latency samples and failures.
        clock: Wall-clock source in seconds (``time.perf_counter`` by default).
    """

    def __init__(
        self,
        executor_factory: ExecutorFactory,
        *,
        backend: str = "auto",
        controller: Optional["PerformanceFeedbackController"] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._factory = executor_factory
        self._backend = normalize_backend(backend)
        self._executor: Executor = executor_factory(self._backend)
        self._controller = controller
        self._clock = clock
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="chroma-infer")
        self._lock = threading.RLock()
        self._pending: Optional[InferenceHandle] = None
        self._tensor: Optional[ScoreTensor] = None
        self._ids = itertools.count(1)
        self._closed = False
        self._reported_shapes: Set[Tuple[str, Tuple[int, ...]]] = set()
        self.completed = 0
        self.failed = 0
        self.last_latency_ms: Optional[float] = None
        self.last_error: Optional[str] = None

    # -------------------------------
    #  Inspection
    # -------------------------------
    @property
    def backend(self) -> str:
        return self._backend

    @property
    def executor(self) -> Executor:
        return self._executor

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._pending is not None

    @property
    def latest_tensor(self) -> Optional[ScoreTensor]:
        return self._tensor

    @property
    def closed(self) -> bool:
        return self._closed

    # -------------------------------
    #  Submit / poll
    # -------------------------------
    def submit(self, frame_bgr: NDArrayU8, tier: QualityTier) -> Optional[InferenceHandle]:
        """Start one inference; returns ``None`` while another is pending."""
        with self._lock:
            if self._closed:
                return None
            if self._pending is not None:
                LOGGER.debug("live.session.submit.rejected pending=%s", self._pending.handle_id)
                return None
            image = resize_rgb(frame_bgr, tier.input_size)
            executor = self._executor
            submitted_at = self._clock()
            future = self._pool.submit(self._run, executor, image)
            handle = InferenceHandle(next(self._ids), submitted_at, tier, future)
            self._pending = handle
            return handle

    def _run(self, executor: Executor, image: NDArrayU8) -> _Outcome:
        try:
            output = executor.run(image)
        except Exception as exc:  # noqa: BLE001 - surfaced as ExecutorFailure on poll
            return _Outcome(None, exc, self._clock())
        return _Outcome(output, None, self._clock())

    def poll(self, handle: InferenceHandle) -> PollResult:
        """Non-blocking completion check; resolves each handle exactly once."""
        if handle.result is not None:
            return handle.result
        if not handle.future.done():
            return _PENDING
        with self._lock:
            if handle.result is not None:
                return handle.result
            result = self._resolve(handle)
            handle.result = result
            if self._pending is handle:
                self._pending = None
        self._report(handle, result)
        return result

    def _resolve(self, handle: InferenceHandle) -> PollResult:
        try:
            outcome = handle.future.result(timeout=0)
        except CancelledError:
            return PollResult(PollStatus.FAILED, reason="cancelled")
        latency_ms = max(0.0, (outcome.finished_at - handle.submitted_at) * 1000.0)
        if handle.cancelled or self._closed:
            return PollResult(PollStatus.FAILED, reason="cancelled", latency_ms=latency_ms)
        if outcome.error is not None:
            reason = f"{type(outcome.error).__name__}: {outcome.error}"
            return PollResult(PollStatus.FAILED, reason=reason, latency_ms=latency_ms)
        try:
            tensor = coerce_scores(outcome.output)
        except ExecutorFailure as exc:
            return PollResult(PollStatus.FAILED, reason=str(exc), latency_ms=latency_ms)
        self._check_dimensions(handle.tier, tensor)
        tensor.setflags(write=False)
        # The previous tensor is dropped only now that the new one is complete.
        self._tensor = tensor
        return PollResult(PollStatus.READY, tensor=tensor, latency_ms=latency_ms)

    def _report(self, handle: InferenceHandle, result: PollResult) -> None:
        if result.reason == "cancelled":
            return
        self.last_latency_ms = result.latency_ms
        if result.status is PollStatus.READY:
            self.completed += 1
            if self._controller is not None and result.latency_ms is not None:
                self._controller.record_latency(result.latency_ms)
            return
        self.failed += 1
        self.last_error = result.reason
        LOGGER.warning(
            "live.session.failure handle=%s tier=%s reason=%s",
            handle.handle_id,
            handle.tier.tier_id,
            result.reason,
        )
        if self._controller is not None:
            self._controller.record_failure(result.latency_ms)

    def _check_dimensions(self, tier: QualityTier, tensor: ScoreTensor) -> None:
        h, w = int(tensor.shape[1]), int(tensor.shape[2])
        expected_w, expected_h = tier.input_size
        if (w, h) == (expected_w, expected_h):
            return
        key = (tier.tier_id, tuple(int(d) for d in tensor.shape))
        if key in self._reported_shapes:
            return
        self._reported_shapes.add(key)
        LOGGER.warning(
            "live.session.dimension_mismatch tier=%s expected=%sx%s actual=%sx%s classes=%s",
            tier.tier_id,
            expected_w,
            expected_h,
            w,
            h,
            tensor.shape[3],
        )

    # -------------------------------
    #  Reconfiguration / teardown
    # -------------------------------
    def drain(self, timeout: Optional[float] = None) -> Optional[PollResult]:
        """Wait for the pending inference (if any) and resolve it."""
        with self._lock:
            handle = self._pending
        if handle is None:
            return None
        try:
            handle.future.result(timeout=timeout)
        except FutureTimeout:
            return _PENDING
        except CancelledError:
            pass
        return self.poll(handle)

    def cancel(self) -> None:
        """Cancel the pending inference; a run already executing is discarded."""
        with self._lock:
            handle = self._pending
            if handle is None:
                return
            handle.cancelled = True
            if handle.future.cancel():
                handle.result = PollResult(PollStatus.FAILED, reason="cancelled")
                self._pending = None

    def set_acceleration_backend(self, kind: str, *, timeout: Optional[float] = 5.0) -> str:
        """
        Rebuild the executor for another acceleration backend.

        The pending inference is drained first; the old executor is closed
        only after the new one was created successfully.
        """
        backend = normalize_backend(kind)
        self.drain(timeout=timeout)
        with self._lock:
            if self._pending is not None:
                raise ExecutorFailure("cannot switch backend while an inference is still running")
            try:
                replacement = self._factory(backend)
            except Exception as exc:
                raise ExecutorFailure(f"backend {backend!r} unavailable: {exc}") from exc
            previous = self._executor
            self._executor = replacement
            self._backend = backend
        try:
            previous.close()
        except Exception:
            LOGGER.exception("live.session.executor_close_failed")
        LOGGER.info("live.session.backend backend=%s", backend)
        return backend

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel or drain the pending run, then release the executor."""
        if self._closed:
            return
        self.cancel()
        with self._lock:
            handle = self._pending
        if handle is not None:
            try:
                handle.future.result(timeout=timeout)
            except (FutureTimeout, CancelledError):
                LOGGER.warning("live.session.close.drain_timeout handle=%s", handle.handle_id)
        with self._lock:
            self._closed = True
            self._pending = None
        self._pool.shutdown(wait=True)
        try:
            self._executor.close()
        except Exception:
            LOGGER.exception("live.session.executor_close_failed")
        self._tensor = None
