from __future__ import annotations

import threading
from typing import Any, Iterator, List, Tuple, cast

import numpy as np

from chroma.live.config import OverlayConfig
from chroma.live.pipeline import LivePipeline
from chroma.live.session import PollStatus

from conftest import FakeClock, FakeExecutor, frame


class _ListSource:
    def __init__(self, frames: List[np.ndarray]) -> None:
        self._frames = frames
        self.released = False

    def frames(self) -> Iterator[Tuple[np.ndarray, float]]:
        for idx, f in enumerate(self._frames):
            yield f, float(idx)

    def release(self) -> None:
        self.released = True


def _pipeline(clock: FakeClock, executor: FakeExecutor, **kwargs: Any) -> LivePipeline:
    built: List[str] = []

    def factory(backend: str) -> FakeExecutor:
        built.append(backend)
        return executor

    pipeline = LivePipeline(
        source="synthetic",
        headless=True,
        config=kwargs.pop("config", OverlayConfig.from_mapping({"initialTier": "quality"})),
        executor_factory=factory,
        clock=clock,
        **kwargs,
    )
    cast(Any, pipeline).built_backends = built
    return pipeline


def _finish_inference(pipeline: LivePipeline) -> None:
    handle = cast(Any, pipeline)._handle
    assert handle is not None
    handle.future.result(timeout=5)


def test_frame_step_submits_then_composites_overlay(clock: FakeClock) -> None:
    executor = FakeExecutor()
    pipeline = _pipeline(clock, executor)
    try:
        img = frame()
        first = pipeline.process_frame(img, clock.now)
        assert pipeline.session.in_flight
        assert first.shape == img.shape
        _finish_inference(pipeline)

        clock.advance(0.05)
        second = pipeline.process_frame(img, clock.now)
        assert pipeline.session.latest_tensor is not None
        assert pipeline.session.completed == 1
        # an overlay is blended over the flat gray frame
        assert not np.array_equal(second[-1], img[-1])
        assert executor.calls == [(320, 320, 3)]
    finally:
        pipeline.close()


def test_only_one_inference_in_flight_across_frames(clock: FakeClock) -> None:
    release = threading.Event()
    executor = FakeExecutor(block=release)
    pipeline = _pipeline(clock, executor)
    try:
        for _ in range(20):
            clock.advance(0.5)
            pipeline.process_frame(frame(), clock.now)
        assert len(executor.calls) == 1
        assert pipeline.gate.stats["in-flight"] == 19
    finally:
        release.set()
        pipeline.close()


def test_tap_selects_class_under_pointer(clock: FakeClock) -> None:
    pipeline = _pipeline(clock, FakeExecutor())
    try:
        pipeline.process_frame(frame(), clock.now)
        _finish_inference(pipeline)
        clock.advance(0.05)
        pipeline.process_frame(frame(), clock.now)

        pipeline.handle_tap((5, 5))
        clock.advance(0.05)
        pipeline.process_frame(frame(), clock.now)
        assert pipeline.selection.selected_class == 1
        assert cast(Any, pipeline)._active_notice(clock.now) == "Selected: Class 1 (class 1)"
    finally:
        pipeline.close()


def test_keyboard_controls(clock: FakeClock) -> None:
    pipeline = _pipeline(clock, FakeExecutor())
    try:
        assert pipeline.handle_key(-1)
        assert pipeline.handle_key(ord("p"))
        assert pipeline.gate.paused
        assert pipeline.handle_key(ord("p"))
        assert not pipeline.gate.paused

        assert pipeline.handle_key(ord("1"))
        assert pipeline.controller.tier.tier_id == "ultra-fast"
        assert pipeline.handle_key(ord("3"))
        assert pipeline.controller.tier.tier_id == "quality"
        assert not pipeline.controller.auto_enabled

        assert pipeline.handle_key(ord("a"))
        assert pipeline.controller.auto_enabled

        pipeline.selection.select(2)
        assert pipeline.handle_key(ord("c"))
        assert pipeline.selection.selected_class is None

        assert pipeline.handle_key(ord("g"))
        assert pipeline.session.backend == "cpu"
        assert cast(Any, pipeline).built_backends == ["auto", "cpu"]

        assert not pipeline.handle_key(ord("q"))
    finally:
        pipeline.close()


def test_force_key_admits_next_frame(clock: FakeClock) -> None:
    pipeline = _pipeline(clock, FakeExecutor())
    try:
        pipeline.process_frame(frame(), clock.now)
        _finish_inference(pipeline)
        clock.advance(0.01)
        pipeline.process_frame(frame(), clock.now)  # polls, interval denies
        assert not pipeline.session.in_flight
        pipeline.handle_key(ord("f"))
        clock.advance(0.01)
        pipeline.process_frame(frame(), clock.now)
        assert pipeline.session.in_flight or pipeline.session.completed == 2
    finally:
        pipeline.close()


def test_failed_inference_keeps_previous_overlay(clock: FakeClock) -> None:
    executor = FakeExecutor()
    pipeline = _pipeline(clock, executor)
    try:
        pipeline.process_frame(frame(), clock.now)
        _finish_inference(pipeline)
        executor.error = RuntimeError("boom")
        clock.advance(0.2)
        pipeline.process_frame(frame(), clock.now)  # decodes, then submits a failing run
        overlay = cast(Any, pipeline)._overlay
        assert overlay is not None

        _finish_inference(pipeline)
        clock.advance(0.2)
        out = pipeline.process_frame(frame(), clock.now)
        assert pipeline.session.failed == 1
        assert cast(Any, pipeline)._overlay is overlay
        assert not np.array_equal(out[-1], frame()[-1])
    finally:
        pipeline.close()


def test_run_consumes_source_and_tears_down(clock: FakeClock) -> None:
    source = _ListSource([frame(value=v) for v in (0, 60, 120, 180)])
    executor = FakeExecutor()
    pipeline = _pipeline(clock, executor, frame_source=source)
    assert pipeline.run() is None
    assert pipeline.frames_done == 4
    assert source.released
    assert executor.closed
    assert pipeline.session.closed
    assert not pipeline.session.in_flight


def test_close_drains_pending_inference(clock: FakeClock) -> None:
    release = threading.Event()
    executor = FakeExecutor(block=release)
    pipeline = _pipeline(clock, executor)
    pipeline.process_frame(frame(), clock.now)
    handle = cast(Any, pipeline)._handle
    threading.Timer(0.05, release.set).start()
    pipeline.close()
    assert handle.future.done()
    assert executor.closed
    assert handle.result is None or handle.result.status is not PollStatus.READY
