from __future__ import annotations

import random
from dataclasses import replace

from chroma.live.config import QualityTier
from chroma.live.gate import DENY_FRAME_SKIP, DENY_IN_FLIGHT, DENY_INTERVAL, DENY_PAUSED, FrameGate


def test_first_frame_is_admitted(small_tier: QualityTier) -> None:
    gate = FrameGate()
    assert gate.should_submit(0.0, small_tier, in_flight=False)
    assert gate.stats["admitted"] == 1
    assert gate.last_submit_time == 0.0


def test_in_flight_always_denies(small_tier: QualityTier) -> None:
    gate = FrameGate()
    gate.force_next()
    assert not gate.should_submit(10.0, small_tier, in_flight=True)
    assert gate.last_denial == DENY_IN_FLIGHT


def test_admissions_respect_run_interval(small_tier: QualityTier) -> None:
    gate = FrameGate()
    rng = random.Random(7)
    now = 0.0
    admitted = []
    for _ in range(500):
        now += rng.uniform(0.0, 0.12)
        if gate.should_submit(now, small_tier, in_flight=False):
            admitted.append(now)
    assert len(admitted) > 5
    gaps = [b - a for a, b in zip(admitted, admitted[1:])]
    assert min(gaps) >= small_tier.run_interval


def test_interval_denial_reason(small_tier: QualityTier) -> None:
    gate = FrameGate()
    assert gate.should_submit(1.0, small_tier, in_flight=False)
    assert not gate.should_submit(1.2, small_tier, in_flight=False)
    assert gate.last_denial == DENY_INTERVAL
    assert gate.should_submit(1.5, small_tier, in_flight=False)


def test_frame_skip_requires_more_frames_than_skip(small_tier: QualityTier) -> None:
    tier = replace(small_tier, frame_skip=2, run_interval=0.0)
    gate = FrameGate()
    results = [gate.should_submit(0.1 * i, tier, in_flight=False) for i in range(6)]
    assert results == [False, False, True, False, False, True]
    assert gate.stats[DENY_FRAME_SKIP] == 4


def test_pause_blocks_until_resumed(small_tier: QualityTier) -> None:
    gate = FrameGate()
    assert gate.toggle_pause() is True
    assert not gate.should_submit(5.0, small_tier, in_flight=False)
    assert gate.last_denial == DENY_PAUSED
    gate.resume()
    assert gate.should_submit(5.1, small_tier, in_flight=False)


def test_force_next_bypasses_interval_once(small_tier: QualityTier) -> None:
    gate = FrameGate()
    assert gate.should_submit(0.0, small_tier, in_flight=False)
    gate.force_next()
    assert gate.should_submit(0.01, small_tier, in_flight=False)
    assert not gate.should_submit(0.02, small_tier, in_flight=False)


def test_reset_clears_timing(small_tier: QualityTier) -> None:
    gate = FrameGate()
    gate.should_submit(0.0, small_tier, in_flight=False)
    gate.reset()
    assert gate.last_submit_time is None
    assert gate.should_submit(0.01, small_tier, in_flight=False)
