from __future__ import annotations

import random
from typing import List, Tuple

import pytest

from chroma.live.config import DEFAULT_TIERS, OverlayConfig, QualityTier
from chroma.live.controller import PerformanceFeedbackController

from conftest import FakeClock


def _controller(clock: FakeClock, **overrides: object) -> PerformanceFeedbackController:
    cfg = OverlayConfig.from_mapping(
        {"windowSize": 1, "slowFrameThreshold": 2, "fastFrameThreshold": 2, "minDwellTimeMs": 1000, **overrides}
    )
    return PerformanceFeedbackController(cfg, clock=clock)


def test_sustained_slow_samples_step_down_one_tier(clock: FakeClock) -> None:
    ctrl = _controller(clock)
    assert ctrl.tier_index == 2
    ctrl.record_latency(500.0)
    assert ctrl.tier_index == 2
    ctrl.record_latency(500.0)
    assert ctrl.tier_index == 1
    assert ctrl.tier.tier_id == "fast"


def test_sustained_fast_samples_step_up(clock: FakeClock) -> None:
    ctrl = _controller(clock)
    ctrl.record_latency(10.0)
    ctrl.record_latency(10.0)
    assert ctrl.tier_index == 3


def test_mixed_samples_reset_counters(clock: FakeClock) -> None:
    ctrl = _controller(clock)
    ctrl.record_latency(500.0)
    ctrl.record_latency(150.0)  # between target and max
    assert ctrl.state.consecutive_slow_count == 0
    ctrl.record_latency(500.0)
    assert ctrl.tier_index == 2


def test_dwell_time_blocks_back_to_back_changes(clock: FakeClock) -> None:
    ctrl = _controller(clock)
    ctrl.record_latency(500.0)
    ctrl.record_latency(500.0)
    assert ctrl.tier_index == 1
    changed_at = clock.now
    for _ in range(10):
        clock.advance(0.05)
        ctrl.record_latency(900.0)
    assert ctrl.tier_index == 1
    clock.now = changed_at + 1.0
    ctrl.record_latency(900.0)
    assert ctrl.tier_index == 0


def test_tier_index_never_leaves_bounds(clock: FakeClock) -> None:
    ctrl = _controller(clock, minDwellTimeMs=0)
    for _ in range(20):
        ctrl.record_latency(5000.0)
    assert ctrl.tier_index == 0
    assert ctrl.state.consecutive_slow_count <= 2
    for _ in range(20):
        ctrl.record_latency(1.0)
    assert ctrl.tier_index == len(DEFAULT_TIERS) - 1


def test_random_latencies_move_at_most_one_step_and_respect_dwell(clock: FakeClock) -> None:
    ctrl = _controller(clock, windowSize=3, minDwellTimeMs=400)
    changes: List[Tuple[float, int, int]] = []
    ctrl.add_listener(lambda old, new: changes.append((clock.now, DEFAULT_TIERS.index(old), DEFAULT_TIERS.index(new))))
    rng = random.Random(42)
    previous = ctrl.tier_index
    for _ in range(2000):
        clock.advance(rng.uniform(0.0, 0.2))
        ctrl.record_latency(rng.choice([5.0, 50.0, 150.0, 450.0, 2000.0]))
        assert abs(ctrl.tier_index - previous) <= 1
        assert 0 <= ctrl.tier_index < len(DEFAULT_TIERS)
        previous = ctrl.tier_index
    assert changes
    for (t0, _, _), (t1, _, _) in zip(changes, changes[1:]):
        assert (t1 - t0) * 1000.0 >= 400.0
    assert all(abs(new - old) == 1 for _, old, new in changes)


def test_failure_counts_as_severe_slow_evidence(clock: FakeClock) -> None:
    ctrl = _controller(clock, failurePenalty=3)
    ctrl.record_failure()
    assert ctrl.tier_index == 1
    samples = ctrl.samples()
    assert samples == []  # window cleared on transition


def test_failure_sample_exceeds_ceiling(clock: FakeClock) -> None:
    ctrl = _controller(clock, failurePenalty=1, slowFrameThreshold=5)
    ctrl.record_failure(elapsed_ms=12.0)
    (sample,) = ctrl.samples()
    assert sample.measured_ms >= ctrl.thresholds()[1] * 3


def test_auto_disabled_keeps_tier(clock: FakeClock) -> None:
    ctrl = _controller(clock)
    ctrl.set_auto(False)
    for _ in range(5):
        ctrl.record_latency(900.0)
    assert ctrl.tier_index == 2


def test_thermal_proxy_tightens_thresholds(clock: FakeClock) -> None:
    ctrl = _controller(clock)
    cool = ctrl.thresholds()
    ctrl.update_thermal(1.0)
    hot = ctrl.thresholds()
    assert hot[0] < cool[0] and hot[1] < cool[1]
    ctrl.update_thermal(float("nan"))
    assert ctrl.thermal_proxy == 1.0
    ctrl.update_thermal(7.0)
    assert ctrl.thermal_proxy == 1.0
    ctrl.update_thermal(-1.0)
    assert ctrl.thresholds() == cool


def test_hot_device_steps_down_on_borderline_latency(clock: FakeClock) -> None:
    ctrl = _controller(clock)
    ctrl.record_latency(180.0)
    ctrl.record_latency(180.0)
    assert ctrl.tier_index == 2
    ctrl.update_thermal(1.0)
    ctrl.record_latency(180.0)
    ctrl.record_latency(180.0)
    assert ctrl.tier_index == 1


def test_set_max_latency_is_clamped(clock: FakeClock) -> None:
    ctrl = _controller(clock)
    assert ctrl.set_max_latency(5.0) == 50.0
    assert ctrl.thresholds()[1] == 50.0
    assert ctrl.set_max_latency(10_000.0) == 500.0


def test_manual_tier_counts_as_transition(clock: FakeClock) -> None:
    ctrl = _controller(clock)
    seen: List[Tuple[QualityTier, QualityTier]] = []
    ctrl.add_listener(lambda old, new: seen.append((old, new)))
    ctrl.set_tier(99)
    assert ctrl.tier_index == len(DEFAULT_TIERS) - 1
    assert ctrl.state.last_transition_time == clock.now
    assert len(seen) == 1
    ctrl.record_latency(900.0)
    ctrl.record_latency(900.0)
    assert ctrl.tier_index == len(DEFAULT_TIERS) - 1


@pytest.mark.parametrize(
    "name, tier_index, auto, budget",
    [("ultra-fast", 0, True, 100.0), ("balanced", 2, True, 200.0), ("quality", 3, False, 400.0)],
)
def test_presets(clock: FakeClock, name: str, tier_index: int, auto: bool, budget: float) -> None:
    ctrl = _controller(clock)
    ctrl.apply_preset(name)
    assert ctrl.tier_index == tier_index
    assert ctrl.auto_enabled is auto
    assert ctrl.thresholds()[1] == budget


def test_unknown_preset(clock: FakeClock) -> None:
    with pytest.raises(KeyError):
        _controller(clock).apply_preset("turbo")


def test_listener_errors_do_not_break_controller(clock: FakeClock) -> None:
    ctrl = _controller(clock)

    def _boom(old: QualityTier, new: QualityTier) -> None:
        raise RuntimeError("listener failed")

    ctrl.add_listener(_boom)
    ctrl.record_latency(900.0)
    assert ctrl.record_latency(900.0).tier_id == "fast"


def test_published_tier_is_immutable_snapshot(clock: FakeClock) -> None:
    ctrl = _controller(clock)
    snapshot = ctrl.tier
    ctrl.record_latency(900.0)
    ctrl.record_latency(900.0)
    assert snapshot.tier_id == "balanced"
    with pytest.raises(AttributeError):
        snapshot.frame_skip = 9  # type: ignore[misc]
