"""
Quality tiers and startup configuration for live segmentation.

Configuration is a flat key-value mapping (usually a small JSON file) read
once at startup. Out-of-range values raise :class:`ConfigurationInvalid`
there; once the pipeline is running, adjustments go through
:func:`clamp_latency_ms` and friends and are clamped instead of rejected.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from ._types import Size

LOGGER = logging.getLogger(__name__)

CONFIG_ENV = "CHROMA_CONFIG"
LATENCY_LIMITS_MS = (1.0, 10_000.0)
# Range of the latency budget adjustable while running.
RUNTIME_LATENCY_RANGE_MS = (50.0, 500.0)
DECODE_MODES = ("vote", "argmax")


class ConfigurationInvalid(ValueError):
    """Raised at startup when a configuration value is out of range."""


@dataclass(frozen=True)
class QualityTier:
    tier_id: str
    input_size: Size
    run_interval: float
    frame_skip: int
    target_latency_ms: float
    max_latency_ms: float

    @property
    def label(self) -> str:
        return f"{self.tier_id} {self.input_size[0]}x{self.input_size[1]}"


# Ordered from "performance" (lowest resolution) to "quality".
DEFAULT_TIERS: Tuple[QualityTier, ...] = (
    QualityTier("ultra-fast", (128, 128), run_interval=0.5, frame_skip=4, target_latency_ms=60.0, max_latency_ms=100.0),
    QualityTier("fast", (192, 192), run_interval=0.3, frame_skip=2, target_latency_ms=90.0, max_latency_ms=150.0),
    QualityTier("balanced", (256, 256), run_interval=0.2, frame_skip=1, target_latency_ms=120.0, max_latency_ms=200.0),
    QualityTier("quality", (320, 320), run_interval=0.1, frame_skip=0, target_latency_ms=250.0, max_latency_ms=400.0),
)


@dataclass(frozen=True)
class Preset:
    name: str
    max_latency_ms: float
    auto_optimization: bool
    # None keeps the current tier, negative indexes count from the top.
    tier_index: Optional[int]


PRESETS: Dict[str, Preset] = {
    "ultra-fast": Preset("ultra-fast", 100.0, True, 0),
    "balanced": Preset("balanced", 200.0, True, None),
    "quality": Preset("quality", 400.0, False, -1),
}

_KEY_ALIASES: Dict[str, str] = {
    "initialTier": "initial_tier",
    "targetLatencyMs": "target_latency_ms",
    "maxLatencyMs": "max_latency_ms",
    "minDwellTimeMs": "min_dwell_time_ms",
    "windowSize": "window_size",
    "slowFrameThreshold": "slow_frame_threshold",
    "fastFrameThreshold": "fast_frame_threshold",
    "autoOptimization": "auto_optimization",
    "failurePenalty": "failure_penalty",
    "doubleTapWindowMs": "double_tap_window_ms",
    "thermalTightening": "thermal_tightening",
    "decodeMode": "decode_mode",
}


def _number(key: str, raw: object) -> float:
    if isinstance(raw, bool):
        raise ConfigurationInvalid(f"{key}: expected a number, got {raw!r}")
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        try:
            return float(raw.strip())
        except ValueError:
            pass
    raise ConfigurationInvalid(f"{key}: expected a number, got {raw!r}")


def _integer(key: str, raw: object) -> int:
    value = _number(key, raw)
    if value != int(value):
        raise ConfigurationInvalid(f"{key}: expected an integer, got {raw!r}")
    return int(value)


def _flag(key: str, raw: object) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)) and raw in (0, 1):
        return bool(raw)
    if isinstance(raw, str):
        token = raw.strip().lower()
        if token in {"1", "true", "yes", "on"}:
            return True
        if token in {"0", "false", "no", "off"}:
            return False
    raise ConfigurationInvalid(f"{key}: expected a boolean, got {raw!r}")


def _in_range(key: str, value: float, lo: float, hi: float) -> float:
    if not (lo <= value <= hi):
        raise ConfigurationInvalid(f"{key}: {value:g} outside [{lo:g}, {hi:g}]")
    return value


@dataclass
class OverlayConfig:
    initial_tier: int = 2
    target_latency_ms: Optional[float] = None
    max_latency_ms: Optional[float] = None
    min_dwell_time_ms: float = 2000.0
    window_size: int = 8
    slow_frame_threshold: int = 3
    fast_frame_threshold: int = 5
    auto_optimization: bool = True
    failure_penalty: int = 3
    double_tap_window_ms: float = 300.0
    thermal_tightening: float = 0.5
    decode_mode: str = "vote"
    tiers: Tuple[QualityTier, ...] = field(default=DEFAULT_TIERS, repr=False)

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        tiers: Sequence[QualityTier] = DEFAULT_TIERS,
    ) -> "OverlayConfig":
        """Validate a key-value mapping; raises :class:`ConfigurationInvalid`."""
        tier_table = tuple(tiers)
        if not tier_table:
            raise ConfigurationInvalid("at least one quality tier is required")
        values: Dict[str, Any] = {}
        known = set(_KEY_ALIASES.values())
        for raw_key, raw in data.items():
            key = _KEY_ALIASES.get(str(raw_key), str(raw_key))
            if key not in known:
                LOGGER.warning("config.unknown_key key=%s", raw_key)
                continue
            if raw is None:
                continue
            values[key] = raw

        cfg = cls(tiers=tier_table)
        if "initial_tier" in values:
            cfg.initial_tier = _resolve_tier_index(values["initial_tier"], tier_table)
        elif cfg.initial_tier >= len(tier_table):
            cfg.initial_tier = len(tier_table) - 1
        lo, hi = LATENCY_LIMITS_MS
        if "target_latency_ms" in values:
            cfg.target_latency_ms = _in_range("targetLatencyMs", _number("targetLatencyMs", values["target_latency_ms"]), lo, hi)
        if "max_latency_ms" in values:
            cfg.max_latency_ms = _in_range("maxLatencyMs", _number("maxLatencyMs", values["max_latency_ms"]), lo, hi)
        if (
            cfg.target_latency_ms is not None
            and cfg.max_latency_ms is not None
            and cfg.target_latency_ms > cfg.max_latency_ms
        ):
            raise ConfigurationInvalid(
                f"targetLatencyMs ({cfg.target_latency_ms:g}) exceeds maxLatencyMs ({cfg.max_latency_ms:g})"
            )
        if "min_dwell_time_ms" in values:
            cfg.min_dwell_time_ms = _in_range("minDwellTimeMs", _number("minDwellTimeMs", values["min_dwell_time_ms"]), 0.0, 600_000.0)
        if "window_size" in values:
            cfg.window_size = int(_in_range("windowSize", _integer("windowSize", values["window_size"]), 1, 120))
        if "slow_frame_threshold" in values:
            cfg.slow_frame_threshold = int(
                _in_range("slowFrameThreshold", _integer("slowFrameThreshold", values["slow_frame_threshold"]), 1, 1000)
            )
        if "fast_frame_threshold" in values:
            cfg.fast_frame_threshold = int(
                _in_range("fastFrameThreshold", _integer("fastFrameThreshold", values["fast_frame_threshold"]), 1, 1000)
            )
        if "auto_optimization" in values:
            cfg.auto_optimization = _flag("autoOptimization", values["auto_optimization"])
        if "failure_penalty" in values:
            cfg.failure_penalty = int(_in_range("failurePenalty", _integer("failurePenalty", values["failure_penalty"]), 1, 100))
        if "double_tap_window_ms" in values:
            cfg.double_tap_window_ms = _in_range(
                "doubleTapWindowMs", _number("doubleTapWindowMs", values["double_tap_window_ms"]), 0.0, 5000.0
            )
        if "thermal_tightening" in values:
            cfg.thermal_tightening = _in_range(
                "thermalTightening", _number("thermalTightening", values["thermal_tightening"]), 0.0, 0.9
            )
        if "decode_mode" in values:
            mode = str(values["decode_mode"]).strip().lower()
            if mode not in DECODE_MODES:
                raise ConfigurationInvalid(f"decodeMode: expected one of {DECODE_MODES}, got {values['decode_mode']!r}")
            cfg.decode_mode = mode
        return cfg

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("tiers", None)
        return data

    def resolved_tiers(self) -> Tuple[QualityTier, ...]:
        return tiers_for(self)


def _resolve_tier_index(raw: object, tiers: Sequence[QualityTier]) -> int:
    if isinstance(raw, str) and not raw.strip().lstrip("-").isdigit():
        token = raw.strip().lower()
        for idx, tier in enumerate(tiers):
            if tier.tier_id.lower() == token:
                return idx
        raise ConfigurationInvalid(
            f"initialTier: unknown tier {raw!r} (known: {', '.join(t.tier_id for t in tiers)})"
        )
    index = _integer("initialTier", raw)
    return int(_in_range("initialTier", index, 0, len(tiers) - 1))


def tiers_for(config: OverlayConfig) -> Tuple[QualityTier, ...]:
    """
    Apply the configured latency budget to every tier.

    When set, ``max_latency_ms`` / ``target_latency_ms`` replace the per-tier
    thresholds; the tiers keep their own resolution and timing.
    """
    out = []
    for tier in config.tiers:
        max_ms = config.max_latency_ms if config.max_latency_ms is not None else tier.max_latency_ms
        target_ms = config.target_latency_ms if config.target_latency_ms is not None else tier.target_latency_ms
        out.append(replace(tier, target_latency_ms=min(target_ms, max_ms), max_latency_ms=max_ms))
    return tuple(out)


def clamp_latency_ms(value: float) -> float:
    lo, hi = RUNTIME_LATENCY_RANGE_MS
    try:
        number = float(value)
    except (TypeError, ValueError):
        return hi
    if number != number:  # NaN
        return hi
    return max(lo, min(hi, number))


def load_config(
    path: Optional[Union[str, Path]] = None,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
) -> OverlayConfig:
    """
    Load configuration from a JSON object file.

    The path defaults to ``$CHROMA_CONFIG``; with neither set, defaults are
    used. ``overrides`` win over file values (CLI flags land here).
    """
    data: Dict[str, Any] = {}
    source = path if path is not None else os.getenv(CONFIG_ENV) or None
    if source is not None:
        cfg_path = Path(source).expanduser()
        try:
            text = cfg_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationInvalid(f"cannot read config {cfg_path}: {exc}") from exc
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationInvalid(f"config {cfg_path} is not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ConfigurationInvalid(f"config {cfg_path} must contain a JSON object")
        data.update({str(k): v for k, v in parsed.items()})
    if overrides:
        data.update({str(k): v for k, v in overrides.items() if v is not None})
    return OverlayConfig.from_mapping(data)
