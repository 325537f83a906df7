"""
Live semantic-segmentation overlay.

Building blocks to:
  - read frames from a camera (or synthetic source),
  - admit frames for segmentation (FrameGate) and adapt quality to latency
    (PerformanceFeedbackController),
  - run one asynchronous inference at a time (InferenceSession),
  - decode class scores into a styled RGBA overlay (OverlayDecoder) and
    resolve taps into a selected class,
  - draw overlay / HUD and send frames to one or more sinks.

The CLI entrypoint lives in chroma.live.cli.
"""

from __future__ import annotations

from .camera import FrameSource, open_camera, synthetic_source
from .colors import ClassColorTable
from .config import ConfigurationInvalid, OverlayConfig, QualityTier, load_config
from .controller import PerformanceFeedbackController
from .decoder import DimensionMismatch, OverlayDecoder
from .gate import FrameGate
from .overlay import blend_rgba_onto_bgr, hud
from .pipeline import LivePipeline
from .selection import SelectedClass, SelectionState
from .session import ExecutorFailure, InferenceSession, PollResult, PollStatus
from .sinks import DisplaySink, MultiSink, VideoSink

__all__ = [
    "ClassColorTable",
    "ConfigurationInvalid",
    "DimensionMismatch",
    "DisplaySink",
    "ExecutorFailure",
    "FrameGate",
    "FrameSource",
    "InferenceSession",
    "LivePipeline",
    "MultiSink",
    "OverlayConfig",
    "OverlayDecoder",
    "PerformanceFeedbackController",
    "PollResult",
    "PollStatus",
    "QualityTier",
    "SelectedClass",
    "SelectionState",
    "VideoSink",
    "blend_rgba_onto_bgr",
    "hud",
    "load_config",
    "open_camera",
    "synthetic_source",
]
