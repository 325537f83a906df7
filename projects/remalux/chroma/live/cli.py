# chroma.live.cli: live segmentation overlay entrypoint ("chroma")
from __future__ import annotations

import logging
import os
import re
import sys
from typing import List, Optional, Tuple, Union

import typer

from chroma import __version__
from chroma.logging_config import bind_context, setup_logging

from .config import PRESETS, ConfigurationInvalid, OverlayConfig, load_config
from .executors import BACKEND_KINDS, normalize_backend
from .pipeline import LivePipeline

LOGGER = logging.getLogger(__name__)

os.environ.setdefault("OPENCV_VIDEOIO_ENABLE_OBSENSOR", "0")  # silence obsensor backend noise

app = typer.Typer(add_completion=False, help="Real-time semantic segmentation overlay.")

_COMMANDS = {"run", "tiers"}
_SIZE_RE = re.compile(r"^\s*(\d+)\s*[xX,]\s*(\d+)\s*$")


def parse_display_size(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """Parse ``WxH`` (or a single side for a square) into ``(w, h)``."""
    if value is None or not value.strip():
        return None
    token = value.strip()
    if token.isdigit():
        side = int(token)
        if side <= 0:
            raise typer.BadParameter("--size must be positive")
        return side, side
    match = _SIZE_RE.match(token)
    if not match:
        raise typer.BadParameter(f"--size expects WxH (e.g. 640x480), got {value!r}")
    w, h = int(match.group(1)), int(match.group(2))
    if w <= 0 or h <= 0:
        raise typer.BadParameter("--size must be positive")
    return w, h


def _normalise_source_token(token: str) -> Union[int, str]:
    stripped = token.strip()
    low = stripped.lower()
    if low.startswith("synthetic"):
        return stripped
    for prefix in ("cam", "camera", "webcam"):
        if low.startswith(prefix):
            suffix = stripped[len(prefix):].strip()
            if suffix.lstrip("+-").isdigit():
                return max(0, int(suffix) - 1)
    if stripped.lstrip("+-").isdigit():
        return max(0, int(stripped))
    return stripped


def _load(config: Optional[str]) -> OverlayConfig:
    try:
        return load_config(config)
    except ConfigurationInvalid as exc:
        typer.secho(f"Invalid configuration: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=2) from exc


@app.command()
def run(
    source: str = typer.Argument("synthetic", help="Camera index (0), camN, video path/URL, or 'synthetic'."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="ONNX segmentation model; omit for the synthetic no-ML executor."),
    backend: str = typer.Option(
        "auto",
        "--backend",
        envvar="CHROMA_BACKEND",
        help=f"Acceleration backend ({'/'.join(BACKEND_KINDS)}).",
    ),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="JSON configuration file (default: $CHROMA_CONFIG)."),
    preset: Optional[str] = typer.Option(None, "--preset", help=f"Start with a preset ({'/'.join(PRESETS)})."),
    size: Optional[str] = typer.Option(None, "--size", help="Capture size hint WxH."),
    duration: Optional[float] = typer.Option(None, "--duration", help="Seconds to run; default until quit."),
    headless: bool = typer.Option(False, "--headless", help="Disable preview window."),
    save: Optional[str] = typer.Option(None, "--save", "-o", help="Optional MP4 output path."),
    fps: Optional[int] = typer.Option(None, "--fps", help="Target FPS for capture/writer (default 30)."),
    classes: int = typer.Option(8, "--classes", help="Class count of the synthetic executor."),
    ort_threads: Optional[int] = typer.Option(None, "--ort-threads", help="ONNX Runtime intra-op threads."),
) -> None:
    """Run the live overlay. Keys: p pause, f force, 1/2/3 presets, a auto, c clear, g backend, q quit."""
    setup_logging()
    try:
        backend_norm = normalize_backend(backend)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--backend") from exc
    if preset is not None and preset.strip().lower() not in PRESETS:
        raise typer.BadParameter(f"unknown preset {preset!r} (known: {', '.join(PRESETS)})", param_hint="--preset")
    cfg = _load(config)
    src = _normalise_source_token(source)

    with bind_context(source=str(src)):
        LOGGER.info(
            "live.cli.start version=%s source=%s model=%s backend=%s", __version__, src, model or "synthetic", backend_norm
        )
    try:
        pipeline = LivePipeline(
            source=src,
            model=model,
            backend=backend_norm,
            config=cfg,
            preset=preset.strip().lower() if preset else None,
            size=parse_display_size(size),
            fps=fps,
            headless=headless,
            duration=duration,
            out_path=save,
            num_classes=classes,
            ort_threads=ort_threads,
        )
    except FileNotFoundError as exc:
        typer.secho(str(exc), err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    try:
        saved = pipeline.run()
    except RuntimeError as exc:
        LOGGER.error("live.cli.failed error=%s", exc)
        typer.secho(f"Live session failed: {exc}", err=True, fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc
    if saved:
        typer.echo(saved)
    gate = pipeline.gate.stats
    typer.echo(
        f"frames={pipeline.frames_done} inferences={pipeline.session.completed} "
        f"failures={pipeline.session.failed} admitted={gate['admitted']} tier={pipeline.controller.tier.tier_id}"
    )


@app.command()
def tiers(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="JSON configuration file (default: $CHROMA_CONFIG)."),
) -> None:
    """Print the resolved quality tier table."""
    cfg = _load(config)
    typer.echo(f"{'#':>2}  {'tier':<11} {'input':>9} {'interval':>9} {'skip':>5} {'target':>8} {'max':>8}")
    for idx, tier in enumerate(cfg.resolved_tiers()):
        marker = "*" if idx == cfg.initial_tier else " "
        typer.echo(
            f"{idx:>2}{marker} {tier.tier_id:<11} {tier.input_size[0]:>4}x{tier.input_size[1]:<4}"
            f" {tier.run_interval:>8.2f}s {tier.frame_skip:>5} {tier.target_latency_ms:>6.0f}ms {tier.max_latency_ms:>6.0f}ms"
        )


def _prepend_argv(token: str, argv: List[str]) -> List[str]:
    for a in argv:
        if a.startswith("-"):
            continue
        if a in _COMMANDS:
            return argv
        break
    return [token] + argv


def main() -> None:  # pragma: no cover
    try:
        # "chroma 0 --model m.onnx" works without typing "run".
        argv = sys.argv[1:]
        if not any(a in {"-h", "--help"} for a in argv):
            sys.argv = sys.argv[:1] + _prepend_argv("run", argv)
        app()
    except KeyboardInterrupt:
        raise SystemExit(0)


if __name__ == "__main__":  # pragma: no cover
    main()
