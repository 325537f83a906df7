from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from chroma.live import cli
from chroma.logging_config import bind_context, get_log_path, setup_logging

runner = CliRunner()


@pytest.mark.parametrize(
    "value, expected",
    [("640x480", (640, 480)), (" 320 X 240 ", (320, 240)), ("800,600", (800, 600)), ("256", (256, 256)), (None, None), ("", None)],
)
def test_parse_display_size(value, expected) -> None:
    assert cli.parse_display_size(value) == expected


@pytest.mark.parametrize("value", ["0x480", "abc", "640x", "0"])
def test_parse_display_size_rejects_garbage(value) -> None:
    with pytest.raises(typer.BadParameter):
        cli.parse_display_size(value)


def test_source_tokens() -> None:
    assert cli._normalise_source_token("cam1") == 0
    assert cli._normalise_source_token("2") == 2
    assert cli._normalise_source_token("synthetic") == "synthetic"
    assert cli._normalise_source_token("clip.mp4") == "clip.mp4"


def test_prepend_argv_adds_default_command() -> None:
    assert cli._prepend_argv("run", ["0", "--headless"]) == ["run", "0", "--headless"]
    assert cli._prepend_argv("run", ["--headless"]) == ["run", "--headless"]
    assert cli._prepend_argv("run", ["tiers"]) == ["tiers"]
    assert cli._prepend_argv("run", ["--duration", "1", "run"]) == ["run", "--duration", "1", "run"]


def test_tiers_marks_initial_tier() -> None:
    result = runner.invoke(cli.app, ["tiers"])
    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert any(line.startswith(" 2*") and "balanced" in line for line in lines)
    assert "ultra-fast" in result.output and "quality" in result.output


def test_tiers_reads_config_file(tmp_path: Path) -> None:
    path = tmp_path / "overlay.json"
    path.write_text(json.dumps({"initialTier": "quality"}), encoding="utf-8")
    result = runner.invoke(cli.app, ["tiers", "--config", str(path)])
    assert result.exit_code == 0, result.output
    assert any(line.startswith(" 3*") for line in result.output.splitlines())


def test_invalid_config_exits_with_usage_code(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    result = runner.invoke(cli.app, ["tiers", "--config", str(path)])
    assert result.exit_code == 2


def test_unknown_backend_is_rejected() -> None:
    result = runner.invoke(cli.app, ["run", "--backend", "tpu", "--headless"])
    assert result.exit_code == 2


def test_unknown_preset_is_rejected() -> None:
    result = runner.invoke(cli.app, ["run", "--preset", "turbo", "--headless"])
    assert result.exit_code == 2


def test_headless_synthetic_run_reports_summary() -> None:
    result = runner.invoke(
        cli.app,
        ["run", "synthetic", "--headless", "--duration", "0.3", "--size", "160x120", "--classes", "4"],
    )
    assert result.exit_code == 0, result.output
    assert "frames=" in result.output
    assert "inferences=" in result.output


def test_missing_model_exits_with_error(tmp_path: Path) -> None:
    pytest.importorskip("onnxruntime")
    result = runner.invoke(cli.app, ["run", "--model", str(tmp_path / "absent.onnx"), "--headless"])
    assert result.exit_code == 1


def test_setup_logging_writes_context_fields(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "ctx.log"
    monkeypatch.setenv("CHROMA_LOG_FILE", str(target))
    monkeypatch.setenv("CHROMA_LOG_LEVEL", "info")
    assert setup_logging() == target
    assert get_log_path() == target
    log = logging.getLogger("chroma.test")
    with bind_context(source="cam0"):
        log.info("live.test.event value=1")
    log.info("live.test.after")
    for handler in logging.getLogger().handlers:
        handler.flush()
    text = target.read_text(encoding="utf-8")
    assert "live.test.event value=1 source=cam0" in text
    assert "live.test.after\n" in text
