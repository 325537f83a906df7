"""Logging setup for Chroma.

``setup_logging`` installs one file handler on the root logger. Records are
plain ``event key=value`` lines; ``bind_context`` adds scoped fields (the
live source, for instance) to every record emitted inside its block.
"""

from __future__ import annotations

import contextvars
import logging
import os
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

os.environ.setdefault("ORT_LOGGING_LEVEL", "3")

__all__ = [
    "bind_context",
    "current_run_dir",
    "get_log_path",
    "setup_logging",
]

_context: contextvars.ContextVar[Dict[str, str]] = contextvars.ContextVar("chroma_log_context", default={})
_handler: Optional[logging.Handler] = None
_log_path: Optional[Path] = None


class _ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        fields = _context.get()
        record.ctx = (" " + " ".join(f"{k}={v}" for k, v in sorted(fields.items()))) if fields else ""
        return True


def _data_dir() -> Path:
    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
        return (Path(base) if base else Path.home() / "AppData" / "Local") / "remalux"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "remalux"
    xdg_home = os.getenv("XDG_DATA_HOME")
    return (Path(xdg_home) if xdg_home else Path.home() / ".local" / "share") / "remalux"


def _target_path(file_env: str) -> Path:
    override = os.getenv(file_env)
    path = Path(override).expanduser() if override else _data_dir() / "logs" / "chroma.log"
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _level_from_env(level_env: str) -> int:
    level = logging.getLevelName(os.getenv(level_env, "WARNING").strip().upper())
    return level if isinstance(level, int) else logging.WARNING


def setup_logging(
    *,
    level_env: str = "CHROMA_LOG_LEVEL",
    file_env: str = "CHROMA_LOG_FILE",
) -> Path:
    """
    Attach the Chroma file handler to the root logger and return its path.

    ``CHROMA_LOG_FILE`` overrides the per-user default location and
    ``CHROMA_LOG_LEVEL`` the WARNING threshold. Calling it again replaces
    the handler from the previous call, leaving other handlers in place.
    """
    global _handler, _log_path

    level = _level_from_env(level_env)
    try:
        path = _target_path(file_env)
        handler: logging.Handler = logging.FileHandler(path, encoding="utf-8")
    except OSError:
        path = Path(tempfile.gettempdir()) / "chroma.log"
        handler = logging.FileHandler(path, encoding="utf-8")

    handler.setLevel(level)
    handler.addFilter(_ContextFilter())
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s%(ctx)s"))

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
        _handler.close()
    root.addHandler(handler)
    root.setLevel(level)
    _handler = handler
    _log_path = path

    # onnxruntime routes its own warnings through python logging on some builds.
    logging.getLogger("onnxruntime").setLevel(max(level, logging.ERROR))
    return path


@contextmanager
def bind_context(**fields: object) -> Iterator[None]:
    """Append ``key=value`` fields to records logged within the block."""
    merged = dict(_context.get())
    merged.update({k: str(v) for k, v in fields.items() if v is not None})
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


def current_run_dir() -> Optional[Path]:
    """Directory holding the active log file, if logging was set up."""
    return _log_path.parent if _log_path is not None else None


def get_log_path() -> Optional[Path]:
    return _log_path
