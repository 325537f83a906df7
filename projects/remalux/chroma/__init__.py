"""
Chroma: live semantic-segmentation overlays.

The package root stays import-light; OpenCV and onnxruntime are only pulled
in by ``chroma.live`` modules that need them.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version as _pkg_version

__all__ = ["__version__"]

try:
    __version__ = _pkg_version("remalux")
except PackageNotFoundError:  # running from a source checkout
    __version__ = "0+unknown"
