"""
chroma.live._types

Type aliases for live mode so pyright/mypy see precise shapes for frames,
score tensors and overlay buffers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Tuple

if TYPE_CHECKING:
    import numpy as np
    import numpy.typing as npt

    NDArrayU8 = npt.NDArray[np.uint8]
    NDArrayF32 = npt.NDArray[np.float32]
    NDArrayI64 = npt.NDArray[np.int64]

    # (1, height, width, num_classes) class scores
    ScoreTensor = npt.NDArray[np.floating[Any]]
    # (height, width, 4) RGBA overlay
    PixelBuffer = npt.NDArray[np.uint8]
else:
    NDArrayU8 = Any
    NDArrayF32 = Any
    NDArrayI64 = Any
    ScoreTensor = Any
    PixelBuffer = Any

RGB = Tuple[int, int, int]
Size = Tuple[int, int]
