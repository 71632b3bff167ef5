# polymidi/pipeline/kernels.py
"""Array primitives used by the note decoder and the pitch-bend estimator.

Every function here is pure: inputs are never modified.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import scipy.signal

from .errors import ArithmeticDegeneracyError, ConfigError, ShapeError

logger = logging.getLogger(__name__)


def _as_matrix(matrix: np.ndarray, name: str = "matrix") -> np.ndarray:
    arr = np.asarray(matrix)
    if arr.ndim != 2:
        raise ShapeError(f"{name} must be 2-D (n_times, n_freqs), got shape {arr.shape}")
    return arr


def arg_max(row: Sequence[float]) -> Optional[int]:
    """Index of the highest value; ties go to the first index. None when empty."""
    arr = np.asarray(row)
    if arr.size == 0:
        return None
    return int(np.argmax(arr))


def arg_max_rows(matrix: np.ndarray) -> np.ndarray:
    """Per-row ``arg_max`` (first index wins)."""
    arr = _as_matrix(matrix)
    if arr.shape[1] == 0:
        raise ShapeError("cannot take arg_max over rows with zero columns")
    return np.argmax(arr, axis=1)


def local_maxima_mask(matrix: np.ndarray, order: int) -> np.ndarray:
    """
    Boolean mask of cells strictly greater than every cell within ``order``
    rows above and below in the same column.

    Windows are clipped at the edges: a cell in the first row is only
    compared with the rows that exist below it.
    """
    arr = _as_matrix(matrix)
    if order < 1:
        raise ConfigError(f"order must be >= 1, got {order}")

    mask = np.ones(arr.shape, dtype=bool)
    for shift in range(1, order + 1):
        if shift >= arr.shape[0]:
            break
        mask[:-shift] &= arr[:-shift] > arr[shift:]
        mask[shift:] &= arr[shift:] > arr[:-shift]
    return mask


def local_maxima(matrix: np.ndarray, order: int) -> Tuple[np.ndarray, np.ndarray]:
    """(row_indices, col_indices) of ``local_maxima_mask``, row-major."""
    return np.nonzero(local_maxima_mask(matrix, order))


def where_greater_than(matrix: np.ndarray, threshold: float) -> Tuple[np.ndarray, np.ndarray]:
    """(row_indices, col_indices) of cells above ``threshold`` in row-major scan order."""
    arr = _as_matrix(matrix)
    return np.nonzero(arr > threshold)


def mean_std(matrix: np.ndarray) -> Tuple[float, float]:
    """Population mean and Bessel-corrected (n - 1) standard deviation."""
    arr = np.asarray(matrix, dtype=np.float64)
    if arr.size < 2:
        raise ArithmeticDegeneracyError(
            f"standard deviation needs at least two values, got {arr.size}"
        )
    return float(np.mean(arr)), float(np.std(arr, ddof=1))


def global_max(matrix: np.ndarray) -> float:
    arr = np.asarray(matrix)
    if arr.size == 0:
        return 0.0
    return float(np.max(arr))


def _stack(matrices: Sequence[np.ndarray]) -> np.ndarray:
    if len(matrices) == 0:
        raise ShapeError("need at least one matrix to reduce")
    shapes = {np.shape(m) for m in matrices}
    if len(shapes) != 1:
        raise ShapeError(f"matrices must share one shape, got {sorted(shapes)}")
    return np.stack([np.asarray(m) for m in matrices], axis=0)


def elementwise_min_across(matrices: Sequence[np.ndarray]) -> np.ndarray:
    return np.min(_stack(matrices), axis=0)


def elementwise_max_across(matrices: Sequence[np.ndarray]) -> np.ndarray:
    return np.max(_stack(matrices), axis=0)


def rescale_to_max(matrix: np.ndarray, target_max: float) -> np.ndarray:
    """
    Scale ``matrix`` so its maximum equals ``target_max``.

    A matrix whose maximum is not positive cannot be rescaled; it is
    returned as zeros rather than divided by zero.
    """
    arr = np.asarray(matrix, dtype=np.float64)
    current_max = global_max(arr)
    if current_max <= 0.0:
        logger.warning("rescale_to_max: maximum is %.3g, returning zeros", current_max)
        return np.zeros_like(arr)
    return arr * (float(target_max) / current_max)


def gaussian_window(length: int, sigma: float) -> np.ndarray:
    """
    Symmetric Gaussian window ``exp(-0.5 * ((n - (length - 1) / 2) / sigma) ** 2)``.

    The center tap of an odd-length window is exactly 1.0; length 0 gives
    an empty window.
    """
    if length < 0:
        raise ConfigError(f"window length must be >= 0, got {length}")
    if sigma <= 0:
        raise ConfigError(f"gaussian sigma must be > 0, got {sigma}")
    return scipy.signal.windows.gaussian(int(length), std=float(sigma), sym=True)
