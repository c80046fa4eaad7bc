"""
nbody_lbvh.morton

2-D Morton (Z-order) keys for the LBVH pipeline.

Each body position is quantized into a 16-bit integer per axis inside a
world-space window (center +/- half-size) and the two integers are
bit-interleaved into one 32-bit key, x in the even bits and y in the odd
bits. Sorting by this key places bodies that are close in space close in
the sorted order.

Bodies outside the window clamp to the boundary keys. This is an accepted
approximation, not an error: the tree stays valid, only its spatial
quality degrades for the clamped bodies.
"""
from __future__ import annotations

import math

import numpy as np
from numba import njit, prange

from .config import (
    META_CENTER_X, META_CENTER_Y, META_HALF_X, META_HALF_Y, META_SIZE,
)

MORTON_BITS = 16
MORTON_MAX = (1 << MORTON_BITS) - 1

# Auto-fit windows never collapse below this half-size and are padded so the
# extreme bodies do not all land on the saturated boundary key.
MIN_HALF_SIZE = 1e-6
WINDOW_PAD = 1e-3


# ============================================================================
# NUMBA KERNELS
# ============================================================================

@njit(cache=True, inline='always')
def _expand_bits(v):
    """Spread the low 16 bits of *v* so that a zero sits between each pair."""
    v &= 0x0000FFFF
    v = (v | (v << 8)) & 0x00FF00FF
    v = (v | (v << 4)) & 0x0F0F0F0F
    v = (v | (v << 2)) & 0x33333333
    v = (v | (v << 1)) & 0x55555555
    return v


@njit(cache=True, inline='always')
def _quantize(x, lo, inv_extent):
    u = (x - lo) * inv_extent
    # NaN fails the comparison too and clamps to 0
    if not (u > 0.0):
        return 0
    if u >= 1.0:
        return MORTON_MAX
    q = np.int64(u * (MORTON_MAX + 1))
    return q if q < MORTON_MAX else MORTON_MAX


@njit(parallel=True, cache=True)
def _morton_codes_cpu(pos, meta, codes, indices):
    """
    Morton stage: ``codes[i]`` from ``pos[i]`` and ``indices[i] = i``.

    The identity permutation written here is what the sorter consumes, so the
    composite (code, original index) order is re-established every substep.
    """
    n = pos.shape[0]
    half_x = meta[META_HALF_X]
    half_y = meta[META_HALF_Y]
    lo_x = meta[META_CENTER_X] - half_x
    lo_y = meta[META_CENTER_Y] - half_y
    # arithmetic stays in the metadata dtype, as in the CUDA kernel
    half = np.empty(1, meta.dtype)
    half[0] = 0.5
    inv_x = half[0] / half_x
    inv_y = half[0] / half_y

    for i in prange(n):
        qx = np.int64(_quantize(pos[i, 0], lo_x, inv_x))
        qy = np.int64(_quantize(pos[i, 1], lo_y, inv_y))
        codes[i] = (_expand_bits(qy) << 1) | _expand_bits(qx)
        indices[i] = i


# ============================================================================
# WINDOW HELPERS
# ============================================================================

def validate_window(center, half_size) -> tuple[tuple[float, float], tuple[float, float]]:
    """
    Check a quantization window and return it as two float pairs.

    Raises
    ------
    ValueError
        If any component is non-finite or a half-size is not positive.
    """
    center = tuple(float(c) for c in np.broadcast_to(np.asarray(center, dtype=float), (2,)))
    half_size = tuple(float(h) for h in np.broadcast_to(np.asarray(half_size, dtype=float), (2,)))
    if not all(math.isfinite(c) for c in center):
        raise ValueError(f"window center must be finite, got {center}")
    if not all(math.isfinite(h) and h > 0 for h in half_size):
        raise ValueError(f"window half-size must be positive and finite, got {half_size}")
    return center, half_size


def fit_window(pos, xp=np):
    """
    Bounding-box window of *pos* as ``(center, half_size)`` arrays.

    Works on NumPy and CuPy arrays alike; with CuPy the result stays on the
    device. Coincident bodies get ``MIN_HALF_SIZE`` instead of a zero extent.
    """
    lo = pos.min(axis=0)
    hi = pos.max(axis=0)
    center = 0.5 * (lo + hi)
    half = xp.maximum(0.5 * (hi - lo), MIN_HALF_SIZE) * (1.0 + WINDOW_PAD)
    return center, half


def interleave_bits(qx, qy):
    """Interleave two arrays of 16-bit integers into 32-bit Morton keys."""
    def expand(v):
        v = np.asarray(v, dtype=np.uint64) & np.uint64(0x0000FFFF)
        v = (v | (v << np.uint64(8))) & np.uint64(0x00FF00FF)
        v = (v | (v << np.uint64(4))) & np.uint64(0x0F0F0F0F)
        v = (v | (v << np.uint64(2))) & np.uint64(0x33333333)
        v = (v | (v << np.uint64(1))) & np.uint64(0x55555555)
        return v

    return ((expand(qy) << np.uint64(1)) | expand(qx)).astype(np.uint32)


# ============================================================================
# PUBLIC API
# ============================================================================

def compute_morton_codes(pos, window=None) -> np.ndarray:
    """
    Compute Morton keys for a set of 2-D positions on the CPU.

    Parameters
    ----------
    pos : array_like, shape (N, 2)
        Body positions.
    window : tuple (center, half_size) or None
        Quantization window. None fits it to the bounding box of *pos*.

    Returns
    -------
    codes : np.ndarray, shape (N,), uint32
        Morton keys in the original body order.
    """
    pos = np.ascontiguousarray(pos, dtype=np.float64)
    if pos.ndim != 2 or pos.shape[1] != 2:
        raise ValueError(f"pos must have shape (N, 2), got {pos.shape}")

    if window is None:
        center, half = fit_window(pos)
    else:
        center, half = validate_window(*window)

    meta = np.zeros(META_SIZE, dtype=np.float64)
    meta[META_CENTER_X:META_CENTER_Y + 1] = center
    meta[META_HALF_X:META_HALF_Y + 1] = half

    codes = np.empty(pos.shape[0], dtype=np.uint32)
    indices = np.empty(pos.shape[0], dtype=np.uint32)
    _morton_codes_cpu(pos, meta, codes, indices)
    return codes
