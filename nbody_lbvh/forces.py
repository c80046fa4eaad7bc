"""
nbody_lbvh.forces

Barnes-Hut gravitational accelerations over a filled LBVH, plus an O(N^2)
direct-summation reference.

The traversal is iterative with a fixed-size explicit stack: a node whose
extent is small compared with its distance is taken as a single point mass at
its center of mass, otherwise its two children are visited. Leaves are always
point masses. With ``theta = 0`` no internal node is ever accepted and the sum
is exact.

Softened contribution of a node of mass m at separation r::

    a += G * m * r / (|r|^2 + eps^2)^(3/2)
"""
from __future__ import annotations

import math

import numpy as np
from numba import njit, prange

from .config import META_G, META_EPS, META_THETA, META_SIZE

# Deeper than any tree over 64-bit composite keys
STACK_SIZE = 128


# ============================================================================
# NUMBA KERNELS
# ============================================================================

@njit(parallel=True, cache=True)
def _bh_accelerations_cpu(pos, indices, left, right, com, node_mass, length, meta, acc):
    """
    Force stage: one lane per sorted rank, result scattered to ``acc[body]``.

    Parameters
    ----------
    pos : (N, 2) float
        Body positions, original order.
    indices : (N,) uint32
        Original body index of every sorted rank.
    left, right : (N-1,) int32
        Child links of the internal nodes.
    com, node_mass, length : node arrays of a filled tree
    meta : (8,) float
        Metadata buffer; G, epsilon and theta are read from it.
    acc : (N, 2) float
        Output accelerations.
    """
    n = indices.shape[0]
    n_internal = n - 1
    G = meta[META_G]
    eps2 = meta[META_EPS] * meta[META_EPS]
    theta2 = meta[META_THETA] * meta[META_THETA]

    for k in prange(n):
        b = indices[k]
        own_leaf = n_internal + k
        px = pos[b, 0]
        py = pos[b, 1]
        ax = 0.0
        ay = 0.0

        stack = np.empty(STACK_SIZE, dtype=np.int32)
        top = 0
        stack[top] = 0
        top += 1
        while top > 0:
            top -= 1
            node = stack[top]
            if node == own_leaf:
                continue

            dx = com[node, 0] - px
            dy = com[node, 1] - py
            d2 = dx * dx + dy * dy

            accept = node >= n_internal
            if not accept:
                s = length[node]
                if s * s < theta2 * d2:
                    accept = True
                elif top + 2 > STACK_SIZE:
                    # overflow only on corrupted topology
                    accept = True
                else:
                    stack[top] = left[node]
                    stack[top + 1] = right[node]
                    top += 2

            if accept:
                r2 = d2 + eps2
                if r2 > 0.0:
                    inv_r = 1.0 / math.sqrt(r2)
                    f = G * node_mass[node] * inv_r * inv_r * inv_r
                    ax += f * dx
                    ay += f * dy

        acc[b, 0] = ax
        acc[b, 1] = ay


@njit(parallel=True, cache=True)
def _direct_accelerations_cpu(pos, mass, G, eps):
    """Softened direct summation, skipping self-interaction."""
    N = pos.shape[0]
    acc = np.zeros((N, 2), dtype=pos.dtype)
    eps2 = eps * eps

    for i in prange(N):
        ax, ay = 0.0, 0.0
        xi, yi = pos[i, 0], pos[i, 1]

        for j in range(N):
            if i == j:
                continue
            dx = pos[j, 0] - xi
            dy = pos[j, 1] - yi
            r2 = dx * dx + dy * dy + eps2
            if r2 > 0.0:
                inv_r = 1.0 / math.sqrt(r2)
                f = G * mass[j] * inv_r * inv_r * inv_r
                ax += f * dx
                ay += f * dy

        acc[i, 0] = ax
        acc[i, 1] = ay

    return acc


# ============================================================================
# PUBLIC API
# ============================================================================

def bh_accelerations_cpu(pos, indices, tree, meta, acc) -> None:
    """Run the force stage for NumPy buffers of a filled *tree*."""
    _bh_accelerations_cpu(pos, indices, tree.left, tree.right, tree.com,
                          tree.mass, tree.length, meta, acc)


def compute_bh_accelerations(
    pos,
    mass,
    theta: float = 0.6,
    softening: float = 0.0,
    G: float = 1.0,
    window=None,
    precision: str = 'float64',
) -> np.ndarray:
    """
    Barnes-Hut accelerations of a set of bodies on the CPU.

    Parameters
    ----------
    pos : array_like, shape (N, 2)
        Body positions.
    mass : array_like, shape (N,) or scalar
        Body masses.
    theta : float
        Opening angle. 0 gives exact direct summation.
    softening : float
        Plummer softening length epsilon.
    G : float
        Gravitational constant.
    window : tuple (center, half_size) or None
        Morton quantization window; None fits the bounding box.
    precision : {'float32', 'float64'}

    Returns
    -------
    acc : np.ndarray, shape (N, 2)
        Accelerations in the original body order.
    """
    from .lbvh import build_lbvh

    if not (theta >= 0 and math.isfinite(theta)):
        raise ValueError(f"theta must be non-negative, got {theta}")
    if not softening >= 0:
        raise ValueError(f"softening must be non-negative, got {softening}")

    tree, indices, _ = build_lbvh(pos, mass, window=window, precision=precision)
    dtype = tree.com.dtype
    pos = np.ascontiguousarray(pos, dtype=dtype)

    meta = np.zeros(META_SIZE, dtype=dtype)
    meta[META_G] = G
    meta[META_EPS] = softening
    meta[META_THETA] = theta

    acc = np.zeros_like(pos)
    bh_accelerations_cpu(pos, indices, tree, meta, acc)
    return acc


def compute_direct_accelerations(pos, mass, softening: float = 0.0, G: float = 1.0) -> np.ndarray:
    """
    Exact O(N^2) accelerations, the reference for Barnes-Hut results.

    Parameters
    ----------
    pos : array_like, shape (N, 2)
    mass : array_like, shape (N,) or scalar
    softening : float
    G : float

    Returns
    -------
    acc : np.ndarray, shape (N, 2), float64
    """
    from .utils._validation import validate_positions, validate_masses

    pos = np.ascontiguousarray(validate_positions(pos), dtype=np.float64)
    mass = np.ascontiguousarray(validate_masses(mass, pos.shape[0]), dtype=np.float64)
    return _direct_accelerations_cpu(pos, mass, float(G), float(softening))
