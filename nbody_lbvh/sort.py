"""
nbody_lbvh.sort

Key sorter capability used between the Morton and LBVH stages.

The pipeline only needs one thing from a sorter: given a key array and a
value array of equal length, reorder both in place so the keys ascend,
without moving the data out of the memory space it lives in. Any correct
algorithm qualifies. A sorter is a plain callable::

    sorter(keys, values) -> None

Equal keys must come out ordered by value (the original body index) so that
the LBVH topology is deterministic. The default sorters guarantee this by
sorting on the composite 64-bit key ``(key << 32) | value``, which makes the
result independent of the underlying sort's stability.
"""
from __future__ import annotations

from typing import Callable

import numpy as np

Sorter = Callable[[object, object], None]


def _composite_order(keys, values, xp):
    composite = (keys.astype(xp.uint64) << xp.uint64(32)) | values.astype(xp.uint64)
    return xp.argsort(composite)


def sort_by_key_cpu(keys: np.ndarray, values: np.ndarray) -> None:
    """Sort NumPy *keys* ascending in place and permute *values* identically."""
    if keys.shape != values.shape:
        raise ValueError(f"keys and values must have the same shape, got {keys.shape} and {values.shape}")
    order = _composite_order(keys, values, np)
    keys[:] = keys[order]
    values[:] = values[order]


def sort_by_key_gpu(keys, values) -> None:
    """Device-resident counterpart of :func:`sort_by_key_cpu` for CuPy arrays."""
    import cupy as cp

    if keys.shape != values.shape:
        raise ValueError(f"keys and values must have the same shape, got {keys.shape} and {values.shape}")
    order = _composite_order(keys, values, cp)
    # take() into fresh buffers, then copy back: the arrays keep their identity
    keys[...] = cp.take(keys, order)
    values[...] = cp.take(values, order)


def default_sorter(on_gpu: bool) -> Sorter:
    """Return the built-in sorter for the given backend."""
    return sort_by_key_gpu if on_gpu else sort_by_key_cpu
