"""
nbody_lbvh.lbvh

Linear BVH: pointer-free binary radix tree over Morton-sorted bodies, and the
bottom-up aggregation of per-node mass, center of mass and bounding box.

Construction follows Karras, "Maximizing Parallelism in the Construction of
BVHs, Octrees, and k-d Trees" (HPG 2012): the children of every internal node
are a pure function of the sorted key array, so all N - 1 internal nodes are
built independently in parallel with no locks and no recursion.

Node numbering (shared by the CPU and GPU backends)
---------------------------------------------------
- internal nodes: ``0 .. N-2``, node ``0`` is the root
- leaves: ``N-1 .. 2N-2``, the leaf of sorted rank ``k`` is node ``N-1+k``
- a child index ``>= N-1`` is a leaf; the offset doubles as the leaf tag
- ``parent[root] == -1``; for ``N == 1`` the only leaf is node ``0``, the root

Keys that compare equal are disambiguated by the original body index, i.e. the
comparison runs on the 64-bit composite ``(morton_code, body_index)``.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
import math

import numpy as np
from numba import njit, prange

from .config import MAX_BODIES, META_SIZE, META_CENTER_X, META_HALF_X
from .morton import _morton_codes_cpu, fit_window, validate_window
from .sort import sort_by_key_cpu


# ============================================================================
# TREE STORAGE
# ============================================================================

@dataclass
class LBVHTree:
    """
    Flat struct-of-arrays storage for the 2N - 1 nodes of an LBVH.

    All arrays live in one memory space (NumPy or CuPy). ``left``, ``right``
    and ``ready`` are indexed by internal node; everything else by node.
    """

    num_leaves: int
    left: object        # (N-1,) int32
    right: object       # (N-1,) int32
    parent: object      # (2N-1,) int32
    ready: object       # (N-1,) uint32
    com: object         # (2N-1, 2) float
    aabb_min: object    # (2N-1, 2) float
    aabb_max: object    # (2N-1, 2) float
    mass: object        # (2N-1,) float
    length: object      # (2N-1,) float

    @property
    def num_internal(self) -> int:
        return self.num_leaves - 1

    @property
    def num_nodes(self) -> int:
        return 2 * self.num_leaves - 1

    def leaf_node(self, rank: int) -> int:
        """Node index of the leaf with sorted rank *rank*."""
        return self.num_internal + rank

    def is_leaf(self, node: int) -> bool:
        return node >= self.num_internal

    @property
    def nbytes(self) -> int:
        return sum(getattr(self, f.name).nbytes for f in fields(self) if f.name != 'num_leaves')


def tree_nbytes(n: int, dtype=np.float32) -> int:
    """Bytes needed by the node buffers of an *n*-leaf tree."""
    itemsize = np.dtype(dtype).itemsize
    num_nodes = 2 * n - 1
    num_internal = n - 1
    return num_nodes * (8 * itemsize + 4) + num_internal * 12


def allocate_tree(n: int, dtype=np.float32, xp=np) -> LBVHTree:
    """
    Allocate zeroed node buffers for *n* leaves.

    Raises
    ------
    ValueError
        If *n* is not in ``[1, MAX_BODIES]``.
    MemoryError
        If the buffers cannot be allocated.
    """
    if n < 1 or n > MAX_BODIES:
        raise ValueError(f"number of leaves must be in [1, {MAX_BODIES}], got {n}")
    num_nodes = 2 * n - 1
    num_internal = n - 1
    try:
        tree = LBVHTree(
            num_leaves=n,
            left=xp.zeros(num_internal, dtype=xp.int32),
            right=xp.zeros(num_internal, dtype=xp.int32),
            parent=xp.full(num_nodes, -1, dtype=xp.int32),
            ready=xp.zeros(num_internal, dtype=xp.uint32),
            com=xp.zeros((num_nodes, 2), dtype=dtype),
            aabb_min=xp.zeros((num_nodes, 2), dtype=dtype),
            aabb_max=xp.zeros((num_nodes, 2), dtype=dtype),
            mass=xp.zeros(num_nodes, dtype=dtype),
            length=xp.zeros(num_nodes, dtype=dtype),
        )
    except MemoryError as exc:
        raise MemoryError(
            f"cannot allocate LBVH for {n:,} bodies "
            f"({tree_nbytes(n, dtype) / 1e6:.1f} MB of node data)"
        ) from exc
    return tree


# ============================================================================
# NUMBA KERNELS - BUILD
# ============================================================================

@njit(cache=True, inline='always')
def _clz32(v):
    """Leading zeros of the low 32 bits of a non-negative int64."""
    if v == 0:
        return 32
    n = 0
    if (v & 0xFFFF0000) == 0:
        n += 16
        v <<= 16
    if (v & 0xFF000000) == 0:
        n += 8
        v <<= 8
    if (v & 0xF0000000) == 0:
        n += 4
        v <<= 4
    if (v & 0xC0000000) == 0:
        n += 2
        v <<= 2
    if (v & 0x80000000) == 0:
        n += 1
    return n


@njit(cache=True, inline='always')
def _delta(codes, indices, i, j, n):
    """Common-prefix length of the composite keys at ranks i and j, -1 out of range."""
    if j < 0 or j >= n:
        return -1
    ci = np.int64(codes[i])
    cj = np.int64(codes[j])
    if ci == cj:
        return 32 + _clz32(np.int64(indices[i]) ^ np.int64(indices[j]))
    return _clz32(ci ^ cj)


@njit(parallel=True, cache=True)
def _build_lbvh_cpu(codes, indices, left, right, parent):
    """
    Build stage: children and parent links of every internal node.

    ``codes`` and ``indices`` are the sorter's output. Each iteration touches
    only node ``i``'s own links and the parent slots of its two children,
    which no other internal node claims.
    """
    n = codes.shape[0]
    n_internal = n - 1
    parent[0] = -1

    for i in prange(n_internal):
        # direction of the range that starts at i
        if _delta(codes, indices, i, i + 1, n) > _delta(codes, indices, i, i - 1, n):
            d = 1
        else:
            d = -1
        delta_min = _delta(codes, indices, i, i - d, n)

        # upper bound for the range length, then binary search for the other end
        l_max = 2
        while _delta(codes, indices, i, i + l_max * d, n) > delta_min:
            l_max *= 2
        l = 0
        t = l_max // 2
        while t >= 1:
            if _delta(codes, indices, i, i + (l + t) * d, n) > delta_min:
                l += t
            t //= 2
        j = i + l * d

        # split position: last key sharing more than delta_node bits with key i
        delta_node = _delta(codes, indices, i, j, n)
        s = 0
        div = 2
        t = (l + div - 1) // div
        while True:
            if _delta(codes, indices, i, i + (s + t) * d, n) > delta_node:
                s += t
            if t <= 1:
                break
            div *= 2
            t = (l + div - 1) // div
        gamma = i + s * d + min(d, 0)

        if min(i, j) == gamma:
            lc = n_internal + gamma
        else:
            lc = gamma
        if max(i, j) == gamma + 1:
            rc = n_internal + gamma + 1
        else:
            rc = gamma + 1

        left[i] = lc
        right[i] = rc
        parent[lc] = i
        parent[rc] = i


# ============================================================================
# NUMBA KERNELS - FILL
# ============================================================================

@njit(cache=True, inline='always')
def _combine_children(node, left, right, com, aabb_min, aabb_max, node_mass, length):
    lc = left[node]
    rc = right[node]
    ml = node_mass[lc]
    mr = node_mass[rc]
    m = ml + mr
    if m != 0.0:
        cx = (ml * com[lc, 0] + mr * com[rc, 0]) / m
        cy = (ml * com[lc, 1] + mr * com[rc, 1]) / m
    else:
        cx = 0.5 * (com[lc, 0] + com[rc, 0])
        cy = 0.5 * (com[lc, 1] + com[rc, 1])

    min_x = min(aabb_min[lc, 0], aabb_min[rc, 0])
    min_y = min(aabb_min[lc, 1], aabb_min[rc, 1])
    max_x = max(aabb_max[lc, 0], aabb_max[rc, 0])
    max_y = max(aabb_max[lc, 1], aabb_max[rc, 1])

    com[node, 0] = cx
    com[node, 1] = cy
    aabb_min[node, 0] = min_x
    aabb_min[node, 1] = min_y
    aabb_max[node, 0] = max_x
    aabb_max[node, 1] = max_y
    node_mass[node] = m
    dx = max_x - min_x
    dy = max_y - min_y
    length[node] = math.sqrt(dx * dx + dy * dy)


@njit(cache=True)
def _fill_lbvh_cpu(pos, mass, indices, left, right, parent, ready,
                   com, aabb_min, aabb_max, node_mass, length):
    """
    Fill stage: aggregate leaves up to the root through the ready counters.

    One lane per leaf. A lane writes its leaf, then bumps the parent's counter;
    only the lane that arrives second (previous value 1) combines the two
    finished children and climbs further. The lanes run one after another on
    the CPU, which keeps each counter update atomic without hardware support.
    """
    n = indices.shape[0]
    n_internal = n - 1
    for k in range(n_internal):
        ready[k] = 0

    for k in range(n):
        node = n_internal + k
        b = indices[k]
        px = pos[b, 0]
        py = pos[b, 1]
        com[node, 0] = px
        com[node, 1] = py
        aabb_min[node, 0] = px
        aabb_min[node, 1] = py
        aabb_max[node, 0] = px
        aabb_max[node, 1] = py
        node_mass[node] = mass[b]
        length[node] = 0.0

        current = parent[node]
        while current >= 0:
            arrived = ready[current]
            ready[current] = arrived + 1
            if arrived == 0:
                # sibling subtree unfinished, its lane completes this node
                break
            _combine_children(current, left, right, com, aabb_min, aabb_max, node_mass, length)
            current = parent[current]


# ============================================================================
# PUBLIC API
# ============================================================================

def build_lbvh_cpu(codes, indices, tree: LBVHTree) -> None:
    """Run the build stage on sorted NumPy ``codes``/``indices`` into *tree*."""
    if tree.num_leaves > 1:
        _build_lbvh_cpu(codes, indices, tree.left, tree.right, tree.parent)
    else:
        tree.parent[0] = -1


def fill_lbvh_cpu(pos, mass, indices, tree: LBVHTree) -> None:
    """Run the fill stage for NumPy arrays into *tree*."""
    _fill_lbvh_cpu(pos, mass, indices, tree.left, tree.right, tree.parent, tree.ready,
                   tree.com, tree.aabb_min, tree.aabb_max, tree.mass, tree.length)


def build_lbvh(
    pos,
    mass,
    window=None,
    sorter=None,
    precision: str = 'float32',
) -> tuple[LBVHTree, np.ndarray, np.ndarray]:
    """
    Build and fill an LBVH for a set of bodies on the CPU.

    Runs the Morton, sort, build and fill stages exactly as one substep of
    the simulation does, for inspection and testing.

    Parameters
    ----------
    pos : array_like, shape (N, 2)
        Body positions.
    mass : array_like, shape (N,) or scalar
        Body masses.
    window : tuple (center, half_size) or None
        Morton quantization window; None fits the bounding box.
    sorter : callable or None
        ``sorter(keys, values)``; defaults to :func:`sort_by_key_cpu`.
    precision : {'float32', 'float64'}
        Float precision of the node buffers.

    Returns
    -------
    tree : LBVHTree
        Filled tree.
    body_indices : np.ndarray, shape (N,), uint32
        Original body index of every sorted rank.
    sorted_codes : np.ndarray, shape (N,), uint32
        Morton keys in sorted order.
    """
    from .utils._validation import validate_positions, validate_masses
    from .config import PRECISIONS

    if precision not in PRECISIONS:
        raise ValueError(f"precision must be one of {list(PRECISIONS)}, got {precision!r}")
    dtype = PRECISIONS[precision]
    pos = np.ascontiguousarray(validate_positions(pos), dtype=dtype)
    n = pos.shape[0]
    mass = np.ascontiguousarray(validate_masses(mass, n), dtype=dtype)

    meta = np.zeros(META_SIZE, dtype=dtype)
    if window is None:
        center, half = fit_window(pos)
    else:
        center, half = validate_window(*window)
    meta[META_CENTER_X:META_CENTER_X + 2] = center
    meta[META_HALF_X:META_HALF_X + 2] = half

    codes = np.empty(n, dtype=np.uint32)
    indices = np.empty(n, dtype=np.uint32)
    _morton_codes_cpu(pos, meta, codes, indices)
    (sorter or sort_by_key_cpu)(codes, indices)

    tree = allocate_tree(n, dtype=dtype)
    build_lbvh_cpu(codes, indices, tree)
    fill_lbvh_cpu(pos, mass, indices, tree)
    return tree, indices, codes


def check_tree_topology(tree: LBVHTree) -> None:
    """
    Verify the structural invariants of a built tree (host-side, O(N)).

    - every internal node has two distinct children and is their parent
    - every node except the root has exactly one parent; the root has none
    - every node is reachable from the root exactly once
    - every fill counter saw exactly two arrivals

    Raises
    ------
    ValueError
        Describing the first violated invariant.
    """
    def host(a):
        return a.get() if hasattr(a, 'get') else np.asarray(a)

    n = tree.num_leaves
    n_internal = n - 1
    left = host(tree.left).astype(np.int64)
    right = host(tree.right).astype(np.int64)
    parent = host(tree.parent).astype(np.int64)
    ready = host(tree.ready)

    if parent.shape[0] != 2 * n - 1 or left.shape[0] != n_internal or right.shape[0] != n_internal:
        raise ValueError("node buffers do not match the number of leaves")
    if parent[0] != -1:
        raise ValueError(f"root has parent {parent[0]}")
    if n == 1:
        return

    child_count = np.zeros(2 * n - 1, dtype=np.int64)
    for node in range(n_internal):
        lc, rc = left[node], right[node]
        if lc == rc:
            raise ValueError(f"internal node {node} has identical children {lc}")
        for c in (lc, rc):
            if not 0 < c < 2 * n - 1:
                raise ValueError(f"internal node {node} has out-of-range child {c}")
            if parent[c] != node:
                raise ValueError(f"node {c} has parent {parent[c]}, expected {node}")
            child_count[c] += 1
    if child_count[0] != 0 or np.any(child_count[1:] != 1):
        raise ValueError("some node is not the child of exactly one internal node")

    seen = np.zeros(2 * n - 1, dtype=bool)
    stack = [0]
    while stack:
        node = stack.pop()
        if seen[node]:
            raise ValueError(f"node {node} reached twice from the root")
        seen[node] = True
        if not tree.is_leaf(node):
            stack.append(int(left[node]))
            stack.append(int(right[node]))
    if not seen.all():
        raise ValueError(f"{int((~seen).sum())} nodes unreachable from the root")

    if np.any(ready != 2):
        raise ValueError("fill counters did not all reach 2")
