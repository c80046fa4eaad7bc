"""
nbody_lbvh.gpu
CuPy backend: compilation cache and launches of the pipeline kernels.

Every launch is queued on the current CuPy stream and returns immediately.
Stream order is the only barrier between stages, so a substep never blocks
the host.

Requirements
------------
- NVIDIA GPU with CUDA support
- CuPy: https://cupy.dev/
"""
from __future__ import annotations

import warnings

from .cuda_kernels import LBVH_PIPELINE_TEMPLATE, LBVH_KERNEL_NAMES

try:
    import cupy as cp
    CUPY_AVAILABLE = True
except ImportError:
    CUPY_AVAILABLE = False
    warnings.warn(
        "CuPy not available. GPU backend disabled. "
        "Install with: pip install cupy-cudaxxx",
        ImportWarning
    )

BLOCK_SIZE = 256

_TYPE_SPECS = {
    'float32': {'T': 'float', 'SQRT': 'sqrtf'},
    'float64': {'T': 'double', 'SQRT': 'sqrt'},
}

# Compiled modules, one per precision
_LBVH_MODULE_CACHE = {}


def gpu_available() -> bool:
    """True when CuPy is importable and sees at least one CUDA device."""
    if not CUPY_AVAILABLE:
        return False
    try:
        return cp.cuda.runtime.getDeviceCount() > 0
    except cp.cuda.runtime.CUDARuntimeError:
        return False


def _get_kernel(name: str, precision: str = 'float32'):
    """
    Get a compiled pipeline kernel.

    Parameters
    ----------
    name : str
        One of ``LBVH_KERNEL_NAMES``.
    precision : str
        Either 'float32' or 'float64'.

    Returns
    -------
    kernel : cp.RawKernel
    """
    if name not in LBVH_KERNEL_NAMES:
        raise ValueError(f"unknown kernel {name!r}")
    if precision not in _TYPE_SPECS:
        raise ValueError(f"precision must be 'float32' or 'float64', got {precision}")

    module = _LBVH_MODULE_CACHE.get(precision)
    if module is None:
        source = LBVH_PIPELINE_TEMPLATE.format(**_TYPE_SPECS[precision])

        # target the architecture of the current device
        cc = cp.cuda.Device().compute_capability
        options = ('-O3', f'-arch=sm_{cc}')

        module = cp.RawModule(code=source, options=options, backend='nvcc')
        _LBVH_MODULE_CACHE[precision] = module
    return module.get_function(name)


def _grid(n: int) -> tuple[int]:
    return ((n + BLOCK_SIZE - 1) // BLOCK_SIZE,)


def _precision_of(arr) -> str:
    return 'float64' if arr.dtype == cp.float64 else 'float32'


# ============================================================================
# STAGE LAUNCHES
# ============================================================================

def launch_morton(pos, meta, codes, indices) -> None:
    n = codes.shape[0]
    kernel = _get_kernel('morton_codes_kernel', _precision_of(pos))
    kernel(_grid(n), (BLOCK_SIZE,), (pos, meta, codes, indices, cp.int32(n)))


def launch_build(codes, indices, tree) -> None:
    n = tree.num_leaves
    if n < 2:
        tree.parent[0] = -1
        return
    kernel = _get_kernel('build_lbvh_kernel', _precision_of(tree.com))
    kernel(_grid(n - 1), (BLOCK_SIZE,),
           (codes, indices, tree.left, tree.right, tree.parent, cp.int32(n)))


def launch_fill(pos, mass, indices, tree) -> None:
    n = tree.num_leaves
    tree.ready.fill(0)
    kernel = _get_kernel('fill_lbvh_kernel', _precision_of(tree.com))
    kernel(_grid(n), (BLOCK_SIZE,),
           (pos, mass, indices, tree.left, tree.right, tree.parent, tree.ready,
            tree.com, tree.aabb_min, tree.aabb_max, tree.mass, tree.length,
            cp.int32(n)))


def launch_bh_accelerations(pos, indices, tree, meta, acc) -> None:
    n = tree.num_leaves
    kernel = _get_kernel('bh_accelerations_kernel', _precision_of(tree.com))
    kernel(_grid(n), (BLOCK_SIZE,),
           (pos, indices, tree.left, tree.right, tree.com, tree.mass,
            tree.length, meta, acc, cp.int32(n)))


def launch_leapfrog(pos, vel, acc, meta, n_bodies: int) -> None:
    kernel = _get_kernel('leapfrog_kernel', _precision_of(pos))
    kernel(_grid(n_bodies), (BLOCK_SIZE,), (pos, vel, acc, meta, cp.int32(n_bodies)))


def synchronize() -> None:
    """Block until all queued work on the current device has finished."""
    cp.cuda.Device().synchronize()


def get_gpu_info() -> dict:
    """
    Get information about the current GPU.

    Returns
    -------
    info : dict
        'available', and when available 'device_name', 'compute_capability',
        'memory_total', 'memory_free' (bytes).
    """
    if not CUPY_AVAILABLE:
        return {'available': False}

    try:
        device = cp.cuda.Device()
        mem_info = cp.cuda.runtime.memGetInfo()
        return {
            'available': True,
            'device_name': cp.cuda.runtime.getDeviceProperties(device.id)['name'].decode('utf-8'),
            'compute_capability': device.compute_capability,
            'memory_total': mem_info[1],
            'memory_free': mem_info[0],
        }
    except cp.cuda.runtime.CUDARuntimeError as e:
        return {'available': False, 'error': str(e)}
