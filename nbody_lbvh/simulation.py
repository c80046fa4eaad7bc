"""
nbody_lbvh.simulation

Simulation context: owns every buffer of the pipeline and runs it.

One substep executes six stages in order:

1. Morton keys of all bodies inside the quantization window
2. key sort (any ``sorter(keys, values)`` callable)
3. LBVH build, one lane per internal node
4. bottom-up fill through per-node ready counters
5. Barnes-Hut accelerations, one lane per body
6. leapfrog update of positions and velocities

On the ``gpu`` backend the stages are CuPy kernel launches queued on the
current stream and ``advance()`` never waits for the device. On the ``cpu``
backend they are Numba calls over NumPy arrays.

Examples
--------
>>> from nbody_lbvh import Simulation, default_config
>>> sim = Simulation(default_config(substeps=2), backend='cpu')
>>> sim.set_scenario('default', 10_000, seed=0)
>>> pos = sim.advance()        # (N, 2) read-only view
"""
from __future__ import annotations

import dataclasses

import numpy as np

from .config import (
    SimConfig, build_metadata,
    META_EPS, META_CENTER_X, META_CENTER_Y, META_HALF_X, META_HALF_Y,
)
from .forces import bh_accelerations_cpu
from .integrator import leapfrog_cpu
from .lbvh import LBVHTree, allocate_tree, build_lbvh_cpu, fill_lbvh_cpu, tree_nbytes
from .morton import _morton_codes_cpu, fit_window
from .scenarios import make_scenario
from .sort import Sorter, default_sorter
from . import gpu as _gpu
from .utils._logging import get_logger
from .utils._validation import (
    validate_num_bodies, validate_positions, validate_masses, validate_velocities,
)

BACKENDS = ('auto', 'gpu', 'cpu')

# Body buffers first, then the per-node tree buffers
_BODY_BUFFERS = ('mass', 'position', 'velocity', 'acceleration',
                 'morton_codes', 'body_indices', 'metadata')
_TREE_BUFFERS = {
    'left': 'left',
    'right': 'right',
    'parent': 'parent',
    'ready': 'ready',
    'node_com': 'com',
    'node_mass': 'mass',
    'aabb_min': 'aabb_min',
    'aabb_max': 'aabb_max',
    'node_length': 'length',
}
BUFFER_NAMES = _BODY_BUFFERS + tuple(_TREE_BUFFERS)


def _resolve_backend(backend: str) -> str:
    if backend not in BACKENDS:
        raise ValueError(f"backend must be one of {BACKENDS}, got {backend!r}")
    if backend == 'gpu':
        if not _gpu.CUPY_AVAILABLE:
            raise ImportError("backend='gpu' requires CuPy (pip install cupy-cudaxxx)")
        return 'gpu'
    if backend == 'auto':
        return 'gpu' if _gpu.gpu_available() else 'cpu'
    return 'cpu'


class Simulation:
    """
    2-D Barnes-Hut N-body simulation over a linear BVH.

    Parameters
    ----------
    config : SimConfig or None
        Physics and windowing parameters; None uses ``SimConfig()``.
    num_bodies : int
        Initial body count. 0 defers allocation to ``set_num_bodies`` or the
        first ``seed_bodies`` call.
    backend : {'auto', 'gpu', 'cpu'}
        'auto' picks the GPU when CuPy sees a device.
    sorter : callable or None
        ``sorter(keys, values)`` sorting both arrays in place in their own
        memory space. None uses the built-in sorter of the backend.
    verbose : bool
        Log allocation, seeding and resize events at INFO level.

    Raises
    ------
    ValueError
        On an unknown backend or an invalid body count.
    ImportError
        If ``backend='gpu'`` and CuPy is missing.
    """

    def __init__(
        self,
        config: SimConfig | None = None,
        num_bodies: int = 0,
        backend: str = 'auto',
        sorter: Sorter | None = None,
        verbose: bool = False,
    ):
        self.config = config if config is not None else SimConfig()
        self.backend = _resolve_backend(backend)
        self.logger = get_logger(__name__, verbose)
        self._xp = _gpu.cp if self.backend == 'gpu' else np
        self._sorter = sorter if sorter is not None else default_sorter(self.backend == 'gpu')

        self._num_bodies = 0
        self._buffers: dict = {}
        self._tree: LBVHTree | None = None
        self._seeded = False
        self._closed = False
        self._user_position = (0.0, 0.0)
        self._user_mass = 0.0
        self.substeps_done = 0

        self.logger.info("Simulation backend: %s (%s)", self.backend, self.config.precision)
        if num_bodies:
            self.set_num_bodies(num_bodies)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def num_bodies(self) -> int:
        return self._num_bodies

    @property
    def num_slots(self) -> int:
        """Bodies in the tree, including the phantom user body."""
        if self._num_bodies == 0:
            return 0
        return self._num_bodies + (1 if self.config.user_body else 0)

    @property
    def seeded(self) -> bool:
        return self._seeded

    @property
    def xp(self):
        """Array module of the buffers (``numpy`` or ``cupy``)."""
        return self._xp

    @property
    def tree(self) -> LBVHTree | None:
        """The LBVH of the last substep (allocated but empty before the first)."""
        return self._tree

    @property
    def positions(self):
        """
        Positions of the real bodies, shape ``(N, 2)``.

        A read-only NumPy view on the cpu backend, a CuPy view of the device
        buffer on the gpu backend (no copy, no synchronisation).
        """
        self._check_open()
        if not self._buffers:
            return self._xp.empty((0, 2), dtype=self.config.dtype)
        view = self._buffers['position'][:self._num_bodies]
        if self._xp is np:
            view = view.view()
            view.flags.writeable = False
        return view

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _check_open(self):
        if self._closed:
            raise RuntimeError("simulation has been closed")

    def _release(self):
        if self.backend == 'gpu' and self._buffers:
            _gpu.synchronize()
        self._buffers = {}
        self._tree = None
        self._seeded = False
        self._num_bodies = 0

    def set_num_bodies(self, n: int) -> None:
        """
        Drop all buffers and reallocate them for *n* bodies.

        The new buffers are zeroed and the simulation becomes unseeded:
        ``seed_bodies`` must run before the next ``advance``. Resizing twice
        to the same *n* leaves the same observable state.

        Raises
        ------
        ValueError
            If *n* is not in ``[1, 2**30]``.
        MemoryError
            If the buffers do not fit in (device) memory.
        """
        self._check_open()
        n = validate_num_bodies(n)
        self._release()

        xp = self._xp
        dtype = self.config.dtype
        n_slots = n + (1 if self.config.user_body else 0)
        try:
            self._buffers = {
                'mass': xp.zeros(n_slots, dtype=dtype),
                'position': xp.zeros((n_slots, 2), dtype=dtype),
                'velocity': xp.zeros((n_slots, 2), dtype=dtype),
                'acceleration': xp.zeros((n_slots, 2), dtype=dtype),
                'morton_codes': xp.zeros(n_slots, dtype=xp.uint32),
                'body_indices': xp.zeros(n_slots, dtype=xp.uint32),
                'metadata': build_metadata(self.config, xp),
            }
            self._tree = allocate_tree(n_slots, dtype=dtype, xp=xp)
        except MemoryError as exc:
            # leave the simulation empty, never partially resized
            self._buffers = {}
            self._tree = None
            raise MemoryError(
                f"cannot allocate buffers for {n:,} bodies "
                f"({self.memory_estimate(n) / 1e6:.1f} MB)"
            ) from exc

        self._num_bodies = n
        self.substeps_done = 0
        self.logger.info(
            "Allocated %d bodies (%d slots, %.1f MB)", n, n_slots, self.memory_estimate(n) / 1e6
        )

    def memory_estimate(self, n: int) -> int:
        """Bytes of all buffers for *n* bodies in the current configuration."""
        n_slots = n + (1 if self.config.user_body else 0)
        itemsize = np.dtype(self.config.dtype).itemsize
        body_bytes = n_slots * (7 * itemsize + 8)
        return body_bytes + tree_nbytes(n_slots, self.config.dtype)

    def close(self) -> None:
        """Release every buffer. The simulation cannot be used afterwards."""
        if self._closed:
            return
        self._release()
        self._closed = True
        self.logger.info("Simulation closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, **changes) -> SimConfig:
        """
        Replace configuration fields, e.g. ``sim.configure(theta=0.8)``.

        Changing ``precision`` or ``user_body`` changes the buffer layout and
        reallocates, which leaves the simulation unseeded.
        """
        self._check_open()
        old = self.config
        self.config = dataclasses.replace(old, **changes)
        if not self._buffers:
            return self.config
        if (self.config.precision, self.config.user_body) != (old.precision, old.user_body):
            self.logger.warning("Buffer layout changed; reallocating, re-seed required")
            self.set_num_bodies(self._num_bodies)
        else:
            self._buffers['metadata'][...] = build_metadata(self.config, self._xp)
        return self.config

    def set_camera(self, center, half_size) -> None:
        """Fix the Morton quantization window to ``center +/- half_size``."""
        self.configure(window_center=center, window_half_size=half_size)

    def clear_camera(self) -> None:
        """Return to a window refit to the bodies every substep."""
        self.configure(window_center=None, window_half_size=None)

    def set_user_body(self, position, mass: float) -> None:
        """
        Place the phantom body (written into slot N every substep).

        Requires ``SimConfig(user_body=True)``. The phantom attracts the other
        bodies but is never integrated and never exported.
        """
        if not self.config.user_body:
            raise ValueError("user body is disabled; create the simulation with SimConfig(user_body=True)")
        position = np.asarray(position, dtype=float).reshape(-1)
        if position.shape != (2,) or not np.all(np.isfinite(position)):
            raise ValueError(f"user body position must be a finite pair, got {position}")
        if not np.isfinite(mass):
            raise ValueError(f"user body mass must be finite, got {mass}")
        self._user_position = (float(position[0]), float(position[1]))
        self._user_mass = float(mass)

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def seed_bodies(self, mass, position, velocity=None) -> None:
        """
        Write initial masses, positions and velocities.

        Resizes first when the number of bodies differs from the current
        allocation.

        Parameters
        ----------
        mass : scalar or array_like, shape (N,)
            Non-negative masses.
        position : array_like, shape (N, 2)
        velocity : array_like, shape (N, 2), optional
            Zero when omitted.
        """
        self._check_open()
        position = validate_positions(position)
        n = position.shape[0]
        mass = validate_masses(mass, n, non_negative=True)
        velocity = validate_velocities(velocity, n)

        if n != self._num_bodies or not self._buffers:
            self.set_num_bodies(n)

        xp = self._xp
        dtype = self.config.dtype
        buf = self._buffers
        buf['mass'][:n] = xp.asarray(mass, dtype=dtype)
        buf['position'][:n] = xp.asarray(position, dtype=dtype)
        buf['velocity'][:n] = xp.asarray(velocity, dtype=dtype)
        buf['acceleration'][...] = 0
        self._seeded = True
        self.substeps_done = 0
        self.logger.info("Seeded %d bodies (total mass %.4g)", n, float(mass.sum()))

    def set_scenario(self, name: str, num_bodies: int | None = None, seed=None, **kwargs) -> None:
        """Seed from a registered scenario (see ``nbody_lbvh.scenarios``)."""
        n = num_bodies if num_bodies is not None else self._num_bodies
        n = validate_num_bodies(n)
        mass, pos, vel = make_scenario(name, n, seed=seed, **kwargs)
        self.seed_bodies(mass, pos, vel)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def _write_user_body(self):
        n = self._num_bodies
        buf = self._buffers
        buf['position'][n, 0] = self._user_position[0]
        buf['position'][n, 1] = self._user_position[1]
        buf['mass'][n] = self._user_mass

    def _update_metadata(self):
        """Refit the window and derive the softening on the buffers' device."""
        xp = self._xp
        meta = self._buffers['metadata']
        cfg = self.config
        if not cfg.has_fixed_window:
            center, half = fit_window(self._buffers['position'], xp)
            meta[META_CENTER_X:META_CENTER_Y + 1] = center
            meta[META_HALF_X:META_HALF_Y + 1] = half
        if cfg.softening is None:
            # mean inter-body spacing in the window
            area = 4.0 * meta[META_HALF_X] * meta[META_HALF_Y]
            meta[META_EPS] = cfg.epsilon_multiplier * xp.sqrt(area / self.num_slots)

    def step(self) -> None:
        """Run one substep (all six stages)."""
        self._check_open()
        if not self._seeded:
            raise RuntimeError("bodies must be seeded before advancing (call seed_bodies)")

        buf = self._buffers
        tree = self._tree
        pos, vel, acc = buf['position'], buf['velocity'], buf['acceleration']
        codes, indices, meta = buf['morton_codes'], buf['body_indices'], buf['metadata']

        if self.config.user_body:
            self._write_user_body()
        self._update_metadata()

        if self.backend == 'gpu':
            _gpu.launch_morton(pos, meta, codes, indices)
            self._sorter(codes, indices)
            _gpu.launch_build(codes, indices, tree)
            _gpu.launch_fill(pos, buf['mass'], indices, tree)
            _gpu.launch_bh_accelerations(pos, indices, tree, meta, acc)
            _gpu.launch_leapfrog(pos, vel, acc, meta, self._num_bodies)
        else:
            _morton_codes_cpu(pos, meta, codes, indices)
            self._sorter(codes, indices)
            build_lbvh_cpu(codes, indices, tree)
            fill_lbvh_cpu(pos, buf['mass'], indices, tree)
            bh_accelerations_cpu(pos, indices, tree, meta, acc)
            leapfrog_cpu(pos, vel, acc, meta, self._num_bodies)

        self.substeps_done += 1

    def advance(self):
        """
        Run ``config.substeps`` substeps and return the position buffer.

        Raises
        ------
        RuntimeError
            If no bodies have been seeded since the last resize.
        """
        for _ in range(self.config.substeps):
            self.step()
        return self.positions

    # ------------------------------------------------------------------
    # Debug readback
    # ------------------------------------------------------------------

    def read_buffer(self, name: str) -> np.ndarray:
        """
        Copy buffer *name* to a host NumPy array (blocks on the gpu backend).

        Names: ``mass``, ``position``, ``velocity``, ``acceleration``,
        ``morton_codes``, ``body_indices``, ``metadata`` and the tree buffers
        ``left``, ``right``, ``parent``, ``ready``, ``node_com``, ``node_mass``,
        ``aabb_min``, ``aabb_max``, ``node_length``. Body buffers include the
        phantom slot when it is enabled.
        """
        self._check_open()
        if name not in BUFFER_NAMES:
            raise ValueError(f"unknown buffer {name!r}, choose from {BUFFER_NAMES}")
        if not self._buffers:
            raise RuntimeError("no buffers allocated (call set_num_bodies)")
        if name in _TREE_BUFFERS:
            arr = getattr(self._tree, _TREE_BUFFERS[name])
        else:
            arr = self._buffers[name]
        if self._xp is np:
            return arr.copy()
        return arr.get()

    def __repr__(self):
        return (f"Simulation(backend={self.backend!r}, num_bodies={self._num_bodies}, "
                f"seeded={self._seeded}, theta={self.config.theta})")
