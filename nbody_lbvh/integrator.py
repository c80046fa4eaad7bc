"""
nbody_lbvh.integrator

Leapfrog update applied once per substep after the force stage.

    v += 0.5 * dt * a
    x += dt * v
    v += 0.5 * dt * a

Both half-kicks use the single acceleration evaluated at the start of the
substep, so each substep costs exactly one force evaluation. Only the first
``n_bodies`` slots are advanced; a phantom user body stored after them never
moves.
"""
from __future__ import annotations

from numba import njit, prange

from .config import META_DT


@njit(parallel=True, cache=True)
def _leapfrog_cpu(pos, vel, acc, meta, n_bodies):
    dt = meta[META_DT]
    half_dt = 0.5 * dt
    for i in prange(n_bodies):
        vx = vel[i, 0] + half_dt * acc[i, 0]
        vy = vel[i, 1] + half_dt * acc[i, 1]
        pos[i, 0] += dt * vx
        pos[i, 1] += dt * vy
        vel[i, 0] = vx + half_dt * acc[i, 0]
        vel[i, 1] = vy + half_dt * acc[i, 1]


def leapfrog_cpu(pos, vel, acc, meta, n_bodies: int) -> None:
    """Advance NumPy ``pos``/``vel`` in place by one substep."""
    _leapfrog_cpu(pos, vel, acc, meta, n_bodies)
