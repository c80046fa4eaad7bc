"""
nbody_lbvh.utils.diagnostics
============================

Conserved-quantity diagnostics for 2-D body sets.

All functions take host arrays (``Simulation.read_buffer`` output or the
arrays passed to ``seed_bodies``) and return plain floats or small arrays.
"""
from __future__ import annotations

import math

import numpy as np
from numba import njit, prange

from ._validation import validate_positions, validate_masses, validate_velocities

__all__ = [
    "total_mass",
    "center_of_mass",
    "total_momentum",
    "kinetic_energy",
    "potential_energy",
]


def total_mass(mass) -> float:
    return float(np.sum(np.asarray(mass, dtype=float)))


def center_of_mass(pos, mass=None) -> np.ndarray:
    """Mass-weighted mean position, shape ``(2,)``."""
    pos = validate_positions(pos)
    mass = validate_masses(mass, pos.shape[0])
    m_tot = mass.sum()
    if m_tot == 0:
        return pos.mean(axis=0)
    return (mass[:, None] * pos).sum(axis=0) / m_tot


def total_momentum(vel, mass=None) -> np.ndarray:
    """Sum of ``m * v``, shape ``(2,)``."""
    vel = np.asarray(vel, dtype=float)
    mass = validate_masses(mass, vel.shape[0])
    vel = validate_velocities(vel, mass.shape[0])
    return (mass[:, None] * vel).sum(axis=0)


def kinetic_energy(vel, mass=None) -> float:
    vel = np.asarray(vel, dtype=float)
    mass = validate_masses(mass, vel.shape[0])
    vel = validate_velocities(vel, mass.shape[0])
    return float(0.5 * np.sum(mass * np.einsum('ij,ij->i', vel, vel)))


@njit(parallel=True, cache=True)
def _potential_energy_cpu(pos, mass, G, eps):
    N = pos.shape[0]
    partial = np.zeros(N, dtype=np.float64)
    eps2 = eps * eps
    for i in prange(N):
        s = 0.0
        for j in range(i + 1, N):
            dx = pos[j, 0] - pos[i, 0]
            dy = pos[j, 1] - pos[i, 1]
            r2 = dx * dx + dy * dy + eps2
            if r2 > 0.0:
                s -= mass[j] / math.sqrt(r2)
        partial[i] = G * mass[i] * s
    return partial.sum()


def potential_energy(pos, mass=None, G: float = 1.0, softening: float = 0.0) -> float:
    """
    Softened pairwise potential energy, ``-G sum_{i<j} m_i m_j / sqrt(r^2 + eps^2)``.

    O(N^2); coincident pairs with zero softening are skipped.
    """
    pos = np.ascontiguousarray(validate_positions(pos))
    mass = np.ascontiguousarray(validate_masses(mass, pos.shape[0]))
    return float(_potential_energy_cpu(pos, mass, float(G), float(softening)))
