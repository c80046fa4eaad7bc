"""
nbody_lbvh.scenarios

Initial conditions for ``Simulation.seed_bodies``.

Every generator returns ``(mass, position, velocity)`` as float64 arrays of
shape ``(N,)``, ``(N, 2)`` and ``(N, 2)``.
"""
from __future__ import annotations

from typing import Callable

import numpy as np

__all__ = [
    "make_default_disk",
    "make_uniform_disk",
    "make_two_body",
    "make_colliding_disks",
    "SCENARIOS",
    "make_scenario",
]


def _circular_velocities(pos: np.ndarray, speed: np.ndarray) -> np.ndarray:
    """Velocities of magnitude *speed* perpendicular to the radius, counter-clockwise."""
    angle = np.arctan2(pos[:, 1], pos[:, 0]) + np.pi / 2.0
    return np.column_stack([speed * np.cos(angle), speed * np.sin(angle)])


def make_default_disk(
    N: int,
    scale: float = 5.0,
    seed: int | None = None,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Gaussian disk of unit masses on near-circular orbits (the demo scene).

    Radii follow ``scale * sqrt(-2 ln U)`` with uniform angles, body 1 is
    moved out to ``x = 20`` as an outlier, and every body gets the tangential
    speed ``10 * sqrt(100 / (r + 0.1))``.

    Parameters
    ----------
    N : int
        Number of bodies.
    scale : float
        Gaussian radius scale.
    seed : int or None
        Random seed.

    Returns
    -------
    mass, position, velocity : np.ndarray
    """
    rng = np.random.default_rng(seed)

    angle = rng.random(N) * 2.0 * np.pi
    # 1 - U keeps the log argument in (0, 1]
    radius = np.sqrt(-2.0 * np.log(1.0 - rng.random(N))) * scale
    pos = np.column_stack([radius * np.cos(angle), radius * np.sin(angle)])
    if N > 1:
        pos[1, 0] = 20.0

    dist = np.hypot(pos[:, 0], pos[:, 1]) + 0.1
    speed = 10.0 * np.sqrt(100.0 / dist)
    vel = _circular_velocities(pos, speed)

    mass = np.ones(N)
    return mass, pos, vel


def make_uniform_disk(
    N: int,
    radius: float = 10.0,
    M_total: float = 1.0,
    G: float = 1.0,
    seed: int | None = None,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Uniform-density disk with rotation speeds from the enclosed mass.

    Bodies at radius r get ``v = sqrt(G * M(<r) / r)``, the circular speed of
    a point mass ``M(<r) = M_total * (r / radius)^2``.
    """
    rng = np.random.default_rng(seed)

    r = radius * np.sqrt(rng.random(N))
    phi = 2.0 * np.pi * rng.random(N)
    pos = np.column_stack([r * np.cos(phi), r * np.sin(phi)])

    m_enc = M_total * (r / radius) ** 2
    speed = np.sqrt(G * m_enc / np.maximum(r, 1e-12))
    vel = _circular_velocities(pos, speed)

    mass = np.full(N, M_total / N)
    return mass, pos, vel


def make_two_body(
    N: int = 2,
    separation: float = 2.0,
    mass: float = 1.0,
    G: float = 1.0,
    seed: int | None = None,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Equal-mass circular binary about the origin.

    Total momentum is zero and the configuration is symmetric under a point
    reflection, which the force evaluation must preserve exactly. *N* must be
    2; *seed* is accepted for registry compatibility and unused.
    """
    if N != 2:
        raise ValueError(f"two_body scenario needs N=2, got {N}")
    half = 0.5 * separation
    # each body orbits the barycenter at radius half under the partner's pull
    v = np.sqrt(G * mass / (2.0 * separation))
    pos = np.array([[-half, 0.0], [half, 0.0]])
    vel = np.array([[0.0, -v], [0.0, v]])
    return np.full(2, float(mass)), pos, vel


def make_colliding_disks(
    N: int,
    offset: float = 30.0,
    approach_speed: float = 5.0,
    scale: float = 5.0,
    seed: int | None = None,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Two default disks placed at ``x = -/+ offset`` moving toward each other."""
    rng = np.random.default_rng(seed)
    n_a = N // 2
    n_b = N - n_a

    parts = []
    for n_part, sign in ((n_a, -1.0), (n_b, 1.0)):
        if n_part == 0:
            continue
        m, p, v = make_default_disk(n_part, scale=scale, seed=rng.integers(2**32))
        p[:, 0] += sign * offset
        v[:, 0] -= sign * approach_speed
        parts.append((m, p, v))

    mass = np.concatenate([m for m, _, _ in parts])
    pos = np.concatenate([p for _, p, _ in parts])
    vel = np.concatenate([v for _, _, v in parts])
    return mass, pos, vel


SCENARIOS: dict[str, Callable[..., tuple[np.ndarray, np.ndarray, np.ndarray]]] = {
    'default': make_default_disk,
    'uniform_disk': make_uniform_disk,
    'two_body': make_two_body,
    'colliding_disks': make_colliding_disks,
}


def make_scenario(name: str, N: int, seed: int | None = None, **kwargs):
    """Generate the initial conditions of the registered scenario *name*."""
    try:
        factory = SCENARIOS[name]
    except KeyError:
        raise ValueError(f"unknown scenario {name!r}, choose from {sorted(SCENARIOS)}") from None
    return factory(N, seed=seed, **kwargs)
