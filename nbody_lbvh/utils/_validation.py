"""
nbody_lbvh.utils._validation
============================

Shared input-validation helpers used by the seeding interface and the
CPU convenience functions.

All validators raise ``ValueError`` on invalid input and return sanitised
NumPy arrays ready for downstream computation.
"""
from __future__ import annotations

import numpy as np

from ..config import MAX_BODIES

__all__: list[str] = []  # nothing public, internal helpers only


# ---------------------------------------------------------------------------
# Body count
# ---------------------------------------------------------------------------

def validate_num_bodies(n) -> int:
    """Return *n* as an int, or raise if it is not in ``[1, MAX_BODIES]``."""
    if isinstance(n, bool) or not isinstance(n, (int, np.integer)):
        raise ValueError(f"number of bodies must be an integer, got {n!r}")
    n = int(n)
    if n <= 0:
        raise ValueError(f"number of bodies must be positive, got {n}")
    if n > MAX_BODIES:
        raise ValueError(f"number of bodies must not exceed {MAX_BODIES:,}, got {n:,}")
    return n


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------

def validate_positions(pos, n_bodies: int | None = None) -> np.ndarray:
    """Validate a position array.

    Parameters
    ----------
    pos : array_like, shape ``(N, 2)``
        Body positions.
    n_bodies : int, optional
        Expected number of bodies.

    Returns
    -------
    pos : np.ndarray
        The validated position array (at least ``float64``).
    """
    pos = np.asarray(pos, dtype=float)
    if pos.ndim != 2 or pos.shape[1] != 2:
        raise ValueError(f"pos must have shape (N, 2), got {pos.shape}")
    if pos.shape[0] == 0:
        raise ValueError("pos must contain at least one body")
    if n_bodies is not None and pos.shape[0] != n_bodies:
        raise ValueError(
            f"pos length ({pos.shape[0]}) does not match number of "
            f"bodies ({n_bodies})"
        )
    return pos


# ---------------------------------------------------------------------------
# Masses
# ---------------------------------------------------------------------------

def validate_masses(
    mass,
    n_bodies: int,
    *,
    non_negative: bool = False,
) -> np.ndarray:
    """Validate a mass argument and broadcast scalars.

    Parameters
    ----------
    mass : scalar, array_like, or None
        Body masses. A scalar is broadcast to shape ``(n_bodies,)``.
        *None* is treated as unit mass for every body.
    n_bodies : int
        Expected number of bodies.
    non_negative : bool, optional
        If *True*, raise if any mass is negative.

    Returns
    -------
    mass : np.ndarray, shape ``(n_bodies,)``
    """
    if mass is None:
        return np.ones(n_bodies, dtype=float)

    mass = np.asarray(mass, dtype=float)
    if mass.ndim == 0:
        mass = np.full(n_bodies, mass, dtype=float)
    elif mass.ndim != 1 or mass.shape[0] != n_bodies:
        raise ValueError(
            f"mass shape {mass.shape} does not match number of "
            f"bodies ({n_bodies})"
        )

    if non_negative and np.any(mass < 0):
        raise ValueError("Body masses must be non-negative.")

    return mass


# ---------------------------------------------------------------------------
# Velocities
# ---------------------------------------------------------------------------

def validate_velocities(vel, n_bodies: int) -> np.ndarray:
    """Validate a velocity array.

    Parameters
    ----------
    vel : array_like or None
        Body velocities. *None* returns a zero array of shape
        ``(n_bodies, 2)``.
    n_bodies : int
        Expected number of bodies.

    Returns
    -------
    vel : np.ndarray, shape ``(n_bodies, 2)``
    """
    if vel is None:
        return np.zeros((n_bodies, 2), dtype=float)

    vel = np.asarray(vel, dtype=float)
    if vel.ndim != 2 or vel.shape[1] != 2:
        raise ValueError(f"vel must have shape (N, 2), got {vel.shape}")
    if vel.shape[0] != n_bodies:
        raise ValueError(
            f"vel length ({vel.shape[0]}) does not match number "
            f"of bodies ({n_bodies})"
        )
    return vel


# ---------------------------------------------------------------------------
# Scalar parameters
# ---------------------------------------------------------------------------

def validate_nbins(nbins: int) -> None:
    """Raise ``ValueError`` if *nbins* is not a positive integer."""
    if not isinstance(nbins, (int, np.integer)) or nbins <= 0:
        raise ValueError("nbins must be a positive integer")
