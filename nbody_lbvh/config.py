"""
nbody_lbvh.config

Simulation configuration and the layout of the per-substep metadata buffer.

The metadata buffer mirrors what every compute stage reads: gravitational
constant, substep size, softening, opening angle and the Morton quantization
window. It is a small float array living next to the body buffers (on the
device for the GPU backend) so that no stage needs host-side scalars that
change from one substep to the next.
"""
from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

# ============================================================================
# CONSTANTS
# ============================================================================

# Metadata slots: [G, dt, epsilon, theta, center_x, center_y, half_x, half_y]
META_G = 0
META_DT = 1
META_EPS = 2
META_THETA = 3
META_CENTER_X = 4
META_CENTER_Y = 5
META_HALF_X = 6
META_HALF_Y = 7
META_SIZE = 8

# Node indices are int32 and the tree holds 2N - 1 nodes
MAX_BODIES = 1 << 30

PRECISIONS = {
    'float32': np.float32,
    'float64': np.float64,
}


def _as_pair(value, name: str) -> tuple[float, float] | None:
    if value is None:
        return None
    arr = np.asarray(value, dtype=float).reshape(-1)
    if arr.shape[0] == 1:
        arr = np.repeat(arr, 2)
    if arr.shape[0] != 2:
        raise ValueError(f"{name} must be a scalar or a pair, got shape {np.shape(value)}")
    return float(arr[0]), float(arr[1])


@dataclass(frozen=True)
class SimConfig:
    """
    Immutable physics and windowing parameters of a simulation.

    Parameters
    ----------
    grav_constant : float
        Gravitational constant G.
    delta_time : float
        Fixed substep size.
    substeps : int
        Pipeline passes per displayed frame (per ``Simulation.advance`` call).
    theta : float
        Barnes-Hut opening angle. ``0`` forces exact direct summation.
    epsilon_multiplier : float
        Scales the automatic softening length when ``softening`` is None.
    softening : float or None
        Absolute softening length. None derives it every substep as
        ``epsilon_multiplier * sqrt(window_area / N)``.
    window_center, window_half_size : pair of float or None
        Fixed Morton quantization window (the camera window). When None the
        window is refit to the bodies' bounding box every substep.
    user_body : bool
        Reserve an extra phantom slot for an interactively placed mass.
    precision : {'float32', 'float64'}
        Storage and arithmetic precision of all float buffers.
    """

    grav_constant: float = 1.0
    delta_time: float = 0.1 / 60.0
    substeps: int = 1
    theta: float = 0.6
    epsilon_multiplier: float = 1.0
    softening: float | None = None
    window_center: tuple[float, float] | None = None
    window_half_size: tuple[float, float] | None = None
    user_body: bool = False
    precision: str = 'float32'

    def __post_init__(self):
        if not math.isfinite(self.grav_constant):
            raise ValueError(f"grav_constant must be finite, got {self.grav_constant}")
        if not (self.delta_time > 0 and math.isfinite(self.delta_time)):
            raise ValueError(f"delta_time must be positive, got {self.delta_time}")
        if not isinstance(self.substeps, (int, np.integer)) or self.substeps < 1:
            raise ValueError(f"substeps must be a positive integer, got {self.substeps}")
        if not (self.theta >= 0 and math.isfinite(self.theta)):
            raise ValueError(f"theta must be non-negative, got {self.theta}")
        if not (self.epsilon_multiplier >= 0 and math.isfinite(self.epsilon_multiplier)):
            raise ValueError(
                f"epsilon_multiplier must be non-negative, got {self.epsilon_multiplier}"
            )
        if self.softening is not None and not (self.softening >= 0 and math.isfinite(self.softening)):
            raise ValueError(f"softening must be non-negative, got {self.softening}")
        if self.precision not in PRECISIONS:
            raise ValueError(f"precision must be one of {list(PRECISIONS)}, got {self.precision!r}")

        center = _as_pair(self.window_center, 'window_center')
        half = _as_pair(self.window_half_size, 'window_half_size')
        if (center is None) != (half is None):
            raise ValueError("window_center and window_half_size must be given together")
        if center is not None:
            # local import: morton imports this module
            from .morton import validate_window
            center, half = validate_window(center, half)
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, 'window_center', center)
        object.__setattr__(self, 'window_half_size', half)

    @property
    def dtype(self) -> type:
        return PRECISIONS[self.precision]

    @property
    def has_fixed_window(self) -> bool:
        return self.window_center is not None


def default_config(substeps: int = 1, **overrides) -> SimConfig:
    """Defaults of the interactive demo: G = 1, theta = 0.6, dt = 0.1 / (60 * substeps)."""
    params = dict(
        grav_constant=1.0,
        theta=0.6,
        substeps=substeps,
        delta_time=0.1 * 1.0 / (60.0 * substeps),
        epsilon_multiplier=1.0,
    )
    params.update(overrides)
    return SimConfig(**params)


def build_metadata(config: SimConfig, xp=np):
    """Allocate a metadata array for *config* on the array module *xp*."""
    meta = np.zeros(META_SIZE, dtype=config.dtype)
    meta[META_G] = config.grav_constant
    meta[META_DT] = config.delta_time
    meta[META_EPS] = config.softening if config.softening is not None else 0.0
    meta[META_THETA] = config.theta
    if config.has_fixed_window:
        meta[META_CENTER_X:META_CENTER_Y + 1] = config.window_center
        meta[META_HALF_X:META_HALF_Y + 1] = config.window_half_size
    else:
        meta[META_HALF_X:META_HALF_Y + 1] = 1.0
    if xp is np:
        return meta
    return xp.asarray(meta)
