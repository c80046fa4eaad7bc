"""nbody_lbvh.utils: diagnostics and shared helpers."""

from .diagnostics import (
    total_mass,
    center_of_mass,
    total_momentum,
    kinetic_energy,
    potential_energy,
)

__all__ = [
    "total_mass",
    "center_of_mass",
    "total_momentum",
    "kinetic_energy",
    "potential_energy",
]
