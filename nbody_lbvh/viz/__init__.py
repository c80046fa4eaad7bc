"""nbody_lbvh.viz: rendering of simulation state.

Usage
-----
>>> from nbody_lbvh import viz
>>> viz.plot_density(sim.positions)
>>> viz.plot_tree_boxes(sim.tree, max_depth=5)
"""

from .plots import (
    plot_density,
    plot_tree_boxes,
)

__all__ = [
    "plot_density",
    "plot_tree_boxes",
]
