"""Tests for nbody_lbvh.viz: rendering functions.

All tests use the Agg backend so no display is needed.
"""

import numpy as np
import pytest
import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
from matplotlib.collections import PatchCollection
from matplotlib.image import AxesImage

from nbody_lbvh import build_lbvh
from nbody_lbvh.viz import plot_density, plot_tree_boxes


# =====================================================================
# Fixtures
# =====================================================================
@pytest.fixture(autouse=True)
def _close_figures():
    """Close all matplotlib figures after each test."""
    yield
    plt.close("all")


@pytest.fixture()
def random_bodies():
    rng = np.random.default_rng(42)
    pos = rng.standard_normal((500, 2)) * 5
    mass = np.ones(500)
    return pos, mass


# =====================================================================
# plot_density
# =====================================================================
class TestPlotDensity:

    def test_basic(self, random_bodies):
        pos, mass = random_bodies
        im = plot_density(pos, mass, no_bins=32)
        assert isinstance(im, AxesImage)
        assert im.get_array().shape == (32, 32)

    def test_return_dens_conserves_mass(self, random_bodies):
        pos, mass = random_bodies
        _, dens = plot_density(pos, mass, window=((0, 0), 50.0), no_bins=64,
                               gauss_convol=False, return_dens=True)
        pixel_area = (100.0 / 64) ** 2
        assert dens.sum() * pixel_area == pytest.approx(mass.sum())

    def test_existing_axes_and_colorbar(self, random_bodies):
        pos, _ = random_bodies
        fig, ax = plt.subplots()
        im = plot_density(pos, ax=ax, no_bins=16, colorbar=True)
        assert im.axes is ax
        assert len(fig.axes) == 2

    def test_window_extent(self, random_bodies):
        pos, _ = random_bodies
        im = plot_density(pos, window=((1.0, 2.0), (3.0, 4.0)), no_bins=8)
        np.testing.assert_allclose(im.get_extent(), [-2.0, 4.0, -2.0, 6.0])

    def test_ignores_non_finite(self):
        pos = np.array([[0.0, 0.0], [np.nan, 1.0], [1.0, 1.0]])
        im = plot_density(pos, no_bins=8)
        assert np.all(np.isfinite(im.get_array()))

    def test_invalid_inputs(self, random_bodies):
        pos, _ = random_bodies
        with pytest.raises(ValueError):
            plot_density(np.zeros((5, 3)))
        with pytest.raises(ValueError):
            plot_density(pos, no_bins=0)
        with pytest.raises(ValueError):
            plot_density(pos, window=((0, 0), -1.0))


# =====================================================================
# plot_tree_boxes
# =====================================================================
class TestPlotTreeBoxes:

    def test_depth_limits_boxes(self, random_bodies):
        pos, mass = random_bodies
        tree, _, _ = build_lbvh(pos, mass)
        shallow = plot_tree_boxes(tree, max_depth=0)
        assert isinstance(shallow, PatchCollection)
        assert len(shallow.get_paths()) == 1
        deeper = plot_tree_boxes(tree, max_depth=3)
        assert 1 < len(deeper.get_paths()) <= 15

    def test_single_leaf_tree(self):
        tree, _, _ = build_lbvh(np.zeros((1, 2)), 1.0)
        assert len(plot_tree_boxes(tree).get_paths()) == 0
