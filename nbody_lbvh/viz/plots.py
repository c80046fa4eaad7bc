"""Rendering helpers for the exported position buffer.

Public API (flat via ``nbody_lbvh.viz.*``):
- ``plot_density``      : log surface-density image of the bodies
- ``plot_tree_boxes``   : bounding boxes of the top LBVH levels
"""

from __future__ import annotations

from typing import Any

import numpy as np
import matplotlib.axes
import matplotlib.colors
import matplotlib.image
import matplotlib.pyplot as plt
from matplotlib.collections import PatchCollection
from matplotlib.patches import Rectangle

from ..utils._validation import validate_positions, validate_masses, validate_nbins


# =====================================================================
# Private helpers
# =====================================================================
def _to_host(arr) -> np.ndarray:
    return arr.get() if hasattr(arr, "get") else np.asarray(arr)


def _gauss_filter_surf_dens(
    mass_bin: np.ndarray,
    xedges: np.ndarray,
    yedges: np.ndarray,
    **kwargs,
) -> np.ndarray:
    """
    Apply Gaussian smoothing to a 2-D mass histogram and return surface density.

    ``**kwargs`` are forwarded to ``scipy.ndimage.gaussian_filter``.
    """
    from scipy import ndimage

    smoothed = ndimage.gaussian_filter(mass_bin, **kwargs)
    surface_area = np.diff(xedges)[0] * np.diff(yedges)[0]
    return smoothed / surface_area


# =====================================================================
# plot_density : surface density image
# =====================================================================
def plot_density(
    pos,
    mass=None,
    window: tuple | None = None,
    no_bins: int = 512,
    ax: matplotlib.axes.Axes | None = None,
    colorbar: bool = False,
    cmap: matplotlib.colors.Colormap | str = "inferno",
    vmin: float | None = None,
    vmax: float | None = None,
    gauss_convol: bool = True,
    sigma: float | None = None,
    return_dens: bool = False,
    **kwargs: Any,
) -> matplotlib.image.AxesImage | tuple[matplotlib.image.AxesImage, np.ndarray]:
    """
    Render bodies as a log-scaled, mass-weighted surface-density image.

    Parameters
    ----------
    pos : array_like, shape (N, 2)
        Positions, e.g. ``Simulation.positions`` (CuPy arrays are copied to
        the host).
    mass : scalar or array_like, optional
        Weights; unit mass when omitted.
    window : tuple (center, half_size), optional
        Image extent. Defaults to a square around the bodies' bounding box.
    no_bins : int
        Histogram bins per axis.
    ax : Axes, optional
        Existing axes. A new square figure is created when *None*.
    colorbar : bool
        Attach a colorbar (log10 surface density).
    cmap : colormap or str
    vmin, vmax : float, optional
        Colour limits in log10 density; autoscaled when omitted.
    gauss_convol : bool
        Smooth the histogram before the log tone map.
    sigma : float, optional
        Smoothing width in bins (default ``max(no_bins / 512, 0.5)``).
    return_dens : bool
        Also return the linear density array.
    **kwargs
        Forwarded to ``ax.imshow``.

    Returns
    -------
    im_obj : AxesImage
        The image, or ``(im_obj, density)`` when *return_dens*.
    """
    pos = validate_positions(_to_host(pos))
    mass = validate_masses(None if mass is None else _to_host(mass), pos.shape[0])
    validate_nbins(no_bins)

    finite = np.all(np.isfinite(pos), axis=1)
    pos, mass = pos[finite], mass[finite]

    if window is None:
        if pos.shape[0] == 0:
            center, half = np.zeros(2), 1.0
        else:
            lo, hi = pos.min(axis=0), pos.max(axis=0)
            center = 0.5 * (lo + hi)
            half = max(0.5 * float(np.max(hi - lo)), 1e-6) * 1.05
        half_size = np.array([half, half])
    else:
        center = np.broadcast_to(np.asarray(window[0], dtype=float), (2,))
        half_size = np.broadcast_to(np.asarray(window[1], dtype=float), (2,))
        if np.any(half_size <= 0):
            raise ValueError(f"window half-size must be positive, got {window[1]}")

    extent = [center[0] - half_size[0], center[0] + half_size[0],
              center[1] - half_size[1], center[1] + half_size[1]]
    bins = [np.linspace(extent[0], extent[1], no_bins + 1),
            np.linspace(extent[2], extent[3], no_bins + 1)]

    # --- Histogram + density ---
    mass_bin, xedges, yedges = np.histogram2d(pos[:, 0], pos[:, 1], weights=mass, bins=bins)
    if gauss_convol:
        sigma = max(no_bins / 512, 0.5) if sigma is None else sigma
        calc_density = _gauss_filter_surf_dens(mass_bin, xedges, yedges, sigma=sigma)
    else:
        calc_density = mass_bin / (np.diff(xedges)[0] * np.diff(yedges)[0])

    if return_dens:
        dens_to_return = calc_density.copy()

    # log tone map, empty pixels at the floor
    positive = calc_density > 0
    log_dens = np.full_like(calc_density, np.nan)
    log_dens[positive] = np.log10(calc_density[positive])
    if vmin is None and positive.any():
        vmin = float(np.nanmin(log_dens))
    if vmax is None and positive.any():
        vmax = float(np.nanmax(log_dens))
    if vmin is not None:
        log_dens[~positive] = vmin

    # --- Plot ---
    if ax is None:
        fig = plt.figure(figsize=(4, 4), dpi=150)
        ax = fig.add_subplot(1, 1, 1)
        ax.set_facecolor("k")

    im_obj = ax.imshow(
        log_dens.T,
        interpolation="bilinear",
        cmap=cmap,
        origin="lower",
        vmin=vmin,
        vmax=vmax,
        aspect=1,
        extent=extent,
        **kwargs,
    )
    ax.xaxis.set_major_locator(plt.NullLocator())
    ax.yaxis.set_major_locator(plt.NullLocator())
    ax.tick_params(bottom=False, left=False)

    if colorbar:
        cbar = ax.figure.colorbar(im_obj, ax=ax, fraction=0.046, pad=0.04)
        cbar.set_label(r"$\log_{10}\,\Sigma$")

    if return_dens:
        return im_obj, dens_to_return
    return im_obj


# =====================================================================
# plot_tree_boxes : LBVH node boxes
# =====================================================================
def plot_tree_boxes(
    tree,
    max_depth: int = 6,
    ax: matplotlib.axes.Axes | None = None,
    color: str = "cyan",
    linewidth: float = 0.5,
) -> PatchCollection:
    """
    Draw the bounding boxes of internal LBVH nodes down to *max_depth*.

    The root is depth 0. Leaves have zero-size boxes and are never drawn.
    """
    if max_depth < 0:
        raise ValueError(f"max_depth must be non-negative, got {max_depth}")

    n_internal = tree.num_internal
    left, right = _to_host(tree.left), _to_host(tree.right)
    box_min, box_max = _to_host(tree.aabb_min), _to_host(tree.aabb_max)

    patches = []
    frontier = [0] if n_internal > 0 else []
    for _ in range(max_depth + 1):
        next_frontier = []
        for node in frontier:
            lo, hi = box_min[node], box_max[node]
            patches.append(Rectangle((lo[0], lo[1]), hi[0] - lo[0], hi[1] - lo[1]))
            for child in (left[node], right[node]):
                if not tree.is_leaf(child):
                    next_frontier.append(int(child))
        frontier = next_frontier

    if ax is None:
        fig = plt.figure(figsize=(4, 4), dpi=150)
        ax = fig.add_subplot(1, 1, 1)

    collection = PatchCollection(patches, facecolor="none", edgecolor=color, linewidth=linewidth)
    ax.add_collection(collection)
    ax.autoscale_view()
    ax.set_aspect("equal")
    return collection
