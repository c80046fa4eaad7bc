"""Tests for nbody_lbvh.config: SimConfig validation and the metadata layout."""

import dataclasses

import numpy as np
import pytest

from nbody_lbvh.config import (
    SimConfig, default_config, build_metadata,
    META_G, META_DT, META_EPS, META_THETA,
    META_CENTER_X, META_CENTER_Y, META_HALF_X, META_HALF_Y, META_SIZE,
)


class TestSimConfig:

    def test_defaults(self):
        cfg = SimConfig()
        assert cfg.grav_constant == 1.0
        assert cfg.theta == 0.6
        assert cfg.substeps == 1
        assert cfg.dtype is np.float32
        assert not cfg.has_fixed_window

    def test_default_config_scales_dt(self):
        cfg = default_config(substeps=4)
        assert cfg.substeps == 4
        assert cfg.delta_time == pytest.approx(0.1 / (60.0 * 4))

    def test_default_config_overrides(self):
        cfg = default_config(theta=0.3, precision='float64')
        assert cfg.theta == 0.3
        assert cfg.dtype is np.float64

    @pytest.mark.parametrize("kwargs", [
        dict(delta_time=0.0),
        dict(delta_time=-1.0),
        dict(substeps=0),
        dict(substeps=1.5),
        dict(theta=-0.1),
        dict(theta=float('nan')),
        dict(epsilon_multiplier=-1.0),
        dict(softening=-0.01),
        dict(precision='float16'),
        dict(grav_constant=float('inf')),
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            SimConfig(**kwargs)

    def test_window_normalised_to_pairs(self):
        cfg = SimConfig(window_center=0.0, window_half_size=(2, 3))
        assert cfg.window_center == (0.0, 0.0)
        assert cfg.window_half_size == (2.0, 3.0)
        assert cfg.has_fixed_window

    def test_window_requires_both(self):
        with pytest.raises(ValueError):
            SimConfig(window_center=(0, 0))

    @pytest.mark.parametrize("half", [0.0, -1.0, (1.0, 0.0), float('inf')])
    def test_degenerate_window(self, half):
        with pytest.raises(ValueError):
            SimConfig(window_center=(0, 0), window_half_size=half)

    def test_frozen_and_replace(self):
        cfg = SimConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            cfg.theta = 1.0
        new = dataclasses.replace(cfg, theta=0.9)
        assert new.theta == 0.9 and cfg.theta == 0.6
        with pytest.raises(ValueError):
            dataclasses.replace(cfg, theta=-1.0)


class TestMetadata:

    def test_layout(self):
        cfg = SimConfig(grav_constant=2.0, delta_time=0.01, theta=0.5, softening=0.1,
                        window_center=(1.0, -1.0), window_half_size=(4.0, 5.0))
        meta = build_metadata(cfg)
        assert meta.shape == (META_SIZE,)
        assert meta.dtype == np.float32
        assert meta[META_G] == 2.0
        assert meta[META_DT] == pytest.approx(0.01)
        assert meta[META_EPS] == pytest.approx(0.1)
        assert meta[META_THETA] == 0.5
        assert (meta[META_CENTER_X], meta[META_CENTER_Y]) == (1.0, -1.0)
        assert (meta[META_HALF_X], meta[META_HALF_Y]) == (4.0, 5.0)

    def test_auto_window_placeholder(self):
        meta = build_metadata(SimConfig(precision='float64'))
        assert meta.dtype == np.float64
        assert meta[META_EPS] == 0.0
        assert meta[META_HALF_X] == 1.0 and meta[META_HALF_Y] == 1.0
