"""Barnes-Hut accelerations against direct summation."""

import numpy as np
import pytest

from nbody_lbvh.forces import compute_bh_accelerations, compute_direct_accelerations

SOFTENING = 0.05


@pytest.fixture(scope="module")
def gaussian_blob():
    rng = np.random.default_rng(42)
    pos = rng.standard_normal((2000, 2)) * 5
    mass = rng.random(2000) + 0.5
    return pos, mass


class TestDirect:

    def test_two_bodies(self):
        pos = np.array([[0.0, 0.0], [2.0, 0.0]])
        acc = compute_direct_accelerations(pos, [1.0, 3.0], G=2.0)
        np.testing.assert_allclose(acc[0], [2.0 * 3.0 / 4.0, 0.0])
        np.testing.assert_allclose(acc[1], [-2.0 * 1.0 / 4.0, 0.0])

    def test_softening(self):
        pos = np.array([[0.0, 0.0], [1.0, 0.0]])
        acc = compute_direct_accelerations(pos, 1.0, softening=1.0)
        assert acc[0, 0] == pytest.approx(1.0 / 2.0 ** 1.5)

    def test_coincident_without_softening_is_finite(self):
        acc = compute_direct_accelerations(np.zeros((3, 2)), 1.0)
        assert np.all(acc == 0.0)


class TestBarnesHut:

    def test_theta_zero_equals_direct(self):
        rng = np.random.default_rng(7)
        pos = rng.standard_normal((50, 2))
        mass = rng.random(50) + 0.1
        acc_bh = compute_bh_accelerations(pos, mass, theta=0.0, softening=SOFTENING)
        acc_direct = compute_direct_accelerations(pos, mass, softening=SOFTENING)
        np.testing.assert_allclose(acc_bh, acc_direct, rtol=1e-10, atol=1e-12)

    def test_theta_zero_float32(self):
        rng = np.random.default_rng(8)
        pos = rng.standard_normal((50, 2))
        mass = np.ones(50)
        acc_bh = compute_bh_accelerations(pos, mass, theta=0.0, softening=SOFTENING,
                                          precision='float32')
        acc_direct = compute_direct_accelerations(pos, mass, softening=SOFTENING)
        assert acc_bh.dtype == np.float32
        np.testing.assert_allclose(acc_bh, acc_direct, rtol=1e-3, atol=1e-3)

    def test_approximation_error(self, gaussian_blob):
        pos, mass = gaussian_blob
        acc_bh = compute_bh_accelerations(pos, mass, theta=0.5, softening=SOFTENING)
        acc_direct = compute_direct_accelerations(pos, mass, softening=SOFTENING)
        rel = np.linalg.norm(acc_bh - acc_direct, axis=1) / np.linalg.norm(acc_direct, axis=1)
        assert np.median(rel) < 0.02

    def test_error_grows_with_theta(self, gaussian_blob):
        pos, mass = gaussian_blob
        acc_direct = compute_direct_accelerations(pos, mass, softening=SOFTENING)
        errors = []
        for theta in (0.2, 1.0):
            acc = compute_bh_accelerations(pos, mass, theta=theta, softening=SOFTENING)
            errors.append(np.median(np.linalg.norm(acc - acc_direct, axis=1)))
        assert errors[0] < errors[1]

    def test_two_body_symmetry(self):
        pos = np.array([[-1.0, 0.0], [1.0, 0.0]])
        acc = compute_bh_accelerations(pos, [1.0, 1.0], theta=0.6, softening=0.0)
        np.testing.assert_allclose(acc[0], -acc[1])
        assert acc[0, 0] == pytest.approx(0.25)
        assert acc[0, 1] == 0.0

    def test_single_body_feels_nothing(self):
        acc = compute_bh_accelerations(np.array([[3.0, 4.0]]), 5.0)
        np.testing.assert_array_equal(acc, 0.0)

    def test_duplicates_finite(self):
        pos = np.zeros((20, 2))
        acc = compute_bh_accelerations(pos, 1.0, theta=0.6, softening=0.0)
        assert np.all(np.isfinite(acc))

    def test_invalid_theta(self):
        with pytest.raises(ValueError):
            compute_bh_accelerations(np.zeros((2, 2)), 1.0, theta=-1.0)
