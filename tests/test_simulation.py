"""Tests for nbody_lbvh.simulation on the CPU backend."""

import numpy as np
import pytest

import nbody_lbvh.simulation as simulation_module
from nbody_lbvh import Simulation, SimConfig, default_config, check_tree_topology
from nbody_lbvh.config import MAX_BODIES, META_EPS, META_THETA, META_CENTER_X, META_HALF_X, META_HALF_Y
from nbody_lbvh.forces import compute_direct_accelerations
from nbody_lbvh.scenarios import make_uniform_disk
from nbody_lbvh.utils import total_momentum

# ── Constants ────────────────────────────────────────────────────────────
DT = 1e-3
F64 = dict(precision='float64', delta_time=DT)


@pytest.fixture()
def disk():
    return make_uniform_disk(300, radius=5.0, seed=11)


def _sim(**config):
    return Simulation(SimConfig(**config), backend='cpu')


# =====================================================================
# Lifecycle and errors
# =====================================================================
class TestLifecycle:

    def test_backend_cpu(self):
        sim = _sim()
        assert sim.backend == 'cpu'
        assert sim.xp is np
        assert sim.num_bodies == 0 and not sim.seeded

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            Simulation(backend='tpu')

    def test_gpu_without_cupy(self, monkeypatch):
        monkeypatch.setattr(simulation_module._gpu, 'CUPY_AVAILABLE', False)
        with pytest.raises(ImportError):
            Simulation(backend='gpu')

    @pytest.mark.parametrize("n", [0, -1, MAX_BODIES + 1, 2.5])
    def test_invalid_body_count(self, n):
        sim = _sim()
        with pytest.raises(ValueError):
            sim.set_num_bodies(n)

    def test_failed_allocation_leaves_empty_state(self, disk, monkeypatch):
        sim = _sim(**F64)
        sim.seed_bodies(*disk)

        def out_of_memory(*args, **kwargs):
            raise MemoryError("out of memory")

        monkeypatch.setattr(simulation_module, 'allocate_tree', out_of_memory)
        with pytest.raises(MemoryError, match="MB"):
            sim.set_num_bodies(600)
        assert sim.num_bodies == 0
        assert sim.num_slots == 0
        assert not sim.seeded
        assert sim.tree is None
        assert sim.positions.shape == (0, 2)
        with pytest.raises(RuntimeError):
            sim.step()

        monkeypatch.undo()
        sim.set_num_bodies(600)
        assert sim.num_bodies == 600

    def test_advance_before_seed(self):
        sim = _sim()
        sim.set_num_bodies(10)
        with pytest.raises(RuntimeError):
            sim.advance()

    def test_resize_unseeds(self, disk):
        sim = _sim(**F64)
        sim.seed_bodies(*disk)
        sim.advance()
        sim.set_num_bodies(300)
        assert not sim.seeded
        with pytest.raises(RuntimeError):
            sim.step()

    def test_resize_idempotent(self):
        sim = _sim(**F64)
        sim.set_num_bodies(64)
        first = {name: sim.read_buffer(name) for name in simulation_module.BUFFER_NAMES}
        sim.set_num_bodies(64)
        second = {name: sim.read_buffer(name) for name in simulation_module.BUFFER_NAMES}
        for name in first:
            np.testing.assert_array_equal(first[name], second[name], err_msg=name)
        assert sim.num_bodies == 64

    def test_resize_then_reseed_reproduces(self, disk):
        sim = _sim(**F64)
        sim.seed_bodies(*disk)
        for _ in range(5):
            sim.step()
        first = sim.read_buffer('position')

        sim.set_num_bodies(300)
        sim.set_num_bodies(300)
        sim.seed_bodies(*disk)
        for _ in range(5):
            sim.step()
        np.testing.assert_array_equal(sim.read_buffer('position'), first)

    def test_close(self):
        sim = _sim()
        sim.set_num_bodies(4)
        sim.close()
        sim.close()
        with pytest.raises(RuntimeError):
            sim.set_num_bodies(4)
        with pytest.raises(RuntimeError):
            sim.read_buffer('mass')

    def test_context_manager(self, disk):
        with _sim() as sim:
            sim.seed_bodies(*disk)
            sim.advance()
        with pytest.raises(RuntimeError):
            sim.advance()


# =====================================================================
# Seeding and readback
# =====================================================================
class TestSeeding:

    def test_seed_resizes(self, disk):
        sim = _sim()
        sim.seed_bodies(*disk)
        assert sim.num_bodies == 300 and sim.seeded
        np.testing.assert_allclose(sim.read_buffer('mass'), disk[0].astype(np.float32))

    def test_zero_velocity_default(self):
        sim = _sim()
        sim.seed_bodies(1.0, np.zeros((3, 2)))
        np.testing.assert_array_equal(sim.read_buffer('velocity'), 0.0)

    @pytest.mark.parametrize("args", [
        (1.0, np.zeros((4, 3))),
        (np.ones(3), np.zeros((4, 2))),
        (1.0, np.zeros((4, 2)), np.zeros((3, 2))),
        (-1.0, np.zeros((4, 2))),
    ])
    def test_invalid_seed(self, args):
        sim = _sim()
        with pytest.raises(ValueError):
            sim.seed_bodies(*args)

    def test_set_scenario(self):
        sim = _sim()
        sim.set_scenario('default', 128, seed=0)
        assert sim.num_bodies == 128 and sim.seeded
        with pytest.raises(ValueError):
            sim.set_scenario('nope', 128)

    def test_positions_read_only_view(self, disk):
        sim = _sim()
        sim.seed_bodies(*disk)
        pos = sim.positions
        assert pos.shape == (300, 2)
        with pytest.raises(ValueError):
            pos[0, 0] = 1.0
        sim.step()
        # view tracks the live buffer
        np.testing.assert_array_equal(pos, sim.read_buffer('position'))

    def test_read_buffer_copies(self, disk):
        sim = _sim()
        sim.seed_bodies(*disk)
        mass = sim.read_buffer('mass')
        mass[:] = 0
        assert sim.read_buffer('mass').sum() > 0

    def test_read_buffer_names(self, disk):
        sim = _sim()
        sim.seed_bodies(*disk)
        sim.step()
        assert sim.read_buffer('morton_codes').dtype == np.uint32
        assert sim.read_buffer('left').shape == (299,)
        assert sim.read_buffer('node_com').shape == (599, 2)
        with pytest.raises(ValueError):
            sim.read_buffer('bogus')


# =====================================================================
# Physics
# =====================================================================
class TestPhysics:

    def test_free_body_drifts(self):
        sim = _sim(**F64)
        sim.seed_bodies(1.0, [[0.0, 0.0]], [[1.0, -2.0]])
        for _ in range(10):
            sim.step()
        np.testing.assert_allclose(sim.positions[0], [10 * DT, -20 * DT])

    def test_two_body_symmetry(self):
        sim = _sim(softening=0.01, **F64)
        sim.set_scenario('two_body', 2)
        for _ in range(50):
            sim.step()
        pos = sim.read_buffer('position')
        vel = sim.read_buffer('velocity')
        np.testing.assert_allclose(pos[0], -pos[1], atol=1e-12)
        np.testing.assert_allclose(vel[0], -vel[1], atol=1e-12)
        # circular orbit keeps its separation
        assert np.linalg.norm(pos[0] - pos[1]) == pytest.approx(2.0, rel=1e-3)

    def test_theta_zero_matches_direct(self, disk):
        mass, pos, vel = disk
        sim = _sim(theta=0.0, softening=0.05, **F64)
        sim.seed_bodies(mass, pos, vel)
        sim.step()
        expected = compute_direct_accelerations(pos, mass, softening=0.05)
        np.testing.assert_allclose(sim.read_buffer('acceleration'), expected, rtol=1e-10, atol=1e-12)

    def test_momentum_conservation(self, disk):
        mass, pos, vel = disk
        sim = _sim(theta=0.3, softening=0.05, **F64)
        sim.seed_bodies(mass, pos, vel)
        p0 = total_momentum(vel, mass)
        for _ in range(50):
            sim.step()
        p1 = total_momentum(sim.read_buffer('velocity'), mass)
        scale = np.sum(mass * np.linalg.norm(vel, axis=1))
        assert np.linalg.norm(p1 - p0) < 1e-2 * scale

    def test_tree_valid_after_step(self, disk):
        sim = _sim()
        sim.seed_bodies(*disk)
        sim.advance()
        check_tree_topology(sim.tree)
        assert sim.tree.mass[0] == pytest.approx(disk[0].sum(), rel=1e-5)

    def test_advance_runs_substeps(self, disk):
        sim = Simulation(default_config(substeps=3), backend='cpu')
        sim.seed_bodies(*disk)
        out = sim.advance()
        assert sim.substeps_done == 3
        assert out.shape == (300, 2)

    def test_custom_sorter(self, disk):
        calls = []

        def lexsorter(keys, values):
            calls.append(keys.shape[0])
            order = np.lexsort((values, keys))
            keys[:] = keys[order]
            values[:] = values[order]

        reference = _sim(**F64)
        reference.seed_bodies(*disk)
        sim = Simulation(SimConfig(**F64), backend='cpu', sorter=lexsorter)
        sim.seed_bodies(*disk)
        for _ in range(3):
            reference.step()
            sim.step()
        assert calls == [300, 300, 300]
        np.testing.assert_array_equal(sim.read_buffer('position'), reference.read_buffer('position'))


# =====================================================================
# Metadata, window and user body
# =====================================================================
class TestMetadata:

    def test_auto_softening(self, disk):
        sim = _sim(epsilon_multiplier=2.0, **F64)
        sim.seed_bodies(*disk)
        sim.step()
        meta = sim.read_buffer('metadata')
        expected = 2.0 * np.sqrt(4.0 * meta[META_HALF_X] * meta[META_HALF_Y] / 300)
        assert meta[META_EPS] == pytest.approx(expected)

    def test_camera(self, disk):
        sim = _sim(**F64)
        sim.seed_bodies(*disk)
        sim.set_camera((1.0, 2.0), 50.0)
        sim.step()
        meta = sim.read_buffer('metadata')
        np.testing.assert_array_equal(meta[META_CENTER_X:META_CENTER_X + 4], [1.0, 2.0, 50.0, 50.0])
        sim.clear_camera()
        sim.step()
        meta = sim.read_buffer('metadata')
        assert meta[META_HALF_X] < 10.0

    def test_configure_updates_metadata(self, disk):
        sim = _sim(**F64)
        sim.seed_bodies(*disk)
        sim.configure(theta=0.9)
        assert sim.read_buffer('metadata')[META_THETA] == pytest.approx(0.9)
        assert sim.seeded

    def test_configure_precision_reallocates(self, disk):
        sim = _sim()
        sim.seed_bodies(*disk)
        sim.configure(precision='float64')
        assert not sim.seeded
        assert sim.read_buffer('position').dtype == np.float64

    def test_user_body_attracts(self):
        sim = _sim(user_body=True, softening=0.0, **F64)
        sim.seed_bodies(1.0, [[0.0, 0.0]])
        sim.set_user_body((1.0, 0.0), 4.0)
        sim.step()
        assert sim.positions.shape == (1, 2)
        assert sim.read_buffer('position').shape == (2, 2)
        assert sim.read_buffer('acceleration')[0, 0] == pytest.approx(4.0)
        assert sim.read_buffer('velocity')[0, 0] > 0
        # the phantom never moves
        np.testing.assert_array_equal(sim.read_buffer('position')[1], [1.0, 0.0])

    def test_user_body_disabled(self):
        sim = _sim()
        with pytest.raises(ValueError):
            sim.set_user_body((0.0, 0.0), 1.0)
