"""
测试内部点采样与力学模拟
"""

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _volume(mesh, resolution=16, seed=0):
    from core.config import LayoutConfig
    from core.mesh_processor import MeshProcessor
    from core.voxelizer import Voxelizer
    cfg = LayoutConfig(resolution=resolution, seed=seed)
    norm, bounds = MeshProcessor.normalize(mesh, cfg.target_size)
    return Voxelizer(cfg).voxelize(norm, bounds)


def _seeded_nodes(result, count, rng, initial_velocity=0.1, n_layers=2):
    from core.force_simulator import NodeSet
    from core.sampler import InsidePointSampler
    sampler = InsidePointSampler(result.grid, result.inside_cache, rng)
    pts = [sampler.find_near(result.grid.bounds.center) for _ in range(count)]
    layers = [i % n_layers for i in range(count)]
    indices = [i // n_layers for i in range(count)]
    vel = (rng.random((count, 3)) - 0.5) * initial_velocity
    return NodeSet(np.array(pts), vel, layers, indices)


# ── 采样器 ──────────────────────────────────────────────────────

class TestInsidePointSampler:

    def test_returns_interior_point(self, sphere_mesh):
        from core.sampler import InsidePointSampler
        result = _volume(sphere_mesh)
        sampler = InsidePointSampler(result.grid, result.inside_cache, np.random.default_rng(1))
        for _ in range(50):
            p = sampler.find_near([0.0, 0.0, 0.0])
            assert result.grid.is_inside(p)

    def test_spread_from_diagonal(self, cube_mesh):
        from core.sampler import InsidePointSampler
        result = _volume(cube_mesh, 8)
        sampler = InsidePointSampler(result.grid, result.inside_cache, np.random.default_rng(1))
        assert sampler.spread == pytest.approx(0.25 * np.sqrt(300.0))

    def test_fallback_nearest_cached_cell(self, two_box_mesh):
        from core.sampler import InsidePointSampler
        result = _volume(two_box_mesh, 16)
        sampler = InsidePointSampler(result.grid, result.inside_cache, np.random.default_rng(2),
                                     fallback_samples=10_000)
        target = np.array([100.0, 0.013, 0.029])
        p = sampler.find_near(target, max_tries=0)

        # 采样数覆盖整个 cache 时，结果就是离目标最近的内部体素中心
        centers = result.grid.cell_to_world(result.inside_cache)
        best = centers[np.argmin(np.sum((centers - target) ** 2, axis=1))]
        np.testing.assert_allclose(p, best)
        assert result.grid.is_inside(p)

    def test_empty_cache_fails(self, open_cube_mesh):
        from core.sampler import InsidePointSampler
        result = _volume(open_cube_mesh, 8)
        sampler = InsidePointSampler(result.grid, result.inside_cache, np.random.default_rng(0))
        assert sampler.find_near([0.0, 0.0, 0.0]) is None


# ── 力 ─────────────────────────────────────────────────────────

class TestForces:

    def test_repulsion_equal_and_opposite(self):
        from core.force_simulator import ForceSimulator
        pos = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        f = ForceSimulator._repulsion(pos, 0.6, 0.09)
        np.testing.assert_allclose(f[0], [-0.6, 0.0, 0.0])
        np.testing.assert_allclose(f[1], [0.6, 0.0, 0.0])

    def test_repulsion_clamped(self):
        from core.force_simulator import ForceSimulator
        pos = np.array([[0.0, 0.0, 0.0], [0.0, 0.1, 0.0]])
        f = ForceSimulator._repulsion(pos, 0.6, 0.09)
        assert f[1, 1] == pytest.approx(0.6 / 0.09)

    def test_repulsion_net_zero(self):
        from core.force_simulator import ForceSimulator
        pos = np.random.default_rng(4).normal(size=(20, 3))
        f = ForceSimulator._repulsion(pos, 0.6, 0.09)
        np.testing.assert_allclose(f.sum(axis=0), 0.0, atol=1e-9)

    def test_coincident_nodes_no_nan(self):
        from core.force_simulator import ForceSimulator
        pos = np.zeros((3, 3))
        f = ForceSimulator._repulsion(pos, 0.6, 0.09)
        assert np.all(np.isfinite(f))

    def test_boundary_pushes_inward(self, cube_mesh):
        from core.config import LayoutConfig
        from core.force_simulator import ForceSimulator, NodeSet
        result = _volume(cube_mesh, 16)
        near_wall = np.array([[4.8, 0.0, 0.0], [0.0, 0.0, 0.0]])
        nodes = NodeSet(near_wall, np.zeros((2, 3)), [0, 0], [0, 1])
        sim = ForceSimulator(result.grid, np.zeros((1, 3)), nodes, LayoutConfig())
        f = sim._boundary(near_wall, 0.4, 0.01)
        assert f[0, 0] < 0                     # 靠近 +X 壁 → 向 -X 推
        np.testing.assert_allclose(f[1], 0.0)  # 中心附近邻域全部在内部

    def test_layer_guidance(self, cube_mesh):
        from core.force_simulator import ForceSimulator, NodeSet
        result = _volume(cube_mesh, 8)
        targets = np.array([[-2.0, 0, 0], [2.0, 0, 0]])
        pos = np.zeros((2, 3))
        nodes = NodeSet(pos, np.zeros((2, 3)), [0, 1], [0, 0])
        sim = ForceSimulator(result.grid, targets, nodes)
        f = sim._layer_guidance(pos, 0.04)
        np.testing.assert_allclose(f, [[-0.08, 0, 0], [0.08, 0, 0]])


# ── 模拟 ───────────────────────────────────────────────────────

class TestForceSimulator:

    def test_containment_invariant(self, sphere_mesh):
        from core.config import LayoutConfig
        from core.force_simulator import ForceSimulator
        rng = np.random.default_rng(11)
        result = _volume(sphere_mesh, 16)
        nodes = _seeded_nodes(result, 30, rng, initial_velocity=20.0)
        targets = np.array([[-2.0, 0, 0], [2.0, 0, 0]])
        sim = ForceSimulator(result.grid, targets, nodes, LayoutConfig(k_repel=5.0))

        assert np.all(result.grid.contains(nodes.positions))
        for _ in range(200):
            sim.tick()
            assert np.all(result.grid.contains(nodes.positions))
            assert np.all(np.isfinite(nodes.velocities))

    def test_energy_decreases(self, cube_mesh):
        from core.config import LayoutConfig
        from core.force_simulator import ForceSimulator
        rng = np.random.default_rng(3)
        result = _volume(cube_mesh, 16)
        nodes = _seeded_nodes(result, 20, rng, initial_velocity=5.0)
        targets = np.array([[-3.0, 0, 0], [3.0, 0, 0]])
        sim = ForceSimulator(result.grid, targets, nodes, LayoutConfig())

        energies = [sim.tick() for _ in range(400)]
        assert np.mean(energies[-10:]) < np.mean(energies[:10])
        assert energies[-1] < energies[0]

    def test_nan_velocity_reverted(self, cube_mesh):
        from core.force_simulator import ForceSimulator, NodeSet
        result = _volume(cube_mesh, 8)
        start = np.array([[0.5, 0.5, 0.5], [-1.0, -1.0, -1.0]])
        nodes = NodeSet(start, [[np.nan, 0, 0], [0, 0, 0]], [0, 0], [0, 1])
        sim = ForceSimulator(result.grid, np.zeros((1, 3)), nodes)
        sim.step(1 / 180)
        np.testing.assert_array_equal(nodes.positions[0], start[0])
        assert np.all(np.isfinite(nodes.velocities))
        assert np.isfinite(sim.energy)

    def test_nan_velocity_energy_finite_after_tick(self, cube_mesh):
        from core.force_simulator import ForceSimulator, NodeSet
        result = _volume(cube_mesh, 8)
        nodes = NodeSet([[0.5, 0.5, 0.5], [-1.0, -1.0, -1.0]],
                        [[np.inf, 0, 0], [0.2, 0, 0]], [0, 0], [0, 1])
        sim = ForceSimulator(result.grid, np.zeros((1, 3)), nodes)
        energy = sim.tick()
        assert np.isfinite(energy)
        assert energy > 0.0

    def test_exterior_move_bounces(self, cube_mesh):
        from core.config import LayoutConfig
        from core.force_simulator import ForceSimulator, NodeSet
        result = _volume(cube_mesh, 8)
        start = np.array([[4.9, 0.0, 0.0]])
        nodes = NodeSet(start, [[1000.0, 0, 0]], [0], [0])
        cfg = LayoutConfig(k_boundary=0.0, k_layer=0.0, damping=1.0)
        sim = ForceSimulator(result.grid, np.zeros((1, 3)), nodes, cfg)
        sim.step(1 / 180)
        np.testing.assert_array_equal(nodes.positions[0], start[0])
        assert nodes.velocities[0, 0] == pytest.approx(-300.0)

    def test_tick_runs_substeps(self, cube_mesh):
        from core.config import LayoutConfig
        from core.force_simulator import ForceSimulator
        result = _volume(cube_mesh, 8)
        nodes = _seeded_nodes(result, 4, np.random.default_rng(0))
        sim = ForceSimulator(result.grid, np.zeros((2, 3)), nodes, LayoutConfig(substeps=5))
        calls = []
        original = sim.step
        sim.step = lambda dt: (calls.append(dt), original(dt))
        sim.tick()
        assert len(calls) == 5
        assert calls[0] == pytest.approx(1 / 300)

    def test_coefficients_read_each_substep(self, cube_mesh):
        from core.config import LayoutConfig
        from core.force_simulator import ForceSimulator, NodeSet
        result = _volume(cube_mesh, 8)
        cfg = LayoutConfig(k_boundary=0.0, k_repel=0.0, k_layer=0.0)
        nodes = NodeSet([[0.0, 0.0, 0.0]], [[0.0, 0.0, 0.0]], [0], [0])
        sim = ForceSimulator(result.grid, np.array([[1.0, 0, 0]]), nodes, cfg)
        sim.tick()
        assert sim.energy == 0.0
        cfg.k_layer = 10.0
        sim.tick()
        assert sim.energy > 0.0

    def test_empty_nodes(self, cube_mesh):
        from core.force_simulator import ForceSimulator, NodeSet
        result = _volume(cube_mesh, 8)
        sim = ForceSimulator(result.grid, np.zeros((0, 3)), NodeSet.empty())
        assert sim.tick() == 0.0


class TestNodeSet:

    def test_positions_by_layer(self):
        from core.force_simulator import NodeSet
        pos = np.arange(15, dtype=float).reshape(5, 3)
        nodes = NodeSet(pos, np.zeros((5, 3)), [0, 2, 0, 2, 2], [1, 0, 0, 2, 1])
        groups = nodes.positions_by_layer(3)
        assert [g.shape for g in groups] == [(2, 3), (0, 3), (3, 3)]
        np.testing.assert_array_equal(groups[0], pos[[2, 0]])
        np.testing.assert_array_equal(groups[2], pos[[1, 4, 3]])
        assert nodes.layer_counts(3) == [2, 0, 3]

    def test_node_snapshot(self):
        from core.force_simulator import NodeSet
        nodes = NodeSet([[1.0, 2.0, 3.0]], [[0.1, 0, 0]], [4], [7])
        node = nodes.node(0)
        assert node.layer == 4 and node.index == 7
        node.position[0] = 99.0
        assert nodes.positions[0, 0] == 1.0
