"""
ForceSimulator — 受约束的节点力学模拟

每个子步依次:
1. 全对斥力 (O(n²))，距离平方下限 min_dist_sq 防止奇点
2. 层引导力：弱拉向所属层的目标点
3. 边界软力：5×5×5 邻域内每个外部体素对节点施加指向内部的平方反比推力
4. 半隐式欧拉积分 + 阻尼，记录平均动能
5. 硬约束：积分后位置若在外部，回退到子步前位置并反弹 (×bounce)

所有力都由同一个冻结的位置快照计算。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from core.config import LayoutConfig
from core.voxelizer import VoxelGrid

logger = logging.getLogger(__name__)


@dataclass
class Node:
    """单个节点的只读快照"""
    position: np.ndarray
    previous: np.ndarray
    velocity: np.ndarray
    force: np.ndarray
    layer: int
    index: int


class NodeSet:
    """
    节点集合 (structure-of-arrays)

    layer 为 LayerTarget 数组下标；节点不会在不重新播种的情况下换层。
    """

    def __init__(self, positions, velocities, layers, indices) -> None:
        self.positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3).copy()
        self.previous = self.positions.copy()
        self.velocities = np.asarray(velocities, dtype=np.float64).reshape(-1, 3).copy()
        self.forces = np.zeros_like(self.positions)
        self.layers = np.asarray(layers, dtype=np.int64)
        self.indices = np.asarray(indices, dtype=np.int64)

    @classmethod
    def empty(cls) -> "NodeSet":
        return cls(np.zeros((0, 3)), np.zeros((0, 3)), [], [])

    def __len__(self) -> int:
        return self.positions.shape[0]

    def node(self, i: int) -> Node:
        return Node(
            position=self.positions[i].copy(),
            previous=self.previous[i].copy(),
            velocity=self.velocities[i].copy(),
            force=self.forces[i].copy(),
            layer=int(self.layers[i]),
            index=int(self.indices[i]),
        )

    def layer_counts(self, n_layers: int) -> List[int]:
        return np.bincount(self.layers, minlength=n_layers)[:n_layers].tolist()

    def positions_by_layer(self, n_layers: int) -> List[np.ndarray]:
        """按层分组的位置副本；未播种的层为 (0, 3) 空数组"""
        out = []
        for layer in range(n_layers):
            mask = self.layers == layer
            order = np.argsort(self.indices[mask], kind="stable")
            out.append(self.positions[mask][order].copy())
        return out


def _neighbour_offsets(radius: int) -> np.ndarray:
    r = np.arange(-radius, radius + 1)
    offs = np.stack(np.meshgrid(r, r, r, indexing="ij"), axis=-1).reshape(-1, 3)
    return offs[np.any(offs != 0, axis=1)]


class ForceSimulator:
    """
    力学模拟器

    Usage::

        sim = ForceSimulator(grid, layer_targets, nodes, config)
        sim.tick()              # config.substeps 个固定步长子步
        print(sim.energy)
    """

    def __init__(
        self,
        grid: VoxelGrid,
        layer_targets: np.ndarray,
        nodes: NodeSet,
        config: Optional[LayoutConfig] = None,
    ) -> None:
        self.grid = grid
        self.layer_targets = np.asarray(layer_targets, dtype=np.float64).reshape(-1, 3)
        self.nodes = nodes
        self.config = config or LayoutConfig()
        self.energy = 0.0
        self._offsets = _neighbour_offsets(self.config.boundary_radius)
        self._offsets_radius = self.config.boundary_radius

    def tick(self) -> float:
        """一次外部 tick：固定数量的子步，返回平均动能"""
        if len(self.nodes) == 0:
            return self.energy
        dt = self.config.fixed_dt
        for _ in range(self.config.substeps):
            self.step(dt)
        return self.energy

    def step(self, dt: float) -> None:
        """单个子步"""
        nodes = self.nodes
        if len(nodes) == 0:
            return

        cfg = self.config
        pos = nodes.positions

        nodes.forces[:] = 0.0
        nodes.forces += self._repulsion(pos, cfg.k_repel, cfg.min_dist_sq)
        nodes.forces += self._layer_guidance(pos, cfg.k_layer)
        nodes.forces += self._boundary(pos, cfg.k_boundary, cfg.boundary_min_dist_sq)
        self._integrate(dt)

    # ── 力 ─────────────────────────────────────────────────────

    @staticmethod
    def _repulsion(pos: np.ndarray, k: float, min_dist_sq: float) -> np.ndarray:
        diff = pos[:, None, :] - pos[None, :, :]            # i - j
        dist_sq = np.sum(diff * diff, axis=-1)
        dist = np.sqrt(dist_sq)
        mag = k / np.maximum(dist_sq, min_dist_sq)
        with np.errstate(invalid="ignore", divide="ignore"):
            unit = np.where(dist[..., None] > 0, diff / dist[..., None], 0.0)
        # 对角线 diff = 0，自作用为零；i/j 对称项保证等大反向
        return np.sum(unit * mag[..., None], axis=1)

    def _layer_guidance(self, pos: np.ndarray, k: float) -> np.ndarray:
        if self.layer_targets.shape[0] == 0:
            return np.zeros_like(pos)
        targets = self.layer_targets[self.nodes.layers]
        return (targets - pos) * k

    def _boundary(self, pos: np.ndarray, k: float, min_dist_sq: float) -> np.ndarray:
        if self._offsets_radius != self.config.boundary_radius:
            self._offsets = _neighbour_offsets(self.config.boundary_radius)
            self._offsets_radius = self.config.boundary_radius

        cells = self.grid.world_to_cell(pos)                       # (N, 3)
        neigh = cells[:, None, :] + self._offsets[None, :, :]      # (N, K, 3)
        outside = ~self.grid.occupied(neigh)                       # (N, K)

        d = pos[:, None, :] - self.grid.cell_to_world(neigh)       # 外部体素 → 节点
        dist_sq = np.maximum(np.sum(d * d, axis=-1), min_dist_sq)
        norm = np.sqrt(np.sum(d * d, axis=-1))
        with np.errstate(invalid="ignore", divide="ignore"):
            unit = np.where(norm[..., None] > 0, d / norm[..., None], 0.0)
        push = unit * (k / dist_sq)[..., None] * outside[..., None]
        return np.sum(push, axis=1)

    # ── 积分 + 硬约束 ──────────────────────────────────────────

    def _integrate(self, dt: float) -> None:
        cfg = self.config
        n = self.nodes

        n.previous[:] = n.positions
        n.velocities += n.forces * dt
        n.velocities *= cfg.damping
        n.positions += n.velocities * dt

        speed_sq = np.sum(n.velocities ** 2, axis=1)
        finite = np.isfinite(speed_sq)
        # 非有限速度在下面被清零，按 0 计入
        self.energy = float(np.mean(np.where(finite, speed_sq, 0.0)))

        outside = ~self.grid.contains(n.positions)
        if np.any(outside):
            n.positions[outside] = n.previous[outside]
            n.velocities[outside] *= cfg.bounce
            bad = ~np.all(np.isfinite(n.velocities), axis=1)
            n.velocities[bad] = 0.0
