"""
LayoutEngine — 体积布局生命周期编排

状态机:
  UNLOADED → NORMALIZING → VOXELIZING → READY → SEEDED ⇄ RUNNING / STOPPED
  任意状态 → reset() → UNLOADED（回到默认非体积布局）

网格、包围盒、体素网格、InsideCache、层目标与节点全部由一个引擎实例持有，
不存在全局单例。体素化由调用方通过 pump() 逐单元推进，模拟由调用方通过
step() 逐 tick 推进；引擎本身从不阻塞、不开线程。
"""

from __future__ import annotations

import logging
from dataclasses import fields
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

import numpy as np

from core.config import LayoutConfig
from core.default_layout import default_layout
from core.force_simulator import ForceSimulator, NodeSet
from core.mesh_processor import Bounds, MeshData, MeshProcessor
from core.sampler import InsidePointSampler
from core.voxelizer import VoxelGrid, VoxelizeJob, Voxelizer

logger = logging.getLogger(__name__)


class LayoutState(Enum):
    UNLOADED = "unloaded"
    NORMALIZING = "normalizing"
    VOXELIZING = "voxelizing"
    READY = "ready"
    SEEDED = "seeded"
    RUNNING = "running"
    STOPPED = "stopped"


def compute_layer_targets(
    bounds: Bounds,
    n_layers: int,
    inset: Tuple[float, float] = (0.13, 0.87),
) -> np.ndarray:
    """
    沿主轴等距放置每层目标点，两端各留内缩边距，其余两轴取包围盒中心。

    Returns
    -------
    ndarray (n_layers, 3)
    """
    axis = bounds.principal_axis
    lo, hi = inset
    targets = np.tile(bounds.center, (n_layers, 1))
    for layer in range(n_layers):
        t = 0.5 if n_layers == 1 else layer / (n_layers - 1)
        targets[layer, axis] = bounds.min[axis] + bounds.size[axis] * (lo + t * (hi - lo))
    return targets


def _validate_layer_sizes(layer_sizes: Sequence[int]) -> List[int]:
    sizes = []
    for n in layer_sizes:
        if isinstance(n, bool) or not isinstance(n, (int, np.integer)) or n <= 0:
            raise ValueError(f"Layer sizes must be positive integers, got {n!r}")
        sizes.append(int(n))
    return sizes


class LayoutEngine:
    """
    布局引擎

    Usage::

        engine = LayoutEngine(LayoutConfig(seed=7))
        engine.on_tick = renderer.update_positions
        engine.set_layer_sizes([4, 8, 8, 2])
        job = engine.load_mesh(mesh)
        while engine.pump():
            process_events()
        engine.start()
        engine.step()           # 每帧一次
    """

    def __init__(self, config: Optional[LayoutConfig] = None, seed: Optional[int] = None) -> None:
        self.config = config or LayoutConfig()
        self._rng = np.random.default_rng(seed if seed is not None else self.config.seed)

        # 回调
        self.on_progress: Optional[Callable[[float, str], None]] = None
        self.on_ready: Optional[Callable[[MeshData], None]] = None
        self.on_tick: Optional[Callable[[List[np.ndarray]], None]] = None

        self.state = LayoutState.UNLOADED
        self._layer_sizes: List[int] = []

        self._job: Optional[VoxelizeJob] = None
        self._pending: Optional[Tuple[MeshData, Bounds]] = None
        self._resume_after_job = False

        self._mesh: Optional[MeshData] = None
        self._bounds: Optional[Bounds] = None
        self._grid: Optional[VoxelGrid] = None
        self._inside_cache = np.zeros((0, 3), dtype=np.int64)
        self._layer_targets = np.zeros((0, 3))
        self._nodes = NodeSet.empty()
        self._simulator: Optional[ForceSimulator] = None

    # ── 只读状态 ────────────────────────────────────────────────

    @property
    def mesh(self) -> Optional[MeshData]:
        return self._mesh

    @property
    def bounds(self) -> Optional[Bounds]:
        return self._bounds

    @property
    def grid(self) -> Optional[VoxelGrid]:
        return self._grid

    @property
    def inside_cache(self) -> np.ndarray:
        return self._inside_cache

    @property
    def layer_targets(self) -> np.ndarray:
        return self._layer_targets

    @property
    def nodes(self) -> NodeSet:
        return self._nodes

    @property
    def layer_sizes(self) -> List[int]:
        return list(self._layer_sizes)

    @property
    def is_loaded(self) -> bool:
        return self._grid is not None

    @property
    def is_running(self) -> bool:
        return self.state == LayoutState.RUNNING

    @property
    def is_voxelizing(self) -> bool:
        return self._job is not None

    @property
    def energy(self) -> float:
        """最近一次 tick 后的平均动能"""
        return self._simulator.energy if self._simulator is not None else 0.0

    # ── 加载 / 体素化 ──────────────────────────────────────────

    def load_mesh(self, mesh: MeshData) -> VoxelizeJob:
        """
        开始加载新网格：先停止 tick、取消进行中的任务，再归一化并创建体素化任务。
        之前网格的所有状态立即丢弃。
        """
        self.stop()
        self._cancel_job()
        self._clear_volume()

        self.state = LayoutState.NORMALIZING
        normalized, bounds = MeshProcessor.normalize(mesh, self.config.target_size)
        logger.info("Mesh normalized: %d faces, size=%s", normalized.n_faces,
                    np.round(bounds.size, 3).tolist())

        self._begin_voxelize(normalized, bounds)
        return self._job

    def load_mesh_blocking(self, mesh: MeshData) -> bool:
        """加载并一次性完成体素化；返回是否就绪"""
        self.load_mesh(mesh)
        while self.pump():
            pass
        return self.is_loaded

    def pump(self) -> bool:
        """推进当前体素化任务一个工作单元；返回 True 表示还需继续调用"""
        job = self._job
        if job is None:
            return False
        if job.step():
            return True

        self._job = None
        if job.result is not None and self._pending is not None:
            self._install(job)
        return False

    def set_resolution(self, resolution: int) -> None:
        """修改网格分辨率；已加载网格时重新体素化，完成后原子替换并重新播种"""
        resolution = int(resolution)
        if resolution < 2:
            raise ValueError(f"Grid resolution must be >= 2, got {resolution}")
        if resolution == self.config.resolution:
            return
        self.config.resolution = resolution

        if self._pending is None:
            return

        resume = self.is_running or self._resume_after_job
        self.stop()
        self._cancel_job()
        mesh, bounds = self._pending
        logger.info("Resolution changed to %d, re-voxelizing", resolution)
        self._begin_voxelize(mesh, bounds)
        self._resume_after_job = resume

    def _begin_voxelize(self, mesh: MeshData, bounds: Bounds) -> None:
        self._pending = (mesh, bounds)
        self.state = LayoutState.VOXELIZING
        self._job = Voxelizer(self.config, self._rng).start(mesh, bounds, self._emit_progress)

    def _cancel_job(self) -> None:
        if self._job is not None:
            self._job.cancel()
            self._job = None

    def _install(self, job: VoxelizeJob) -> None:
        mesh, bounds = self._pending
        result = job.result

        # 一次性替换，tick 不会看到半新半旧的网格
        self._mesh, self._bounds = mesh, bounds
        self._grid, self._inside_cache = result.grid, result.inside_cache
        self._nodes = NodeSet.empty()
        self._simulator = None
        self.state = LayoutState.READY

        if result.voxel_count == 0:
            logger.warning("No interior cells found; nodes cannot be placed in this mesh")

        if self._layer_sizes:
            self.seed(self._layer_sizes)
        if self._resume_after_job:
            self._resume_after_job = False
            self.start()

        # 回调时节点已播种完毕
        if self.on_ready:
            self.on_ready(mesh)

    # ── 播种 ───────────────────────────────────────────────────

    def set_layer_sizes(self, layer_sizes: Sequence[int]) -> int:
        """拓扑变化：记录层尺寸，已加载网格时立即重新播种"""
        self._layer_sizes = _validate_layer_sizes(layer_sizes)
        if self._grid is None:
            return 0
        return self.seed(self._layer_sizes)

    def seed(self, layer_sizes: Sequence[int]) -> int:
        """
        在现有体素网格内放置节点（不重新体素化）。

        尽力而为：采样失败的节点不会被创建。返回实际创建的节点数。
        """
        sizes = _validate_layer_sizes(layer_sizes)
        self._layer_sizes = sizes

        if self._grid is None:
            logger.warning("Seed requested before a mesh is ready; keeping default layout")
            return 0

        cfg = self.config
        targets = compute_layer_targets(self._bounds, len(sizes), cfg.layer_inset)
        sampler = InsidePointSampler(
            self._grid, self._inside_cache, self._rng,
            spread_factor=cfg.spread_factor,
            fallback_samples=cfg.fallback_samples,
        )

        positions, layers, indices = [], [], []
        failed = 0
        for layer, n in enumerate(sizes):
            for i in range(n):
                p = sampler.find_near(targets[layer], cfg.seed_tries)
                if p is None:
                    failed += 1
                    continue
                positions.append(p)
                layers.append(layer)
                indices.append(i)

        count = len(positions)
        velocities = (self._rng.random((count, 3)) - 0.5) * cfg.initial_velocity
        nodes = NodeSet(np.array(positions).reshape(-1, 3), velocities, layers, indices)

        was_running = self.is_running
        self._layer_targets = targets
        self._nodes = nodes
        self._simulator = ForceSimulator(self._grid, targets, nodes, cfg) if count else None
        # 重新体素化期间保持 VOXELIZING，完成后会再次播种
        if self._job is None:
            if count:
                self.state = LayoutState.RUNNING if was_running else LayoutState.SEEDED
            else:
                self.state = LayoutState.READY

        if failed:
            logger.warning("Seeding placed %d/%d nodes", count, count + failed)
        else:
            logger.info("Seeded %d nodes across %d layers", count, len(sizes))
        return count

    # ── 运行 ───────────────────────────────────────────────────

    def start(self) -> bool:
        if self.state not in (LayoutState.SEEDED, LayoutState.STOPPED) or self._simulator is None:
            if not self.is_running:
                logger.warning("Cannot start simulation in state %s", self.state.value)
            return self.is_running
        self.state = LayoutState.RUNNING
        return True

    def stop(self) -> None:
        """立即停止；重新体素化完成后也不会自动恢复"""
        self._resume_after_job = False
        if self.state == LayoutState.RUNNING:
            self.state = LayoutState.STOPPED

    def step(self) -> bool:
        """一次外部 tick；仅在 RUNNING 时执行，执行后触发 on_tick"""
        if not self.is_running or self._simulator is None:
            return False
        self._simulator.tick()
        if self.on_tick:
            self.on_tick(self.positions())
        return True

    def positions(self) -> List[np.ndarray]:
        """当前各层节点位置；无体积布局时返回默认布局"""
        if self._simulator is None:
            return default_layout(self._layer_sizes)
        return self._nodes.positions_by_layer(len(self._layer_sizes))

    # ── 参数 ───────────────────────────────────────────────────

    def configure(self, **params: Any) -> None:
        """运行时修改参数；系数在下一个子步生效，resolution 触发重新体素化"""
        resolution = params.pop("resolution", None)
        known = {f.name for f in fields(LayoutConfig)}
        for key, value in params.items():
            if key not in known:
                raise ValueError(f"Unknown layout parameter: {key}")
            setattr(self.config, key, value)
        if resolution is not None:
            self.set_resolution(resolution)

    # ── 重置 ───────────────────────────────────────────────────

    def reset(self) -> List[np.ndarray]:
        """丢弃所有体积状态，返回默认布局位置"""
        self.stop()
        self._cancel_job()
        self._clear_volume()
        self._pending = None
        self.state = LayoutState.UNLOADED
        logger.info("Layout reset to default")
        return self.positions()

    def _clear_volume(self) -> None:
        self._mesh = None
        self._bounds = None
        self._grid = None
        self._inside_cache = np.zeros((0, 3), dtype=np.int64)
        self._layer_targets = np.zeros((0, 3))
        self._nodes = NodeSet.empty()
        self._simulator = None

    def _emit_progress(self, pct: float, msg: str) -> None:
        if self.on_progress:
            self.on_progress(pct, msg)
