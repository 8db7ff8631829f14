"""
Voxelizer — 射线投射实心体素化

沿 +X 轴对每条扫描线 (iy, iz) 发射平行射线，Möller–Trumbore 求交，
交点排序去重后按奇偶规则成对填充内部体素。

体素化被拆成可恢复的工作单元 (VoxelizeJob.step)，每处理几行就把控制权
还给调用方的调度器，并通过回调报告进度；新的加载请求可以在下一个
让出点取消正在进行的任务。
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from core.config import LayoutConfig
from core.mesh_processor import Bounds, MeshData

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


# ── 射线-三角形求交 ─────────────────────────────────────────────

def intersect_ray_triangle(
    origin,
    direction,
    v0,
    v1,
    v2,
    eps: float = 1e-8,
) -> Optional[float]:
    """
    Möller–Trumbore 射线-三角形求交。

    Returns
    -------
    float or None
        命中参数 t（命中点 = origin + t * direction），未命中返回 None
    """
    origin = np.asarray(origin, dtype=np.float64)
    direction = np.asarray(direction, dtype=np.float64)
    v0 = np.asarray(v0, dtype=np.float64)
    e1 = np.asarray(v1, dtype=np.float64) - v0
    e2 = np.asarray(v2, dtype=np.float64) - v0

    h = np.cross(direction, e2)
    a = float(np.dot(e1, h))
    if abs(a) < eps:
        return None  # 射线与三角形平面平行

    f = 1.0 / a
    s = origin - v0
    u = f * float(np.dot(s, h))
    if u < -eps or u > 1.0 + eps:
        return None

    q = np.cross(s, e1)
    v = f * float(np.dot(direction, q))
    if v < -eps or u + v > 1.0 + eps:
        return None

    t = f * float(np.dot(e2, q))
    if t <= eps:
        return None  # 在射线起点之后
    return t


def scanline_hits(
    origin_x: float,
    y: float,
    z,
    v0: np.ndarray,
    e1: np.ndarray,
    e2: np.ndarray,
    eps: float = 1e-8,
) -> np.ndarray:
    """
    +X 方向射线与所有三角形的批量求交。

    Parameters
    ----------
    origin_x, y : float
        射线起点 (origin_x, y, z)
    z : float or ndarray (G,)
        传入数组时一次处理同一行 (iy) 的全部扫描线
    v0, e1, e2 : ndarray (M, 3)
        三角形第一个顶点与两条边

    Returns
    -------
    ndarray
        标量 z: (M,) 世界 X 坐标，未命中为 NaN；
        数组 z: (G, M)
    """
    z = np.asarray(z, dtype=np.float64)
    scalar = z.ndim == 0
    zz = np.atleast_1d(z)[:, None]

    # dir = (1, 0, 0) → h = dir × e2 = (0, -e2z, e2y)
    hy = -e2[:, 2]
    hz = e2[:, 1]
    a = e1[:, 1] * hy + e1[:, 2] * hz
    valid = np.abs(a) >= eps
    f = np.where(valid, 1.0 / np.where(valid, a, 1.0), 0.0)

    sx = origin_x - v0[:, 0]
    sy = y - v0[:, 1]
    sz = zz - v0[:, 2]

    u = f * (sy * hy + sz * hz)

    qx = sy * e1[:, 2] - sz * e1[:, 1]
    qy = sz * e1[:, 0] - sx * e1[:, 2]
    qz = sx * e1[:, 1] - sy * e1[:, 0]

    v = f * qx
    t = f * (e2[:, 0] * qx + e2[:, 1] * qy + e2[:, 2] * qz)

    hit = (
        valid
        & (u >= -eps) & (u <= 1.0 + eps)
        & (v >= -eps) & (u + v <= 1.0 + eps)
        & (t > eps)
    )
    xs = np.where(hit, origin_x + t, np.nan)
    return xs[0] if scalar else xs


def dedupe_hits(hits, eps: float = 1e-5) -> np.ndarray:
    """排序并合并距离小于 eps 的交点（共享边/顶点会产生重复交点）"""
    hits = np.sort(np.asarray(hits, dtype=np.float64))
    if hits.size == 0:
        return hits
    keep = [hits[0]]
    for x in hits[1:]:
        if x - keep[-1] > eps:
            keep.append(x)
    return np.array(keep)


# ── 体素网格 ────────────────────────────────────────────────────

@dataclass
class VoxelGrid:
    """G×G×G 内/外分类网格，索引顺序 [ix, iy, iz]"""
    occupancy: np.ndarray      # (G, G, G) bool
    bounds: Bounds

    @property
    def resolution(self) -> int:
        return self.occupancy.shape[0]

    @property
    def inside_count(self) -> int:
        return int(self.occupancy.sum())

    @property
    def _safe_size(self) -> np.ndarray:
        # 退化轴：所有坐标都映射到第 0 格
        return np.where(self.bounds.size > 0, self.bounds.size, 1.0)

    def world_to_cell(self, points) -> np.ndarray:
        """世界坐标 → 网格坐标 (可能越界)"""
        p = np.nan_to_num(np.asarray(points, dtype=np.float64), nan=-1e30, posinf=1e30, neginf=-1e30)
        cells = np.floor((p - self.bounds.min) / self._safe_size * self.resolution)
        cells = np.clip(cells, -1, self.resolution)
        return cells.astype(np.int64)

    def cell_to_world(self, cells) -> np.ndarray:
        """网格坐标 → 体素中心世界坐标"""
        c = np.asarray(cells, dtype=np.float64)
        return self.bounds.min + (c + 0.5) / self.resolution * self.bounds.size

    def in_range(self, cells: np.ndarray) -> np.ndarray:
        return np.all((cells >= 0) & (cells < self.resolution), axis=-1)

    def occupied(self, cells: np.ndarray) -> np.ndarray:
        """网格坐标是否为内部；越界视为外部"""
        cells = np.asarray(cells, dtype=np.int64)
        ok = self.in_range(cells)
        c = np.clip(cells, 0, self.resolution - 1)
        return ok & self.occupancy[c[..., 0], c[..., 1], c[..., 2]]

    def contains(self, points) -> np.ndarray:
        """批量判断世界坐标点是否在内部；NaN/Inf 视为外部"""
        p = np.asarray(points, dtype=np.float64)
        finite = np.all(np.isfinite(p), axis=-1)
        return finite & self.occupied(self.world_to_cell(p))

    def is_inside(self, point) -> bool:
        return bool(self.contains(np.asarray(point, dtype=np.float64)[None, :])[0])

    def inside_cells(self) -> np.ndarray:
        """(K, 3) 全部内部体素坐标，按 ix, iy, iz 顺序"""
        return np.argwhere(self.occupancy)


@dataclass
class VoxelizeResult:
    """体素化结果"""
    grid: VoxelGrid
    inside_cache: np.ndarray        # (K, 3) int64, 已打乱
    elapsed_sec: float = 0.0
    voxel_count: int = 0
    odd_scanlines: int = 0          # 奇数交点的扫描线数（非水密网格）


# ── 可恢复的体素化任务 ──────────────────────────────────────────

class VoxelizeJob:
    """
    体素化工作单元

    每次 step() 处理 rows_per_step 行 (iy)，然后返回，调用方决定何时继续。

    Usage::

        job = voxelizer.start(mesh, bounds, progress_callback=cb)
        while job.step():
            pump_event_loop()
        result = job.result
    """

    def __init__(
        self,
        mesh: MeshData,
        bounds: Bounds,
        config: LayoutConfig,
        rng: np.random.Generator,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> None:
        self.config = config
        self.bounds = bounds
        self.resolution = config.resolution
        self._rng = rng
        self._progress = progress_callback

        tris = mesh.triangles.astype(np.float64)
        self._v0 = tris[:, 0]
        self._e1 = tris[:, 1] - tris[:, 0]
        self._e2 = tris[:, 2] - tris[:, 0]

        g = self.resolution
        self._occupancy = np.zeros((g, g, g), dtype=bool)
        self._row = 0
        self._odd = 0
        self._t0 = time.perf_counter()

        self.cancelled = False
        self.result: Optional[VoxelizeResult] = None

    @property
    def done(self) -> bool:
        return self.result is not None

    @property
    def progress(self) -> float:
        return self._row / self.resolution

    def cancel(self) -> None:
        """在下一个让出点停止；已完成的部分网格直接丢弃"""
        if not self.cancelled and not self.done:
            logger.info("Voxelization cancelled at row %d/%d", self._row, self.resolution)
        self.cancelled = True

    def _report(self, pct: float, msg: str) -> None:
        if self._progress:
            self._progress(pct, msg)

    def step(self) -> bool:
        """处理一个工作单元；返回 True 表示还有剩余工作"""
        if self.cancelled or self.done:
            return False

        g = self.resolution
        end = min(g, self._row + max(1, self.config.rows_per_step))
        for iy in range(self._row, end):
            self._report(iy / g, f"体素化第 {iy}/{g} 行…")
            self._scan_row(iy)
        self._row = end

        if self._row < g:
            return True

        self._finish()
        return False

    def run(self) -> Optional[VoxelizeResult]:
        """阻塞执行到结束"""
        while self.step():
            pass
        return self.result

    def _scan_row(self, iy: int) -> None:
        g = self.resolution
        bmin, size = self.bounds.min, self.bounds.size
        safe_x = size[0] if size[0] > 0 else 1.0

        # 射线起点在网格左侧 1 单位，保证所有交点 t > 0
        origin_x = bmin[0] - 1.0
        wy = bmin[1] + (iy + 0.5) / g * size[1]
        wz = bmin[2] + (np.arange(g) + 0.5) / g * size[2]

        xs = scanline_hits(origin_x, wy, wz, self._v0, self._e1, self._e2,
                           self.config.intersect_epsilon)

        for iz in range(g):
            row = xs[iz]
            hits = row[~np.isnan(row)]
            if hits.size == 0:
                continue
            hits = dedupe_hits(hits, self.config.dedup_epsilon)
            if hits.size % 2:
                self._odd += 1

            # 奇偶规则：成对填充，落单的最后一个交点被丢弃
            for h in range(0, hits.size - 1, 2):
                ix0 = max(0, int(np.floor((hits[h] - bmin[0]) / safe_x * g)))
                ix1 = min(g - 1, int(np.floor((hits[h + 1] - bmin[0]) / safe_x * g)))
                if ix0 <= ix1:
                    self._occupancy[ix0:ix1 + 1, iy, iz] = True

    def _finish(self) -> None:
        grid = VoxelGrid(occupancy=self._occupancy, bounds=self.bounds)
        cells = grid.inside_cells()
        cache = cells[self._rng.permutation(cells.shape[0])]

        elapsed = time.perf_counter() - self._t0
        if self._odd:
            logger.warning("%d scanlines had an odd hit count (mesh not watertight?)", self._odd)
        logger.info("Voxelization complete: %d/%d cells inside in %.2fs",
                    cache.shape[0], self.resolution ** 3, elapsed)

        self.result = VoxelizeResult(
            grid=grid,
            inside_cache=cache,
            elapsed_sec=elapsed,
            voxel_count=int(cache.shape[0]),
            odd_scanlines=self._odd,
        )
        self._report(1.0, "就绪")


class Voxelizer:
    """
    体素化引擎

    Usage::

        vox = Voxelizer(LayoutConfig(resolution=32))
        result = vox.voxelize(mesh, bounds, progress_callback=cb)
    """

    def __init__(self, config: Optional[LayoutConfig] = None,
                 rng: Optional[np.random.Generator] = None) -> None:
        self.config = config or LayoutConfig()
        self._rng = rng if rng is not None else np.random.default_rng(self.config.seed)

    def start(
        self,
        mesh: MeshData,
        bounds: Bounds,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> VoxelizeJob:
        """创建一个新的体素化任务（尚未执行任何工作）"""
        logger.debug("Voxelize job: %d faces, grid %d³", mesh.n_faces, self.config.resolution)
        return VoxelizeJob(mesh, bounds, self.config, self._rng, progress_callback)

    def voxelize(
        self,
        mesh: MeshData,
        bounds: Bounds,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> VoxelizeResult:
        """阻塞执行体素化"""
        return self.start(mesh, bounds, progress_callback).run()
