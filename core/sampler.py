"""
InsidePointSampler — 在目标点附近寻找位于网格内部的种子点
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from core.voxelizer import VoxelGrid

logger = logging.getLogger(__name__)


class InsidePointSampler:
    """
    内部点采样器

    先在目标附近随机试探 (spread = spread_factor × 包围盒对角线)，
    全部失败后从 InsideCache 随机抽取若干体素，取离目标最近的体素中心。
    """

    def __init__(
        self,
        grid: VoxelGrid,
        inside_cache: np.ndarray,
        rng: np.random.Generator,
        spread_factor: float = 0.25,
        fallback_samples: int = 60,
    ) -> None:
        self.grid = grid
        self.inside_cache = inside_cache
        self._rng = rng
        self.spread = grid.bounds.diagonal * spread_factor
        self.fallback_samples = fallback_samples

    def find_near(self, target, max_tries: int = 40) -> Optional[np.ndarray]:
        """返回内部点；InsideCache 为空时返回 None"""
        target = np.asarray(target, dtype=np.float64)

        for _ in range(max_tries):
            p = target + (self._rng.random(3) - 0.5) * self.spread
            if self.grid.is_inside(p):
                return p

        return self._nearest_cached(target)

    def _nearest_cached(self, target: np.ndarray) -> Optional[np.ndarray]:
        n = len(self.inside_cache)
        if n == 0:
            logger.debug("Inside cache empty, no seed point near %s", target)
            return None

        picks = self._rng.choice(n, size=min(self.fallback_samples, n), replace=False)
        centers = self.grid.cell_to_world(self.inside_cache[picks])
        d2 = np.sum((centers - target) ** 2, axis=1)
        return centers[int(np.argmin(d2))]
