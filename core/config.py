"""
LayoutConfig — 布局引擎的全部可调参数

所有字段都是普通可变字段：
- 力学系数 (k_repel / k_layer / k_boundary / damping) 在下一个子步立即生效
- resolution 变更需要重新体素化（由 LayoutEngine.set_resolution 处理）
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class LayoutConfig:
    """布局引擎配置"""
    # ── 体素化 ──
    resolution: int = 32
    rows_per_step: int = 4             # 每个工作单元处理的行数，之后让出控制权
    dedup_epsilon: float = 1e-5        # 共享边/顶点造成的重复交点合并阈值
    intersect_epsilon: float = 1e-8    # Möller–Trumbore 行列式阈值
    target_size: float = 10.0          # 归一化后最长边长度

    # ── 力学 ──
    k_repel: float = 0.6
    k_layer: float = 0.04
    k_boundary: float = 0.4
    damping: float = 0.85
    substeps: int = 3
    frame_rate: float = 60.0
    min_dist_sq: float = 0.09          # (0.3 units)²
    boundary_min_dist_sq: float = 0.01
    boundary_radius: int = 2           # 2 → 5×5×5 邻域
    bounce: float = -0.3

    # ── 采样 ──
    seed_tries: int = 40
    fallback_samples: int = 60
    spread_factor: float = 0.25
    layer_inset: Tuple[float, float] = (0.13, 0.87)
    initial_velocity: float = 0.1

    seed: Optional[int] = None

    @property
    def fixed_dt(self) -> float:
        return 1.0 / (self.frame_rate * self.substeps)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LayoutConfig":
        """从 settings.yaml 的 layout 段创建，未知键忽略"""
        if not data:
            return cls()

        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                logger.warning("Unknown layout config key ignored: %s", key)
                continue
            kwargs[key] = value

        if "layer_inset" in kwargs:
            kwargs["layer_inset"] = tuple(kwargs["layer_inset"])

        return cls(**kwargs)
