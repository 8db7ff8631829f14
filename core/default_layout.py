"""
默认（非体积）布局：每层一个居中的方阵，层沿 Z 轴等距排列。
未加载网格或 reset 之后使用。
"""

from __future__ import annotations

import math
from typing import List, Sequence

import numpy as np

LAYER_SPACING = 4.0
NODE_SPACING = 1.6


def default_layout(
    layer_sizes: Sequence[int],
    layer_spacing: float = LAYER_SPACING,
    node_spacing: float = NODE_SPACING,
) -> List[np.ndarray]:
    """返回每层 (n, 3) 位置数组"""
    n_layers = len(layer_sizes)
    out = []
    for layer, n in enumerate(layer_sizes):
        cols = max(1, math.ceil(math.sqrt(n)))
        rows = math.ceil(n / cols)
        z = (layer - (n_layers - 1) / 2) * layer_spacing

        i = np.arange(n)
        col = i % cols
        row = i // cols
        pos = np.zeros((n, 3), dtype=np.float64)
        pos[:, 0] = (col - (cols - 1) / 2) * node_spacing
        pos[:, 1] = ((rows - 1) / 2 - row) * node_spacing
        pos[:, 2] = z
        out.append(pos)
    return out
