"""
测试夹具 — 常用测试网格
"""

import sys
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


# 立方体三角面（外法线方向）；后两个面是 +X 面
BOX_FACES = np.array([
    [0, 1, 2], [0, 2, 3],
    [4, 6, 5], [4, 7, 6],
    [0, 4, 5], [0, 5, 1],
    [2, 6, 7], [2, 7, 3],
    [0, 3, 7], [0, 7, 4],
    [1, 5, 6], [1, 6, 2],
], dtype=np.int64)


def box_vertices(lo, hi) -> np.ndarray:
    (x0, y0, z0), (x1, y1, z1) = lo, hi
    return np.array([
        [x0, y0, z0], [x1, y0, z0], [x1, y1, z0], [x0, y1, z0],
        [x0, y0, z1], [x1, y0, z1], [x1, y1, z1], [x0, y1, z1],
    ], dtype=np.float64)


@pytest.fixture
def make_box():
    """make_box(lo, hi) → MeshData"""
    from core.mesh_processor import MeshData

    def _make(lo=(0, 0, 0), hi=(10, 10, 10)):
        return MeshData.from_indexed(box_vertices(lo, hi), BOX_FACES)
    return _make


@pytest.fixture
def cube_mesh(make_box):
    return make_box()


@pytest.fixture
def open_cube_mesh():
    """去掉 +X 面的立方体（非水密）"""
    from core.mesh_processor import MeshData
    return MeshData.from_indexed(box_vertices((0, 0, 0), (10, 10, 10)), BOX_FACES[:-2])


@pytest.fixture
def two_box_mesh():
    """大立方体 [0,10]³ + 右侧分离的小立方体，扩大包围盒"""
    from core.mesh_processor import MeshData
    verts = np.vstack([
        box_vertices((0, 0, 0), (10, 10, 10)),
        box_vertices((14, 4, 4), (16, 6, 6)),
    ])
    faces = np.vstack([BOX_FACES, BOX_FACES + 8])
    return MeshData.from_indexed(verts, faces)


@pytest.fixture
def sphere_mesh():
    import trimesh
    from core.mesh_processor import MeshData
    sphere = trimesh.creation.icosphere(subdivisions=2, radius=3.0)
    return MeshData.from_indexed(sphere.vertices, sphere.faces)
