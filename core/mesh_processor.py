"""
MeshProcessor — 网格处理模块

功能:
1. 统一的网格数据结构 MeshData（三角形汤或带索引）
2. 文件导入 (STL, OBJ, PLY, GLTF …，由 trimesh 解析)
3. 归一化：包围盒中心移到原点，最长边缩放到固定尺寸
4. 水密性检测（仅用于日志提示）
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class Bounds:
    """归一化网格的轴对齐包围盒"""
    min: np.ndarray
    max: np.ndarray
    size: np.ndarray

    @classmethod
    def from_vertices(cls, vertices: np.ndarray) -> "Bounds":
        if len(vertices) == 0:
            zero = np.zeros(3)
            return cls(min=zero, max=zero.copy(), size=zero.copy())
        vmin = vertices.min(axis=0).astype(np.float64)
        vmax = vertices.max(axis=0).astype(np.float64)
        return cls(min=vmin, max=vmax, size=vmax - vmin)

    @property
    def center(self) -> np.ndarray:
        return (self.min + self.max) / 2.0

    @property
    def diagonal(self) -> float:
        return float(np.linalg.norm(self.size))

    @property
    def principal_axis(self) -> int:
        """最长边所在轴；并列时优先 x，其次 y"""
        sx, sy, sz = self.size
        if sx >= sy and sx >= sz:
            return 0
        if sy >= sz:
            return 1
        return 2


@dataclass
class MeshData:
    """统一的网格数据容器"""
    vertices: np.ndarray           # (N, 3) float64
    faces: np.ndarray              # (M, 3) int64
    source_path: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    @classmethod
    def from_triangles(cls, triangles) -> "MeshData":
        """
        从三角形汤构建。

        Parameters
        ----------
        triangles : array-like
            任何能 reshape 成 (M, 3, 3) 的顶点坐标序列
        """
        tris = np.asarray(triangles, dtype=np.float64).reshape(-1, 3, 3)
        vertices = tris.reshape(-1, 3)
        faces = np.arange(vertices.shape[0], dtype=np.int64).reshape(-1, 3)
        return cls(vertices=vertices, faces=faces)

    @classmethod
    def from_indexed(cls, vertices, faces) -> "MeshData":
        """从顶点 + 索引构建；扁平索引列表会被 reshape 成 (M, 3)"""
        verts = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
        idx = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
        return cls(vertices=verts, faces=idx)

    @property
    def n_vertices(self) -> int:
        return self.vertices.shape[0]

    @property
    def n_faces(self) -> int:
        return self.faces.shape[0]

    @property
    def triangles(self) -> np.ndarray:
        """(M, 3, 3) 每个三角形的三个顶点"""
        return self.vertices[self.faces]

    @property
    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.vertices.min(axis=0), self.vertices.max(axis=0)

    @property
    def extent(self) -> np.ndarray:
        vmin, vmax = self.bounds
        return vmax - vmin

    @property
    def center(self) -> np.ndarray:
        vmin, vmax = self.bounds
        return (vmin + vmax) / 2.0

    def summary(self) -> Dict:
        return {
            "vertices": self.n_vertices,
            "faces": self.n_faces,
            "extent": self.extent.tolist(),
            "center": self.center.tolist(),
        }


# ── 已知可导入的扩展名 ────────────────────────────────────────
SUPPORTED_MESH_EXTENSIONS = {
    ".obj", ".gltf", ".glb", ".ply", ".stl", ".off", ".3mf",
}


class MeshProcessor:
    """
    网格处理器 — 导入, 归一化

    Usage::

        mp = MeshProcessor()
        mesh = mp.load("model.stl")
        mesh, bounds = mp.normalize(mesh, target_size=10.0)
    """

    def __init__(self) -> None:
        self._trimesh = None
        try:
            import trimesh
            self._trimesh = trimesh
            logger.debug("trimesh %s loaded", trimesh.__version__)
        except ImportError:
            logger.warning("trimesh not installed — mesh import will be limited")

    # ── 导入 ────────────────────────────────────────────────────

    def load(self, path: str | Path) -> MeshData:
        """从文件加载网格，多子网格场景会被合并"""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Mesh file not found: {path}")

        ext = path.suffix.lower()
        if ext not in SUPPORTED_MESH_EXTENSIONS:
            raise ValueError(f"Unsupported mesh format: {ext}")

        if self._trimesh is None:
            raise RuntimeError("trimesh is required for mesh loading")

        logger.info("Loading mesh: %s", path.name)

        scene_or_mesh = self._trimesh.load(str(path), process=False)

        if isinstance(scene_or_mesh, self._trimesh.Scene):
            meshes = list(scene_or_mesh.geometry.values())
            if not meshes:
                raise ValueError(f"No geometry found in: {path}")
            mesh = self._trimesh.util.concatenate(meshes)
            logger.info("Merged %d sub-meshes from scene", len(meshes))
        else:
            mesh = scene_or_mesh

        result = MeshData.from_indexed(mesh.vertices, mesh.faces)
        result.source_path = str(path)
        result.metadata = {"format": ext}

        logger.info("Loaded: %d verts, %d faces", result.n_vertices, result.n_faces)
        return result

    # ── 水密性检测 ──────────────────────────────────────────────

    def check_watertight(self, mesh: MeshData) -> bool:
        """检测网格是否水密（闭合）"""
        if self._trimesh is None:
            return False
        tri = self._trimesh.Trimesh(vertices=mesh.vertices, faces=mesh.faces, process=False)
        # 三角形汤的顶点未合并，需要先合并才能判断拓扑
        tri.merge_vertices()
        return bool(tri.is_watertight)

    # ── 归一化 ──────────────────────────────────────────────────

    @staticmethod
    def normalize(mesh: MeshData, target_size: float = 10.0) -> Tuple[MeshData, Bounds]:
        """
        居中网格并均匀缩放，使最长边 == target_size。
        不改变原始 mesh 与拓扑，返回新的 MeshData 与其 Bounds。
        """
        verts = mesh.vertices.astype(np.float64, copy=True).reshape(-1, 3)

        if len(verts) == 0:
            logger.warning("Mesh has no vertices, skipping normalization")
            empty = MeshData(
                vertices=verts,
                faces=mesh.faces.copy(),
                source_path=mesh.source_path,
                metadata={**mesh.metadata, "target_size": target_size, "scale_factor": 1.0},
            )
            return empty, Bounds.from_vertices(verts)

        # 居中
        center = (verts.max(axis=0) + verts.min(axis=0)) / 2.0
        verts -= center

        # 缩放
        max_dim = float((verts.max(axis=0) - verts.min(axis=0)).max())
        if max_dim < 1e-12:
            logger.warning("Mesh has zero extent, skipping scale")
            scale = 1.0
        else:
            scale = target_size / max_dim
        verts *= scale

        normalized = MeshData(
            vertices=verts,
            faces=mesh.faces.copy(),
            source_path=mesh.source_path,
            metadata={**mesh.metadata, "target_size": target_size, "scale_factor": scale},
        )
        return normalized, Bounds.from_vertices(verts)

    @staticmethod
    def supported_extensions() -> List[str]:
        return sorted(SUPPORTED_MESH_EXTENSIONS)
