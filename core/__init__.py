"""VoxelNest core — 体积布局计算包"""

from core.config import LayoutConfig
from core.mesh_processor import Bounds, MeshData, MeshProcessor
from core.voxelizer import Voxelizer, VoxelGrid, VoxelizeJob, VoxelizeResult
from core.sampler import InsidePointSampler
from core.force_simulator import ForceSimulator, Node, NodeSet
from core.default_layout import default_layout
from core.layout_engine import LayoutEngine, LayoutState, compute_layer_targets

__all__ = [
    "LayoutConfig",
    "Bounds",
    "MeshData",
    "MeshProcessor",
    "Voxelizer",
    "VoxelGrid",
    "VoxelizeJob",
    "VoxelizeResult",
    "InsidePointSampler",
    "ForceSimulator",
    "Node",
    "NodeSet",
    "default_layout",
    "LayoutEngine",
    "LayoutState",
    "compute_layer_targets",
]
