"""
LayoutDriver — 把 LayoutEngine 接到 Qt 事件循环

- 体素化：零间隔 QTimer，每次 timeout 推进一个工作单元后把控制权交回事件循环
- 模拟：帧 QTimer (默认 16 ms)，运行中每帧调用一次 engine.step()
- 引擎回调 → Qt Signal，渲染端只拿到位置副本
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

from PySide6.QtCore import QObject, QTimer, Signal, Slot

from core.config import LayoutConfig
from core.layout_engine import LayoutEngine
from core.mesh_processor import MeshData, MeshProcessor

logger = logging.getLogger(__name__)


class LayoutDriver(QObject):
    """
    Qt 调度适配器

    Usage::

        driver = LayoutDriver(LayoutConfig())
        driver.progress.connect(progress_panel.update_progress)
        driver.tick.connect(viewport.update_nodes)
        driver.set_layer_sizes([4, 8, 2])
        driver.load_file("model.stl")
        driver.start()
    """
    progress = Signal(float, str)
    ready = Signal(object)
    tick = Signal(object)
    energy_changed = Signal(float)
    error = Signal(str)

    def __init__(
        self,
        config: Optional[LayoutConfig] = None,
        frame_interval_ms: int = 16,
        parent: Optional[QObject] = None,
    ) -> None:
        super().__init__(parent)
        self.engine = LayoutEngine(config)
        self.mesh_processor = MeshProcessor()

        self.engine.on_progress = self.progress.emit
        self.engine.on_ready = self._on_engine_ready
        self.engine.on_tick = self.tick.emit

        self._voxel_timer = QTimer(self)
        self._voxel_timer.setInterval(0)
        self._voxel_timer.timeout.connect(self._on_voxel_timer)

        self._frame_timer = QTimer(self)
        self._frame_timer.setInterval(frame_interval_ms)
        self._frame_timer.timeout.connect(self._on_frame_timer)

        self._autostart = False

    # ── 加载 ────────────────────────────────────────────────────

    def load_file(self, path: str | Path) -> bool:
        """读取网格文件并开始体素化；失败通过 error 信号报告"""
        try:
            mesh = self.mesh_processor.load(path)
        except (OSError, ValueError, RuntimeError) as e:
            logger.error("Failed to load mesh %s: %s", path, e, exc_info=True)
            self.error.emit(str(e))
            return False

        if not self.mesh_processor.check_watertight(mesh):
            logger.warning("Mesh %s is not watertight; interior may be partially filled",
                           Path(path).name)
        self.load_mesh(mesh)
        return True

    def load_mesh(self, mesh: MeshData) -> None:
        # 先停帧计时器，再由引擎取消旧任务、替换共享状态
        self._frame_timer.stop()
        self.engine.load_mesh(mesh)
        self._voxel_timer.start()

    def set_resolution(self, resolution: int) -> None:
        self._frame_timer.stop()
        self.engine.set_resolution(resolution)
        if self.engine.is_voxelizing:
            self._voxel_timer.start()
        elif self.engine.is_running:
            self._frame_timer.start()

    def set_layer_sizes(self, layer_sizes: Sequence[int]) -> None:
        self.engine.set_layer_sizes(layer_sizes)
        if not self.engine.is_loaded:
            self.tick.emit(self.engine.positions())

    # ── 运行控制 ────────────────────────────────────────────────

    def start(self) -> bool:
        """开始模拟；若仍在体素化，完成后自动开始"""
        if self.engine.is_voxelizing:
            self._autostart = True
            return True
        if not self.engine.start():
            return False
        self._frame_timer.start()
        return True

    def stop(self) -> None:
        self._autostart = False
        self._frame_timer.stop()
        self.engine.stop()

    def reset(self) -> None:
        self._autostart = False
        self._voxel_timer.stop()
        self._frame_timer.stop()
        self.tick.emit(self.engine.reset())

    @property
    def is_running(self) -> bool:
        return self._frame_timer.isActive()

    # ── 定时器 ──────────────────────────────────────────────────

    @Slot()
    def _on_voxel_timer(self) -> None:
        if self.engine.pump():
            return
        self._voxel_timer.stop()
        if self.engine.is_running:
            # 分辨率变更后引擎已自行恢复运行
            self._frame_timer.start()
        elif self._autostart and self.engine.is_loaded:
            self._autostart = False
            self.start()

    @Slot()
    def _on_frame_timer(self) -> None:
        if self.engine.step():
            self.energy_changed.emit(self.engine.energy)
        elif not self.engine.is_running:
            self._frame_timer.stop()

    def _on_engine_ready(self, mesh: MeshData) -> None:
        logger.info("Volume ready: %d inside cells", self.engine.grid.inside_count)
        self.ready.emit(mesh)
