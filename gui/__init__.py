"""
VoxelNest gui — Qt 侧适配

提供:
- LayoutDriver: 用 QTimer 驱动体素化与模拟，并把引擎回调转成 Qt Signal
"""

from gui.layout_driver import LayoutDriver

__all__ = ["LayoutDriver"]
