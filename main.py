#!/usr/bin/env python3
"""
VoxelNest — 把分层节点布置进任意闭合网格内部

入口点：加载配置、读取网格、在 Qt 事件循环中体素化并运行模拟（无界面）。

    python main.py model.stl
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# 确保项目根目录在 sys.path
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

DEFAULT_LAYERS = [4, 8, 8, 2]


def setup_logging(level: str = "INFO") -> None:
    """配置日志系统"""
    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=log_format,
        datefmt="%H:%M:%S",
    )
    # 降低第三方库日志级别
    for lib in ("trimesh",):
        logging.getLogger(lib).setLevel(logging.WARNING)


def load_config(path: Path | None = None) -> dict:
    """加载配置文件"""
    import yaml

    config_path = path or PROJECT_ROOT / "config" / "settings.yaml"
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    return {}


def main(argv: list[str] | None = None, config_path: Path | None = None) -> int:
    """主入口；返回进程退出码"""
    argv = sys.argv if argv is None else argv
    config = load_config(config_path)
    run_cfg = config.get("run", {}) or {}

    setup_logging(run_cfg.get("log_level", "INFO"))
    logger = logging.getLogger("VoxelNest")

    mesh_path = argv[1] if len(argv) > 1 else run_cfg.get("mesh_path")
    if not mesh_path:
        logger.error("Usage: main.py <mesh file>")
        return 2

    from PySide6.QtCore import QCoreApplication

    from core.config import LayoutConfig
    from gui.layout_driver import LayoutDriver

    app = QCoreApplication.instance() or QCoreApplication(argv)
    app.setApplicationName("VoxelNest")
    app.setApplicationVersion("0.1.0")

    layout_config = LayoutConfig.from_dict(config.get("layout"))
    driver = LayoutDriver(layout_config, frame_interval_ms=run_cfg.get("frame_interval_ms", 16))

    max_ticks = int(run_cfg.get("max_ticks", 600))
    report_every = max(1, int(run_cfg.get("report_every", 60)))
    state = {"ticks": 0, "exit": 0}

    def on_progress(pct: float, msg: str) -> None:
        logger.debug("%5.1f%% %s", pct * 100, msg)

    def on_energy(energy: float) -> None:
        state["ticks"] += 1
        if state["ticks"] % report_every == 0:
            logger.info("tick %d: mean kinetic energy %.6f", state["ticks"], energy)
        if state["ticks"] >= max_ticks:
            driver.stop()
            app.quit()

    def on_ready(mesh) -> None:
        logger.info("Mesh ready (%d faces), %d nodes placed", mesh.n_faces, len(driver.engine.nodes))
        if len(driver.engine.nodes) == 0:
            state["exit"] = 1
            app.quit()

    def on_error(msg: str) -> None:
        state["exit"] = 1
        app.quit()

    driver.progress.connect(on_progress)
    driver.energy_changed.connect(on_energy)
    driver.ready.connect(on_ready)
    driver.error.connect(on_error)

    driver.set_layer_sizes(config.get("layers") or DEFAULT_LAYERS)
    if not driver.load_file(mesh_path):
        return 1
    driver.start()

    app.exec()
    logger.info("Finished after %d ticks", state["ticks"])
    return state["exit"]


if __name__ == "__main__":
    sys.exit(main())
