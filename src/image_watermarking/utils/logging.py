"""日志配置工具。"""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s [%(threadName)s] %(levelname)s %(name)s: %(message)s"


def setup_logging(level: int = logging.INFO, *, verbose: bool = False) -> None:
    """初始化项目日志配置。"""

    if verbose:
        level = logging.DEBUG
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # Pillow 的插件探测日志在 DEBUG 下过于嘈杂
    logging.getLogger("PIL").setLevel(max(level, logging.INFO))
