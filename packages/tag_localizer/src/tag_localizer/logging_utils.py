"""tag_localizer 的日志工具。

说明：
    各组件都接受可选的 `logger=`；不传时使用这里的默认 logger，
    避免在脚本/单测环境中出现无 handler 导致的静默。
"""

from __future__ import annotations

import logging

LOGGER_NAME = "tag_localizer"


def default_logger(name: str | None = None) -> logging.Logger:
    """获取 tag_localizer 的默认 logger。

    Args:
        name: 子 logger 名（例如 "scheduler"）；None 表示包 logger 本身。

    Returns:
        标准库 `logging.Logger` 实例。
    """

    root = logging.getLogger(LOGGER_NAME)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    if not name:
        return root
    return root.getChild(str(name))


def set_log_level(level: str | int) -> None:
    """设置包 logger 的级别（"DEBUG"/"INFO"/...）。"""

    logger = default_logger()
    if isinstance(level, str):
        value = logging.getLevelName(level.strip().upper())
        if not isinstance(value, int):
            raise ValueError(f"unknown log level: {level}")
        logger.setLevel(value)
    else:
        logger.setLevel(int(level))
