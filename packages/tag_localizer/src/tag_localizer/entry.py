"""进程入口（CLI / python -m）。

该模块是“薄入口层”，只负责：
- 解析 CLI 参数（0 或 1 个配置路径，其它情况由 argparse 报用法错误并以非 0 退出）
- 加载并校验配置（失败返回 2，不进入循环）
- 调用运行循环 `tag_localizer.runtime.run_localizer`
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional, Sequence

from .cli import build_arg_parser
from .config import load_localizer_config
from .logging_utils import default_logger, set_log_level
from .runtime import run_localizer


def main(argv: Optional[Sequence[str]] = None) -> int:
    """定位进程主入口。"""

    # 尽量固定 UTF-8 输出，避免在重定向到文件时出现乱码。
    try:
        sys.stdout.reconfigure(encoding="utf-8")  # type: ignore[attr-defined]
        sys.stderr.reconfigure(encoding="utf-8")  # type: ignore[attr-defined]
    except (AttributeError, ValueError):
        pass

    args = build_arg_parser().parse_args(list(argv) if argv is not None else None)
    config_path = Path(str(args.config)).expanduser()

    log = default_logger()
    log.info("Loading config from: %s", config_path)
    try:
        cfg = load_localizer_config(config_path)
        set_log_level(cfg.log_level)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    log.info(
        "config: root=%s mode=%s cameras=%s tick=%.3fs backoff=%.3fs",
        cfg.root_table,
        cfg.transport_mode,
        [c.name for c in cfg.cameras],
        cfg.tick_period_s,
        cfg.not_ready_backoff_s,
    )
    return int(run_localizer(cfg))
