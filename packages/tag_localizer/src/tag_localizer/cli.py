"""CLI 参数解析。"""

from __future__ import annotations

import argparse

from .config import DEFAULT_CONFIG_PATH


def build_arg_parser() -> argparse.ArgumentParser:
    # 说明：--help 尽量使用 ASCII，避免终端编码差异导致乱码。
    p = argparse.ArgumentParser(
        prog="tag-localizer",
        description="Fuse odometry and AprilTag observations into a robot pose estimate",
    )
    p.add_argument(
        "config",
        nargs="?",
        default=str(DEFAULT_CONFIG_PATH),
        help=f"config file (.json/.yaml/.yml); default: {DEFAULT_CONFIG_PATH}",
    )
    return p
