"""数据结构：相机内参 / Tag 检测 / 机器人位姿。

说明：
- 本包只负责“位姿解算、投影与坐标变换”的几何部分，不依赖传输层与调度器。
- AprilTag 的“检测器”不在本包内：
  - 上游（相机协处理器）给出 tag 的 4 角点像素坐标，本包负责后续的几何链条。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import numpy as np


@dataclass(frozen=True, slots=True)
class CameraIntrinsics:
    """相机内参（OpenCV 口径）。

    Attributes:
        K: 相机内参矩阵 (3,3)。
        dist: 畸变参数 (N,)；若未知可传空或全 0。
    """

    K: np.ndarray
    dist: np.ndarray

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CameraIntrinsics":
        """从 {"K": 3x3, "dist": [...]} 构造。

        也接受 {"fx","fy","cx","cy"} 的简写形式。
        """

        if "K" in data:
            K = as_np_f64(data["K"], (3, 3))
        else:
            try:
                fx, fy = float(data["fx"]), float(data["fy"])
                cx, cy = float(data["cx"]), float(data["cy"])
            except KeyError as exc:
                raise ValueError(f"camera intrinsics missing field: {exc}") from exc
            K = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]], dtype=np.float64)

        dist = np.asarray(data.get("dist") or [], dtype=np.float64).reshape(-1)
        if not np.all(np.isfinite(K)):
            raise ValueError("camera intrinsics K must be finite")
        return cls(K=K, dist=dist)


@dataclass(frozen=True, slots=True)
class TagDetection:
    """Tag 检测结果（只保留后续解算所需的最小信息）。

    说明：
    - corners_px 必须是 4 个角点，顺序需要与 `tag_object_points()` 的定义一致。
      若 detector 输出顺序不稳定，请在发布前先做排序。
    """

    tag_id: int
    corners_px: np.ndarray  # (4,2)
    decision_margin: float | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TagDetection":
        margin = data.get("decision_margin")
        return cls(
            tag_id=int(data["id"]),
            corners_px=as_np_f64(data["corners"], (4, 2)),
            decision_margin=float(margin) if margin is not None else None,
        )


@dataclass(frozen=True, slots=True)
class RobotPose:
    """机器人位姿摘要（世界坐标系）。

    Attributes:
        x_m, y_m, z_m: 世界坐标（米）。
        yaw_rad: 绕世界 Z 轴的偏航角（弧度）。世界系约定 Z 轴竖直向上。
    """

    x_m: float
    y_m: float
    z_m: float
    yaw_rad: float


def as_np_f64(x: np.ndarray | Iterable[float], shape: tuple[int, ...]) -> np.ndarray:
    """把输入转为 float64 ndarray 并校验形状。"""

    a = np.asarray(x, dtype=np.float64)
    if a.size != int(np.prod(shape)):
        raise ValueError(f"expected {int(np.prod(shape))} values for shape {shape}, got {a.size}")
    return a.reshape(shape)
