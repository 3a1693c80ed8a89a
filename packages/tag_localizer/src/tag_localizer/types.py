"""tag_localizer 的数据结构。

时间口径：
- 所有时间戳均为整数微秒（`*_us`），与发布端（协处理器/底盘）使用同一单调时钟。

切空间口径：
- 6 维向量顺序为 (wx, wy, wz, vx, vy, vz)，与 `fiducial_pose.exp_se3` 一致。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

import numpy as np

from fiducial_pose import CameraIntrinsics, TagDetection, as_np_f64, pose_from_translation_quat


def _as_timestamp_us(x: Any) -> int:
    v = int(x)
    if v < 0:
        raise ValueError(f"timestamp_us must be >= 0, got {v}")
    return v


def _as_sigmas(x: Any) -> np.ndarray:
    s = as_np_f64(x, (6,))
    if not np.all(np.isfinite(s)) or np.any(s <= 0):
        raise ValueError(f"sigmas must be 6 positive values, got {s.tolist()}")
    return s


def pose_from_mapping(data: Mapping[str, Any]) -> np.ndarray:
    """{"translation": [x,y,z], "quaternion": [w,x,y,z]} -> 4x4。"""

    if not isinstance(data, Mapping):
        raise ValueError("pose must be an object with translation/quaternion")
    return pose_from_translation_quat(
        as_np_f64(data.get("translation", [0.0, 0.0, 0.0]), (3,)),
        as_np_f64(data.get("quaternion", [1.0, 0.0, 0.0, 0.0]), (4,)),
    )


@dataclass(frozen=True, slots=True)
class OdometrySample:
    """一条相对运动样本。

    Attributes:
        timestamp_us: 样本结束时刻。
        twist: 相对上一条样本的机体系运动增量 (wx,wy,wz,vx,vy,vz)，已对时间积分（弧度/米）。
    """

    timestamp_us: int
    twist: np.ndarray  # (6,)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "OdometrySample":
        return cls(
            timestamp_us=_as_timestamp_us(data["timestamp_us"]),
            twist=as_np_f64(data["twist"], (6,)),
        )


@dataclass(frozen=True, slots=True)
class VisionObservation:
    """单相机单帧的 tag 观测。

    说明：
    - intrinsics / T_robot_from_camera / pixel_sigma 由相机源在产出时附上，
      估计器据此建立重投影因子，不需要再回查相机配置。
    """

    timestamp_us: int
    camera: str
    tags: tuple[TagDetection, ...]
    intrinsics: CameraIntrinsics
    T_robot_from_camera: np.ndarray  # (4,4)
    pixel_sigma: float = 1.0


@dataclass(frozen=True, slots=True)
class PosePrior:
    """外部给出的初始/重置位姿。

    Attributes:
        timestamp_us: 该位姿对应的时刻。
        T_world_from_robot: (4,4)。
        sigmas: 6 维标准差 (rx,ry,rz,tx,ty,tz)。
    """

    timestamp_us: int
    T_world_from_robot: np.ndarray
    sigmas: np.ndarray

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PosePrior":
        return cls(
            timestamp_us=_as_timestamp_us(data.get("timestamp_us", 0)),
            T_world_from_robot=pose_from_mapping(data["pose"]),
            sigmas=_as_sigmas(data.get("sigmas", [0.1, 0.1, 0.1, 0.5, 0.5, 0.5])),
        )


@dataclass(frozen=True, slots=True)
class LocalizerEstimate:
    """估计器在一次 optimize 之后的只读快照（发布端只读这个）。"""

    timestamp_us: int
    T_world_from_robot: np.ndarray  # (4,4)
    covariance: np.ndarray  # (6,6)，切空间顺序 (wx,wy,wz,vx,vy,vz)
    node_count: int
    factor_count: int
    iterations: int
    final_cost: float


@dataclass(frozen=True, slots=True)
class TickReport:
    """一次 tick 的诊断摘要。"""

    ready: bool
    has_initial_guess: bool
    cameras_ready: bool
    watermark_us: int
    odometry_count: int
    admitted_count: int
    backlogged_count: int
    replayed_count: int
    backlog_size: int
    published: bool
