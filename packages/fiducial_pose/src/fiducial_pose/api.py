"""fiducial_pose 对外稳定入口（public API）。

本包目标：
- 输入：相机内参 + 相机在机器人上的安装位姿 + Tag 四角点像素坐标 + Tag 布局。
- 输出：机器人在世界坐标系下的位姿，或 tag 角点的投影/重投影残差。

说明：
- 本包不负责图像采集与 AprilTag 检测；协处理器把角点结果发布出来即可。
- 多帧融合（里程计 + 视觉）在 `tag_localizer` 的估计器里完成；
  这里的单 tag 解算主要用于仿真、诊断和单测。
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from fiducial_pose.layout import TagLayout
from fiducial_pose.pnp import PnPResult, solve_tag_pnp
from fiducial_pose.transforms import compose_T, invert_T, yaw_from_R_wv
from fiducial_pose.types import CameraIntrinsics, RobotPose, TagDetection


@dataclass(frozen=True, slots=True)
class RobotPoseEstimate:
    """一次单 tag 位姿估计输出（包含诊断字段）。"""

    pose: RobotPose
    T_world_from_robot: np.ndarray  # (4,4)
    pnp: PnPResult
    tag_id: int


def robot_pose_from_T(T_world_from_robot: np.ndarray) -> RobotPose:
    """4x4 -> (x, y, z, yaw) 摘要。"""

    T = np.asarray(T_world_from_robot, dtype=np.float64).reshape(4, 4)
    return RobotPose(
        x_m=float(T[0, 3]),
        y_m=float(T[1, 3]),
        z_m=float(T[2, 3]),
        yaw_rad=yaw_from_R_wv(T[:3, :3]),
    )


def estimate_robot_pose_from_tag(
    *,
    det: TagDetection,
    layout: TagLayout,
    intr: CameraIntrinsics,
    T_robot_from_camera: np.ndarray,
) -> RobotPoseEstimate:
    """由单个 Tag 的角点估计机器人位姿。

    坐标系链条：
    - 布局给出 tag->world（T_world_from_tag）。
    - PnP 解出 tag->camera（T_cam_from_tag）。
    - 安装位姿给出 camera->robot（T_robot_from_camera）。

    目标：
      T_world_from_robot = T_world_from_tag @ inv(T_cam_from_tag) @ inv(T_robot_from_camera)

    Raises:
        KeyError: 布局中没有该 tag。
        RuntimeError: PnP 求解失败。
    """

    T_world_from_tag = layout.pose_of(int(det.tag_id))
    if T_world_from_tag is None:
        raise KeyError(f"tag {det.tag_id} not in layout")

    T_robot_from_camera = np.asarray(T_robot_from_camera, dtype=np.float64)
    if T_robot_from_camera.shape != (4, 4):
        raise ValueError(f"T_robot_from_camera must be (4,4), got {T_robot_from_camera.shape}")

    pnp = solve_tag_pnp(corners_px=det.corners_px, intr=intr, tag_size_m=float(layout.tag_size_m))

    T_world_from_cam = compose_T(T_world_from_tag, invert_T(pnp.T_cam_from_tag))
    T_world_from_robot = compose_T(T_world_from_cam, invert_T(T_robot_from_camera))

    return RobotPoseEstimate(
        pose=robot_pose_from_T(T_world_from_robot),
        T_world_from_robot=T_world_from_robot,
        pnp=pnp,
        tag_id=int(det.tag_id),
    )


__all__ = [
    "RobotPoseEstimate",
    "estimate_robot_pose_from_tag",
    "robot_pose_from_T",
    "CameraIntrinsics",
    "TagDetection",
    "RobotPose",
]
