"""fiducial_pose：用 AprilTag 等人工靶标做位姿几何（PnP / 投影 / 布局 / SE(3)）。

说明：
- 对外 API 从包顶层暴露，避免下游耦合内部模块结构。
"""

from fiducial_pose.api import RobotPoseEstimate, estimate_robot_pose_from_tag, robot_pose_from_T
from fiducial_pose.calib_io import load_camera_calibration
from fiducial_pose.layout import TagLayout, TagLayoutHolder, load_tag_layout
from fiducial_pose.pnp import (
    PnPResult,
    points_in_camera,
    project_points,
    solve_tag_pnp,
    tag_corners_world,
    tag_object_points,
)
from fiducial_pose.transforms import (
    R_from_quat,
    compose_T,
    exp_se3,
    exp_so3,
    invert_T,
    log_se3,
    log_so3,
    make_T,
    pose_from_translation_quat,
    quat_from_R,
    relative_pose_error,
    to_pose3,
    yaw_from_R_wv,
)
from fiducial_pose.types import CameraIntrinsics, RobotPose, TagDetection, as_np_f64

__all__ = [
    "CameraIntrinsics",
    "PnPResult",
    "RobotPose",
    "RobotPoseEstimate",
    "R_from_quat",
    "TagDetection",
    "TagLayout",
    "TagLayoutHolder",
    "as_np_f64",
    "compose_T",
    "estimate_robot_pose_from_tag",
    "exp_se3",
    "exp_so3",
    "invert_T",
    "load_camera_calibration",
    "load_tag_layout",
    "log_se3",
    "log_so3",
    "make_T",
    "points_in_camera",
    "pose_from_translation_quat",
    "project_points",
    "quat_from_R",
    "relative_pose_error",
    "to_pose3",
    "robot_pose_from_T",
    "solve_tag_pnp",
    "tag_corners_world",
    "tag_object_points",
    "yaw_from_R_wv",
]
