"""多相机标定 JSON 读取。

一个文件里按相机名存放内参、畸变以及可选的安装位姿：

    {"cameras": {"front": {"K": [[...]], "dist": [...],
                           "robot_T_camera": {"translation": [...], "quaternion": [w,x,y,z]}}}}

安装位姿是 camera->robot 变换；文件里没有时返回 None，交给上层配置补齐。
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import numpy as np

from fiducial_pose.transforms import pose_from_translation_quat
from fiducial_pose.types import CameraIntrinsics


def _field(value: Any, shape: tuple[int, ...], where: str) -> np.ndarray:
    try:
        arr = np.asarray(value, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise RuntimeError(f"{where} 不是数值数组") from exc
    if arr.size != int(np.prod(shape)) or (len(shape) > 1 and arr.shape != shape):
        raise RuntimeError(f"{where} 期望形状 {shape}，得到 {arr.shape}")
    return arr.reshape(shape)


def _read_cameras(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise RuntimeError(f"标定文件不存在: {path}")
    try:
        doc = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise RuntimeError(f"标定文件不是合法 JSON: {path}") from exc

    cameras = doc.get("cameras") if isinstance(doc, dict) else None
    if not isinstance(cameras, dict) or not cameras:
        raise RuntimeError(f"{path}: 需要非空的 cameras 对象")
    return cameras


def load_camera_calibration(
    *,
    calib_json_path: Path,
    camera: str,
) -> tuple[CameraIntrinsics, np.ndarray | None]:
    """取出一个相机的 (内参, T_robot_from_camera 或 None)。

    文件缺失、格式不对、或没有这个相机时抛 RuntimeError，
    最后一种情况的消息里会列出文件中已有的相机名。
    """

    cameras = _read_cameras(Path(calib_json_path))
    entry = cameras.get(str(camera))
    if not isinstance(entry, dict):
        known = ", ".join(sorted(map(str, cameras)))
        raise RuntimeError(f"标定文件里没有相机 '{camera}'，已有：{known}")

    K = _field(entry.get("K"), (3, 3), f"{camera}.K")
    dist = np.asarray(entry.get("dist", []), dtype=np.float64).reshape(-1)

    mount = entry.get("robot_T_camera")
    if not isinstance(mount, dict):
        return CameraIntrinsics(K=K, dist=dist), None

    where = f"{camera}.robot_T_camera"
    t = _field(mount.get("translation"), (3,), f"{where}.translation")
    q = _field(mount.get("quaternion", [1.0, 0.0, 0.0, 0.0]), (4,), f"{where}.quaternion")
    return CameraIntrinsics(K=K, dist=dist), pose_from_translation_quat(t, q)
