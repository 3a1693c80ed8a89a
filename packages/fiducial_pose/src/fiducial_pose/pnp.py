"""单个 tag 的针孔几何：角点模型、投影与 PnP。

坐标约定（与 OpenCV 相同）：
- 相机系 x 右、y 下、z 沿光轴向前；像素 u 右、v 下。
- tag 系原点在 tag 中心，y 朝下，z 从观察者指向 tag 背面。

角点按 TL, TR, BR, BL 排列，检测端给出的 corners_px 必须使用同样顺序。
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from fiducial_pose.transforms import invert_T, make_T
from fiducial_pose.types import CameraIntrinsics, as_np_f64


@dataclass(frozen=True, slots=True)
class PnPResult:
    """tag->camera 位姿与四角点重投影 RMSE（像素）。"""

    T_cam_from_tag: np.ndarray
    reproj_rmse_px: float


def _cv_camera(intr: CameraIntrinsics) -> tuple[np.ndarray, np.ndarray | None]:
    K = as_np_f64(intr.K, (3, 3))
    dist = np.asarray(intr.dist, dtype=np.float64).reshape(-1)
    # OpenCV 把 None 视为无畸变。
    return K, (dist if dist.size else None)


def _cv_extrinsics(T_cam_from_x: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    T = np.asarray(T_cam_from_x, dtype=np.float64).reshape(4, 4)
    rvec, _ = cv2.Rodrigues(np.ascontiguousarray(T[:3, :3]))
    return rvec, T[:3, 3].reshape(3, 1).copy()


def _project_in_camera(points: np.ndarray, T_cam_from_x: np.ndarray, intr: CameraIntrinsics) -> np.ndarray:
    K, dist = _cv_camera(intr)
    rvec, tvec = _cv_extrinsics(T_cam_from_x)
    uv, _ = cv2.projectPoints(np.asarray(points, dtype=np.float64).reshape(-1, 3), rvec, tvec, K, dist)
    return np.asarray(uv, dtype=np.float64).reshape(-1, 2)


def tag_object_points(*, tag_size_m: float) -> np.ndarray:
    """tag 系下的四角点 (4,3)，z=0 平面，边长 tag_size_m 米。"""

    size = float(tag_size_m)
    if not (np.isfinite(size) and size > 0.0):
        raise ValueError(f"tag_size_m must be positive, got {tag_size_m}")

    signs = np.array([[-1.0, -1.0], [1.0, -1.0], [1.0, 1.0], [-1.0, 1.0]])
    return np.hstack([0.5 * size * signs, np.zeros((4, 1))])


def tag_corners_world(*, T_world_from_tag: np.ndarray, tag_size_m: float) -> np.ndarray:
    """tag 4 角点在世界系下的坐标 (4,3)。"""

    T = np.asarray(T_world_from_tag, dtype=np.float64).reshape(4, 4)
    return tag_object_points(tag_size_m=tag_size_m) @ T[:3, :3].T + T[:3, 3]


def points_in_camera(*, points_world: np.ndarray, T_world_from_cam: np.ndarray) -> np.ndarray:
    T_cam_from_world = invert_T(T_world_from_cam)
    P = np.asarray(points_world, dtype=np.float64).reshape(-1, 3)
    return P @ T_cam_from_world[:3, :3].T + T_cam_from_world[:3, 3]


def project_points(
    *,
    points_world: np.ndarray,
    T_world_from_cam: np.ndarray,
    intr: CameraIntrinsics,
) -> np.ndarray:
    """世界点 -> 像素 (N,2)。

    相机背后的点同样会得到像素值，调用方需要可见性时先看 `points_in_camera()` 的 z。
    """

    return _project_in_camera(points_world, invert_T(T_world_from_cam), intr)


def solve_tag_pnp(
    *,
    corners_px: np.ndarray,
    intr: CameraIntrinsics,
    tag_size_m: float,
) -> PnPResult:
    """由一组四角点求 tag->camera 位姿。

    解出的 tag 若不在相机前方（z <= 0）视为失败。

    Raises:
        ValueError: tag 边长非法或角点形状不是 (4,2)。
        RuntimeError: OpenCV 求解失败。
    """

    image_pts = as_np_f64(corners_px, (4, 2))
    model_pts = tag_object_points(tag_size_m=tag_size_m)
    K, dist = _cv_camera(intr)

    # 角点顺序与 IPPE_SQUARE 要求的不同，用 ITERATIVE。
    ok, rvec, tvec = cv2.solvePnP(model_pts, image_pts, K, dist, flags=cv2.SOLVEPNP_ITERATIVE)
    if not ok:
        raise RuntimeError("solvePnP failed")

    R, _ = cv2.Rodrigues(rvec)
    T_cam_from_tag = make_T(R=np.asarray(R, dtype=np.float64), t=np.asarray(tvec, dtype=np.float64).reshape(3))
    if not np.all(np.isfinite(T_cam_from_tag)) or T_cam_from_tag[2, 3] <= 0.0:
        raise RuntimeError("solvePnP returned a tag behind the camera")

    residual = _project_in_camera(model_pts, T_cam_from_tag, intr) - image_pts
    rmse = float(np.sqrt(np.mean(np.einsum("ij,ij->i", residual, residual))))
    return PnPResult(T_cam_from_tag=T_cam_from_tag, reproj_rmse_px=rmse)
