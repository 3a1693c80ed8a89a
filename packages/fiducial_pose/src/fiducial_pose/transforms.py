"""坐标变换工具：4x4 齐次矩阵，SE(3)/SO(3) 映射交给 gtsam。

约定：
- 用 4x4 矩阵表示刚体变换，记作 T_dst_from_src。
- 点从 src 坐标系变换到 dst：X_dst = T_dst_from_src @ X_src（X 为齐次坐标 (4,)）。
- 切空间向量 xi 为 6 维，顺序为 (wx, wy, wz, vx, vy, vz)，与 gtsam.Pose3 的切空间一致。
  位姿先验 sigma、里程计 twist、残差都沿用同一顺序。
- 扰动作用在右侧（机体系）：T' = T @ exp_se3(xi)。
"""

from __future__ import annotations

import math

import gtsam
import numpy as np


def make_T(*, R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """由 R,t 构造 4x4 齐次矩阵。"""

    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = np.asarray(R, dtype=np.float64).reshape(3, 3)
    T[:3, 3] = np.asarray(t, dtype=np.float64).reshape(3)
    return T


def invert_T(T: np.ndarray) -> np.ndarray:
    """求刚体变换的逆。"""

    T = np.asarray(T, dtype=np.float64)
    if T.shape != (4, 4):
        raise ValueError(f"T must be (4,4), got {T.shape}")

    R_inv = T[:3, :3].T
    return make_T(R=R_inv, t=-R_inv @ T[:3, 3])


def compose_T(A: np.ndarray, B: np.ndarray) -> np.ndarray:
    """复合变换：先 B 再 A（即 A @ B）。"""

    A = np.asarray(A, dtype=np.float64)
    B = np.asarray(B, dtype=np.float64)
    if A.shape != (4, 4) or B.shape != (4, 4):
        raise ValueError(f"A,B must be (4,4), got {A.shape} and {B.shape}")
    return A @ B


def to_pose3(T: np.ndarray) -> gtsam.Pose3:
    """4x4 矩阵 -> gtsam.Pose3。"""

    T = np.asarray(T, dtype=np.float64)
    if T.shape != (4, 4):
        raise ValueError(f"T must be (4,4), got {T.shape}")
    return gtsam.Pose3(gtsam.Rot3(np.ascontiguousarray(T[:3, :3])), np.ascontiguousarray(T[:3, 3]))


def exp_so3(w: np.ndarray) -> np.ndarray:
    """旋转向量 -> 旋转矩阵。"""

    return np.asarray(gtsam.Rot3.Expmap(np.asarray(w, dtype=np.float64).reshape(3)).matrix(), dtype=np.float64)


def log_so3(R: np.ndarray) -> np.ndarray:
    """旋转矩阵 -> 旋转向量（theta 接近 pi 时同样有效）。"""

    rot = gtsam.Rot3(np.ascontiguousarray(np.asarray(R, dtype=np.float64).reshape(3, 3)))
    return np.asarray(gtsam.Rot3.Logmap(rot), dtype=np.float64).reshape(3)


def exp_se3(xi: np.ndarray) -> np.ndarray:
    """切空间 (w, v) -> 4x4 刚体变换。"""

    pose = gtsam.Pose3.Expmap(np.asarray(xi, dtype=np.float64).reshape(6))
    return np.asarray(pose.matrix(), dtype=np.float64)


def log_se3(T: np.ndarray) -> np.ndarray:
    """4x4 刚体变换 -> 切空间 (w, v)。"""

    return np.asarray(gtsam.Pose3.Logmap(to_pose3(T)), dtype=np.float64).reshape(6)


def relative_pose_error(T_meas: np.ndarray, T_est: np.ndarray) -> np.ndarray:
    """log(T_meas^-1 @ T_est)：两位姿在 T_meas 机体系下的 6 维差。"""

    delta = to_pose3(T_meas).between(to_pose3(T_est))
    return np.asarray(gtsam.Pose3.Logmap(delta), dtype=np.float64).reshape(6)


def R_from_quat(q: np.ndarray) -> np.ndarray:
    """四元数 (w, x, y, z) -> 旋转矩阵。输入会先归一化。"""

    q = np.asarray(q, dtype=np.float64).reshape(4)
    n = float(np.linalg.norm(q))
    if not math.isfinite(n) or n < 1e-12:
        raise ValueError(f"invalid quaternion: {q.tolist()}")
    w, x, y, z = (float(v) for v in q / n)
    return np.asarray(gtsam.Rot3.Quaternion(w, x, y, z).matrix(), dtype=np.float64)


def quat_from_R(R: np.ndarray) -> np.ndarray:
    """旋转矩阵 -> 四元数 (w, x, y, z)，w >= 0。"""

    rot = gtsam.Rot3(np.ascontiguousarray(np.asarray(R, dtype=np.float64).reshape(3, 3)))
    rq = rot.toQuaternion()
    q = np.asarray([rq.w(), rq.x(), rq.y(), rq.z()], dtype=np.float64).reshape(4)
    q = q / float(np.linalg.norm(q))
    return -q if q[0] < 0.0 else q


def pose_from_translation_quat(translation: np.ndarray, quat_wxyz: np.ndarray) -> np.ndarray:
    """(平移, 四元数) -> 4x4。"""

    return make_T(R=R_from_quat(quat_wxyz), t=translation)


def yaw_from_R_wv(R_wv: np.ndarray) -> float:
    """从 world<-robot 的旋转矩阵提取 yaw（绕世界 Z 轴）。

    前提：
    - 世界坐标系为右手系，Z 轴近似“竖直向上”。
    - yaw 定义为机器人 x 轴在世界 x-y 平面内的朝向：
      $yaw = atan2(R[1,0], R[0,0])$。
    """

    R = np.asarray(R_wv, dtype=np.float64).reshape(3, 3)
    return float(math.atan2(float(R[1, 0]), float(R[0, 0])))
