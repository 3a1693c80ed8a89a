"""Tag 布局（场地上每个 tag 的世界位姿）与显式布局持有者。

说明：
- `TagLayout` 是不可变值对象：一次布局更新 = 整体替换，不做增量修改。
- `TagLayoutHolder` 是“按引用传递”的布局槽位：
  - 调度器在收到新布局时调用 `install()` 整体替换；
  - 解释视觉观测的组件（估计器）只读 `current`。
  这样就不需要进程级的全局布局注册表。

支持两种 mapping 格式：
- 本仓库格式：
  {"tag_size_m": 0.1651, "family": "tag36h11",
   "tags": [{"id": 1, "pose": {"translation": [x,y,z], "quaternion": [w,x,y,z]}}]}
  tag 坐标系与 `fiducial_pose.pnp.tag_object_points()` 一致（z 轴指向 tag 背面）。
- WPILib AprilTagFieldLayout JSON：
  {"tags": [{"ID": 1, "pose": {"translation": {"x":..}, "rotation": {"quaternion": {"W":..}}}}],
   "field": {...}}
  WPILib 的 tag 系 x 轴指向 tag 正面外侧，加载时会转换到本仓库口径。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import numpy as np

from fiducial_pose.pnp import tag_corners_world
from fiducial_pose.transforms import compose_T, make_T, pose_from_translation_quat, quat_from_R

# 本仓库 tag 系在 WPILib tag 系下的朝向：x_ours = y_wpi, y_ours = -z_wpi, z_ours = -x_wpi。
_R_WPILIB_FROM_TAG = np.array(
    [
        [0.0, 0.0, -1.0],
        [1.0, 0.0, 0.0],
        [0.0, -1.0, 0.0],
    ],
    dtype=np.float64,
)

DEFAULT_TAG_SIZE_M = 0.1651


@dataclass(frozen=True, eq=False)
class TagLayout:
    """场地 tag 布局。"""

    tag_poses: Mapping[int, np.ndarray]  # tag_id -> T_world_from_tag (4,4)
    tag_size_m: float = DEFAULT_TAG_SIZE_M
    family: str = "tag36h11"
    _corners_cache: dict[int, np.ndarray] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        s = float(self.tag_size_m)
        if not np.isfinite(s) or s <= 0:
            raise ValueError(f"tag_size_m must be positive, got {self.tag_size_m}")

    def __contains__(self, tag_id: object) -> bool:
        return tag_id in self.tag_poses

    def __len__(self) -> int:
        return len(self.tag_poses)

    @property
    def tag_ids(self) -> list[int]:
        return sorted(int(k) for k in self.tag_poses.keys())

    def pose_of(self, tag_id: int) -> np.ndarray | None:
        T = self.tag_poses.get(int(tag_id))
        if T is None:
            return None
        return np.array(T, dtype=np.float64)

    def corners_world(self, tag_id: int) -> np.ndarray | None:
        """tag 4 角点的世界坐标 (4,3)；布局中没有该 tag 时返回 None。"""

        tid = int(tag_id)
        cached = self._corners_cache.get(tid)
        if cached is not None:
            return cached
        T = self.tag_poses.get(tid)
        if T is None:
            return None
        corners = tag_corners_world(T_world_from_tag=T, tag_size_m=float(self.tag_size_m))
        self._corners_cache[tid] = corners
        return corners

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TagLayout":
        if not isinstance(data, Mapping):
            raise ValueError("tag layout must be an object")

        tags = data.get("tags")
        if not isinstance(tags, list):
            raise ValueError("tag layout missing 'tags' list")

        poses: dict[int, np.ndarray] = {}
        for i, entry in enumerate(tags):
            if not isinstance(entry, Mapping):
                raise ValueError(f"tags[{i}] must be an object")
            if "ID" in entry:
                tag_id, T = _parse_wpilib_tag(entry)
            else:
                tag_id, T = _parse_tag(entry)
            if tag_id in poses:
                raise ValueError(f"duplicate tag id in layout: {tag_id}")
            poses[tag_id] = T

        size = data.get("tag_size_m", DEFAULT_TAG_SIZE_M)
        family = str(data.get("family") or "tag36h11")
        return cls(tag_poses=poses, tag_size_m=float(size), family=family)

    def to_mapping(self) -> dict[str, Any]:
        return {
            "tag_size_m": float(self.tag_size_m),
            "family": str(self.family),
            "tags": [
                {
                    "id": int(tid),
                    "pose": {
                        "translation": [float(v) for v in self.tag_poses[tid][:3, 3]],
                        "quaternion": [float(v) for v in quat_from_R(self.tag_poses[tid][:3, :3])],
                    },
                }
                for tid in self.tag_ids
            ],
        }


def _parse_tag(entry: Mapping[str, Any]) -> tuple[int, np.ndarray]:
    tag_id = int(entry["id"])
    pose = entry.get("pose")
    if not isinstance(pose, Mapping):
        raise ValueError(f"tag {tag_id}: missing pose")
    T = pose_from_translation_quat(
        np.asarray(pose.get("translation"), dtype=np.float64).reshape(3),
        np.asarray(pose.get("quaternion", [1.0, 0.0, 0.0, 0.0]), dtype=np.float64).reshape(4),
    )
    return tag_id, T


def _parse_wpilib_tag(entry: Mapping[str, Any]) -> tuple[int, np.ndarray]:
    tag_id = int(entry["ID"])
    pose = entry.get("pose") or {}
    tr = pose.get("translation") or {}
    q = (pose.get("rotation") or {}).get("quaternion") or {}
    t = np.array([float(tr.get("x", 0.0)), float(tr.get("y", 0.0)), float(tr.get("z", 0.0))])
    quat = np.array([float(q.get("W", 1.0)), float(q.get("X", 0.0)), float(q.get("Y", 0.0)), float(q.get("Z", 0.0))])
    T_world_from_wpi = pose_from_translation_quat(t, quat)
    return tag_id, compose_T(T_world_from_wpi, make_T(R=_R_WPILIB_FROM_TAG, t=np.zeros(3)))


def load_tag_layout(path: str | Path) -> TagLayout:
    """从 JSON 文件加载布局。"""

    p = Path(path)
    if not p.exists():
        raise RuntimeError(f"找不到 tag 布局文件: {p}")
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise RuntimeError(f"无法解析 tag 布局 JSON: {p}") from exc
    try:
        return TagLayout.from_mapping(data)
    except (KeyError, ValueError) as exc:
        raise RuntimeError(f"tag 布局格式错误（{p}）：{exc}") from exc


class TagLayoutHolder:
    """布局槽位：按引用传给估计器，随布局更新整体替换。"""

    def __init__(self, layout: TagLayout | None = None) -> None:
        self._layout = layout
        self._version = 0 if layout is None else 1

    @property
    def current(self) -> TagLayout | None:
        return self._layout

    @property
    def version(self) -> int:
        """安装次数；每次 `install()` 加 1。"""

        return int(self._version)

    def install(self, layout: TagLayout) -> None:
        self._layout = layout
        self._version += 1
