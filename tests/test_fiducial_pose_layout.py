"""单测：tag 布局解析（本仓库格式 / WPILib 格式）与布局持有者。"""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from fiducial_pose import TagLayout, TagLayoutHolder, load_tag_layout


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def test_repo_field_layout_faces_the_origin() -> None:
    layout = load_tag_layout(_repo_root() / "configs" / "field_layout.json")

    assert layout.tag_ids == [1, 2, 3, 4]
    assert layout.family == "tag36h11"
    for tid in layout.tag_ids:
        T = layout.pose_of(tid)
        assert T is not None
        # z 轴背离观察者：从原点看过去，z 与“原点 -> tag”同向。
        to_tag = T[:3, 3] / np.linalg.norm(T[:3, 3])
        assert float(T[:3, 2] @ to_tag) > 0.99
        # y 轴朝下。
        assert np.allclose(T[:3, 1], [0.0, 0.0, -1.0], atol=1e-6)


def test_corners_world_follow_tl_tr_br_bl_order() -> None:
    R = np.array([[0.0, 0.0, 1.0], [-1.0, 0.0, 0.0], [0.0, -1.0, 0.0]])
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = [4.0, 0.0, 0.5]
    layout = TagLayout(tag_poses={1: T}, tag_size_m=0.2)

    c = layout.corners_world(1)

    assert c is not None and c.shape == (4, 3)
    # 从原点看向 +x：左 = +y，上 = +z。
    assert np.allclose(c[0], [4.0, 0.1, 0.6])
    assert np.allclose(c[1], [4.0, -0.1, 0.6])
    assert np.allclose(c[2], [4.0, -0.1, 0.4])
    assert np.allclose(c[3], [4.0, 0.1, 0.4])
    assert layout.corners_world(99) is None
    assert 1 in layout and 2 not in layout


def test_wpilib_layout_is_converted_to_local_tag_frame() -> None:
    # WPILib：tag x 轴指向正面外侧；tag 在 (4,0,0.5)，正面朝 -x（yaw = pi）。
    data = {
        "tags": [
            {
                "ID": 3,
                "pose": {
                    "translation": {"x": 4.0, "y": 0.0, "z": 0.5},
                    "rotation": {"quaternion": {"W": 0.0, "X": 0.0, "Y": 0.0, "Z": 1.0}},
                },
            }
        ],
        "field": {"length": 16.54, "width": 8.21},
    }

    layout = TagLayout.from_mapping(data)
    T = layout.pose_of(3)

    assert T is not None
    assert np.allclose(T[:3, 2], [1.0, 0.0, 0.0], atol=1e-9)
    assert np.allclose(T[:3, 1], [0.0, 0.0, -1.0], atol=1e-9)
    assert np.allclose(T[:3, 3], [4.0, 0.0, 0.5])


def test_to_mapping_round_trips_poses() -> None:
    layout = load_tag_layout(_repo_root() / "configs" / "field_layout.json")
    again = TagLayout.from_mapping(layout.to_mapping())

    assert again.tag_ids == layout.tag_ids
    for tid in layout.tag_ids:
        assert np.allclose(again.pose_of(tid), layout.pose_of(tid), atol=1e-9)


@pytest.mark.parametrize(
    "data",
    [
        {"tags": "nope"},
        {"tags": [{"id": 1, "pose": {"translation": [0, 0, 0]}}, {"id": 1, "pose": {"translation": [1, 0, 0]}}]},
        {"tags": [{"id": 1}]},
        {"tags": [], "tag_size_m": 0.0},
    ],
)
def test_invalid_layout_mapping_raises(data: dict) -> None:
    with pytest.raises(ValueError):
        TagLayout.from_mapping(data)


def test_load_tag_layout_errors(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        load_tag_layout(tmp_path / "missing.json")

    p = tmp_path / "bad.json"
    p.write_text("{", encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_tag_layout(p)

    p.write_text(json.dumps({"tags": [{"pose": {}}]}), encoding="utf-8")
    with pytest.raises(RuntimeError):
        load_tag_layout(p)


def test_holder_counts_installs() -> None:
    holder = TagLayoutHolder()
    assert holder.current is None and holder.version == 0

    a = TagLayout(tag_poses={})
    b = TagLayout(tag_poses={1: np.eye(4)})
    holder.install(a)
    holder.install(b)

    assert holder.current is b
    assert holder.version == 2
    assert TagLayoutHolder(a).version == 1
