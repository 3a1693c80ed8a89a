"""内置仿真器：圆周运动的机器人 + 一圈朝内的 tag。

用途：
- 默认配置（configs/simulator.yaml）离线跑通整条链路；
- 集成测试的确定性数据源（固定 seed）。

发布内容（都写到遥测表）：
- 首次 step：tag 布局、缺少内参的相机的 camera_info、带偏差的位姿先验；
- 每个 step：一条里程计样本（攒够 odom_batch_size 条才一次性发布）；
- 每 camera_every_steps 个 step：每个相机一帧 tag 角点（OpenCV 投影 + 像素噪声）。

里程计按批发布，所以相机帧的时间戳经常领先于已到达的里程计，调度器会先放进 backlog。
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Any, Sequence

import numpy as np

from fiducial_pose import (
    CameraIntrinsics,
    TagLayout,
    compose_T,
    exp_se3,
    invert_T,
    log_se3,
    make_T,
    points_in_camera,
    project_points,
    quat_from_R,
)

from .config import CameraConfig, SimulatorConfig
from .logging_utils import default_logger
from .transport import (
    TelemetryTable,
    camera_info_topic,
    camera_tags_topic,
    odom_topic,
    pose_prior_topic,
    tag_layout_topic,
)

DEFAULT_START_US = 1_000_000


def build_ring_layout(cfg: SimulatorConfig) -> TagLayout:
    """tag 均匀分布在半径 tag_ring_radius_m 的圆上，正面朝向圆心。"""

    poses: dict[int, np.ndarray] = {}
    for i in range(int(cfg.tag_count)):
        phi = 2.0 * math.pi * i / float(cfg.tag_count)
        c, s = math.cos(phi), math.sin(phi)
        # tag z 轴背离圆心（从观察者指向 tag 背面），y 轴朝下。
        R = np.array(
            [
                [s, 0.0, c],
                [-c, 0.0, s],
                [0.0, -1.0, 0.0],
            ],
            dtype=np.float64,
        )
        t = np.array([cfg.tag_ring_radius_m * c, cfg.tag_ring_radius_m * s, cfg.tag_height_m])
        poses[i + 1] = make_T(R=R, t=t)
    return TagLayout(tag_poses=poses, tag_size_m=float(cfg.tag_size_m))


def default_intrinsics(cfg: SimulatorConfig) -> CameraIntrinsics:
    w, h = float(cfg.image_width), float(cfg.image_height)
    f = 0.8 * w
    K = np.array([[f, 0.0, 0.5 * w], [0.0, f, 0.5 * h], [0.0, 0.0, 1.0]], dtype=np.float64)
    return CameraIntrinsics(K=K, dist=np.zeros(5, dtype=np.float64))


def _pose_record(T: np.ndarray) -> dict[str, Any]:
    return {
        "translation": [float(v) for v in T[:3, 3]],
        "quaternion": [float(v) for v in quat_from_R(T[:3, :3])],
    }


class TagSimulator:
    """确定性仿真器；每次 `step()` 推进 step_period_us。"""

    def __init__(
        self,
        transport: TelemetryTable,
        *,
        cameras: Sequence[CameraConfig],
        config: SimulatorConfig,
        start_us: int = DEFAULT_START_US,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._cameras = tuple(cameras)
        self._cfg = config
        self._logger = logger or default_logger("sim")
        self._rng = np.random.default_rng(int(config.seed))

        self._layout = build_ring_layout(config)
        self._intrinsics = {
            c.name: (c.intrinsics if c.intrinsics is not None else default_intrinsics(config)) for c in self._cameras
        }

        self._start_us = int(start_us)
        self._t_us = int(start_us)
        self._steps = 0
        self._pending_odom: list[dict[str, Any]] = []
        self._started = False

    @property
    def layout(self) -> TagLayout:
        return self._layout

    @property
    def timestamp_us(self) -> int:
        return int(self._t_us)

    def true_pose(self, timestamp_us: int) -> np.ndarray:
        """t 时刻的真值 T_world_from_robot（逆时针圆周，机头沿切线）。"""

        cfg = self._cfg
        omega = float(cfg.speed_mps) / float(cfg.circle_radius_m)
        theta = omega * (int(timestamp_us) - self._start_us) * 1e-6
        c, s = math.cos(theta), math.sin(theta)
        yaw = theta + 0.5 * math.pi
        cy, sy = math.cos(yaw), math.sin(yaw)
        R = np.array([[cy, -sy, 0.0], [sy, cy, 0.0], [0.0, 0.0, 1.0]], dtype=np.float64)
        return make_T(R=R, t=np.array([cfg.circle_radius_m * c, cfg.circle_radius_m * s, 0.0]))

    def _publish_initial(self) -> None:
        root = self._transport.root
        self._transport.publish(tag_layout_topic(root), self._layout.to_mapping())

        for cam in self._cameras:
            if cam.intrinsics is None:
                intr = self._intrinsics[cam.name]
                self._transport.publish(
                    camera_info_topic(root, cam.name),
                    {"K": intr.K.tolist(), "dist": intr.dist.tolist()},
                )

        T0 = self.true_pose(self._t_us)
        offset = np.array([0.0, 0.0, 0.0, self._cfg.prior_offset_m, 0.0, 0.0], dtype=np.float64)
        self._transport.publish(
            pose_prior_topic(root),
            {
                "timestamp_us": int(self._t_us),
                "pose": _pose_record(compose_T(T0, exp_se3(offset))),
                "sigmas": [float(v) for v in self._cfg.prior_sigmas],
            },
        )
        self._logger.info(
            "simulator started: %d tags, %d camera(s), seed=%d", len(self._layout), len(self._cameras), self._cfg.seed
        )

    def _detect(self, cam: CameraConfig, T_world_from_robot: np.ndarray) -> list[dict[str, Any]]:
        cfg = self._cfg
        intr = self._intrinsics[cam.name]
        T_world_from_cam = compose_T(T_world_from_robot, cam.T_robot_from_camera)
        cam_center = T_world_from_cam[:3, 3]

        tags: list[dict[str, Any]] = []
        for tag_id in self._layout.tag_ids:
            T_wt = self._layout.tag_poses[tag_id]
            # 只看得到正面：tag z 轴与视线同向。
            if float(T_wt[:3, 2] @ (T_wt[:3, 3] - cam_center)) <= 0:
                continue
            corners = self._layout.corners_world(tag_id)
            if corners is None:
                continue
            depth = points_in_camera(points_world=corners, T_world_from_cam=T_world_from_cam)[:, 2]
            if np.any(depth <= 0.1):
                continue
            uv = project_points(points_world=corners, T_world_from_cam=T_world_from_cam, intr=intr)
            inside = (uv[:, 0] >= 0) & (uv[:, 0] < cfg.image_width) & (uv[:, 1] >= 0) & (uv[:, 1] < cfg.image_height)
            if not bool(np.all(inside)):
                continue
            if cfg.pixel_noise_px > 0:
                uv = uv + self._rng.normal(0.0, float(cfg.pixel_noise_px), size=uv.shape)
            tags.append({"id": int(tag_id), "corners": uv.tolist(), "decision_margin": 50.0})
        return tags

    def step(self) -> int:
        """推进一个仿真步，返回新的仿真时间戳（微秒）。"""

        if not self._started:
            self._publish_initial()
            self._started = True

        cfg = self._cfg
        root = self._transport.root

        T_prev = self.true_pose(self._t_us)
        self._t_us += int(cfg.step_period_us)
        self._steps += 1
        T_now = self.true_pose(self._t_us)

        twist = log_se3(compose_T(invert_T(T_prev), T_now))
        noise = np.asarray(cfg.odom_noise_sigmas, dtype=np.float64)
        if np.any(noise > 0):
            twist = twist + self._rng.normal(0.0, 1.0, size=6) * noise
        self._pending_odom.append({"timestamp_us": int(self._t_us), "twist": [float(v) for v in twist]})
        if len(self._pending_odom) >= int(cfg.odom_batch_size):
            self._transport.publish(odom_topic(root), self._pending_odom)
            self._pending_odom = []

        if self._steps % int(cfg.camera_every_steps) == 0:
            for cam in self._cameras:
                self._transport.publish(
                    camera_tags_topic(root, cam.name),
                    {"timestamp_us": int(self._t_us), "tags": self._detect(cam, T_now)},
                )

        return int(self._t_us)


class SimulatorThread:
    """后台线程按实时节拍调用 `TagSimulator.step()`。"""

    def __init__(self, sim: TagSimulator, *, period_s: float, time_scale: float = 1.0) -> None:
        if time_scale <= 0:
            raise ValueError("time_scale must be > 0")
        self._sim = sim
        self._period_s = float(period_s) / float(time_scale)
        self._stop = threading.Event()
        self._err: BaseException | None = None
        self._thread = threading.Thread(target=self._run, name="tag_localizer_sim", daemon=True)

    def __enter__(self) -> "SimulatorThread":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: ANN001
        self.close()

    @property
    def error(self) -> BaseException | None:
        return self._err

    def start(self) -> None:
        self._thread.start()

    def close(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                self._sim.step()
                self._stop.wait(self._period_s)
        except BaseException as exc:  # noqa: BLE001
            # 记录首个异常即可；由主线程决定是否中止。
            self._err = exc
