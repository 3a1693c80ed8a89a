"""输入源：从遥测表订阅里程计 / 相机 tag 检测 / 配置变更。

说明：
- 订阅回调运行在发布者的线程上，只做“解析 + 追加到带锁缓冲”。
- 调度器每个 tick 调用一次 `update()` / `new_*()`，一次性取走缓冲区的快照；
  调度器本身不需要任何锁。
- 格式不合法的消息记 warning 后丢弃，不向调度器抛异常。
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Mapping

from fiducial_pose import CameraIntrinsics, TagDetection, TagLayout

from .config import CameraConfig
from .logging_utils import default_logger
from .transport import (
    TelemetryTable,
    camera_info_topic,
    camera_tags_topic,
    odom_topic,
    pose_prior_topic,
    tag_layout_topic,
)
from .types import OdometrySample, PosePrior, VisionObservation, _as_timestamp_us

__all__ = [
    "CameraSource",
    "ConfigSource",
    "OdometrySource",
]

_PAYLOAD_ERRORS = (AttributeError, KeyError, TypeError, ValueError)


def _as_batch(payload: Any) -> list[Any]:
    if isinstance(payload, (list, tuple)):
        return list(payload)
    return [payload]


class OdometrySource:
    """里程计源：接受单条或批量样本。"""

    def __init__(self, transport: TelemetryTable, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or default_logger("odometry")
        self._lock = threading.Lock()
        self._buf: list[OdometrySample] = []
        self._dropped = 0
        self._unsubscribe = transport.subscribe(odom_topic(transport.root), self._on_message)

    @property
    def dropped(self) -> int:
        with self._lock:
            return int(self._dropped)

    def _on_message(self, topic: str, payload: Any) -> None:
        parsed: list[OdometrySample] = []
        malformed = 0
        for item in _as_batch(payload):
            if isinstance(item, OdometrySample):
                parsed.append(item)
                continue
            try:
                parsed.append(OdometrySample.from_mapping(item))
            except _PAYLOAD_ERRORS as exc:
                malformed += 1
                self._logger.warning("drop malformed odometry on %s: %s", topic, exc)

        with self._lock:
            self._buf.extend(parsed)
            self._dropped += malformed

    def update(self) -> list[OdometrySample]:
        """取走上次调用以来累积的样本（按到达顺序）。"""

        with self._lock:
            out = self._buf
            self._buf = []
        return out

    def close(self) -> None:
        self._unsubscribe()


class CameraSource:
    """单相机源。

    就绪条件：
    - 内参已知（配置中给出，或收到 camera_info）；
    - 至少收到过一条检测消息（预热完成）。
    """

    def __init__(
        self,
        transport: TelemetryTable,
        camera: CameraConfig,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._camera = camera
        self._logger = logger or default_logger(f"camera.{camera.name}")
        self._lock = threading.Lock()
        self._intrinsics: CameraIntrinsics | None = camera.intrinsics
        self._received_any = False
        self._frames: list[tuple[int, tuple[TagDetection, ...]]] = []

        root = transport.root
        self._unsubs = [
            transport.subscribe(camera_tags_topic(root, camera.name), self._on_tags),
            transport.subscribe(camera_info_topic(root, camera.name), self._on_camera_info),
        ]

    @property
    def name(self) -> str:
        return self._camera.name

    def _on_camera_info(self, topic: str, payload: Any) -> None:
        try:
            intr = payload if isinstance(payload, CameraIntrinsics) else CameraIntrinsics.from_mapping(payload)
        except _PAYLOAD_ERRORS as exc:
            self._logger.warning("drop malformed camera_info on %s: %s", topic, exc)
            return

        with self._lock:
            first = self._intrinsics is None
            self._intrinsics = intr
        if first:
            self._logger.info("camera %s: intrinsics received", self._camera.name)

    def _on_tags(self, topic: str, payload: Any) -> None:
        frames: list[tuple[int, tuple[TagDetection, ...]]] = []
        for item in _as_batch(payload):
            try:
                ts = _as_timestamp_us(item["timestamp_us"])
                tags = tuple(TagDetection.from_mapping(t) for t in (item.get("tags") or []))
            except _PAYLOAD_ERRORS as exc:
                self._logger.warning("drop malformed tag frame on %s: %s", topic, exc)
                continue
            frames.append((ts, tags))

        if not frames:
            return

        with self._lock:
            self._received_any = True
            # 空帧只用于预热判定，不产出观测。
            self._frames.extend(f for f in frames if f[1])

    def ready_to_optimize(self) -> bool:
        with self._lock:
            return self._intrinsics is not None and self._received_any

    def update(self) -> list[VisionObservation]:
        """取走累积的检测帧并附上内参/安装位姿。

        内参未知时不取走缓冲（返回空列表）。
        """

        with self._lock:
            intr = self._intrinsics
            if intr is None:
                return []
            frames = self._frames
            self._frames = []

        cam = self._camera
        return [
            VisionObservation(
                timestamp_us=ts,
                camera=cam.name,
                tags=tags,
                intrinsics=intr,
                T_robot_from_camera=cam.T_robot_from_camera,
                pixel_sigma=float(cam.pixel_sigma),
            )
            for ts, tags in frames
        ]

    def close(self) -> None:
        for unsub in self._unsubs:
            unsub()


class ConfigSource:
    """配置源：位姿先验与 tag 布局，只在变化时返回非空（最新值覆盖旧值）。"""

    def __init__(
        self,
        transport: TelemetryTable,
        *,
        initial_layout: TagLayout | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._logger = logger or default_logger("config_source")
        self._lock = threading.Lock()
        self._pending_prior: PosePrior | None = None
        # 配置文件给出的初始布局视为第一次布局变更。
        self._pending_layout: TagLayout | None = initial_layout

        root = transport.root
        self._unsubs = [
            transport.subscribe(pose_prior_topic(root), self._on_pose_prior),
            transport.subscribe(tag_layout_topic(root), self._on_tag_layout),
        ]

    def _on_pose_prior(self, topic: str, payload: Any) -> None:
        try:
            prior = payload if isinstance(payload, PosePrior) else PosePrior.from_mapping(payload)
        except _PAYLOAD_ERRORS as exc:
            self._logger.warning("drop malformed pose prior on %s: %s", topic, exc)
            return
        with self._lock:
            self._pending_prior = prior

    def _on_tag_layout(self, topic: str, payload: Any) -> None:
        try:
            if isinstance(payload, TagLayout):
                layout = payload
            elif isinstance(payload, Mapping):
                layout = TagLayout.from_mapping(payload)
            else:
                raise TypeError(f"unexpected layout payload type: {type(payload).__name__}")
        except _PAYLOAD_ERRORS as exc:
            self._logger.warning("drop malformed tag layout on %s: %s", topic, exc)
            return
        with self._lock:
            self._pending_layout = layout

    def new_pose_prior(self) -> PosePrior | None:
        with self._lock:
            out = self._pending_prior
            self._pending_prior = None
        return out

    def new_tag_layout(self) -> TagLayout | None:
        with self._lock:
            out = self._pending_layout
            self._pending_layout = None
        return out

    def close(self) -> None:
        for unsub in self._unsubs:
            unsub()
