"""更新调度器：每个 tick 把配置 / 里程计 / 相机观测按时间约束喂给估计器。

一次 tick 的顺序：
1) 配置变更：新布局先安装（has_initial_guess 置 False），再在未初始化时应用位姿先验；
2) 里程计：全部转发给估计器，并推进水位线 last_odom_timestamp_us = max(...)；
3) 相机：只对就绪相机取数据；时间戳 <= 水位线的观测立即转发，否则放进 backlog；
4) backlog 回放：先收集全部已满足条件的观测，再整体移除，然后按时间升序转发；
5) 就绪汇总：has_initial_guess 且所有相机就绪；
6) 就绪则 optimize -> publisher.update -> transport.flush；optimize 失败时
   先 print() 现场，再把 EstimationError 原样抛给调用方。

说明：
- 调度器是单线程的：tick 内不加锁，各输入源的 update() 已经返回时间点快照。
- 调度器不持有计时器；节拍与未就绪退避由 runtime 循环负责。
"""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

import numpy as np

from fiducial_pose import TagLayout, TagLayoutHolder

from .logging_utils import default_logger
from .types import OdometrySample, PosePrior, TickReport, VisionObservation


class PoseEstimator(Protocol):
    def reset(self, T_world_from_robot: np.ndarray, sigmas: np.ndarray, timestamp_us: int) -> None: ...

    def add_odometry(self, sample: OdometrySample) -> object: ...

    def add_tag_observation(self, obs: VisionObservation) -> object: ...

    def optimize(self) -> object: ...

    def print(self) -> None: ...


class OdometryFeed(Protocol):
    def update(self) -> Sequence[OdometrySample]: ...


class CameraFeed(Protocol):
    def ready_to_optimize(self) -> bool: ...

    def update(self) -> Sequence[VisionObservation]: ...


class ConfigFeed(Protocol):
    def new_pose_prior(self) -> PosePrior | None: ...

    def new_tag_layout(self) -> TagLayout | None: ...


class ResultPublisher(Protocol):
    def update(self) -> object: ...


class Flushable(Protocol):
    def flush(self) -> object: ...


class ObservationBacklog:
    """时间戳领先于水位线的视觉观测的暂存区。"""

    def __init__(self) -> None:
        self._entries: list[VisionObservation] = []

    def __len__(self) -> int:
        return len(self._entries)

    def push(self, obs: VisionObservation) -> None:
        self._entries.append(obs)

    def pop_eligible(self, watermark_us: int) -> list[VisionObservation]:
        """取出全部 timestamp_us <= watermark_us 的条目（按时间升序，同时间保持到达顺序）。

        先收集、再整体移除：被取出的集合与被移除的集合完全一致。
        """

        wm = int(watermark_us)
        eligible = [o for o in self._entries if o.timestamp_us <= wm]
        if not eligible:
            return []
        self._entries = [o for o in self._entries if o.timestamp_us > wm]
        eligible.sort(key=lambda o: o.timestamp_us)
        return eligible

    def timestamps_us(self) -> list[int]:
        return [int(o.timestamp_us) for o in self._entries]


class UpdateScheduler:
    """单 tick 调度器。"""

    def __init__(
        self,
        *,
        estimator: PoseEstimator,
        odometry: OdometryFeed,
        cameras: Sequence[CameraFeed],
        config_source: ConfigFeed,
        publisher: ResultPublisher,
        transport: Flushable,
        layout: TagLayoutHolder,
        logger: logging.Logger | None = None,
    ) -> None:
        self._estimator = estimator
        self._odometry = odometry
        self._cameras = tuple(cameras)
        self._config = config_source
        self._publisher = publisher
        self._transport = transport
        self._layout = layout
        self._logger = logger or default_logger("scheduler")

        self._backlog = ObservationBacklog()
        self._last_odom_timestamp_us = 0
        self._has_initial_guess = False
        self._lost_guess_to_layout = False
        self._awaiting_prior_warned = False
        self._was_ready = False
        self._tick_index = 0

    @property
    def last_odom_timestamp_us(self) -> int:
        """水位线：目前见过的最大里程计时间戳（单调不减）。"""

        return int(self._last_odom_timestamp_us)

    @property
    def has_initial_guess(self) -> bool:
        return bool(self._has_initial_guess)

    @property
    def backlog(self) -> ObservationBacklog:
        return self._backlog

    def _admit(self, obs: VisionObservation) -> None:
        # 调用点保证 obs.timestamp_us <= 水位线。
        self._estimator.add_tag_observation(obs)

    def _apply_config_changes(self) -> None:
        layout = self._config.new_tag_layout()
        if layout is not None:
            self._layout.install(layout)
            if self._has_initial_guess:
                self._logger.info("new tag layout (%d tags): waiting for a fresh pose prior", len(layout))
                self._lost_guess_to_layout = True
                self._awaiting_prior_warned = False
            else:
                self._logger.info("tag layout installed (%d tags)", len(layout))
            self._has_initial_guess = False

        prior = self._config.new_pose_prior()
        if prior is None:
            return
        if self._has_initial_guess:
            self._logger.info("pose prior at t=%d ignored: already initialized", prior.timestamp_us)
            return
        self._estimator.reset(prior.T_world_from_robot, prior.sigmas, prior.timestamp_us)
        self._has_initial_guess = True
        self._lost_guess_to_layout = False
        self._logger.info("pose prior applied at t=%d", prior.timestamp_us)

    def tick(self) -> TickReport:
        """执行一次调度。

        Raises:
            EstimationError: optimize() 失败（已先调用 estimator.print()，异常原样抛出，本 tick 不发布）。
        """

        self._tick_index += 1
        self._apply_config_changes()

        odom = list(self._odometry.update())
        for sample in odom:
            if sample.timestamp_us > self._last_odom_timestamp_us:
                self._last_odom_timestamp_us = int(sample.timestamp_us)
            self._estimator.add_odometry(sample)
        wm = self._last_odom_timestamp_us

        cameras_ready = True
        admitted = 0
        backlogged = 0
        for cam in self._cameras:
            ready = bool(cam.ready_to_optimize())
            cameras_ready = cameras_ready and ready
            if not ready:
                self._logger.debug("camera %s not ready", getattr(cam, "name", cam))
                continue
            for obs in cam.update():
                if obs.timestamp_us > wm:
                    self._backlog.push(obs)
                    backlogged += 1
                    continue
                self._admit(obs)
                admitted += 1

        replay = self._backlog.pop_eligible(wm)
        for obs in replay:
            self._admit(obs)

        ready = self._has_initial_guess and cameras_ready
        report_kwargs = dict(
            has_initial_guess=self._has_initial_guess,
            cameras_ready=cameras_ready,
            watermark_us=wm,
            odometry_count=len(odom),
            admitted_count=admitted,
            backlogged_count=backlogged,
            replayed_count=len(replay),
            backlog_size=len(self._backlog),
        )
        self._logger.debug(
            "tick %d: odom=%d admitted=%d backlogged=%d replayed=%d backlog=%d wm=%d",
            self._tick_index,
            len(odom),
            admitted,
            backlogged,
            len(replay),
            len(self._backlog),
            wm,
        )

        if not ready:
            self._log_not_ready(cameras_ready)
            self._was_ready = False
            return TickReport(ready=False, published=False, **report_kwargs)

        if not self._was_ready:
            self._logger.info("ready: optimizing and publishing")
            self._was_ready = True

        try:
            self._estimator.optimize()
        except Exception as exc:
            self._logger.critical("optimize failed: %s", exc)
            self._estimator.print()
            raise

        self._publisher.update()
        self._transport.flush()
        return TickReport(ready=True, published=True, **report_kwargs)

    def _log_not_ready(self, cameras_ready: bool) -> None:
        if not self._has_initial_guess:
            if self._lost_guess_to_layout:
                # 布局更新后没有新的先验时不会自动恢复，需要操作员重新下发先验。
                if not self._awaiting_prior_warned:
                    self._logger.warning("not ready: tag layout changed and no fresh pose prior has arrived")
                    self._awaiting_prior_warned = True
            else:
                self._logger.info("not ready: no initial guess yet")
        if not cameras_ready:
            self._logger.info("not ready: camera(s) warming up")
