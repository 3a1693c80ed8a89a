"""单测：更新调度器的水位线 / 准入 / backlog / 就绪 / optimize-publish 顺序。

说明：
- 所有协作者都是内存假对象；共享一个事件列表用于检查调用顺序。
- 不依赖估计器数值模型。
"""

from __future__ import annotations

import logging
import random

import numpy as np
import pytest

from fiducial_pose import CameraIntrinsics, TagLayout, TagLayoutHolder
from tag_localizer import EstimationError, ObservationBacklog, UpdateScheduler
from tag_localizer.types import OdometrySample, PosePrior, VisionObservation

_INTR = CameraIntrinsics(K=np.eye(3), dist=np.zeros(0))


def _obs(ts: int, camera: str = "cam0") -> VisionObservation:
    return VisionObservation(
        timestamp_us=int(ts),
        camera=camera,
        tags=(),
        intrinsics=_INTR,
        T_robot_from_camera=np.eye(4),
    )


def _prior(ts: int = 0) -> PosePrior:
    return PosePrior(timestamp_us=int(ts), T_world_from_robot=np.eye(4), sigmas=np.full(6, 0.1))


def _layout() -> TagLayout:
    return TagLayout(tag_poses={1: np.eye(4)})


class _FakeEstimator:
    def __init__(self, events: list[tuple], *, fail: bool = False) -> None:
        self.events = events
        self.fail = fail
        self.scheduler: UpdateScheduler | None = None
        self.delivered: list[tuple[int, int]] = []  # (obs ts, 投递时的水位线)

    def reset(self, T_world_from_robot, sigmas, timestamp_us) -> None:  # noqa: ANN001
        self.events.append(("reset", int(timestamp_us)))

    def add_odometry(self, sample: OdometrySample) -> None:
        self.events.append(("odom", int(sample.timestamp_us)))

    def add_tag_observation(self, obs: VisionObservation) -> None:
        assert self.scheduler is not None
        self.delivered.append((int(obs.timestamp_us), self.scheduler.last_odom_timestamp_us))
        self.events.append(("vision", int(obs.timestamp_us)))

    def optimize(self) -> None:
        self.events.append(("optimize",))
        if self.fail:
            raise EstimationError("indeterminant linear system")

    def print(self) -> None:
        self.events.append(("print",))


class _FakeOdometry:
    def __init__(self) -> None:
        self.pending: list[int] = []

    def push(self, *stamps: int) -> None:
        self.pending.extend(int(t) for t in stamps)

    def update(self) -> list[OdometrySample]:
        out = [OdometrySample(timestamp_us=t, twist=np.zeros(6)) for t in self.pending]
        self.pending = []
        return out


class _FakeCamera:
    def __init__(self, name: str = "cam0", *, ready: bool = True) -> None:
        self.name = name
        self.ready = ready
        self.pending: list[VisionObservation] = []
        self.update_calls = 0

    def push(self, *stamps: int) -> None:
        self.pending.extend(_obs(t, self.name) for t in stamps)

    def ready_to_optimize(self) -> bool:
        return self.ready

    def update(self) -> list[VisionObservation]:
        self.update_calls += 1
        out = self.pending
        self.pending = []
        return out


class _FakeConfig:
    def __init__(self) -> None:
        self.prior: PosePrior | None = None
        self.layout: TagLayout | None = None

    def new_pose_prior(self) -> PosePrior | None:
        out, self.prior = self.prior, None
        return out

    def new_tag_layout(self) -> TagLayout | None:
        out, self.layout = self.layout, None
        return out


class _FakePublisher:
    def __init__(self, events: list[tuple]) -> None:
        self.events = events

    def update(self) -> None:
        self.events.append(("publish",))


class _FakeTransport:
    def __init__(self, events: list[tuple]) -> None:
        self.events = events

    def flush(self) -> None:
        self.events.append(("flush",))


class _Rig:
    def __init__(self, *, cameras: int = 1, fail: bool = False) -> None:
        self.events: list[tuple] = []
        self.estimator = _FakeEstimator(self.events, fail=fail)
        self.odometry = _FakeOdometry()
        self.cameras = [_FakeCamera(f"cam{i}") for i in range(cameras)]
        self.config = _FakeConfig()
        self.publisher = _FakePublisher(self.events)
        self.transport = _FakeTransport(self.events)
        self.layout = TagLayoutHolder()
        self.scheduler = UpdateScheduler(
            estimator=self.estimator,
            odometry=self.odometry,
            cameras=self.cameras,
            config_source=self.config,
            publisher=self.publisher,
            transport=self.transport,
            layout=self.layout,
        )
        self.estimator.scheduler = self.scheduler

    def names(self) -> list[str]:
        return [e[0] for e in self.events]


def test_watermark_is_running_max_and_odometry_forwarded_in_order() -> None:
    rig = _Rig()
    seen: list[int] = []
    for batch in ([100, 50, 200], [150], [], [300, 250]):
        rig.odometry.push(*batch)
        rig.scheduler.tick()
        seen.append(rig.scheduler.last_odom_timestamp_us)

    assert seen == [200, 200, 200, 300]
    assert [e[1] for e in rig.events if e[0] == "odom"] == [100, 50, 200, 150, 300, 250]


def test_vision_at_or_below_watermark_is_admitted_immediately() -> None:
    rig = _Rig()
    rig.odometry.push(100, 50, 200)
    rig.cameras[0].push(180, 200)

    report = rig.scheduler.tick()

    assert rig.scheduler.last_odom_timestamp_us == 200
    assert [e[1] for e in rig.events if e[0] == "vision"] == [180, 200]
    assert len(rig.scheduler.backlog) == 0
    assert report.admitted_count == 2
    assert report.backlogged_count == 0


def test_future_vision_is_buffered_then_replayed_before_optimize() -> None:
    rig = _Rig()
    rig.config.prior = _prior(0)
    rig.odometry.push(200)
    rig.scheduler.tick()

    rig.cameras[0].push(250)
    report = rig.scheduler.tick()
    assert report.backlogged_count == 1
    assert rig.scheduler.backlog.timestamps_us() == [250]
    assert ("vision", 250) not in rig.events

    rig.events.clear()
    rig.odometry.push(300)
    report = rig.scheduler.tick()

    assert report.replayed_count == 1
    assert report.backlog_size == 0
    assert rig.names() == ["odom", "vision", "optimize", "publish", "flush"]
    assert rig.events[1] == ("vision", 250)


def test_randomized_streams_never_deliver_ahead_of_watermark_and_deliver_once() -> None:
    rng = random.Random(7)
    rig = _Rig(cameras=3)
    rig.config.prior = _prior(0)

    sent: dict[int, int] = {}  # obs ts -> 发送的 tick
    first_tick_covering: dict[int, int] = {}
    delivered_at_tick: dict[int, int] = {}

    for tick in range(60):
        rig.odometry.push(*(rng.randint(0, 50 * (tick + 1)) for _ in range(rng.randint(0, 4))))
        for cam in rig.cameras:
            for _ in range(rng.randint(0, 2)):
                ts = rng.randint(0, 50 * (tick + 2))
                # 时间戳唯一，便于逐条追踪。
                while ts in sent:
                    ts += 1
                sent[ts] = tick
                cam.push(ts)

        before = len(rig.estimator.delivered)
        rig.scheduler.tick()
        wm = rig.scheduler.last_odom_timestamp_us
        for ts, _ in rig.estimator.delivered[before:]:
            delivered_at_tick[ts] = tick
        for ts, t_sent in sent.items():
            if ts <= wm and ts not in first_tick_covering and t_sent <= tick:
                first_tick_covering[ts] = tick

    rig.odometry.push(10**9)
    rig.scheduler.tick()
    for ts, _ in rig.estimator.delivered:
        delivered_at_tick.setdefault(ts, 60)

    stamps = [ts for ts, _ in rig.estimator.delivered]
    assert all(ts <= wm_at for ts, wm_at in rig.estimator.delivered)
    assert sorted(stamps) == sorted(sent.keys())
    assert len(stamps) == len(set(stamps))
    for ts, tick in first_tick_covering.items():
        assert delivered_at_tick[ts] <= tick
    assert len(rig.scheduler.backlog) == 0


def test_readiness_requires_prior_and_every_camera() -> None:
    rig = _Rig(cameras=2)
    rig.cameras[1].ready = False

    assert rig.scheduler.tick().ready is False

    rig.config.prior = _prior(10)
    report = rig.scheduler.tick()
    assert report.has_initial_guess is True
    assert report.cameras_ready is False
    assert report.ready is False
    assert "optimize" not in rig.names()

    rig.cameras[1].ready = True
    report = rig.scheduler.tick()
    assert report.ready is True
    assert report.published is True
    assert rig.names()[-3:] == ["optimize", "publish", "flush"]


def test_not_ready_camera_is_not_drained_but_odometry_still_applied() -> None:
    rig = _Rig(cameras=2)
    rig.cameras[1].ready = False
    rig.cameras[1].push(5)
    rig.odometry.push(10)

    report = rig.scheduler.tick()

    assert report.ready is False
    assert rig.cameras[0].update_calls == 1
    assert rig.cameras[1].update_calls == 0
    assert rig.cameras[1].pending and rig.cameras[1].pending[0].timestamp_us == 5
    assert ("odom", 10) in rig.events


def test_zero_cameras_is_ready_once_prior_applied() -> None:
    rig = _Rig(cameras=0)
    assert rig.scheduler.tick().ready is False
    rig.config.prior = _prior(0)
    report = rig.scheduler.tick()
    assert report.cameras_ready is True
    assert report.ready is True


def test_new_layout_forces_not_ready_until_fresh_prior(caplog: pytest.LogCaptureFixture) -> None:
    rig = _Rig()
    rig.config.prior = _prior(0)
    assert rig.scheduler.tick().ready is True

    layout = _layout()
    rig.config.layout = layout
    caplog.set_level(logging.INFO, logger="tag_localizer")
    for _ in range(3):
        report = rig.scheduler.tick()
        assert report.ready is False
        assert report.has_initial_guess is False

    assert rig.layout.current is layout
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1

    rig.config.prior = _prior(500)
    assert rig.scheduler.tick().ready is True
    assert rig.events.count(("reset", 500)) == 1


def test_prior_is_ignored_while_already_initialized() -> None:
    rig = _Rig()
    rig.config.prior = _prior(0)
    rig.scheduler.tick()
    rig.config.prior = _prior(99)
    rig.scheduler.tick()

    assert [e for e in rig.events if e[0] == "reset"] == [("reset", 0)]


def test_layout_and_prior_in_same_tick_end_up_ready() -> None:
    rig = _Rig()
    rig.config.layout = _layout()
    rig.config.prior = _prior(0)

    report = rig.scheduler.tick()

    assert report.ready is True
    assert rig.layout.version == 1


def test_optimize_failure_dumps_state_and_skips_publish() -> None:
    rig = _Rig(fail=True)
    rig.config.prior = _prior(0)

    with pytest.raises(EstimationError):
        rig.scheduler.tick()

    assert rig.names()[-2:] == ["optimize", "print"]
    assert "publish" not in rig.names()
    assert "flush" not in rig.names()


def test_backlog_pop_eligible_removes_exactly_the_eligible_set() -> None:
    backlog = ObservationBacklog()
    for ts, cam in ((250, "a"), (120, "a"), (400, "b"), (120, "b"), (300, "a")):
        backlog.push(_obs(ts, cam))

    out = backlog.pop_eligible(250)

    assert [(o.timestamp_us, o.camera) for o in out] == [(120, "a"), (120, "b"), (250, "a")]
    assert sorted(backlog.timestamps_us()) == [300, 400]
    assert backlog.pop_eligible(250) == []
    assert len(backlog) == 2
