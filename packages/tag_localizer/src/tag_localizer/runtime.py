"""运行循环与组件装配。

节拍：
- 每个 tick 之后固定 sleep tick_period_s；tick 未就绪时再额外 sleep not_ready_backoff_s。
- EstimationError 不在循环内处理，直接结束循环（进程重启由外部守护负责）。
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from fiducial_pose import TagLayoutHolder, load_tag_layout

from .config import LocalizerConfig
from .estimator import EstimationError, Localizer
from .jsonl_writer import open_optional_jsonl_writer
from .logging_utils import default_logger
from .publisher import DataPublisher
from .scheduler import UpdateScheduler
from .sim import SimulatorThread, TagSimulator
from .sources import CameraSource, ConfigSource, OdometrySource
from .transport import TelemetryTable, jsonl_sink
from .types import TickReport


@dataclass(slots=True)
class LocalizerRuntime:
    """一次运行所需的全部组件（装配结果）。"""

    config: LocalizerConfig
    transport: TelemetryTable
    layout: TagLayoutHolder
    estimator: Localizer
    odometry: OdometrySource
    cameras: list[CameraSource]
    config_source: ConfigSource
    publisher: DataPublisher
    scheduler: UpdateScheduler
    simulator: TagSimulator | None = None

    def close(self) -> None:
        self.odometry.close()
        for cam in self.cameras:
            cam.close()
        self.config_source.close()
        self.transport.close()


def build_runtime(
    cfg: LocalizerConfig,
    *,
    transport: TelemetryTable | None = None,
    logger: logging.Logger | None = None,
) -> LocalizerRuntime:
    """按配置装配组件（不启动任何线程）。

    Raises:
        RuntimeError: 初始 tag 布局文件不可读。
    """

    log = logger or default_logger()
    table = transport or TelemetryTable(root=cfg.root_table, logger=log.getChild("transport"))

    initial_layout = None
    if cfg.tag_layout_path is not None:
        initial_layout = load_tag_layout(cfg.tag_layout_path)
        log.info("loaded tag layout from %s (%d tags)", cfg.tag_layout_path, len(initial_layout))

    # 布局槽位只由调度器 install；估计器按引用读取。
    layout = TagLayoutHolder()
    estimator = Localizer(
        layout=layout,
        odometry=cfg.odometry,
        config=cfg.estimator,
        logger=log.getChild("estimator"),
    )
    odometry = OdometrySource(table, logger=log.getChild("odometry"))
    cameras = [CameraSource(table, c, logger=log.getChild(f"camera.{c.name}")) for c in cfg.cameras]
    config_source = ConfigSource(table, initial_layout=initial_layout, logger=log.getChild("config_source"))
    publisher = DataPublisher(table, estimator, logger=log.getChild("publisher"))

    scheduler = UpdateScheduler(
        estimator=estimator,
        odometry=odometry,
        cameras=cameras,
        config_source=config_source,
        publisher=publisher,
        transport=table,
        layout=layout,
        logger=log.getChild("scheduler"),
    )

    simulator = None
    if cfg.transport_mode == "simulator":
        simulator = TagSimulator(table, cameras=cfg.cameras, config=cfg.simulator, logger=log.getChild("sim"))

    return LocalizerRuntime(
        config=cfg,
        transport=table,
        layout=layout,
        estimator=estimator,
        odometry=odometry,
        cameras=cameras,
        config_source=config_source,
        publisher=publisher,
        scheduler=scheduler,
        simulator=simulator,
    )


def run_loop(
    scheduler: UpdateScheduler,
    *,
    tick_period_s: float,
    not_ready_backoff_s: float,
    max_ticks: int | None = None,
    stop_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
    on_tick: Callable[[TickReport], None] | None = None,
) -> int:
    """反复调用 `scheduler.tick()`，返回执行的 tick 数。

    说明：
    - max_ticks=None 表示一直运行，直到 stop_event 被置位。
    - sleep 可注入，测试里用它记录退避而不真正等待。
    - tick 抛出的异常（EstimationError 等）原样向上传播。
    """

    ticks = 0
    while max_ticks is None or ticks < int(max_ticks):
        if stop_event is not None and stop_event.is_set():
            break

        report = scheduler.tick()
        ticks += 1
        if on_tick is not None:
            on_tick(report)

        delay = float(tick_period_s)
        if not report.ready:
            delay += float(not_ready_backoff_s)
        if delay > 0:
            sleep(delay)

    return ticks


def run_localizer(
    cfg: LocalizerConfig,
    *,
    max_ticks: int | None = None,
    stop_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
    logger: logging.Logger | None = None,
) -> int:
    """运行定位进程，返回进程退出码。

    退出码：
        0   正常结束（达到 max_ticks 或 stop_event）
        2   运行期资源错误（布局文件等）
        3   估计器失败（EstimationError）
        130 Ctrl+C
    """

    log = logger or default_logger()
    ticks = 0

    try:
        rt = build_runtime(cfg, logger=log)
    except RuntimeError as exc:
        log.error("%s", exc)
        return 2

    sim_thread: SimulatorThread | None = None

    def _check_sim(report: TickReport) -> None:
        if sim_thread is not None and sim_thread.error is not None:
            raise RuntimeError("simulator thread failed") from sim_thread.error

    try:
        with open_optional_jsonl_writer(cfg.output) as writer:
            if writer is not None:
                rt.transport.add_sink(jsonl_sink(writer, root=rt.transport.root))

            if rt.simulator is not None:
                sim_thread = SimulatorThread(rt.simulator, period_s=cfg.simulator.step_period_us * 1e-6)
                sim_thread.start()

            try:
                ticks = run_loop(
                    rt.scheduler,
                    tick_period_s=cfg.tick_period_s,
                    not_ready_backoff_s=cfg.not_ready_backoff_s,
                    max_ticks=max_ticks,
                    stop_event=stop_event,
                    sleep=sleep,
                    on_tick=_check_sim,
                )
            finally:
                if sim_thread is not None:
                    sim_thread.close()
    except EstimationError as exc:
        log.critical("estimator failure, exiting: %s", exc)
        return 3
    except RuntimeError as exc:
        log.error("%s", exc)
        return 2
    except KeyboardInterrupt:
        log.info("Interrupted.")
        return 130
    finally:
        rt.close()

    log.info("Done. ticks=%d published=%d", ticks, rt.publisher.published_count)
    return 0
