"""单测：CLI 入口、运行循环节拍与退出码。"""

from __future__ import annotations

import dataclasses
import json
import threading
from pathlib import Path

import pytest

import tag_localizer.entry as entry
from tag_localizer import EstimationError, UpdateScheduler, load_localizer_config, run_localizer, run_loop
from tag_localizer.cli import build_arg_parser
from tag_localizer.config import OutputConfig, localizer_config_from_dict
from tag_localizer.types import TickReport


def _report(ready: bool) -> TickReport:
    return TickReport(
        ready=ready,
        has_initial_guess=ready,
        cameras_ready=True,
        watermark_us=0,
        odometry_count=0,
        admitted_count=0,
        backlogged_count=0,
        replayed_count=0,
        backlog_size=0,
        published=ready,
    )


class _ScriptedScheduler:
    def __init__(self, readiness: list[bool]) -> None:
        self.readiness = list(readiness)

    def tick(self) -> TickReport:
        return _report(self.readiness.pop(0))


def _local_cfg(tmp_path: Path, **overrides):  # noqa: ANN003, ANN202
    data = {"transport": {"mode": "local"}, "tick_period_s": 0.0, "not_ready_backoff_s": 0.0}
    data.update(overrides)
    return localizer_config_from_dict(data, base_dir=tmp_path)


def test_parser_defaults_to_simulator_config() -> None:
    args = build_arg_parser().parse_args([])
    assert args.config == str(Path("configs") / "simulator.yaml")


def test_more_than_one_positional_is_usage_error() -> None:
    with pytest.raises(SystemExit) as ei:
        entry.main(["a.yaml", "b.yaml"])
    assert ei.value.code != 0


def test_missing_config_returns_2(tmp_path: Path) -> None:
    assert entry.main([str(tmp_path / "missing.yaml")]) == 2


def test_invalid_range_returns_2(tmp_path: Path) -> None:
    p = tmp_path / "cfg.json"
    p.write_text(json.dumps({"not_ready_backoff_s": -1}), encoding="utf-8")
    assert entry.main([str(p)]) == 2


def test_main_hands_loaded_config_to_runtime(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    p = tmp_path / "cfg.json"
    p.write_text(json.dumps({"root_table": "bot", "transport": {"mode": "local"}}), encoding="utf-8")
    seen = []

    def _fake_run(cfg):  # noqa: ANN001, ANN202
        seen.append(cfg)
        return 0

    monkeypatch.setattr(entry, "run_localizer", _fake_run)

    assert entry.main([str(p)]) == 0
    assert seen and seen[0].root_table == "bot"


def test_run_loop_backs_off_only_when_not_ready() -> None:
    sleeps: list[float] = []
    reports: list[TickReport] = []
    sched = _ScriptedScheduler([False, True, True, False])

    n = run_loop(
        sched,  # type: ignore[arg-type]
        tick_period_s=0.01,
        not_ready_backoff_s=1.0,
        max_ticks=4,
        sleep=sleeps.append,
        on_tick=reports.append,
    )

    assert n == 4
    assert sleeps == pytest.approx([1.01, 0.01, 0.01, 1.01])
    assert [r.ready for r in reports] == [False, True, True, False]


def test_run_loop_stops_on_event() -> None:
    stop = threading.Event()
    sched = _ScriptedScheduler([True] * 10)

    def _on_tick(report: TickReport) -> None:
        if len(sched.readiness) == 7:
            stop.set()

    n = run_loop(
        sched,  # type: ignore[arg-type]
        tick_period_s=0.0,
        not_ready_backoff_s=0.0,
        stop_event=stop,
        on_tick=_on_tick,
    )
    assert n == 3


def test_run_localizer_estimation_error_exits_3(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(self):  # noqa: ANN001, ANN202
        raise EstimationError("indeterminant linear system")

    monkeypatch.setattr(UpdateScheduler, "tick", _boom)

    assert run_localizer(_local_cfg(tmp_path), max_ticks=5, sleep=lambda s: None) == 3


def test_run_localizer_missing_layout_exits_2(tmp_path: Path) -> None:
    cfg = _local_cfg(tmp_path, tag_layout_path="missing_layout.json")
    assert run_localizer(cfg, max_ticks=1, sleep=lambda s: None) == 2


def test_run_localizer_keyboard_interrupt_exits_130(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _interrupt(self):  # noqa: ANN001, ANN202
        raise KeyboardInterrupt

    monkeypatch.setattr(UpdateScheduler, "tick", _interrupt)

    assert run_localizer(_local_cfg(tmp_path), max_ticks=1, sleep=lambda s: None) == 130


def test_run_localizer_simulator_mode_runs_and_opens_jsonl(tmp_path: Path) -> None:
    repo_root = Path(__file__).resolve().parents[1]
    cfg = load_localizer_config(repo_root / "configs" / "simulator.yaml")
    out = tmp_path / "out.jsonl"
    cfg = dataclasses.replace(cfg, output=OutputConfig(jsonl_path=out), not_ready_backoff_s=0.0)

    assert run_localizer(cfg, max_ticks=20, sleep=lambda s: None) == 0
    assert out.exists()
