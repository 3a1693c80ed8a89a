"""单测：遥测表 flush / sink、JSONL 落盘与结果发布。"""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from tag_localizer.config import OutputConfig
from tag_localizer.jsonl_writer import open_optional_jsonl_writer
from tag_localizer.publisher import DataPublisher, estimate_to_record
from tag_localizer.transport import TelemetryTable, jsonl_sink, output_topic
from tag_localizer.types import LocalizerEstimate


def _estimate(ts: int = 1000) -> LocalizerEstimate:
    T = np.eye(4)
    T[:3, 3] = [1.0, 2.0, 0.0]
    return LocalizerEstimate(
        timestamp_us=ts,
        T_world_from_robot=T,
        covariance=np.diag([1e-4, 1e-4, 2e-4, 1e-3, 1e-3, 1e-3]),
        node_count=3,
        factor_count=5,
        iterations=2,
        final_cost=0.5,
    )


class _Reader:
    def __init__(self, est: LocalizerEstimate | None) -> None:
        self.est = est

    def estimate(self) -> LocalizerEstimate | None:
        return self.est


def test_subscribe_get_and_unsubscribe() -> None:
    t = TelemetryTable(root="/loc/")
    seen: list[tuple[str, object]] = []
    unsub = t.subscribe("loc/x", lambda topic, v: seen.append((topic, v)))

    t.publish("loc/x", 1)
    unsub()
    t.publish("loc/x", 2)

    assert t.root == "loc"
    assert seen == [("loc/x", 1)]
    assert t.get("loc/x") == 2
    assert t.get("loc/missing", "d") == "d"


def test_flush_delivers_only_matching_prefix_once() -> None:
    t = TelemetryTable(root="loc")
    batches: list[list[tuple[str, object]]] = []
    t.add_sink(batches.append)

    t.publish("loc/odom", {"timestamp_us": 1})
    t.publish(output_topic("loc", "yaw_rad"), 0.5)

    assert t.flush() == 1
    assert batches == [[("loc/output/yaw_rad", 0.5)]]
    assert t.flush() == 0


def test_publish_after_close_raises() -> None:
    t = TelemetryTable(root="loc")
    t.close()
    assert t.closed is True
    with pytest.raises(RuntimeError):
        t.publish("loc/x", 1)


def test_publisher_writes_output_topics() -> None:
    t = TelemetryTable(root="loc")
    reader = _Reader(None)
    pub = DataPublisher(t, reader)

    assert pub.update() is False
    assert pub.published_count == 0

    reader.est = _estimate()
    assert pub.update() is True

    pose = t.get(output_topic("loc", "pose"))
    assert pose["translation"] == [1.0, 2.0, 0.0]
    assert pose["quaternion"] == [1.0, 0.0, 0.0, 0.0]
    assert t.get(output_topic("loc", "timestamp_us")) == 1000
    assert t.get(output_topic("loc", "yaw_rad")) == 0.0
    assert len(t.get(output_topic("loc", "covariance_diag"))) == 6
    assert t.get(output_topic("loc", "solver"))["factor_count"] == 5
    assert pub.published_count == 1


def test_estimate_record_is_json_serializable() -> None:
    rec = estimate_to_record(_estimate())
    assert json.loads(json.dumps(rec)) == rec


def test_jsonl_sink_records_one_line_per_flush(tmp_path: Path) -> None:
    out = OutputConfig(jsonl_path=tmp_path / "sub" / "out.jsonl", flush_every_records=0)
    t = TelemetryTable(root="loc")

    with open_optional_jsonl_writer(out) as writer:
        assert writer is not None
        t.add_sink(jsonl_sink(writer, root="loc"))
        pub = DataPublisher(t, _Reader(_estimate(1000)))
        pub.update()
        t.flush()
        pub.update()
        t.flush()
        assert writer.records_total == 2

    lines = (tmp_path / "sub" / "out.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    rec = json.loads(lines[0])
    assert set(rec) == {"created_at", "values"}
    assert rec["values"]["output/timestamp_us"] == 1000
    assert "output/pose" in rec["values"]


def test_optional_writer_is_none_without_path() -> None:
    with open_optional_jsonl_writer(OutputConfig()) as writer:
        assert writer is None
