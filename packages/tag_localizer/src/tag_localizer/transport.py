"""进程内遥测表（pub/sub + 最新值 KV）。

说明：
- 生产者（协处理器、底盘、配置面板、仿真器）在自己的线程里调用 `publish()`；
  订阅回调在发布线程上同步执行，因此订阅方自己负责加锁缓冲。
- `flush()` 由调度器在每次发布之后调用：把上次 flush 以来、匹配 sink 前缀的发布
  一次性交给 sink（例如 JSONL 记录器）。
- 值就是普通 Python 对象（dict/list/float），不定义线上编码。
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from .jsonl_writer import _JsonlBufferedWriter
from .logging_utils import default_logger

Subscriber = Callable[[str, Any], None]
Sink = Callable[[list[tuple[str, Any]]], None]


def odom_topic(root: str) -> str:
    return f"{root}/odom"


def camera_tags_topic(root: str, camera: str) -> str:
    return f"{root}/cam/{camera}/tags"


def camera_info_topic(root: str, camera: str) -> str:
    return f"{root}/cam/{camera}/camera_info"


def pose_prior_topic(root: str) -> str:
    return f"{root}/config/pose_prior"


def tag_layout_topic(root: str) -> str:
    return f"{root}/config/tag_layout"


def output_topic(root: str, name: str) -> str:
    return f"{root}/output/{name}"


@dataclass(frozen=True, slots=True)
class _SinkEntry:
    prefix: str
    sink: Sink


class TelemetryTable:
    """线程安全的进程内遥测表。"""

    def __init__(self, *, root: str, logger: logging.Logger | None = None) -> None:
        root = str(root).strip().strip("/")
        if not root:
            raise ValueError("root table name must not be empty")
        self._root = root
        self._logger = logger or default_logger("transport")

        self._lock = threading.Lock()
        self._values: dict[str, Any] = {}
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._sinks: list[_SinkEntry] = []
        self._pending: list[tuple[str, Any]] = []
        self._closed = False

    @property
    def root(self) -> str:
        return self._root

    @property
    def closed(self) -> bool:
        return bool(self._closed)

    def publish(self, topic: str, value: Any) -> None:
        """写入最新值并同步通知订阅者。"""

        with self._lock:
            if self._closed:
                raise RuntimeError(f"transport closed, cannot publish to {topic}")
            self._values[topic] = value
            subs = list(self._subscribers.get(topic, ()))
            if any(topic.startswith(s.prefix) for s in self._sinks):
                self._pending.append((topic, value))

        for cb in subs:
            cb(topic, value)

    def subscribe(self, topic: str, callback: Subscriber) -> Callable[[], None]:
        """订阅一个主题；返回取消订阅函数。"""

        with self._lock:
            self._subscribers.setdefault(topic, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                subs = self._subscribers.get(topic)
                if subs and callback in subs:
                    subs.remove(callback)

        return _unsubscribe

    def get(self, topic: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(topic, default)

    def add_sink(self, sink: Sink, *, prefix: str | None = None) -> None:
        """挂载 flush 接收方；prefix 为 None 表示只收 `<root>/output/` 下的主题。"""

        p = output_topic(self._root, "") if prefix is None else str(prefix)
        with self._lock:
            self._sinks.append(_SinkEntry(prefix=p, sink=sink))

    def flush(self) -> int:
        """把自上次 flush 以来的发布交给 sink，返回交付条数。"""

        with self._lock:
            pending = self._pending
            self._pending = []
            sinks = list(self._sinks)

        if not pending:
            return 0

        for entry in sinks:
            batch = [(t, v) for (t, v) in pending if t.startswith(entry.prefix)]
            if batch:
                entry.sink(batch)
        return len(pending)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._subscribers.clear()
        self._logger.debug("transport %s closed", self._root)


def jsonl_sink(writer: _JsonlBufferedWriter, *, root: str) -> Sink:
    """把一次 flush 的批量发布写成一条 JSONL 记录。

    记录格式：{"created_at": wall_time_s, "values": {相对主题: 值}}。
    """

    prefix = f"{root}/"

    def _sink(batch: list[tuple[str, Any]]) -> None:
        values: dict[str, Any] = {}
        for topic, value in batch:
            key = topic[len(prefix):] if topic.startswith(prefix) else topic
            values[key] = value
        writer.write_record({"created_at": float(time.time()), "values": values})

    return _sink
