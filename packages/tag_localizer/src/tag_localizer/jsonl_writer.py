"""发布结果的 JSONL 落盘工具。"""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from typing import Any, Iterator

from .config import OutputConfig


class _JsonlBufferedWriter:
    """JSONL 写入器：支持按条数/按时间间隔 flush。"""

    def __init__(
        self,
        *,
        f,
        flush_every_records: int,
        flush_interval_s: float,
    ) -> None:
        self._f = f
        self._flush_every_records = int(flush_every_records)
        self._flush_interval_s = float(flush_interval_s)
        self._records_since_flush = 0
        self._records_total = 0
        self._last_flush_t = time.monotonic()

    @property
    def records_total(self) -> int:
        return int(self._records_total)

    def write_record(self, record: dict[str, Any]) -> None:
        self.write_line(json.dumps(record, ensure_ascii=False, sort_keys=True))

    def write_line(self, line: str) -> None:
        self._f.write(line)
        self._f.write("\n")
        self._records_since_flush += 1
        self._records_total += 1

        need_flush_by_count = (
            self._flush_every_records > 0
            and self._records_since_flush >= self._flush_every_records
        )
        need_flush_by_time = False
        if self._flush_interval_s > 0:
            now = time.monotonic()
            need_flush_by_time = (now - self._last_flush_t) >= self._flush_interval_s

        if need_flush_by_count or need_flush_by_time:
            self.flush()

    def flush(self) -> None:
        self._f.flush()
        self._records_since_flush = 0
        self._last_flush_t = time.monotonic()


@contextmanager
def open_optional_jsonl_writer(output: OutputConfig) -> Iterator[_JsonlBufferedWriter | None]:
    """按输出配置打开 JSONL writer；未配置 jsonl_path 时返回 None。"""

    f_out = None
    writer: _JsonlBufferedWriter | None = None

    if output.jsonl_path is not None:
        output.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
        f_out = output.jsonl_path.open("w", encoding="utf-8")
        writer = _JsonlBufferedWriter(
            f=f_out,
            flush_every_records=int(output.flush_every_records),
            flush_interval_s=float(output.flush_interval_s),
        )

    try:
        yield writer
    finally:
        if f_out is not None:
            try:
                if writer is not None:
                    writer.flush()
            finally:
                f_out.close()
