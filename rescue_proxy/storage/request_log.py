"""Request log: in-flight records in a ring, finished records in a JSONL file."""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from collections import deque
from pathlib import Path

from ..types import RequestLogConfig, RequestRecord, RequestStatus

logger = logging.getLogger(__name__)


class RequestLog:
    """Tracks every proxied request from arrival to its final outcome.

    Open records live only in a bounded ring (most recent first). Closing a
    record evicts it from the ring and appends it to the log file; once the
    file grows past ``max_bytes`` the oldest ``trim_ratio`` of its lines are
    dropped by rewriting the rest in order.
    """

    def __init__(self, config: RequestLogConfig | None = None) -> None:
        self.config = config or RequestLogConfig()
        self.path = Path(self.config.path)
        self._ring: deque[RequestRecord] = deque(maxlen=self.config.ring_size)
        self._lock = threading.Lock()

    def open(self, record: RequestRecord) -> RequestRecord:
        with self._lock:
            self._ring.appendleft(record)
        return record

    def pending(self) -> list[RequestRecord]:
        with self._lock:
            return list(self._ring)

    def close(
        self,
        request_id: str,
        status: RequestStatus,
        *,
        error: str | None = None,
        outcome: str | None = None,
    ) -> RequestRecord | None:
        """Finalize a record and move it to the file. No-op if already closed."""
        with self._lock:
            record = next((r for r in self._ring if r.id == request_id), None)
            if record is None:
                return None
            self._ring.remove(record)
            record.status = status
            record.error = error
            record.outcome = outcome
            record.response_time_ms = round(
                (time.monotonic() - record.started_monotonic) * 1000, 1,
            )
            self._append(record)
        return record

    def _append(self, record: RequestRecord) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
            if self.path.stat().st_size > self.config.max_bytes:
                self._rotate()
        except OSError as e:
            logger.error("Writing request log %s failed: %s", self.path, e)

    def _rotate(self) -> None:
        lines = self.path.read_text(encoding="utf-8").splitlines(keepends=True)
        drop = max(1, math.ceil(len(lines) * self.config.trim_ratio))
        self.path.write_text("".join(lines[drop:]), encoding="utf-8")
        logger.info("Rotated request log: dropped %d of %d lines", drop, len(lines))

    def read(self, limit: int | None = None) -> list[dict]:
        """Finished records from the file, newest first."""
        with self._lock:
            if not self.path.is_file():
                return []
            lines = self.path.read_text(encoding="utf-8").splitlines()
        records: list[dict] = []
        for line in reversed(lines):
            if limit is not None and len(records) >= limit:
                break
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return records

    def clear(self) -> None:
        with self._lock:
            if self.path.is_file():
                self.path.write_text("", encoding="utf-8")
