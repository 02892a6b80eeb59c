from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

_SENSITIVE_FIELDS = frozenset({"access_token", "refresh_token", "api_key"})


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)


class JsonlAuditLogger:
    """Appends gateway events to a JSONL file from a background writer thread.

    Records are queued without blocking the event loop; when the queue is full
    they are dropped and the drop count is written when the writer stops.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain_queue, name="gateway-audit-writer", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def log(self, event: dict[str, Any]) -> None:
        if not self.enabled or self._queue is None:
            return
        record = {"ts": round(time.time(), 3)}
        record.update(
            {key: value for key, value in event.items() if key not in _SENSITIVE_FIELDS}
        )
        try:
            self._queue.put_nowait(_encode(record))
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self) -> None:
        if self._queue is None or self._worker is None:
            return
        self._queue.put(None)
        self._worker.join(timeout=2.0)
        self._queue = None
        self._worker = None

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                if item is None:
                    break
                handle.write(item + "\n")
                handle.flush()
            with self._lock:
                dropped, self._dropped_records = self._dropped_records, 0
            if dropped:
                handle.write(
                    _encode(
                        {
                            "ts": round(time.time(), 3),
                            "event": "audit_logger_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()
