from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from queue import Full, Queue
from threading import Lock
from typing import Any, ClassVar

AUDIT_LOGGER_NAME = "gemini_gateway.audit"


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """Base for audit records. Only metadata fields exist, never request text."""

    name: ClassVar[str] = "audit"

    def to_record(self) -> dict[str, Any]:
        fields = {key: value for key, value in asdict(self).items() if value is not None}
        return {"event": self.name, **fields}


@dataclass(frozen=True, slots=True)
class GatewayRequestEvent(AuditEvent):
    name: ClassVar[str] = "gateway_request"

    request_id: str
    path: str
    status: int
    latency_ms: float
    model_used: str | None = None
    fallback_applied: bool | None = None
    error_type: str | None = None


@dataclass(frozen=True, slots=True)
class ModelFallbackEvent(AuditEvent):
    name: ClassVar[str] = "model_fallback"

    requested_model: str
    fallback_model: str
    status: int


class _BoundedQueueHandler(QueueHandler):
    def __init__(self, queue: Queue[Any], on_drop: Any) -> None:
        super().__init__(queue)
        self._on_drop = on_drop

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except Full:
            self._on_drop()


class _DrainingQueueListener(QueueListener):
    def enqueue_sentinel(self) -> None:
        # blocks until the writer frees a slot when the queue is full
        self.queue.put(self._sentinel)


class GatewayAuditLog:
    """JSON-lines audit trail written by a ``QueueListener`` thread.

    ``record`` never blocks the request path: once ``max_queue_size``
    records are pending, new ones are dropped and counted, and the count is
    appended as an ``audit_log_dropped_records`` line on close.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._dropped = 0
        self._file_handler: logging.FileHandler | None = None
        self._listener: QueueListener | None = None
        self._queue_handler: QueueHandler | None = None
        if not enabled:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file_handler = logging.FileHandler(self.path, encoding="utf-8", delay=True)
        self._file_handler.setFormatter(logging.Formatter("%(message)s"))
        queue: Queue[Any] = Queue(maxsize=max_queue_size)
        self._queue_handler = _BoundedQueueHandler(queue, self._count_drop)
        self._listener = _DrainingQueueListener(queue, self._file_handler)
        self._listener.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped

    def record(self, event: AuditEvent) -> None:
        if self._queue_handler is None:
            return
        self._queue_handler.handle(self._make_record(event.to_record()))

    def close(self) -> None:
        listener, handler = self._listener, self._file_handler
        if listener is None or handler is None:
            return
        self._listener = None
        self._queue_handler = None
        listener.stop()
        with self._lock:
            dropped, self._dropped = self._dropped, 0
        if dropped:
            handler.handle(
                self._make_record(
                    {"event": "audit_log_dropped_records", "dropped_count": dropped}
                )
            )
        handler.close()

    def _count_drop(self) -> None:
        with self._lock:
            self._dropped += 1

    @staticmethod
    def _make_record(fields: dict[str, Any]) -> logging.LogRecord:
        line = json.dumps(
            {"ts": int(time.time()), **fields},
            ensure_ascii=True,
            separators=(",", ":"),
        )
        return logging.makeLogRecord(
            {"name": AUDIT_LOGGER_NAME, "levelno": logging.INFO, "levelname": "INFO", "msg": line}
        )
