"""Audit events for block transitions.

Events go to the ``ipguard.audit`` logger by default. When ``AUDIT_LOG_PATH``
is configured they are also appended to that file as newline-delimited JSON.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import threading
from typing import Optional, Protocol

IP_BLOCKED = "IP_BLOCKED"
IP_UNBLOCKED = "IP_UNBLOCKED"

logger = logging.getLogger("ipguard.audit")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    client_key: str
    failure_count: int
    block_duration_ms: Optional[int]
    reason: str
    timestamp: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> dict:
        return asdict(self)


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    def emit(self, event: AuditEvent) -> None:
        logger.warning(
            "Audit event",
            extra={
                "event": event.event_type,
                "client_key": event.client_key,
                "failure_count": event.failure_count,
                "block_seconds": (
                    event.block_duration_ms / 1000 if event.block_duration_ms is not None else None
                ),
                "reason": event.reason,
            },
        )


class JsonlAuditSink:
    """Append-only JSON-lines sink; a lock keeps concurrent lines intact."""

    def __init__(self, path: str | Path, also_log: bool = True) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._log_sink = LoggingAuditSink() if also_log else None

    def emit(self, event: AuditEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(event.to_dict(), ensure_ascii=False)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        if self._log_sink is not None:
            self._log_sink.emit(event)


def build_audit_sink(path: Optional[str]) -> AuditSink:
    if path:
        return JsonlAuditSink(path)
    return LoggingAuditSink()
