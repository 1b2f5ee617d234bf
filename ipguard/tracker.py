from __future__ import annotations

from dataclasses import replace
import logging
import time
from typing import Callable, Optional

from .audit import IP_BLOCKED, IP_UNBLOCKED, AuditEvent, AuditSink, LoggingAuditSink
from .engine import BlockPolicy, Decision, advance_window, evaluate, is_stale
from .metrics import (
    BLOCKS_TOTAL,
    FAILURES_RECORDED_TOTAL,
    REAPED_RECORDS_TOTAL,
    TRACKED_CLIENTS,
    TRACKING_ERRORS_TOTAL,
)
from .store import InMemoryTrackerStore, TrackerRecord, TrackerStore

logger = logging.getLogger("ipguard.tracker")

Clock = Callable[[], float]


class AbuseTracker:
    """Failure tracking and block decisions over an injectable store.

    Request-path operations fail open: an error inside the store is logged
    and the client is treated as not blocked.
    """

    def __init__(
        self,
        store: Optional[TrackerStore] = None,
        policy: Optional[BlockPolicy] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Clock = time.time,
    ) -> None:
        self.store = store if store is not None else InMemoryTrackerStore()
        self.policy = policy or BlockPolicy()
        self.audit_sink = audit_sink or LoggingAuditSink()
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    # ---------- Request path ----------
    def record_failure(self, key: str, reason: str = "unspecified") -> Optional[Decision]:
        now = self._clock()
        decisions: list[Decision] = []

        def apply(current: Optional[TrackerRecord]) -> TrackerRecord:
            decision = evaluate(advance_window(current, self.policy, now, reason), self.policy, now)
            decisions.append(decision)
            return decision.record

        try:
            self.store.update(key, apply)
        except Exception:
            TRACKING_ERRORS_TOTAL.labels(operation="record_failure").inc()
            logger.exception(
                "Failed to record failure",
                extra={"event": "tracking_error", "client_key": key, "reason": reason},
            )
            return None

        decision = decisions[-1]
        FAILURES_RECORDED_TOTAL.inc()
        if decision.transitioned:
            self._on_blocked(key, decision, reason)
        else:
            logger.debug(
                "Failed attempt recorded",
                extra={
                    "event": "failure_recorded",
                    "client_key": key,
                    "failure_count": decision.record.failure_count,
                    "reason": reason,
                },
            )
        return decision

    def is_blocked(self, key: str) -> bool:
        now = self._clock()
        try:
            record = self.store.get(key)
            if record is None or record.blocked_until is None:
                return False
            if record.blocked_until > now:
                return True
            self.store.update(key, lambda current: _clear_expired_block(current, now))
        except Exception:
            TRACKING_ERRORS_TOTAL.labels(operation="is_blocked").inc()
            logger.exception(
                "Failed to check block state",
                extra={"event": "tracking_error", "client_key": key},
            )
            return False

        logger.info("Client block expired", extra={"event": "block_expired", "client_key": key})
        return False

    def blocked_until(self, key: str) -> Optional[float]:
        try:
            record = self.store.get(key)
        except Exception:
            TRACKING_ERRORS_TOTAL.labels(operation="blocked_until").inc()
            logger.exception("Failed to read block expiry", extra={"event": "tracking_error", "client_key": key})
            return None
        if record is None or not record.is_blocked_at(self._clock()):
            return None
        return record.blocked_until

    def reset(self, key: str) -> None:
        try:
            removed = self.store.delete(key)
        except Exception:
            TRACKING_ERRORS_TOTAL.labels(operation="reset").inc()
            logger.exception("Failed to reset client", extra={"event": "tracking_error", "client_key": key})
            return
        if removed:
            logger.debug("Failed attempts reset", extra={"event": "failures_reset", "client_key": key})

    # ---------- Admin ----------
    def block(self, key: str, seconds: Optional[float] = None, reason: str = "manual") -> float:
        """Block ``key`` for ``seconds`` (default: the initial block), never
        shortening a block that is already in force."""
        now = self._clock()
        duration = seconds if seconds is not None else self.policy.initial_block
        if duration <= 0:
            raise ValueError("block duration must be positive")

        def apply(current: Optional[TrackerRecord]) -> TrackerRecord:
            until = now + duration
            if current is None:
                return TrackerRecord(failure_count=0, window_start=now, blocked_until=until, last_reason=reason)
            if current.is_blocked_at(now):
                until = max(until, current.blocked_until)
            return replace(current, blocked_until=until, last_reason=reason)

        record = self.store.update(key, apply)
        effective = record.blocked_until - now
        BLOCKS_TOTAL.labels(source="manual").inc()
        logger.warning(
            "Client blocked manually",
            extra={"event": "manual_block", "client_key": key, "block_seconds": effective, "reason": reason},
        )
        self._emit(
            AuditEvent(
                event_type=IP_BLOCKED,
                client_key=key,
                failure_count=record.failure_count,
                block_duration_ms=int(effective * 1000),
                reason=reason,
            )
        )
        return record.blocked_until

    def unblock(self, key: str, reason: str = "manual") -> bool:
        removed = self.store.delete(key)
        logger.info(
            "Client unblocked",
            extra={"event": "manual_unblock", "client_key": key, "removed": removed, "reason": reason},
        )
        if removed:
            self._emit(
                AuditEvent(
                    event_type=IP_UNBLOCKED,
                    client_key=key,
                    failure_count=0,
                    block_duration_ms=None,
                    reason=reason,
                )
            )
        return removed

    def get_stats(self) -> dict:
        now = self._clock()
        per_client = []
        blocked_count = 0
        for key, record in self.store.scan():
            blocked = record.is_blocked_at(now)
            if blocked:
                blocked_count += 1
            per_client.append({"key": key, "failure_count": record.failure_count, "blocked": blocked})
        return {
            "total_tracked": len(per_client),
            "blocked_count": blocked_count,
            "per_client": per_client,
        }

    # ---------- Housekeeping ----------
    def reap(self, now: Optional[float] = None) -> int:
        """Evict stale records; returns how many were removed."""
        now = self._clock() if now is None else now
        removed = 0
        for key, record in self.store.scan():
            if not is_stale(record, self.policy, now):
                continue
            # Re-checked under the key's lock: a failure may have landed since the scan.
            if self.store.delete_if(key, lambda current: is_stale(current, self.policy, now)):
                removed += 1

        tracked = len(self.store)
        TRACKED_CLIENTS.set(tracked)
        if removed:
            REAPED_RECORDS_TOTAL.inc(removed)
            logger.info(
                "Reaped stale tracker records",
                extra={"event": "reaper_pass", "removed": removed, "tracked": tracked},
            )
        return removed

    def _on_blocked(self, key: str, decision: Decision, reason: str) -> None:
        BLOCKS_TOTAL.labels(source="automatic").inc()
        logger.warning(
            "Client blocked due to repeated failures",
            extra={
                "event": "client_blocked",
                "client_key": key,
                "failure_count": decision.record.failure_count,
                "block_seconds": decision.block_seconds,
                "reason": reason,
            },
        )
        self._emit(
            AuditEvent(
                event_type=IP_BLOCKED,
                client_key=key,
                failure_count=decision.record.failure_count,
                block_duration_ms=int(decision.block_seconds * 1000),
                reason=reason,
            )
        )

    def _emit(self, event: AuditEvent) -> None:
        try:
            self.audit_sink.emit(event)
        except Exception:
            TRACKING_ERRORS_TOTAL.labels(operation="audit").inc()
            logger.exception(
                "Failed to emit audit event",
                extra={"event": "audit_error", "client_key": event.client_key, "reason": event.reason},
            )


def _clear_expired_block(current: Optional[TrackerRecord], now: float) -> Optional[TrackerRecord]:
    if current is None or current.blocked_until is None or current.blocked_until > now:
        return current
    return replace(current, blocked_until=None)
