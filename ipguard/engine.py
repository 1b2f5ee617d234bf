from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from .store import TrackerRecord

# 2**64 blocks of any positive length already exceed every sane cap.
_MAX_EXPONENT = 64


class ConfigurationError(ValueError):
    """Invalid abuse-detection configuration, raised at startup."""


@dataclass(frozen=True)
class BlockPolicy:
    """Thresholds and durations (seconds) for the block decision."""

    max_failed_attempts: int = 10
    failure_window: float = 15 * 60
    initial_block: float = 15 * 60
    max_block: float = 24 * 60 * 60
    reaper_interval: float = 60 * 60

    def __post_init__(self) -> None:
        if self.max_failed_attempts < 1:
            raise ConfigurationError("max_failed_attempts must be at least 1")
        if self.failure_window <= 0:
            raise ConfigurationError("failure_window must be positive")
        if self.initial_block <= 0:
            raise ConfigurationError("initial_block must be positive")
        if self.max_block < self.initial_block:
            raise ConfigurationError("max_block must not be shorter than initial_block")
        if self.reaper_interval <= 0:
            raise ConfigurationError("reaper_interval must be positive")


@dataclass(frozen=True)
class Decision:
    blocked: bool
    blocked_until: Optional[float]
    record: TrackerRecord
    transitioned: bool = False
    block_seconds: Optional[float] = None


def block_duration(policy: BlockPolicy, offense_count: int, excess: int = 0) -> float:
    """Exponential backoff: every prior offense and every failure past the
    threshold doubles the sentence, up to ``policy.max_block``."""
    exponent = max(0, offense_count - 1) + max(0, excess)
    if exponent >= _MAX_EXPONENT:
        return policy.max_block
    return min(policy.initial_block * (2**exponent), policy.max_block)


def advance_window(
    current: Optional[TrackerRecord],
    policy: BlockPolicy,
    now: float,
    reason: Optional[str] = None,
) -> TrackerRecord:
    """Count one failure, restarting the window once it has run out."""
    if current is None:
        return TrackerRecord(failure_count=1, window_start=now, last_reason=reason)

    if now - current.window_start > policy.failure_window:
        # A block that is still being served survives the window restart.
        blocked_until = current.blocked_until if current.is_blocked_at(now) else None
        return replace(
            current,
            failure_count=1,
            window_start=now,
            blocked_until=blocked_until,
            last_reason=reason,
        )

    return replace(current, failure_count=current.failure_count + 1, last_reason=reason)


def evaluate(record: TrackerRecord, policy: BlockPolicy, now: float) -> Decision:
    if record.is_blocked_at(now):
        return Decision(blocked=True, blocked_until=record.blocked_until, record=record)

    if record.failure_count < policy.max_failed_attempts:
        return Decision(blocked=False, blocked_until=None, record=record)

    offense_count = record.offense_count + 1
    excess = record.failure_count - policy.max_failed_attempts
    seconds = block_duration(policy, offense_count, excess)
    blocked = replace(record, blocked_until=now + seconds, offense_count=offense_count)
    return Decision(
        blocked=True,
        blocked_until=blocked.blocked_until,
        record=blocked,
        transitioned=True,
        block_seconds=seconds,
    )


def is_stale(record: TrackerRecord, policy: BlockPolicy, now: float) -> bool:
    """Whether the reaper may evict ``record``."""
    if record.blocked_until is None:
        return now - record.window_start > 2 * policy.failure_window
    return now > record.blocked_until + policy.failure_window
