import pytest

from ipguard.engine import BlockPolicy
from ipguard.store import InMemoryTrackerStore
from ipguard.tracker import AbuseTracker

MINUTE = 60.0


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events = []

    def emit(self, event) -> None:
        self.events.append(event)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def policy() -> BlockPolicy:
    return BlockPolicy(
        max_failed_attempts=10,
        failure_window=15 * MINUTE,
        initial_block=15 * MINUTE,
        max_block=24 * 60 * MINUTE,
    )


@pytest.fixture
def tracker(clock: FakeClock, audit_sink: RecordingAuditSink, policy: BlockPolicy) -> AbuseTracker:
    return AbuseTracker(store=InMemoryTrackerStore(shards=4), policy=policy, audit_sink=audit_sink, clock=clock)
