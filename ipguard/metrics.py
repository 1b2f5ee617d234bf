from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

REQUESTS_TOTAL = Counter(
    "ipguard_requests_total",
    "Total HTTP requests seen by the abuse guard",
    ["method", "status"],
)
FAILURES_RECORDED_TOTAL = Counter(
    "ipguard_failures_recorded_total",
    "Client-attributable failures recorded by the tracker",
)
BLOCKS_TOTAL = Counter(
    "ipguard_blocks_total",
    "Clients moved into the blocked state",
    ["source"],
)
DENIED_REQUESTS_TOTAL = Counter(
    "ipguard_denied_requests_total",
    "Requests rejected before reaching downstream handlers",
    ["reason"],
)
REAPED_RECORDS_TOTAL = Counter(
    "ipguard_reaped_records_total",
    "Tracker records evicted by the reaper",
)
TRACKING_ERRORS_TOTAL = Counter(
    "ipguard_tracking_errors_total",
    "Internal tracker errors that were failed open",
    ["operation"],
)
TRACKED_CLIENTS = Gauge("ipguard_tracked_clients", "Tracker records currently held in memory")


__all__ = [
    "CONTENT_TYPE_LATEST",
    "REQUESTS_TOTAL",
    "FAILURES_RECORDED_TOTAL",
    "BLOCKS_TOTAL",
    "DENIED_REQUESTS_TOTAL",
    "REAPED_RECORDS_TOTAL",
    "TRACKING_ERRORS_TOTAL",
    "TRACKED_CLIENTS",
    "generate_latest",
]
