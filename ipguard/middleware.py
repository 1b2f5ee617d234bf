from __future__ import annotations

from datetime import datetime, timezone
import logging
import math
from typing import Iterable, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import RequestResponseEndpoint

from .identity import client_key_from_request, user_key
from .metrics import DENIED_REQUESTS_TOTAL, REQUESTS_TOTAL
from .rate_limit import SlidingWindowLimiter
from .tracker import AbuseTracker

logger = logging.getLogger("ipguard.middleware")

AUTH_FAILED = "failed"
AUTH_SUCCEEDED = "succeeded"
AUTH_BLOCKED = "blocked"

BLOCKED_MESSAGE = "Too many failed attempts. Your IP has been temporarily blocked. Please try again later."
RATE_LIMITED_MESSAGE = "Rate limit exceeded"


class ClientBlockedError(Exception):
    def __init__(self, client_key: str, blocked_until: Optional[float], message: str = BLOCKED_MESSAGE) -> None:
        super().__init__(message)
        self.client_key = client_key
        self.blocked_until = blocked_until
        self.message = message

    def to_payload(self) -> dict:
        blocked_until = None
        if self.blocked_until is not None:
            blocked_until = datetime.fromtimestamp(self.blocked_until, tz=timezone.utc).isoformat()
        return {"detail": self.message, "blocked_until": blocked_until}

    def headers(self, now: float) -> dict[str, str]:
        if self.blocked_until is None:
            return {}
        return {"Retry-After": str(max(1, math.ceil(self.blocked_until - now)))}


def blocked_response(exc: ClientBlockedError, now: float) -> JSONResponse:
    return JSONResponse(status_code=403, content=exc.to_payload(), headers=exc.headers(now))


def mark_auth_failed(request: Request, reason: str) -> None:
    request.state.auth_outcome = AUTH_FAILED
    request.state.failure_reason = reason


def mark_auth_succeeded(request: Request, user_id: Optional[str] = None) -> None:
    request.state.auth_outcome = AUTH_SUCCEEDED
    if user_id:
        request.state.user_id = user_id


def mark_auth_blocked(request: Request) -> None:
    """The request was refused by an existing block, not by the client."""
    request.state.auth_outcome = AUTH_BLOCKED


def get_tracker(request: Request) -> AbuseTracker:
    return request.app.state.tracker


class AbuseGuard:
    """HTTP middleware enforcing blocks and feeding outcomes to the tracker.

    Register with ``app.middleware("http")(guard)``.
    """

    def __init__(
        self,
        tracker: AbuseTracker,
        limiter: Optional[SlidingWindowLimiter] = None,
        requests_per_min: int = 120,
        trust_forwarded_for: bool = True,
        exempt_paths: Iterable[str] = ("/health", "/metrics"),
    ) -> None:
        self.tracker = tracker
        self.limiter = limiter
        self.requests_per_min = requests_per_min
        self.trust_forwarded_for = trust_forwarded_for
        self.exempt_paths = frozenset(exempt_paths)

    async def __call__(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        method = request.method
        key = client_key_from_request(request, trust_forwarded=self.trust_forwarded_for)
        request.state.client_key = key

        if self.limiter is not None and not self.limiter.allow(f"http:{key}", self.requests_per_min, 60):
            DENIED_REQUESTS_TOTAL.labels(reason="rate_limited").inc()
            REQUESTS_TOTAL.labels(method=method, status="429").inc()
            return JSONResponse(status_code=429, content={"detail": RATE_LIMITED_MESSAGE})

        if self.tracker.is_blocked(key):
            logger.warning(
                "Blocked client attempted access",
                extra={"event": "blocked_request", "client_key": key, "method": method, "path": request.url.path},
            )
            DENIED_REQUESTS_TOTAL.labels(reason="blocked").inc()
            REQUESTS_TOTAL.labels(method=method, status="403").inc()
            return blocked_response(ClientBlockedError(key, self.tracker.blocked_until(key)), self.tracker.now())

        response = await call_next(request)
        self.observe(request, key, response.status_code)
        REQUESTS_TOTAL.labels(method=method, status=str(response.status_code)).inc()
        return response

    def observe(self, request: Request, key: str, status_code: int) -> None:
        """Feed the downstream outcome back into the tracker."""
        outcome = getattr(request.state, "auth_outcome", None)
        user_id = getattr(request.state, "user_id", None)
        keys = [key, user_key(user_id)] if user_id else [key]

        if outcome == AUTH_BLOCKED:
            return

        if outcome == AUTH_FAILED or 400 <= status_code < 500:
            reason = getattr(request.state, "failure_reason", None) or f"http_{status_code}"
            for target in keys:
                self.tracker.record_failure(target, reason)
        elif outcome == AUTH_SUCCEEDED and status_code < 400:
            for target in keys:
                self.tracker.reset(target)
