from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from starlette.middleware.cors import CORSMiddleware

from .audit import build_audit_sink
from .config import Settings, settings
from .logging_utils import configure_logging
from .metrics import CONTENT_TYPE_LATEST, TRACKED_CLIENTS, generate_latest
from .middleware import AbuseGuard
from .rate_limit import SlidingWindowLimiter
from .reaper import Reaper
from .routers.admin import router as admin_router
from .schemas import WhoAmIResponse
from .security import AuthContext, auth_context
from .store import InMemoryTrackerStore
from .tracker import AbuseTracker

configure_logging()
logger = logging.getLogger("ipguard.app")


def build_tracker(app_settings: Settings) -> AbuseTracker:
    return AbuseTracker(
        store=InMemoryTrackerStore(shards=app_settings.abuse_store_shards),
        policy=app_settings.block_policy(),
        audit_sink=build_audit_sink(app_settings.audit_log_path),
    )


def create_app(
    app_settings: Optional[Settings] = None,
    tracker: Optional[AbuseTracker] = None,
    limiter: Optional[SlidingWindowLimiter] = None,
) -> FastAPI:
    app_settings = app_settings or settings
    app_settings.validate()

    if tracker is None:
        tracker = build_tracker(app_settings)
    if limiter is None:
        limiter = SlidingWindowLimiter()
    reaper = Reaper(tracker, limiter=limiter)

    app = FastAPI(title="ipguard API", version="1.0.0")
    app.state.settings = app_settings
    app.state.tracker = tracker
    app.state.limiter = limiter
    app.state.reaper = reaper

    @app.on_event("startup")
    async def startup_event() -> None:
        reaper.start()
        logger.info("Abuse guard startup complete", extra={"event": "startup", "tracked": len(tracker.store)})

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await reaper.stop()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    guard = AbuseGuard(
        tracker,
        limiter=limiter,
        requests_per_min=app_settings.rate_limit_requests_per_min,
        trust_forwarded_for=app_settings.trust_forwarded_for,
    )
    app.middleware("http")(guard)

    api_router = APIRouter(prefix="/api")

    @api_router.get("/me", response_model=WhoAmIResponse)
    async def whoami(request: Request, auth: AuthContext = Depends(auth_context)) -> WhoAmIResponse:
        return WhoAmIResponse(user_id=auth.user_id, is_admin=auth.is_admin, client_key=request.state.client_key)

    @app.get("/health")
    async def healthcheck() -> dict[str, object]:
        return {
            "status": "ok",
            "ts": datetime.now(timezone.utc).isoformat(),
            "tracked_clients": len(tracker.store),
            "reaper_running": reaper.running,
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        if not app_settings.enable_prometheus_metrics:
            raise HTTPException(status_code=404, detail="Metrics disabled")
        TRACKED_CLIENTS.set(len(tracker.store))
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(api_router)
    app.include_router(admin_router)
    return app


app = create_app()


def serve() -> None:
    import uvicorn

    uvicorn.run("ipguard.main:app", host=settings.host, port=settings.port)
