from __future__ import annotations

import hashlib
import hmac
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from cadence import services
from cadence.burndown import BurndownSnapshotService
from cadence.config import Settings, get_settings
from cadence.db import init_db, session_generator
from cadence.errors import NotFoundError, WebhookSignatureError
from cadence.ingestion import ActivityIngestionStore, activity_summary
from cadence.metrics import SprintMetricsCalculator, velocity_history
from cadence.risk import RiskSignalDetector
from cadence.schemas import (
    ActiveSprint,
    ActivitySummary,
    BurndownPoint,
    IngestResult,
    RiskSignal,
    SnapshotSummary,
    SprintMetricsResult,
    VelocityHistory,
)
from cadence.utils import utc_now

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Cadence",
    version="0.1.0",
    description=(
        "Sprint analytics and git activity attribution. "
        "Ingests code-hosting webhooks and reports sprint metrics, burndown and risk signals."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Webhooks", "description": "Inbound code-hosting deliveries."},
        {"name": "Sprints", "description": "Metrics, burndown, snapshots and risk signals per sprint."},
        {"name": "Workspaces", "description": "Workspace-level activity and velocity reports."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(WebhookSignatureError)
async def signature_error_handler(request: Request, exc: WebhookSignatureError):
    log.warning("Rejected delivery %s: %s", exc.metadata.get("delivery_id"), exc)
    return JSONResponse(status_code=401, content={"detail": str(exc)})


def verify_signature(secret: str, body: bytes, signature_header: str | None) -> bool:
    if not signature_header:
        return False
    algo, _, signature = signature_header.partition("=")
    if algo.strip().lower() != "sha256" or not signature.strip():
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, signature.strip())


@app.get("/health")
async def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Routes: Webhooks
# ---------------------------------------------------------------------------


@app.post("/api/webhooks/github", response_model=IngestResult,
          tags=["Webhooks"], summary="Ingest a GitHub push, pull_request or pull_request_review delivery")
async def github_webhook(
    request: Request,
    session: Session = Depends(db_session),
    settings: Settings = Depends(get_settings),
):
    event_name = request.headers.get("X-GitHub-Event")
    delivery_id = request.headers.get("X-GitHub-Delivery")
    if not event_name or not delivery_id:
        raise HTTPException(400, "Missing required headers")

    body = await request.body()
    if settings.webhook_secret:
        if not verify_signature(settings.webhook_secret, body, request.headers.get("X-Hub-Signature-256")):
            raise WebhookSignatureError("Invalid signature", metadata={"delivery_id": delivery_id})
    else:
        log.warning("CADENCE_WEBHOOK_SECRET not set, skipping signature verification")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(400, "Body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(400, "Body must be a JSON object")

    result = ActivityIngestionStore(session).ingest(event_name, payload, delivery_id)
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Routes: Sprints
# ---------------------------------------------------------------------------


@app.get("/api/sprints/{sprint_id}/metrics", response_model=SprintMetricsResult,
         tags=["Sprints"], summary="Live velocity, throughput and completion metrics")
async def sprint_metrics(sprint_id: str, session: Session = Depends(db_session)):
    return SprintMetricsCalculator(session).compute(sprint_id)


@app.get("/api/sprints/{sprint_id}/burndown", response_model=list[BurndownPoint],
         tags=["Sprints"], summary="Ideal vs actual burndown from stored snapshots")
async def sprint_burndown(sprint_id: str, session: Session = Depends(db_session)):
    return BurndownSnapshotService(session).get_burndown_series(sprint_id)


@app.post("/api/sprints/{sprint_id}/snapshots", response_model=SnapshotSummary,
          tags=["Sprints"], summary="Capture (or replace) today's snapshot")
async def capture_snapshot(sprint_id: str, session: Session = Depends(db_session)):
    summary = BurndownSnapshotService(session).capture_daily_snapshot(sprint_id)
    session.commit()
    return summary


@app.get("/api/sprints/{sprint_id}/risks", response_model=list[RiskSignal],
         tags=["Sprints"], summary="Risk signals computed from live sprint state")
async def sprint_risks(
    sprint_id: str,
    session: Session = Depends(db_session),
    settings: Settings = Depends(get_settings),
):
    detector = RiskSignalDetector(session, stale_after=timedelta(days=settings.stale_after_days))
    return detector.detect(sprint_id)


# ---------------------------------------------------------------------------
# Routes: Workspaces
# ---------------------------------------------------------------------------


@app.get("/api/workspaces/{workspace_id}/active-sprint", response_model=ActiveSprint,
         tags=["Workspaces"], summary="The workspace's active sprint")
async def active_sprint(workspace_id: str, session: Session = Depends(db_session)):
    sprint = services.get_active_sprint(session, workspace_id)
    if sprint is None:
        raise HTTPException(404, "No active sprint")
    return sprint


@app.get("/api/workspaces/{workspace_id}/velocity-history", response_model=VelocityHistory,
         tags=["Workspaces"], summary="Velocity of recent completed sprints and their rolling average")
async def workspace_velocity_history(
    workspace_id: str,
    count: int = Query(5, ge=1, le=50),
    session: Session = Depends(db_session),
):
    return velocity_history(session, workspace_id, count)


@app.get("/api/workspaces/{workspace_id}/activity-summary", response_model=ActivitySummary,
         tags=["Workspaces"], summary="Commit, PR and review counts since a timestamp")
async def workspace_activity_summary(
    workspace_id: str,
    since: datetime | None = Query(None, description="ISO timestamp, defaults to 7 days ago"),
    session: Session = Depends(db_session),
):
    return activity_summary(session, workspace_id, since or utc_now() - timedelta(days=7))


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("cadence.app:app", host="127.0.0.1", port=8002)


if __name__ == "__main__":
    main()
