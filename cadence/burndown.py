"""Daily sprint snapshots and burndown series reconstruction."""
from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from cadence.metrics import SprintMetricsCalculator
from cadence.models import (
    EVENT_PULL_REQUEST,
    EVENT_PULL_REQUEST_REVIEW,
    EVENT_PUSH,
    STATUS_COUNT_COLUMNS,
    ActivityEvent,
    SprintSnapshot,
)
from cadence.schemas import BurndownPoint, SnapshotSummary
from cadence.services import get_sprint_or_raise, list_active_sprint_ids
from cadence.utils import as_utc, day_start, utc_now

log = logging.getLogger(__name__)

_DAY_SECONDS = 86400.0
_UPSERT_KEY = ("sprint_id", "snapshot_date")


def _days_between(later: datetime, earlier: datetime) -> int:
    return math.ceil((later - earlier).total_seconds() / _DAY_SECONDS)


def count_activity_for_day(session: Session, day: date) -> dict[str, int]:
    """Activity counts within one UTC calendar day, across all repositories."""
    start = day_start(day)
    rows = session.execute(
        select(ActivityEvent.event_type, ActivityEvent.event_action, ActivityEvent.pr_merged_at).where(
            ActivityEvent.event_timestamp >= start,
            ActivityEvent.event_timestamp < start + timedelta(days=1),
        )
    ).all()
    return {
        "commits_count": sum(1 for r in rows if r.event_type == EVENT_PUSH),
        "prs_opened": sum(1 for r in rows if r.event_type == EVENT_PULL_REQUEST and r.event_action == "opened"),
        # merges arrive as "closed" transitions that carry a merge timestamp
        "prs_merged": sum(
            1 for r in rows
            if r.event_type == EVENT_PULL_REQUEST and r.event_action == "closed" and r.pr_merged_at is not None
        ),
        "prs_reviewed": sum(1 for r in rows if r.event_type == EVENT_PULL_REQUEST_REVIEW),
    }


def _dialect_insert(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    return None


def upsert_snapshot(session: Session, values: dict[str, Any]) -> int:
    """Create or replace the (sprint, day) row; returns its id. Caller must commit."""
    insert = _dialect_insert(session)
    if insert is not None:
        stmt = insert(SprintSnapshot).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(_UPSERT_KEY),
            set_={k: stmt.excluded[k] for k in values if k not in _UPSERT_KEY},
        )
        session.execute(stmt)
    else:
        existing = session.execute(
            select(SprintSnapshot).where(
                SprintSnapshot.sprint_id == values["sprint_id"],
                SprintSnapshot.snapshot_date == values["snapshot_date"],
            )
        ).scalars().first()
        if existing is None:
            session.add(SprintSnapshot(**values))
        else:
            for key, value in values.items():
                setattr(existing, key, value)
        session.flush()
    return session.execute(
        select(SprintSnapshot.id).where(
            SprintSnapshot.sprint_id == values["sprint_id"],
            SprintSnapshot.snapshot_date == values["snapshot_date"],
        )
    ).scalar_one()


class BurndownSnapshotService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.metrics = SprintMetricsCalculator(session)

    def capture_daily_snapshot(self, sprint_id: str, now: datetime | None = None) -> SnapshotSummary:
        now = as_utc(now) or utc_now()
        today = now.date()
        metrics = self.metrics.compute(sprint_id)
        activity = count_activity_for_day(self.session, today)

        values: dict[str, Any] = {
            "sprint_id": sprint_id,
            "snapshot_date": today,
            **{column: metrics.kanban_counts[status] for status, column in STATUS_COUNT_COLUMNS.items()},
            "total_effort": metrics.total_effort,
            "completed_effort": metrics.completed_effort,
            "added_effort": metrics.added_effort,
            "actions_completed": metrics.completed_actions,
            **activity,
            "captured_at": now,
        }
        snapshot_id = upsert_snapshot(self.session, values)
        log.info("Captured snapshot %s for sprint %s on %s", snapshot_id, sprint_id, today)
        return SnapshotSummary(
            snapshot_id=snapshot_id,
            sprint_id=sprint_id,
            date=today,
            kanban_counts=metrics.kanban_counts,
            actions_completed=metrics.completed_actions,
            total_effort=metrics.total_effort,
            completed_effort=metrics.completed_effort,
            **activity,
        )

    def get_burndown_series(self, sprint_id: str) -> list[BurndownPoint]:
        sprint = get_sprint_or_raise(self.session, sprint_id)
        start, end = as_utc(sprint.start_date), as_utc(sprint.end_date)
        if start is None or end is None:
            return []
        snapshots = self.session.execute(
            select(SprintSnapshot)
            .where(SprintSnapshot.sprint_id == sprint_id)
            .order_by(SprintSnapshot.snapshot_date)
            .execution_options(populate_existing=True)
        ).scalars().all()
        if not snapshots:
            return []

        total_days = _days_between(end, start)
        initial_effort = snapshots[0].total_effort
        points = []
        for snap in snapshots:
            ideal = 0.0
            if total_days > 0:
                day_index = _days_between(day_start(snap.snapshot_date), start)
                ideal = max(0.0, initial_effort * (1 - day_index / total_days))
            points.append(BurndownPoint(
                date=snap.snapshot_date,
                remaining_effort=snap.total_effort - snap.completed_effort,
                ideal_remaining=ideal,
                completed_effort=snap.completed_effort,
            ))
        return points


def capture_active_sprints(session: Session, now: datetime | None = None) -> dict[str, Any]:
    """Daily trigger: snapshot every active sprint, each on its own savepoint."""
    service = BurndownSnapshotService(session)
    captured: list[str] = []
    failed: list[str] = []
    for sprint_id in list_active_sprint_ids(session):
        try:
            with session.begin_nested():
                service.capture_daily_snapshot(sprint_id, now=now)
            captured.append(sprint_id)
        except Exception as exc:
            log.warning("Snapshot failed for sprint %s: %s", sprint_id, exc)
            failed.append(sprint_id)
    return {"captured": captured, "failed": failed}
