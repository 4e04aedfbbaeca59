"""Risk heuristics over live sprint state.

Every heuristic runs on every call and none suppresses another. Nothing here
reads snapshots or caches results.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from cadence.metrics import summarize
from cadence.models import CLOSED_STATUSES
from cadence.schemas import RiskSignal, Severity, SprintMetricsResult
from cadence.services import SprintItem, get_sprint_or_raise, load_sprint_items
from cadence.utils import as_utc, utc_now

log = logging.getLogger(__name__)

SCOPE_CREEP_MEDIUM = 0.2
SCOPE_CREEP_HIGH = 0.4
STALE_HIGH_ABOVE = 3
OVERDUE_HIGH_ABOVE = 5
BLOCKED_HIGH_ABOVE = 3
VELOCITY_ELAPSED_THRESHOLD = 0.5
VELOCITY_CRITICAL_ELAPSED = 0.8
VELOCITY_MIN_COMPLETION = 30.0


def _by_count(count: int, high_above: int) -> Severity:
    return "high" if count > high_above else "medium"


def scope_creep_signal(metrics: SprintMetricsResult) -> RiskSignal | None:
    total = metrics.planned_actions + metrics.added_actions
    if total == 0:
        return None
    ratio = metrics.added_actions / total
    if ratio <= SCOPE_CREEP_MEDIUM:
        return None
    return RiskSignal(
        type="scope_creep",
        severity="high" if ratio > SCOPE_CREEP_HIGH else "medium",
        message=f"{metrics.added_actions} actions ({round(ratio * 100)}%) added after sprint start",
    )


def stale_items_signal(items: list[SprintItem], now: datetime, stale_after: timedelta) -> RiskSignal | None:
    cutoff = now - stale_after
    stale = []
    for item in items:
        if item.status != "IN_PROGRESS":
            continue
        last_change = item.last_status_change
        if last_change is None or last_change < cutoff:
            stale.append(item.id)
    if not stale:
        return None
    return RiskSignal(
        type="stale_items",
        severity=_by_count(len(stale), STALE_HIGH_ABOVE),
        message=f"{len(stale)} action(s) stuck in IN_PROGRESS for {stale_after.days}+ days",
        work_item_ids=stale,
    )


def overdue_signal(items: list[SprintItem], now: datetime) -> RiskSignal | None:
    overdue = [
        item.id for item in items
        if item.status not in CLOSED_STATUSES
        and item.work_item.due_date is not None
        and as_utc(item.work_item.due_date) < now
    ]
    if not overdue:
        return None
    return RiskSignal(
        type="overdue",
        severity=_by_count(len(overdue), OVERDUE_HIGH_ABOVE),
        message=f"{len(overdue)} action(s) are past their due date",
        work_item_ids=overdue,
    )


def blocked_signal(items: list[SprintItem]) -> RiskSignal | None:
    blocked = [item.id for item in items if item.status not in CLOSED_STATUSES and item.blocked_by]
    if not blocked:
        return None
    return RiskSignal(
        type="blocked",
        severity=_by_count(len(blocked), BLOCKED_HIGH_ABOVE),
        message=f"{len(blocked)} action(s) are blocked by dependencies",
        work_item_ids=blocked,
    )


def velocity_drop_signal(metrics: SprintMetricsResult, now: datetime) -> RiskSignal | None:
    if metrics.start_date is None or metrics.end_date is None:
        return None
    duration = (metrics.end_date - metrics.start_date).total_seconds()
    if duration <= 0:
        return None
    elapsed = (now - metrics.start_date).total_seconds() / duration
    if elapsed <= VELOCITY_ELAPSED_THRESHOLD or metrics.completion_rate >= VELOCITY_MIN_COMPLETION:
        return None
    return RiskSignal(
        type="velocity_drop",
        severity="critical" if elapsed >= VELOCITY_CRITICAL_ELAPSED else "high",
        message=(
            f"Sprint is {round(elapsed * 100)}% elapsed but only "
            f"{round(metrics.completion_rate)}% complete"
        ),
    )


class RiskSignalDetector:
    def __init__(self, session: Session, *, stale_after: timedelta = timedelta(days=3)) -> None:
        self.session = session
        self.stale_after = stale_after

    def detect(self, sprint_id: str, now: datetime | None = None) -> list[RiskSignal]:
        now = as_utc(now) or utc_now()
        sprint = get_sprint_or_raise(self.session, sprint_id)
        items = load_sprint_items(self.session, sprint_id, with_history=True)
        metrics = summarize(sprint, items)

        candidates = (
            scope_creep_signal(metrics),
            stale_items_signal(items, now, self.stale_after),
            overdue_signal(items, now),
            blocked_signal(items),
            velocity_drop_signal(metrics, now),
        )
        signals = [s for s in candidates if s is not None]
        log.debug("Sprint %s: %d risk signal(s)", sprint_id, len(signals))
        return signals
