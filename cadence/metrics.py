"""Live sprint metrics computed from current work-item state."""
from __future__ import annotations

import logging
from collections import Counter

from sqlalchemy import select
from sqlalchemy.orm import Session

from cadence.models import KANBAN_STATUSES, Sprint
from cadence.schemas import SprintMetricsResult, VelocityEntry, VelocityHistory
from cadence.services import SprintItem, get_sprint_or_raise, load_sprint_items
from cadence.utils import as_utc

log = logging.getLogger(__name__)


def is_added_after_start(item: SprintItem, sprint: Sprint) -> bool:
    """Scope creep: the item joined the sprint after it started."""
    start = as_utc(sprint.start_date)
    return start is not None and item.added_at > start


def summarize(sprint: Sprint, items: list[SprintItem]) -> SprintMetricsResult:
    present = Counter(item.status for item in items)
    kanban_counts = {status: present.get(status, 0) for status in KANBAN_STATUSES}

    total_effort = sum(item.effort for item in items)
    done = [item for item in items if item.status == "DONE"]
    completed_effort = sum(item.effort for item in done)

    added = [item for item in items if is_added_after_start(item, sprint)]
    added_effort = sum(item.effort for item in added)
    planned_actions = len(items) - len(added)

    completion_rate = 0.0
    if planned_actions > 0:
        completion_rate = min(100.0, len(done) / planned_actions * 100)

    return SprintMetricsResult(
        sprint_id=sprint.id,
        sprint_name=sprint.name,
        start_date=as_utc(sprint.start_date),
        end_date=as_utc(sprint.end_date),
        total_effort=total_effort,
        planned_effort=total_effort - added_effort,
        added_effort=added_effort,
        completed_effort=completed_effort,
        velocity=completed_effort,
        total_actions=len(items),
        planned_actions=planned_actions,
        completed_actions=len(done),
        added_actions=len(added),
        kanban_counts=kanban_counts,
        completion_rate=completion_rate,
    )


class SprintMetricsCalculator:
    def __init__(self, session: Session) -> None:
        self.session = session

    def compute(self, sprint_id: str) -> SprintMetricsResult:
        sprint = get_sprint_or_raise(self.session, sprint_id)
        return summarize(sprint, load_sprint_items(self.session, sprint_id))


def velocity_history(session: Session, workspace_id: str, count: int = 5) -> VelocityHistory:
    """Single-sprint velocities of the last *count* completed sprints and their mean.

    This is the rolling figure; ``SprintMetricsResult.velocity`` stays per sprint.
    """
    sprints = session.execute(
        select(Sprint)
        .where(Sprint.workspace_id == workspace_id, Sprint.status == "COMPLETED")
        .order_by(Sprint.end_date.desc())
        .limit(count)
    ).scalars().all()
    entries = []
    for sprint in sprints:
        metrics = summarize(sprint, load_sprint_items(session, sprint.id))
        entries.append(VelocityEntry(
            sprint_id=sprint.id, sprint_name=sprint.name, end_date=as_utc(sprint.end_date),
            velocity=metrics.velocity, completion_rate=metrics.completion_rate,
        ))
    rolling = sum(e.velocity for e in entries) / len(entries) if entries else 0.0
    return VelocityHistory(workspace_id=workspace_id, sprints=entries, rolling_velocity=rolling)
