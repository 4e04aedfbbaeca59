"""Shared read helpers for the analytics components, API and CLI."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from cadence.errors import SprintNotFoundError
from cadence.models import Sprint, SprintMembership, WorkItem
from cadence.schemas import ActiveSprint
from cadence.utils import as_utc, json_parse


@dataclass(frozen=True)
class SprintItem:
    """A work item as seen through its sprint membership."""

    work_item: WorkItem
    added_at: datetime

    @property
    def id(self) -> str:
        return self.work_item.id

    @property
    def status(self) -> str:
        return self.work_item.kanban_status

    @property
    def effort(self) -> float:
        return self.work_item.effort_estimate or 0.0

    @property
    def blocked_by(self) -> list[str]:
        return [str(v) for v in json_parse(self.work_item.blocked_by_json, []) or []]

    @property
    def last_status_change(self) -> datetime | None:
        changes = self.work_item.status_changes
        if not changes:
            return None
        return max(as_utc(c.changed_at) for c in changes)


def get_sprint_or_raise(session: Session, sprint_id: str) -> Sprint:
    sprint = session.get(Sprint, sprint_id)
    if sprint is None:
        raise SprintNotFoundError(sprint_id)
    return sprint


def load_sprint_items(session: Session, sprint_id: str, *, with_history: bool = False) -> list[SprintItem]:
    query = (
        select(SprintMembership)
        .where(SprintMembership.sprint_id == sprint_id)
        .order_by(SprintMembership.added_at, SprintMembership.id)
    )
    if with_history:
        query = query.options(
            selectinload(SprintMembership.work_item).selectinload(WorkItem.status_changes)
        )
    else:
        query = query.options(selectinload(SprintMembership.work_item))
    memberships = session.execute(query).scalars().all()
    return [SprintItem(work_item=m.work_item, added_at=as_utc(m.added_at)) for m in memberships]


def get_active_sprint(session: Session, workspace_id: str) -> ActiveSprint | None:
    sprint = session.execute(
        select(Sprint)
        .where(Sprint.workspace_id == workspace_id, Sprint.status == "ACTIVE")
        .order_by(Sprint.start_date.desc())
    ).scalars().first()
    if sprint is None:
        return None
    action_count = session.execute(
        select(func.count(SprintMembership.id)).where(SprintMembership.sprint_id == sprint.id)
    ).scalar_one()
    return ActiveSprint(
        id=sprint.id, name=sprint.name,
        start_date=as_utc(sprint.start_date), end_date=as_utc(sprint.end_date),
        action_count=action_count,
    )


def list_active_sprint_ids(session: Session) -> list[str]:
    return list(session.execute(
        select(Sprint.id).where(Sprint.status == "ACTIVE").order_by(Sprint.id)
    ).scalars().all())
