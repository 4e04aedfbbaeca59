from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from cadence.utils import new_id, utc_now

KANBAN_STATUSES = ("BACKLOG", "TODO", "IN_PROGRESS", "IN_REVIEW", "DONE", "CANCELLED")
CLOSED_STATUSES = ("DONE", "CANCELLED")

EVENT_PUSH = "push"
EVENT_PULL_REQUEST = "pull_request"
EVENT_PULL_REQUEST_REVIEW = "pull_request_review"

PROVIDER_GITHUB = "github"


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Tables owned by the host platform (read-only here)
# ---------------------------------------------------------------------------


class Workspace(Base):
    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(200), default="")


class WorkItem(Base):
    __tablename__ = "work_items"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(ForeignKey("workspaces.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(300), default="")
    kanban_status: Mapped[str] = mapped_column(String(20), default="BACKLOG")  # one of KANBAN_STATUSES
    effort_estimate: Mapped[float | None] = mapped_column(Float, nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    blocked_by_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    status_changes: Mapped[list[WorkItemStatusChange]] = relationship(
        "WorkItemStatusChange", back_populates="work_item",
        order_by="WorkItemStatusChange.changed_at.desc()",
    )


class WorkItemStatusChange(Base):
    __tablename__ = "work_item_status_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    work_item_id: Mapped[str] = mapped_column(ForeignKey("work_items.id"), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    work_item: Mapped[WorkItem] = relationship("WorkItem", back_populates="status_changes")


class Sprint(Base):
    __tablename__ = "sprints"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(ForeignKey("workspaces.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), default="")
    status: Mapped[str] = mapped_column(String(20), default="PLANNED")  # PLANNED | ACTIVE | COMPLETED
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    memberships: Mapped[list[SprintMembership]] = relationship("SprintMembership", back_populates="sprint")
    snapshots: Mapped[list[SprintSnapshot]] = relationship(
        "SprintSnapshot", back_populates="sprint", order_by="SprintSnapshot.snapshot_date",
    )


class SprintMembership(Base):
    __tablename__ = "sprint_memberships"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sprint_id: Mapped[str] = mapped_column(ForeignKey("sprints.id"), nullable=False)
    work_item_id: Mapped[str] = mapped_column(ForeignKey("work_items.id"), nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    sprint: Mapped[Sprint] = relationship("Sprint", back_populates="memberships")
    work_item: Mapped[WorkItem] = relationship("WorkItem")


class Integration(Base):
    __tablename__ = "integrations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(ForeignKey("workspaces.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(30), default=PROVIDER_GITHUB)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")  # ACTIVE | INACTIVE
    repo_full_name: Mapped[str] = mapped_column(String(300), default="")  # normalized owner/name
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")


class IssueSync(Base):
    __tablename__ = "issue_syncs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(30), default=PROVIDER_GITHUB)
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    work_item_id: Mapped[str] = mapped_column(ForeignKey("work_items.id"), nullable=False)


# ---------------------------------------------------------------------------
# Tables written by the engine
# ---------------------------------------------------------------------------


class ActivityEvent(Base):
    __tablename__ = "activity_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)  # push | pull_request | pull_request_review
    event_action: Mapped[str | None] = mapped_column(String(30), nullable=True)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False)
    delivery_id: Mapped[str] = mapped_column(String(100), default="")
    event_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    branch_name: Mapped[str] = mapped_column(String(300), default="")
    text: Mapped[str] = mapped_column(Text, default="")
    author: Mapped[str] = mapped_column(String(200), default="")
    url: Mapped[str] = mapped_column(String(500), default="")
    commit_sha: Mapped[str | None] = mapped_column(String(10), nullable=True)
    pr_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pr_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    pr_merged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_state: Mapped[str | None] = mapped_column(String(30), nullable=True)
    reviewer: Mapped[str | None] = mapped_column(String(200), nullable=True)
    repo_full_name: Mapped[str] = mapped_column(String(300), default="")
    workspace_id: Mapped[str] = mapped_column(ForeignKey("workspaces.id"), nullable=False)
    integration_id: Mapped[str] = mapped_column(ForeignKey("integrations.id"), nullable=False)
    work_item_id: Mapped[str | None] = mapped_column(ForeignKey("work_items.id"), nullable=True)
    mapping_method: Mapped[str | None] = mapped_column(String(20), nullable=True)  # explicit | branch
    mapping_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class SprintSnapshot(Base):
    __tablename__ = "sprint_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sprint_id: Mapped[str] = mapped_column(ForeignKey("sprints.id"), nullable=False)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)
    backlog_count: Mapped[int] = mapped_column(Integer, default=0)
    todo_count: Mapped[int] = mapped_column(Integer, default=0)
    in_progress_count: Mapped[int] = mapped_column(Integer, default=0)
    in_review_count: Mapped[int] = mapped_column(Integer, default=0)
    done_count: Mapped[int] = mapped_column(Integer, default=0)
    cancelled_count: Mapped[int] = mapped_column(Integer, default=0)
    total_effort: Mapped[float] = mapped_column(Float, default=0.0)
    completed_effort: Mapped[float] = mapped_column(Float, default=0.0)
    added_effort: Mapped[float] = mapped_column(Float, default=0.0)
    actions_completed: Mapped[int] = mapped_column(Integer, default=0)
    commits_count: Mapped[int] = mapped_column(Integer, default=0)
    prs_opened: Mapped[int] = mapped_column(Integer, default=0)
    prs_merged: Mapped[int] = mapped_column(Integer, default=0)
    prs_reviewed: Mapped[int] = mapped_column(Integer, default=0)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    sprint: Mapped[Sprint] = relationship("Sprint", back_populates="snapshots")


# Maps kanban status -> snapshot count column
STATUS_COUNT_COLUMNS = {
    "BACKLOG": "backlog_count",
    "TODO": "todo_count",
    "IN_PROGRESS": "in_progress_count",
    "IN_REVIEW": "in_review_count",
    "DONE": "done_count",
    "CANCELLED": "cancelled_count",
}


Index("ix_work_items_workspace", WorkItem.workspace_id)
Index("ix_status_changes_item_changed", WorkItemStatusChange.work_item_id, WorkItemStatusChange.changed_at)
Index("ix_sprints_workspace_status", Sprint.workspace_id, Sprint.status)
Index("ix_sprint_memberships_unique", SprintMembership.sprint_id, SprintMembership.work_item_id, unique=True)
Index(
    "ix_integrations_active_repo_unique", Integration.provider, Integration.repo_full_name, unique=True,
    sqlite_where=Integration.status == "ACTIVE", postgresql_where=Integration.status == "ACTIVE",
)
Index("ix_issue_syncs_provider_external", IssueSync.provider, IssueSync.external_id)
Index("ix_activity_events_natural_key", ActivityEvent.external_id, ActivityEvent.event_type, unique=True)
Index("ix_activity_events_timestamp", ActivityEvent.event_timestamp)
Index("ix_activity_events_workspace_timestamp", ActivityEvent.workspace_id, ActivityEvent.event_timestamp)
Index("ix_sprint_snapshots_sprint_day", SprintSnapshot.sprint_id, SprintSnapshot.snapshot_date, unique=True)
