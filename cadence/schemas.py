"""Pydantic schemas: inbound webhook payloads and read-only result objects."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

Severity = Literal["low", "medium", "high", "critical"]
MappingMethod = Literal["explicit", "branch", "semantic"]
Day = date


# ---------------------------------------------------------------------------
# Inbound webhook payloads (GitHub shapes, unknown keys ignored)
# ---------------------------------------------------------------------------


class RepositoryIn(BaseModel):
    full_name: str
    html_url: str = ""


class GitHubUserIn(BaseModel):
    login: str = ""


class CommitAuthorIn(BaseModel):
    name: str = ""
    email: str = ""
    username: str | None = None


class CommitIn(BaseModel):
    id: str = Field(min_length=1)
    message: str = ""
    timestamp: datetime
    url: str = ""
    author: CommitAuthorIn = CommitAuthorIn()


class PushPayload(BaseModel):
    ref: str = ""
    repository: RepositoryIn
    # Validated one by one so a malformed commit fails alone
    commits: list[dict[str, Any]] = []


class PullRequestHeadIn(BaseModel):
    ref: str = ""


class PullRequestIn(BaseModel):
    node_id: str = Field(min_length=1)
    number: int
    title: str = ""
    state: str = ""
    html_url: str = ""
    merged_at: datetime | None = None
    updated_at: datetime | None = None
    user: GitHubUserIn = GitHubUserIn()
    head: PullRequestHeadIn = PullRequestHeadIn()


class PullRequestPayload(BaseModel):
    action: str
    pull_request: PullRequestIn
    repository: RepositoryIn


class ReviewIn(BaseModel):
    node_id: str = Field(min_length=1)
    state: str = ""
    submitted_at: datetime
    user: GitHubUserIn = GitHubUserIn()


class PullRequestReviewPayload(BaseModel):
    action: str = "submitted"
    review: ReviewIn
    pull_request: PullRequestIn
    repository: RepositoryIn


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class Attribution(BaseModel):
    work_item_id: str
    method: MappingMethod
    confidence: float


class IngestResult(BaseModel):
    event_name: str
    delivery_id: str
    received: int = 0
    stored: int = 0
    duplicates: int = 0
    dropped: int = 0
    failed: int = 0
    event_ids: list[int] = []


class ActivitySummary(BaseModel):
    workspace_id: str
    since: datetime
    total_commits: int
    total_prs_opened: int
    total_prs_merged: int
    total_reviews: int
    mapped_count: int
    unmapped_count: int


class SprintMetricsResult(BaseModel):
    sprint_id: str
    sprint_name: str
    start_date: datetime | None
    end_date: datetime | None
    total_effort: float
    planned_effort: float
    added_effort: float
    completed_effort: float
    velocity: float
    total_actions: int
    planned_actions: int
    completed_actions: int
    added_actions: int
    kanban_counts: dict[str, int]
    completion_rate: float


class ActiveSprint(BaseModel):
    id: str
    name: str
    start_date: datetime | None
    end_date: datetime | None
    action_count: int


class VelocityEntry(BaseModel):
    sprint_id: str
    sprint_name: str
    end_date: datetime | None
    velocity: float
    completion_rate: float


class VelocityHistory(BaseModel):
    workspace_id: str
    sprints: list[VelocityEntry]
    rolling_velocity: float


class SnapshotSummary(BaseModel):
    snapshot_id: int
    sprint_id: str
    date: Day
    kanban_counts: dict[str, int]
    actions_completed: int
    total_effort: float
    completed_effort: float
    commits_count: int
    prs_opened: int
    prs_merged: int
    prs_reviewed: int


class BurndownPoint(BaseModel):
    date: Day
    remaining_effort: float
    ideal_remaining: float
    completed_effort: float


class RiskSignal(BaseModel):
    type: str
    severity: Severity
    message: str
    work_item_ids: list[str] = []
