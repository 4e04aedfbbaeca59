"""Idempotent ingestion of code-hosting webhook deliveries.

Each delivery is split into candidate events (one per commit, PR transition or
review). Every candidate is processed on its own savepoint: a malformed one is
logged and counted, its siblings still land. Storage relies on the unique
(external_id, event_type) index, so a redelivery or a concurrent writer that
loses the race is a no-op rather than an error.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, NamedTuple

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cadence.attribution import ActivityAttributionResolver
from cadence.models import (
    EVENT_PULL_REQUEST,
    EVENT_PULL_REQUEST_REVIEW,
    EVENT_PUSH,
    PROVIDER_GITHUB,
    ActivityEvent,
    Integration,
)
from cadence.schemas import (
    ActivitySummary,
    CommitIn,
    IngestResult,
    PullRequestPayload,
    PullRequestReviewPayload,
    PushPayload,
)
from cadence.utils import as_utc, first_line, normalize_repo_name, utc_now

log = logging.getLogger(__name__)


class OwningWorkspace(NamedTuple):
    integration_id: str
    workspace_id: str


@dataclass(frozen=True)
class CandidateEvent:
    """One code event awaiting storage; ``kind`` tags the variant."""

    kind: str  # EVENT_PUSH | EVENT_PULL_REQUEST | EVENT_PULL_REQUEST_REVIEW
    external_id: str
    repo_full_name: str
    branch_name: str
    text: str
    event_timestamp: datetime
    message: str = ""  # full text scanned by the resolver; only ``text`` is stored
    author: str = ""
    url: str = ""
    action: str | None = None
    commit_sha: str | None = None
    pr_number: int | None = None
    pr_state: str | None = None
    pr_merged_at: datetime | None = None
    review_state: str | None = None
    reviewer: str | None = None

    @property
    def dedup_key(self) -> tuple[str, str]:
        return self.external_id, self.kind


# ---------------------------------------------------------------------------
# Payload -> candidate events
# ---------------------------------------------------------------------------

CandidateFactory = Callable[[], CandidateEvent]


def branch_from_ref(ref: str) -> str:
    return ref.removeprefix("refs/heads/")


def push_candidates(payload: dict[str, Any]) -> list[CandidateFactory]:
    envelope = PushPayload.model_validate(payload)
    branch = branch_from_ref(envelope.ref)
    repo = envelope.repository.full_name

    def build(raw: dict[str, Any]) -> CandidateEvent:
        commit = CommitIn.model_validate(raw)
        return CandidateEvent(
            kind=EVENT_PUSH,
            external_id=commit.id,
            repo_full_name=repo,
            branch_name=branch,
            text=first_line(commit.message),
            message=commit.message,
            event_timestamp=as_utc(commit.timestamp),
            author=commit.author.username or commit.author.name,
            url=commit.url,
            commit_sha=commit.id[:7],
        )

    return [lambda raw=raw: build(raw) for raw in envelope.commits]


def pull_request_candidates(payload: dict[str, Any]) -> list[CandidateFactory]:
    def build() -> CandidateEvent:
        data = PullRequestPayload.model_validate(payload)
        pr = data.pull_request
        return CandidateEvent(
            kind=EVENT_PULL_REQUEST,
            external_id=f"{pr.node_id}:{data.action}",
            repo_full_name=data.repository.full_name,
            branch_name=pr.head.ref,
            text=pr.title,
            message=pr.title,
            event_timestamp=as_utc(pr.updated_at) or utc_now(),
            author=pr.user.login,
            url=pr.html_url,
            action=data.action,
            pr_number=pr.number,
            pr_state="merged" if pr.merged_at else pr.state,
            pr_merged_at=as_utc(pr.merged_at),
        )

    return [build]


def pull_request_review_candidates(payload: dict[str, Any]) -> list[CandidateFactory]:
    def build() -> CandidateEvent:
        data = PullRequestReviewPayload.model_validate(payload)
        pr, review = data.pull_request, data.review
        return CandidateEvent(
            kind=EVENT_PULL_REQUEST_REVIEW,
            external_id=review.node_id,
            repo_full_name=data.repository.full_name,
            branch_name=pr.head.ref,
            text=pr.title,
            message=pr.title,
            event_timestamp=as_utc(review.submitted_at),
            author=pr.user.login,
            url=pr.html_url,
            action=data.action,
            pr_number=pr.number,
            pr_state=pr.state,
            review_state=review.state,
            reviewer=review.user.login,
        )

    return [build]


_SPLITTERS: dict[str, Callable[[dict[str, Any]], list[CandidateFactory]]] = {
    EVENT_PUSH: push_candidates,
    EVENT_PULL_REQUEST: pull_request_candidates,
    EVENT_PULL_REQUEST_REVIEW: pull_request_review_candidates,
}


# ---------------------------------------------------------------------------
# Repository -> workspace
# ---------------------------------------------------------------------------


def find_owning_workspace(session: Session, repo_full_name: str) -> OwningWorkspace | None:
    """Keyed lookup on the normalized repository identity among active integrations."""
    key = normalize_repo_name(repo_full_name)
    if not key:
        return None
    row = session.execute(
        select(Integration.id, Integration.workspace_id).where(
            Integration.provider == PROVIDER_GITHUB,
            Integration.status == "ACTIVE",
            Integration.repo_full_name == key,
        )
    ).first()
    return OwningWorkspace(row.id, row.workspace_id) if row else None


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ActivityIngestionStore:
    """Persists candidate events. Callers own the outer transaction and must commit."""

    def __init__(self, session: Session, resolver: ActivityAttributionResolver | None = None) -> None:
        self.session = session
        self.resolver = resolver or ActivityAttributionResolver(session)
        self._owners: dict[str, OwningWorkspace | None] = {}

    def ingest(self, event_name: str, payload: dict[str, Any], delivery_id: str) -> IngestResult:
        splitter = _SPLITTERS.get(event_name)
        if splitter is None:
            log.info("Ignoring unhandled event %s (delivery %s)", event_name, delivery_id)
            return IngestResult(event_name=event_name, delivery_id=delivery_id)
        result = IngestResult(event_name=event_name, delivery_id=delivery_id)
        try:
            factories = splitter(payload)
        except ValidationError as exc:
            log.warning("Malformed %s delivery %s: %s", event_name, delivery_id, exc)
            result.received = 1
            result.failed = 1
            return result
        return self._ingest_all(factories, result)

    def ingest_push(self, payload: dict[str, Any], delivery_id: str) -> IngestResult:
        return self.ingest(EVENT_PUSH, payload, delivery_id)

    def ingest_pull_request(self, payload: dict[str, Any], delivery_id: str) -> IngestResult:
        return self.ingest(EVENT_PULL_REQUEST, payload, delivery_id)

    def ingest_pull_request_review(self, payload: dict[str, Any], delivery_id: str) -> IngestResult:
        return self.ingest(EVENT_PULL_REQUEST_REVIEW, payload, delivery_id)

    def _ingest_all(self, factories: list[CandidateFactory], result: IngestResult) -> IngestResult:
        result.received = len(factories)
        for idx, factory in enumerate(factories):
            try:
                self._ingest_one(factory(), result)
            except Exception:
                log.warning(
                    "Event %d of %s delivery %s failed", idx, result.event_name, result.delivery_id,
                    exc_info=True,
                )
                result.failed += 1
        log.info(
            "Delivery %s (%s): stored=%d duplicates=%d dropped=%d failed=%d",
            result.delivery_id, result.event_name, result.stored, result.duplicates,
            result.dropped, result.failed,
        )
        return result

    def _owner_for(self, repo_full_name: str) -> OwningWorkspace | None:
        key = normalize_repo_name(repo_full_name)
        if key not in self._owners:
            self._owners[key] = find_owning_workspace(self.session, key)
            if self._owners[key] is None:
                log.info("No active integration for repository %s, dropping its events", repo_full_name)
        return self._owners[key]

    def _exists(self, candidate: CandidateEvent) -> bool:
        external_id, event_type = candidate.dedup_key
        return self.session.execute(
            select(ActivityEvent.id).where(
                ActivityEvent.external_id == external_id,
                ActivityEvent.event_type == event_type,
            )
        ).first() is not None

    def _ingest_one(self, candidate: CandidateEvent, result: IngestResult) -> None:
        # One savepoint per candidate: a failed statement rolls back to here and
        # leaves the outer transaction usable for the siblings
        try:
            with self.session.begin_nested():
                row = self._persist(candidate, result)
        except IntegrityError:
            if not self._exists(candidate):
                raise
            # A concurrent writer stored the same natural key first
            log.debug("Lost insert race for %s/%s", candidate.kind, candidate.external_id)
            result.duplicates += 1
            return
        if row is not None:
            result.stored += 1
            result.event_ids.append(row.id)

    def _persist(self, candidate: CandidateEvent, result: IngestResult) -> ActivityEvent | None:
        if self._exists(candidate):
            result.duplicates += 1
            return None

        owner = self._owner_for(candidate.repo_full_name)
        if owner is None:
            result.dropped += 1
            return None

        mapping = self.resolver.resolve(candidate.branch_name, candidate.message, owner.workspace_id)
        row = ActivityEvent(
            event_type=candidate.kind,
            event_action=candidate.action,
            external_id=candidate.external_id,
            delivery_id=result.delivery_id,
            event_timestamp=candidate.event_timestamp,
            branch_name=candidate.branch_name,
            text=candidate.text,
            author=candidate.author,
            url=candidate.url,
            commit_sha=candidate.commit_sha,
            pr_number=candidate.pr_number,
            pr_state=candidate.pr_state,
            pr_merged_at=candidate.pr_merged_at,
            review_state=candidate.review_state,
            reviewer=candidate.reviewer,
            repo_full_name=normalize_repo_name(candidate.repo_full_name),
            workspace_id=owner.workspace_id,
            integration_id=owner.integration_id,
            work_item_id=mapping.work_item_id if mapping else None,
            mapping_method=mapping.method if mapping else None,
            mapping_confidence=mapping.confidence if mapping else None,
        )
        self.session.add(row)
        self.session.flush()
        return row


def activity_summary(session: Session, workspace_id: str, since: datetime) -> ActivitySummary:
    rows = session.execute(
        select(
            ActivityEvent.event_type, ActivityEvent.event_action,
            ActivityEvent.pr_state, ActivityEvent.work_item_id,
        ).where(
            ActivityEvent.workspace_id == workspace_id,
            ActivityEvent.event_timestamp >= as_utc(since),
        )
    ).all()
    mapped = sum(1 for r in rows if r.work_item_id is not None)
    return ActivitySummary(
        workspace_id=workspace_id,
        since=since,
        total_commits=sum(1 for r in rows if r.event_type == EVENT_PUSH),
        total_prs_opened=sum(
            1 for r in rows if r.event_type == EVENT_PULL_REQUEST and r.event_action == "opened"
        ),
        total_prs_merged=sum(
            1 for r in rows if r.event_type == EVENT_PULL_REQUEST and r.pr_state == "merged"
        ),
        total_reviews=sum(1 for r in rows if r.event_type == EVENT_PULL_REQUEST_REVIEW),
        mapped_count=mapped,
        unmapped_count=len(rows) - mapped,
    )
