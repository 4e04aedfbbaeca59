"""Tests for daily snapshot capture and burndown reconstruction."""
from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from cadence.burndown import BurndownSnapshotService, capture_active_sprints, count_activity_for_day
from cadence.errors import SprintNotFoundError
from cadence.models import (
    ActivityEvent,
    Base,
    Integration,
    Sprint,
    SprintMembership,
    SprintSnapshot,
    WorkItem,
    Workspace,
)

START = datetime(2024, 5, 1, tzinfo=UTC)
END = datetime(2024, 5, 11, tzinfo=UTC)
NOW = datetime(2024, 5, 3, 12, 0, tzinfo=UTC)


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    s = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    s.add(Workspace(id="ws1", name="Acme"))
    s.add(Integration(id="int1", workspace_id="ws1", repo_full_name="acme/api"))
    s.add(Sprint(id="s1", workspace_id="ws1", name="Sprint 1", status="ACTIVE", start_date=START, end_date=END))
    s.flush()
    yield s
    s.close()


def _item(session, sprint_id="s1", status="TODO", effort=None) -> WorkItem:
    item = WorkItem(workspace_id="ws1", kanban_status=status, effort_estimate=effort)
    session.add(item)
    session.flush()
    session.add(SprintMembership(sprint_id=sprint_id, work_item_id=item.id, added_at=START - timedelta(hours=1)))
    session.flush()
    return item


def _event(session, external_id, event_type, when, action=None, merged_at=None) -> None:
    session.add(ActivityEvent(
        event_type=event_type, event_action=action, external_id=external_id,
        event_timestamp=when, pr_merged_at=merged_at,
        workspace_id="ws1", integration_id="int1",
    ))
    session.flush()


def _snapshot(session, day, total, completed, sprint_id="s1") -> None:
    session.add(SprintSnapshot(sprint_id=sprint_id, snapshot_date=day, total_effort=total, completed_effort=completed))
    session.flush()


class TestCapture:
    def test_same_day_capture_replaces_row(self, session):
        item = _item(session, status="IN_PROGRESS", effort=5)
        _item(session, status="TODO", effort=3)
        service = BurndownSnapshotService(session)

        first = service.capture_daily_snapshot("s1", now=NOW)
        assert first.completed_effort == 0

        item.kanban_status = "DONE"
        session.flush()
        second = service.capture_daily_snapshot("s1", now=NOW + timedelta(hours=6))
        session.commit()

        rows = session.execute(
            select(SprintSnapshot).execution_options(populate_existing=True)
        ).scalars().all()
        assert len(rows) == 1
        assert second.snapshot_id == first.snapshot_id == rows[0].id
        assert rows[0].snapshot_date == date(2024, 5, 3)
        assert rows[0].done_count == 1
        assert rows[0].in_progress_count == 0
        assert rows[0].todo_count == 1
        assert rows[0].completed_effort == 5
        assert rows[0].total_effort == 8
        assert rows[0].actions_completed == 1

    def test_next_day_adds_row(self, session):
        _item(session, effort=2)
        service = BurndownSnapshotService(session)
        service.capture_daily_snapshot("s1", now=NOW)
        service.capture_daily_snapshot("s1", now=NOW + timedelta(days=1))
        assert len(session.execute(select(SprintSnapshot)).scalars().all()) == 2

    def test_summary_carries_activity(self, session):
        _event(session, "sha1", "push", NOW - timedelta(hours=2))
        summary = BurndownSnapshotService(session).capture_daily_snapshot("s1", now=NOW)
        assert summary.sprint_id == "s1"
        assert summary.date == date(2024, 5, 3)
        assert summary.commits_count == 1
        assert summary.kanban_counts["TODO"] == 0

    def test_unknown_sprint(self, session):
        with pytest.raises(SprintNotFoundError):
            BurndownSnapshotService(session).capture_daily_snapshot("missing", now=NOW)


class TestActivityCounts:
    def test_counts_within_utc_day(self, session):
        day = datetime(2024, 5, 3, tzinfo=UTC)
        _event(session, "c1", "push", day + timedelta(hours=1))
        _event(session, "c2", "push", day + timedelta(hours=23, minutes=59))
        _event(session, "c0", "push", day - timedelta(seconds=1))
        _event(session, "c3", "push", day + timedelta(days=1))
        _event(session, "pr:opened", "pull_request", day + timedelta(hours=2), action="opened")
        _event(session, "pr:closed", "pull_request", day + timedelta(hours=3), action="closed",
               merged_at=day + timedelta(hours=3))
        _event(session, "pr2:closed", "pull_request", day + timedelta(hours=4), action="closed")
        _event(session, "rev1", "pull_request_review", day + timedelta(hours=5))

        counts = count_activity_for_day(session, date(2024, 5, 3))
        assert counts == {"commits_count": 2, "prs_opened": 1, "prs_merged": 1, "prs_reviewed": 1}

    def test_empty_day(self, session):
        assert count_activity_for_day(session, date(2024, 5, 3)) == {
            "commits_count": 0, "prs_opened": 0, "prs_merged": 0, "prs_reviewed": 0,
        }


class TestBurndownSeries:
    def test_ideal_line(self, session):
        _snapshot(session, date(2024, 5, 1), total=100, completed=0)
        _snapshot(session, date(2024, 5, 6), total=100, completed=40)
        _snapshot(session, date(2024, 5, 11), total=120, completed=90)
        _snapshot(session, date(2024, 5, 13), total=120, completed=120)

        points = BurndownSnapshotService(session).get_burndown_series("s1")
        assert [p.date for p in points] == [date(2024, 5, 1), date(2024, 5, 6), date(2024, 5, 11), date(2024, 5, 13)]
        assert points[0].ideal_remaining == 100
        assert points[1].ideal_remaining == pytest.approx(50)
        assert points[1].remaining_effort == 60
        assert points[1].completed_effort == 40
        # ideal uses the first snapshot's effort and never goes below zero
        assert points[2].ideal_remaining == 0
        assert points[2].remaining_effort == 30
        assert points[3].ideal_remaining == 0

    def test_no_snapshots(self, session):
        assert BurndownSnapshotService(session).get_burndown_series("s1") == []

    def test_missing_dates(self, session):
        session.add(Sprint(id="s2", workspace_id="ws1", status="ACTIVE", start_date=START, end_date=None))
        session.flush()
        _snapshot(session, date(2024, 5, 1), total=10, completed=0, sprint_id="s2")
        assert BurndownSnapshotService(session).get_burndown_series("s2") == []

    def test_zero_length_sprint(self, session):
        session.add(Sprint(id="s3", workspace_id="ws1", status="ACTIVE", start_date=START, end_date=START))
        session.flush()
        _snapshot(session, date(2024, 5, 1), total=10, completed=2, sprint_id="s3")
        points = BurndownSnapshotService(session).get_burndown_series("s3")
        assert len(points) == 1
        assert points[0].ideal_remaining == 0
        assert points[0].remaining_effort == 8

    def test_unknown_sprint(self, session):
        with pytest.raises(SprintNotFoundError):
            BurndownSnapshotService(session).get_burndown_series("missing")


class TestCaptureActiveSprints:
    def test_captures_each_active_sprint(self, session):
        session.add(Sprint(id="s2", workspace_id="ws1", status="ACTIVE", start_date=START, end_date=END))
        session.add(Sprint(id="s9", workspace_id="ws1", status="COMPLETED", start_date=START, end_date=END))
        session.flush()
        _item(session, "s1", effort=3)
        _item(session, "s2", effort=4)

        outcome = capture_active_sprints(session, now=NOW)
        session.commit()
        assert outcome == {"captured": ["s1", "s2"], "failed": []}
        sprint_ids = session.execute(select(SprintSnapshot.sprint_id)).scalars().all()
        assert sorted(sprint_ids) == ["s1", "s2"]

    def test_failure_is_isolated(self, session, monkeypatch):
        session.add(Sprint(id="s2", workspace_id="ws1", status="ACTIVE", start_date=START, end_date=END))
        session.flush()
        original = BurndownSnapshotService.capture_daily_snapshot

        def flaky(self, sprint_id, now=None):
            if sprint_id == "s1":
                raise RuntimeError("boom")
            return original(self, sprint_id, now=now)

        monkeypatch.setattr(BurndownSnapshotService, "capture_daily_snapshot", flaky)
        outcome = capture_active_sprints(session, now=NOW)
        assert outcome == {"captured": ["s2"], "failed": ["s1"]}
