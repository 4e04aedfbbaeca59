"""Tests for live sprint metrics, active sprint lookup and velocity history."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cadence.errors import NotFoundError, SprintNotFoundError
from cadence.metrics import SprintMetricsCalculator, velocity_history
from cadence.models import KANBAN_STATUSES, Base, Sprint, SprintMembership, WorkItem, Workspace
from cadence.services import get_active_sprint, list_active_sprint_ids

START = datetime(2024, 5, 1, tzinfo=UTC)
END = datetime(2024, 5, 11, tzinfo=UTC)


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    s = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    s.add(Workspace(id="ws1", name="Acme"))
    s.flush()
    yield s
    s.close()


def _sprint(session, sprint_id="s1", status="ACTIVE", start=START, end=END, name="Sprint 1") -> Sprint:
    sprint = Sprint(id=sprint_id, workspace_id="ws1", name=name, status=status, start_date=start, end_date=end)
    session.add(sprint)
    session.flush()
    return sprint


def _item(session, sprint_id, status="TODO", effort=None, added_at=START - timedelta(days=1)) -> WorkItem:
    item = WorkItem(workspace_id="ws1", kanban_status=status, effort_estimate=effort)
    session.add(item)
    session.flush()
    session.add(SprintMembership(sprint_id=sprint_id, work_item_id=item.id, added_at=added_at))
    session.flush()
    return item


class TestSprintMetrics:
    def test_kanban_counts_cover_every_status(self, session):
        _sprint(session)
        for status in ("TODO", "TODO", "IN_PROGRESS", "DONE"):
            _item(session, "s1", status=status)
        result = SprintMetricsCalculator(session).compute("s1")
        assert set(result.kanban_counts) == set(KANBAN_STATUSES)
        assert sum(result.kanban_counts.values()) == result.total_actions == 4
        assert result.kanban_counts["TODO"] == 2
        assert result.kanban_counts["BACKLOG"] == 0
        assert result.kanban_counts["CANCELLED"] == 0

    def test_effort_and_scope_creep(self, session):
        _sprint(session)
        _item(session, "s1", status="DONE", effort=5)
        _item(session, "s1", status="IN_PROGRESS", effort=3)
        _item(session, "s1", status="TODO", effort=None)
        _item(session, "s1", status="DONE", effort=2, added_at=START + timedelta(days=2))

        result = SprintMetricsCalculator(session).compute("s1")
        assert result.total_effort == 10
        assert result.added_effort == 2
        assert result.planned_effort == 8
        assert result.completed_effort == 7
        assert result.velocity == result.completed_effort
        assert (result.planned_actions, result.added_actions, result.completed_actions) == (3, 1, 2)
        assert result.completion_rate == pytest.approx(2 / 3 * 100)

    def test_added_exactly_at_start_is_planned(self, session):
        _sprint(session)
        _item(session, "s1", added_at=START)
        result = SprintMetricsCalculator(session).compute("s1")
        assert (result.planned_actions, result.added_actions) == (1, 0)

    def test_no_start_date_means_nothing_added(self, session):
        _sprint(session, start=None, end=None)
        _item(session, "s1", effort=4, added_at=datetime(2030, 1, 1, tzinfo=UTC))
        result = SprintMetricsCalculator(session).compute("s1")
        assert result.added_actions == 0
        assert result.added_effort == 0
        assert result.planned_effort == 4

    def test_empty_sprint(self, session):
        _sprint(session)
        result = SprintMetricsCalculator(session).compute("s1")
        assert result.total_actions == 0
        assert result.total_effort == 0
        assert result.completion_rate == 0
        assert all(count == 0 for count in result.kanban_counts.values())

    def test_completion_rate_is_bounded(self, session):
        _sprint(session)
        _item(session, "s1", status="DONE")
        later = START + timedelta(days=1)
        _item(session, "s1", status="DONE", added_at=later)
        _item(session, "s1", status="DONE", added_at=later)
        result = SprintMetricsCalculator(session).compute("s1")
        assert result.planned_actions == 1
        assert 0 <= result.completion_rate <= 100

    def test_zero_planned_items(self, session):
        _sprint(session)
        _item(session, "s1", status="DONE", added_at=START + timedelta(days=1))
        assert SprintMetricsCalculator(session).compute("s1").completion_rate == 0

    def test_unknown_sprint(self, session):
        with pytest.raises(SprintNotFoundError) as excinfo:
            SprintMetricsCalculator(session).compute("missing")
        assert isinstance(excinfo.value, NotFoundError)
        assert excinfo.value.category == "not_found"
        assert "missing" in str(excinfo.value)


class TestActiveSprint:
    def test_newest_active_sprint(self, session):
        _sprint(session, "old", start=START - timedelta(days=30), end=START - timedelta(days=20))
        _sprint(session, "new", name="Sprint 2")
        _sprint(session, "done", status="COMPLETED", start=START + timedelta(days=30))
        _item(session, "new")
        _item(session, "new")

        active = get_active_sprint(session, "ws1")
        assert active is not None
        assert active.id == "new"
        assert active.action_count == 2
        assert list_active_sprint_ids(session) == ["new", "old"]

    def test_no_active_sprint(self, session):
        _sprint(session, status="PLANNED")
        assert get_active_sprint(session, "ws1") is None


class TestVelocityHistory:
    def test_completed_sprints_only(self, session):
        for idx, effort in enumerate((4, 8, 6)):
            sprint_id = f"done{idx}"
            _sprint(
                session, sprint_id, status="COMPLETED",
                start=START + timedelta(days=14 * idx), end=END + timedelta(days=14 * idx),
            )
            _item(session, sprint_id, status="DONE", effort=effort, added_at=START + timedelta(days=14 * idx))
        _sprint(session, "current", start=START + timedelta(days=60), end=END + timedelta(days=60))
        _item(session, "current", status="DONE", effort=100)

        history = velocity_history(session, "ws1", count=2)
        assert [e.sprint_id for e in history.sprints] == ["done2", "done1"]
        assert [e.velocity for e in history.sprints] == [6, 8]
        assert history.rolling_velocity == 7

    def test_no_completed_sprints(self, session):
        history = velocity_history(session, "ws1")
        assert history.sprints == []
        assert history.rolling_velocity == 0
