"""Tests for sprint completion and spillover migration."""

import sqlite3
import threading

import pytest

from sprint_lifecycle.completion import TaskPartition, validate_plan
from sprint_lifecycle.database import get_connection, init_schema
from sprint_lifecycle.errors import (
    ConflictError,
    InvalidStateError,
    InvalidTargetError,
    NotFoundError,
    PartialFailureError,
    ValidationError,
)
from sprint_lifecycle.models import MigrationPlan, SprintSpec
from sprint_lifecycle.notifications import SPRINT_COMPLETED, SPRINT_CREATED
from sprint_lifecycle.service import SprintService


class RecordingDispatcher:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)


@pytest.fixture()
def db():
    conn = get_connection(":memory:")
    init_schema(conn)
    yield conn
    conn.close()


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def service(db, dispatcher):
    return SprintService(db, dispatcher)


def _spec(name=None, project="proj", **kwargs):
    return SprintSpec(
        project=project,
        name=name,
        start_date=kwargs.pop("start_date", "2026-03-02"),
        end_date=kwargs.pop("end_date", "2026-03-13"),
        **kwargs,
    )


def _active_sprint(service, *statuses, points=1):
    """Create an active sprint holding one task per status."""
    sprint = service.create_sprint(_spec())
    tasks = [
        service.add_task("proj", f"Task {i}", status=s, sprint_id=sprint.id, story_points=points)
        for i, s in enumerate(statuses)
    ]
    service.start_sprint(sprint.id)
    return sprint, tasks


class TestTaskPartition:
    def test_split_and_snapshot(self, service):
        sprint, tasks = _active_sprint(service, "done", "todo", "Completed", points=2)
        partition = TaskPartition.of(service.list_sprint_tasks(sprint.id))
        assert [t.id for t in partition.complete] == [tasks[0].id, tasks[2].id]
        assert [t.id for t in partition.incomplete] == [tasks[1].id]
        snap = partition.snapshot()
        assert (snap.tasks_completed, snap.total_tasks) == (2, 3)
        assert (snap.story_points_completed, snap.total_story_points) == (4, 6)


class TestValidatePlan:
    def test_empty_plan(self):
        validate_plan(MigrationPlan())

    def test_selection_without_destination(self):
        with pytest.raises(ValidationError, match="requires"):
            validate_plan(MigrationPlan(selected_task_ids=frozenset({1})))

    def test_both_destinations(self):
        plan = MigrationPlan(
            selected_task_ids=frozenset({1}), target_sprint_id=2, new_sprint=_spec()
        )
        with pytest.raises(ValidationError, match="not both"):
            validate_plan(plan)


class TestGetIncompleteTasks:
    def test_lists_unfinished_with_subtasks(self, service):
        sprint = service.create_sprint(_spec())
        service.add_task("proj", "Done", status="done", sprint_id=sprint.id)
        parent = service.add_task(
            "proj",
            "Parent",
            status="in_progress",
            sprint_id=sprint.id,
            subtasks=[("a", "done"), ("b", "todo")],
        )
        result = service.get_incomplete_tasks(sprint.id)
        assert [t.task_id for t in result] == [parent.id]
        assert [s.title for s in result[0].incomplete_subtasks] == ["b"]
        assert len(result[0].subtasks) == 2

    def test_excludes_archived(self, service, db):
        sprint = service.create_sprint(_spec())
        service.tasks.insert_task("proj", "Old", sprint_id=sprint.id, archived=True)
        assert service.get_incomplete_tasks(sprint.id) == []

    def test_is_repeatable(self, service):
        sprint, _ = _active_sprint(service, "todo", "done")
        assert service.get_incomplete_tasks(sprint.id) == service.get_incomplete_tasks(
            sprint.id
        )

    def test_missing_sprint(self, service):
        with pytest.raises(NotFoundError):
            service.get_incomplete_tasks(404)

    def test_migrated_task_not_listed_anywhere(self, service):
        """A task stamped moved-to-backlog belongs to no sprint's incomplete list."""
        first, (carried,) = _active_sprint(service, "in_progress")
        service.complete_sprint(first.id)
        other, _ = _active_sprint(service, "todo")

        moved = service.get_task(carried.id)
        assert moved.moved_to_backlog
        for sprint_id in (first.id, other.id):
            ids = [t.task_id for t in service.get_incomplete_tasks(sprint_id)]
            assert carried.id not in ids


class TestCompleteToBacklog:
    def test_default_plan_sends_incomplete_to_backlog(self, service):
        sprint, (done1, done2, wip) = _active_sprint(service, "done", "done", "in_progress")

        result = service.complete_sprint(sprint.id)

        assert result.sprint.status == "completed"
        assert result.sprint.actual_end_date is not None
        assert result.moved_to_backlog == [wip.id]
        assert result.moved_to_sprint == []
        assert result.partial_failures == []
        moved = service.get_task(wip.id)
        assert moved.sprint_id is None
        assert moved.moved_to_backlog is True
        assert moved.moved_from_sprint == sprint.id
        assert moved.status == "in_progress"
        for task in (done1, done2):
            assert service.get_task(task.id).sprint_id == sprint.id

    def test_snapshot_recorded_and_frozen(self, service, db):
        sprint, _ = _active_sprint(service, "done", "todo", "todo", points=3)
        result = service.complete_sprint(sprint.id)

        progress = result.sprint.progress
        assert progress.tasks_completed == 1
        assert progress.total_tasks == 3
        assert progress.story_points_completed == 3
        assert progress.total_story_points == 9
        assert progress.completion_pct == 33

        with pytest.raises(sqlite3.IntegrityError):
            db.execute("UPDATE sprints SET total_tasks = 0 WHERE id = ?", (sprint.id,))

    def test_all_done(self, service):
        sprint, _ = _active_sprint(service, "done")
        result = service.complete_sprint(sprint.id)
        assert result.moved_to_backlog == []
        assert result.incomplete == []

    def test_selected_ids_ignored_without_selection_match(self, service):
        sprint, (wip,) = _active_sprint(service, "todo")
        other = service.create_sprint(_spec())
        plan = MigrationPlan(selected_task_ids=frozenset({9999}), target_sprint_id=other.id)
        result = service.complete_sprint(sprint.id, plan)
        assert result.moved_to_backlog == [wip.id]
        assert result.target_sprint is None

    def test_unmatched_selection_still_checks_target(self, service):
        sprint, (wip,) = _active_sprint(service, "todo")
        cancelled = service.create_sprint(_spec())
        service.cancel_sprint(cancelled.id)
        plan = MigrationPlan(
            selected_task_ids=frozenset({9999}), target_sprint_id=cancelled.id
        )
        with pytest.raises(InvalidTargetError):
            service.complete_sprint(sprint.id, plan)
        assert service.get_sprint(sprint.id).status == "active"
        assert service.get_task(wip.id).sprint_id == sprint.id

    def test_archived_incomplete_goes_to_backlog(self, service):
        sprint = service.create_sprint(_spec())
        live = service.add_task("proj", "Live", sprint_id=sprint.id)
        old = service.tasks.insert_task("proj", "Old", sprint_id=sprint.id, archived=True)
        service.start_sprint(sprint.id)
        target = service.create_sprint(_spec())

        plan = MigrationPlan(
            selected_task_ids=frozenset({live.id, old.id}), target_sprint_id=target.id
        )
        result = service.complete_sprint(sprint.id, plan)

        assert result.moved_to_sprint == [live.id]
        assert result.moved_to_backlog == [old.id]

    def test_events(self, service, dispatcher):
        sprint, (wip,) = _active_sprint(service, "todo")
        dispatcher.events.clear()
        service.complete_sprint(sprint.id)
        assert [e.type for e in dispatcher.events] == [SPRINT_COMPLETED]
        assert dispatcher.events[0].payload["moved_to_backlog"] == [wip.id]


class TestCompleteToSprint:
    def test_existing_planning_target(self, service):
        sprint, (review,) = _active_sprint(service, "review")
        target = service.create_sprint(_spec())

        plan = MigrationPlan(selected_task_ids=frozenset({review.id}), target_sprint_id=target.id)
        result = service.complete_sprint(sprint.id, plan)

        assert result.sprint.status == "completed"
        assert result.moved_to_sprint == [review.id]
        assert result.target_sprint.id == target.id
        assert result.created_sprint is None
        moved = service.get_task(review.id)
        assert moved.sprint_id == target.id
        assert moved.moved_to_sprint == target.id
        assert moved.moved_from_sprint == sprint.id
        assert moved.moved_to_backlog is False

    def test_active_target_allowed(self, service):
        sprint, (wip,) = _active_sprint(service, "todo")
        target, _ = _active_sprint(service, "todo")
        plan = MigrationPlan(selected_task_ids=frozenset({wip.id}), target_sprint_id=target.id)
        result = service.complete_sprint(sprint.id, plan)
        assert result.moved_to_sprint == [wip.id]

    def test_unselected_go_to_backlog(self, service):
        sprint, (a, b) = _active_sprint(service, "todo", "todo")
        target = service.create_sprint(_spec())
        plan = MigrationPlan(selected_task_ids=frozenset({a.id}), target_sprint_id=target.id)
        result = service.complete_sprint(sprint.id, plan)
        assert result.moved_to_sprint == [a.id]
        assert result.moved_to_backlog == [b.id]

    def test_every_task_accounted_for(self, service):
        sprint, tasks = _active_sprint(service, "done", "todo", "review", "done", "blocked")
        target = service.create_sprint(_spec())
        plan = MigrationPlan(
            selected_task_ids=frozenset({tasks[2].id}), target_sprint_id=target.id
        )
        service.complete_sprint(sprint.id, plan)

        for task in tasks:
            current = service.get_task(task.id)
            in_sprint = current.sprint_id == sprint.id and current.is_complete
            in_backlog = current.sprint_id is None and current.moved_to_backlog
            in_target = current.sprint_id == target.id and current.moved_to_sprint == target.id
            assert [in_sprint, in_backlog, in_target].count(True) == 1

    def test_new_sprint(self, service, dispatcher):
        sprint, (wip,) = _active_sprint(service, "in_progress")
        dispatcher.events.clear()
        plan = MigrationPlan(
            selected_task_ids=frozenset({wip.id}),
            new_sprint=SprintSpec(
                project="",
                name="Sprint 5",
                start_date="2026-03-16",
                end_date="2026-03-27",
                capacity=40,
            ),
        )

        result = service.complete_sprint(sprint.id, plan)

        created = result.created_sprint
        assert created is not None
        assert created.name == "Sprint 5"
        assert created.status == "planning"
        assert created.project == "proj"
        assert created.capacity == 40
        assert result.target_sprint == created
        assert service.get_task(wip.id).sprint_id == created.id
        assert result.sprint.status == "completed"
        assert [e.type for e in dispatcher.events] == [SPRINT_CREATED, SPRINT_COMPLETED]

    def test_new_sprint_auto_named(self, service):
        sprint, (wip,) = _active_sprint(service, "todo")
        plan = MigrationPlan(
            selected_task_ids=frozenset({wip.id}),
            new_sprint=_spec(start_date="2026-03-16", end_date="2026-03-27"),
        )
        result = service.complete_sprint(sprint.id, plan)
        assert result.created_sprint.name == "Sprint 2"


class TestCompleteRejected:
    def test_planning_sprint(self, service):
        sprint = service.create_sprint(_spec())
        with pytest.raises(InvalidStateError, match="must be active"):
            service.complete_sprint(sprint.id)

    def test_completed_sprint(self, service):
        sprint, _ = _active_sprint(service, "done")
        service.complete_sprint(sprint.id)
        with pytest.raises(InvalidStateError):
            service.complete_sprint(sprint.id)

    def test_missing_sprint(self, service):
        with pytest.raises(NotFoundError):
            service.complete_sprint(404)

    def test_missing_target(self, service):
        sprint, (wip,) = _active_sprint(service, "todo")
        plan = MigrationPlan(selected_task_ids=frozenset({wip.id}), target_sprint_id=404)
        with pytest.raises(NotFoundError):
            service.complete_sprint(sprint.id, plan)
        assert service.get_sprint(sprint.id).status == "active"
        assert service.get_task(wip.id).sprint_id == sprint.id

    def test_target_is_same_sprint(self, service):
        sprint, (wip,) = _active_sprint(service, "todo")
        plan = MigrationPlan(selected_task_ids=frozenset({wip.id}), target_sprint_id=sprint.id)
        with pytest.raises(InvalidTargetError):
            service.complete_sprint(sprint.id, plan)

    @pytest.mark.parametrize("close", ["complete", "cancel"])
    def test_frozen_target(self, service, close):
        sprint, (wip,) = _active_sprint(service, "todo")
        target, _ = _active_sprint(service, "done")
        if close == "complete":
            service.complete_sprint(target.id)
        else:
            service.cancel_sprint(target.id)

        plan = MigrationPlan(selected_task_ids=frozenset({wip.id}), target_sprint_id=target.id)
        with pytest.raises(InvalidTargetError):
            service.complete_sprint(sprint.id, plan)
        assert service.get_sprint(sprint.id).status == "active"

    def test_invalid_new_sprint_changes_nothing(self, service, dispatcher):
        sprint, (wip,) = _active_sprint(service, "todo")
        dispatcher.events.clear()
        plan = MigrationPlan(
            selected_task_ids=frozenset({wip.id}),
            new_sprint=_spec(start_date="2026-03-27", end_date="2026-03-16"),
        )
        with pytest.raises(ValidationError):
            service.complete_sprint(sprint.id, plan)

        assert service.get_sprint(sprint.id).status == "active"
        assert service.get_task(wip.id).sprint_id == sprint.id
        assert len(service.list_sprints("proj")) == 1
        assert dispatcher.events == []


class TestPartialFailure:
    def test_failed_task_reported_sprint_still_closes(self, service, monkeypatch):
        sprint, (bad, good) = _active_sprint(service, "todo", "todo")
        executor = service.coordinator.executor
        original = executor.move

        def flaky_move(task_id, target, *, from_sprint_id):
            if task_id == bad.id:
                raise RuntimeError("disk on fire")
            return original(task_id, target, from_sprint_id=from_sprint_id)

        monkeypatch.setattr(executor, "move", flaky_move)

        result = service.complete_sprint(sprint.id)

        assert result.sprint.status == "completed"
        assert result.partial_failures == [bad.id]
        assert result.moved_to_backlog == [good.id]
        assert service.get_task(bad.id).sprint_id == sprint.id
        with pytest.raises(PartialFailureError) as exc_info:
            result.raise_for_failures()
        assert exc_info.value.task_ids == [bad.id]

    def test_task_leaving_mid_completion_is_skipped(self, service, monkeypatch):
        sprint, (leaver, stayer) = _active_sprint(service, "todo", "todo")
        tasks = service.tasks
        original = tasks.find_tasks_by_sprint

        def read_then_move(sprint_id, **kwargs):
            result = original(sprint_id, **kwargs)
            tasks.conn.execute(
                "UPDATE tasks SET sprint_id = NULL WHERE id = ?", (leaver.id,)
            )
            return result

        monkeypatch.setattr(tasks, "find_tasks_by_sprint", read_then_move)

        result = service.complete_sprint(sprint.id)

        assert result.skipped == [leaver.id]
        assert result.moved_to_backlog == [stayer.id]
        assert result.sprint.progress.total_tasks == 2


class TestRetryMigrations:
    @pytest.fixture()
    def stranded(self, service, monkeypatch):
        """A completed sprint still holding one task whose migration failed."""
        sprint, (bad, good) = _active_sprint(service, "todo", "todo")
        executor = service.coordinator.executor
        original = executor.move

        def flaky_move(task_id, target, *, from_sprint_id):
            if task_id == bad.id:
                raise RuntimeError("disk on fire")
            return original(task_id, target, from_sprint_id=from_sprint_id)

        monkeypatch.setattr(executor, "move", flaky_move)
        result = service.complete_sprint(sprint.id)
        monkeypatch.setattr(executor, "move", original)
        assert result.partial_failures == [bad.id]
        return sprint, bad, good

    def test_retry_to_backlog(self, service, stranded, dispatcher):
        sprint, bad, _good = stranded
        dispatcher.events.clear()

        result = service.retry_migrations(
            sprint.id, MigrationPlan(selected_task_ids=frozenset({bad.id}))
        )

        assert result.moved_to_backlog == [bad.id]
        assert result.partial_failures == []
        task = service.get_task(bad.id)
        assert task.sprint_id is None
        assert task.moved_from_sprint == sprint.id
        assert task.moved_to_backlog is True
        assert [e.type for e in dispatcher.events] == ["sprint.tasks_migrated"]

    def test_retry_to_existing_sprint(self, service, stranded):
        sprint, bad, _good = stranded
        target = service.create_sprint(_spec())
        result = service.retry_migrations(
            sprint.id,
            MigrationPlan(selected_task_ids=frozenset({bad.id}), target_sprint_id=target.id),
        )
        assert result.moved_to_sprint == [bad.id]
        assert result.target_sprint.id == target.id
        assert service.get_task(bad.id).moved_to_sprint == target.id

    def test_retry_to_new_sprint(self, service, stranded, dispatcher):
        sprint, bad, _good = stranded
        dispatcher.events.clear()
        result = service.retry_migrations(
            sprint.id,
            MigrationPlan(
                selected_task_ids=frozenset({bad.id}),
                new_sprint=_spec(start_date="2026-03-16", end_date="2026-03-27"),
            ),
        )
        assert result.created_sprint.name == "Sprint 2"
        assert service.get_task(bad.id).sprint_id == result.created_sprint.id
        assert [e.type for e in dispatcher.events] == [
            SPRINT_CREATED,
            "sprint.tasks_migrated",
        ]

    def test_retry_is_repeatable(self, service, stranded):
        sprint, bad, good = stranded
        plan = MigrationPlan(selected_task_ids=frozenset({bad.id, good.id}))
        first = service.retry_migrations(sprint.id, plan)
        second = service.retry_migrations(sprint.id, plan)
        assert first.moved_to_backlog == [bad.id]
        assert second.moved_to_backlog == []
        assert second.incomplete == []

    def test_snapshot_unchanged(self, service, stranded):
        sprint, bad, _good = stranded
        before = service.get_sprint(sprint.id).progress
        service.retry_migrations(
            sprint.id, MigrationPlan(selected_task_ids=frozenset({bad.id}))
        )
        assert service.get_sprint(sprint.id).progress == before

    def test_requires_task_ids(self, service, stranded):
        sprint, _bad, _good = stranded
        with pytest.raises(ValidationError):
            service.retry_migrations(sprint.id, MigrationPlan())

    def test_rejects_open_sprint(self, service):
        sprint, (wip,) = _active_sprint(service, "todo")
        with pytest.raises(InvalidStateError, match="only completed sprints"):
            service.retry_migrations(
                sprint.id, MigrationPlan(selected_task_ids=frozenset({wip.id}))
            )
        assert service.get_task(wip.id).sprint_id == sprint.id

    def test_rejects_frozen_target(self, service, stranded):
        sprint, bad, _good = stranded
        with pytest.raises(InvalidTargetError):
            service.retry_migrations(
                sprint.id,
                MigrationPlan(selected_task_ids=frozenset({bad.id}), target_sprint_id=sprint.id),
            )
        assert service.get_task(bad.id).sprint_id == sprint.id


class TestConcurrentCompletion:
    @pytest.fixture()
    def db_path(self, tmp_path):
        path = str(tmp_path / "race.db")
        conn = get_connection(path)
        init_schema(conn)
        conn.close()
        return path

    def test_loser_gets_conflict(self, db_path, monkeypatch):
        conn_a = get_connection(db_path)
        conn_b = get_connection(db_path)
        service_a = SprintService(conn_a)
        service_b = SprintService(conn_b)
        sprint, _ = _active_sprint(service_a, "todo")

        raced = []

        def race_then_validate(plan):
            # The other writer wins between A's first read and A's transaction
            if not raced:
                raced.append(True)
                service_b.complete_sprint(sprint.id)
            validate_plan(plan)

        monkeypatch.setattr(
            "sprint_lifecycle.completion.validate_plan", race_then_validate
        )

        with pytest.raises(ConflictError):
            service_a.complete_sprint(sprint.id)

        assert service_a.get_sprint(sprint.id).status == "completed"
        conn_a.close()
        conn_b.close()

    def test_threads_exactly_one_wins(self, db_path, monkeypatch):
        setup = get_connection(db_path)
        sprint, _ = _active_sprint(SprintService(setup), "todo", "done")
        setup.close()

        barrier = threading.Barrier(2)
        outcomes = []

        def both_read_active(plan):
            # Both callers have seen the sprint as active before either writes
            barrier.wait(timeout=5)
            validate_plan(plan)

        monkeypatch.setattr(
            "sprint_lifecycle.completion.validate_plan", both_read_active
        )

        def worker():
            conn = get_connection(db_path)
            try:
                service = SprintService(conn)
                try:
                    outcomes.append(service.complete_sprint(sprint.id))
                except InvalidStateError as e:
                    outcomes.append(e)
            finally:
                conn.close()

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        wins = [o for o in outcomes if not isinstance(o, Exception)]
        losses = [o for o in outcomes if isinstance(o, Exception)]
        assert len(wins) == 1
        assert len(losses) == 1
        assert isinstance(losses[0], ConflictError)
        assert wins[0].sprint.status == "completed"
