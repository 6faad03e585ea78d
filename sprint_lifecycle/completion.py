"""Sprint completion: classify tasks, migrate spillover, close the sprint."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field, replace

from .database import atomic, now_timestamp
from .errors import (
    ConflictError,
    InvalidStateError,
    InvalidTargetError,
    NotFoundError,
    ValidationError,
)
from .factory import SprintFactory
from .migration import MigrationExecutor, MigrationTarget
from .models import (
    ACTIVE,
    COMPLETED,
    CompletionResult,
    IncompleteTask,
    MigrationPlan,
    ProgressSnapshot,
    Sprint,
    Task,
)
from .notifications import (
    SPRINT_COMPLETED,
    SPRINT_CREATED,
    SPRINT_TASKS_MIGRATED,
    NotificationDispatcher,
    SprintEvent,
    dispatch,
)
from .sprint_store import SprintStore
from .state_machine import ensure_transition
from .task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class TaskPartition:
    """A sprint's tasks split by completion, read once at the start."""

    complete: list[Task] = field(default_factory=list)
    incomplete: list[Task] = field(default_factory=list)

    @classmethod
    def of(cls, tasks: list[Task]) -> TaskPartition:
        partition = cls()
        for task in tasks:
            if task.is_complete:
                partition.complete.append(task)
            else:
                partition.incomplete.append(task)
        return partition

    @property
    def total(self) -> int:
        return len(self.complete) + len(self.incomplete)

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            tasks_completed=len(self.complete),
            total_tasks=self.total,
            story_points_completed=sum(t.story_points for t in self.complete),
            total_story_points=sum(
                t.story_points for t in self.complete + self.incomplete
            ),
        )


def validate_plan(plan: MigrationPlan) -> None:
    """Reject plans that cannot be carried out.

    Raises:
        ValidationError: If a selection has no destination, or two.
    """
    if plan.target_sprint_id is not None and plan.new_sprint is not None:
        msg = "Choose either target_sprint_id or new_sprint, not both"
        raise ValidationError(msg)
    if plan.selected_task_ids and (
        plan.target_sprint_id is None and plan.new_sprint is None
    ):
        msg = "selected_task_ids requires target_sprint_id or new_sprint"
        raise ValidationError(msg)


class CompletionCoordinator:
    """Closes an active sprint while accounting for every assigned task.

    Every task assigned when completion starts ends up in exactly one place:
    still in the sprint (complete), in the backlog, or in an open target
    sprint.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        sprints: SprintStore,
        tasks: TaskStore,
        factory: SprintFactory | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ):
        self.conn = conn
        self.sprints = sprints
        self.tasks = tasks
        self.factory = factory or SprintFactory(sprints, dispatcher)
        self.executor = MigrationExecutor(tasks)
        self.dispatcher = dispatcher

    def _load(self, sprint_id: int) -> Sprint:
        sprint = self.sprints.find_sprint_by_id(sprint_id)
        if sprint is None:
            msg = f"Sprint {sprint_id} not found"
            raise NotFoundError(msg)
        return sprint

    def get_incomplete_tasks(self, sprint_id: int) -> list[IncompleteTask]:
        """List the unfinished, non-archived tasks currently in a sprint.

        Subtask state is informational only; it never blocks completion.

        Raises:
            NotFoundError: If the sprint does not exist.
        """
        self._load(sprint_id)
        return [
            IncompleteTask.from_task(t)
            for t in self.tasks.find_tasks_by_sprint(sprint_id, include_archived=False)
            if not t.is_complete
        ]

    def _resolve_target(self, sprint: Sprint, plan: MigrationPlan) -> tuple[Sprint, bool]:
        """Find or create the sprint that receives selected tasks.

        Returns:
            (target sprint, whether it was created here).
        """
        if plan.new_sprint is not None:
            spec = plan.new_sprint
            if not spec.project:
                spec = replace(spec, project=sprint.project)
            return self.factory.create(spec, notify=False), True

        target = self.sprints.find_sprint_by_id(plan.target_sprint_id)  # type: ignore[arg-type]
        if target is None:
            msg = f"Target sprint {plan.target_sprint_id} not found"
            raise NotFoundError(msg)
        if target.id == sprint.id:
            msg = "Cannot move tasks into the sprint being completed"
            raise InvalidTargetError(msg)
        if not target.is_open:
            msg = f"Cannot move tasks into {target.status} sprint {target.id}"
            raise InvalidTargetError(msg)
        return target, False

    def _plan_moves(
        self, sprint: Sprint, incomplete: list[Task], plan: MigrationPlan
    ) -> tuple[list[tuple[Task, MigrationTarget]], Sprint | None, bool]:
        """Decide a destination for every incomplete task.

        Archived tasks are never offered for selection and always go to the
        backlog. Selected ids that are not incomplete tasks of this sprint
        are ignored, but a named target sprint is still checked.
        """
        selectable = {t.id for t in incomplete if not t.archived}
        selected = selectable & set(plan.selected_task_ids)

        target: Sprint | None = None
        created = False
        if selected:
            target, created = self._resolve_target(sprint, plan)
        elif selectable and plan.selected_task_ids and plan.target_sprint_id is not None:
            self._resolve_target(sprint, plan)

        moves = []
        for task in incomplete:
            if target is not None and task.id in selected:
                moves.append((task, MigrationTarget.sprint(target.id)))
            else:
                moves.append((task, MigrationTarget.backlog()))
        return moves, target, created

    def _migrate(
        self, sprint_id: int, moves: list[tuple[Task, MigrationTarget]]
    ) -> tuple[list[int], list[int], list[int], list[int]]:
        """Run each move in its own savepoint.

        Returns:
            (moved to backlog, moved to sprint, skipped, failed) task ids.
        """
        moved_to_backlog: list[int] = []
        moved_to_sprint: list[int] = []
        skipped: list[int] = []
        failures: list[int] = []

        for task, destination in moves:
            current = self.tasks.find_task_by_id(task.id)
            if current is None or current.sprint_id != sprint_id:
                logger.warning(
                    "Task %d left sprint %d before migration, skipping",
                    task.id,
                    sprint_id,
                )
                skipped.append(task.id)
                continue
            try:
                with atomic(self.conn, "migrate_task"):
                    self.executor.move(task.id, destination, from_sprint_id=sprint_id)
            except Exception:
                logger.warning(
                    "Failed to migrate task %d from sprint %d",
                    task.id,
                    sprint_id,
                    exc_info=True,
                )
                failures.append(task.id)
                continue
            if destination.to_backlog:
                moved_to_backlog.append(task.id)
            else:
                moved_to_sprint.append(task.id)

        return moved_to_backlog, moved_to_sprint, skipped, failures

    def complete(self, sprint_id: int, plan: MigrationPlan | None = None) -> CompletionResult:
        """Complete an active sprint, migrating its unfinished tasks.

        Per-task migration failures do not abort the operation; they are
        returned in ``CompletionResult.partial_failures``.

        Raises:
            NotFoundError: If the sprint or target sprint does not exist.
            InvalidStateError: If the sprint is not active.
            ValidationError: If the plan or new sprint spec is malformed.
            InvalidTargetError: If the target sprint is not open.
            ConflictError: If another request completed the sprint first.
        """
        plan = plan or MigrationPlan()
        ensure_transition(self._load(sprint_id), COMPLETED)
        validate_plan(plan)

        with atomic(self.conn, "complete_sprint"):
            sprint = self._load(sprint_id)
            if sprint.status != ACTIVE:
                msg = f"Sprint {sprint_id} is already {sprint.status}"
                raise ConflictError(msg)

            partition = TaskPartition.of(self.tasks.find_tasks_by_sprint(sprint_id))
            incomplete = [
                IncompleteTask.from_task(t) for t in partition.incomplete if not t.archived
            ]
            moves, target, created = self._plan_moves(sprint, partition.incomplete, plan)
            moved_to_backlog, moved_to_sprint, skipped, failures = self._migrate(
                sprint_id, moves
            )

            completed = self.sprints.update_sprint_status(
                sprint_id,
                expected_status=ACTIVE,
                status=COMPLETED,
                actual_end_date=now_timestamp(),
                progress=partition.snapshot(),
            )
            if completed is None:
                msg = f"Sprint {sprint_id} changed status while completing"
                raise ConflictError(msg)
            if target is not None:
                target = self.sprints.find_sprint_by_id(target.id)

        logger.info(
            "Sprint %d completed: %d/%d tasks done, %d to backlog, %d to sprint %s",
            sprint_id,
            len(partition.complete),
            partition.total,
            len(moved_to_backlog),
            len(moved_to_sprint),
            target.id if target else "-",
        )
        if failures:
            logger.warning(
                "Sprint %d completed with %d failed migration(s): %s",
                sprint_id,
                len(failures),
                failures,
            )

        if created and target is not None:
            dispatch(self.dispatcher, SprintEvent.for_sprint(SPRINT_CREATED, target))
        dispatch(
            self.dispatcher,
            SprintEvent.for_sprint(
                SPRINT_COMPLETED,
                completed,
                moved_to_backlog=moved_to_backlog,
                moved_to_sprint=moved_to_sprint,
                target_sprint_id=target.id if target else None,
            ),
        )

        return CompletionResult(
            sprint=completed,
            moved_to_backlog=moved_to_backlog,
            moved_to_sprint=moved_to_sprint,
            target_sprint=target,
            created_sprint=target if created else None,
            incomplete=incomplete,
            skipped=skipped,
            partial_failures=failures,
        )

    def retry_migrations(self, sprint_id: int, plan: MigrationPlan) -> CompletionResult:
        """Move tasks a completion failed to migrate out of a completed sprint.

        ``plan.selected_task_ids`` names the tasks to retry, usually the
        ``partial_failures`` of an earlier completion. They go to the plan's
        target sprint or new sprint, or to the backlog when the plan names
        neither. Ids that are not unfinished tasks still in the sprint are
        ignored, so a retry can be repeated safely.

        Raises:
            NotFoundError: If the sprint or target sprint does not exist.
            InvalidStateError: If the sprint is not completed.
            ValidationError: If no task ids are given, or two destinations.
            InvalidTargetError: If the target sprint is not open.
        """
        if not plan.selected_task_ids:
            msg = "selected_task_ids is required"
            raise ValidationError(msg, {"selected_task_ids": msg})
        if plan.target_sprint_id is not None and plan.new_sprint is not None:
            msg = "Choose either target_sprint_id or new_sprint, not both"
            raise ValidationError(msg)

        with atomic(self.conn, "retry_migrations"):
            sprint = self._load(sprint_id)
            if sprint.status != COMPLETED:
                msg = (
                    f"Sprint {sprint_id} is {sprint.status}; "
                    "only completed sprints have migrations to retry"
                )
                raise InvalidStateError(msg)

            stranded = [
                t
                for t in self.tasks.find_tasks_by_sprint(sprint_id)
                if t.id in plan.selected_task_ids and not t.is_complete
            ]
            target: Sprint | None = None
            created = False
            wants_sprint = plan.target_sprint_id is not None or plan.new_sprint is not None
            if wants_sprint and any(not t.archived for t in stranded):
                target, created = self._resolve_target(sprint, plan)

            moves = [
                (
                    t,
                    MigrationTarget.sprint(target.id)
                    if target is not None and not t.archived
                    else MigrationTarget.backlog(),
                )
                for t in stranded
            ]
            moved_to_backlog, moved_to_sprint, skipped, failures = self._migrate(
                sprint_id, moves
            )
            if target is not None:
                target = self.sprints.find_sprint_by_id(target.id)

        logger.info(
            "Retried %d migration(s) from sprint %d: %d to backlog, %d to sprint %s, %d failed",
            len(moves),
            sprint_id,
            len(moved_to_backlog),
            len(moved_to_sprint),
            target.id if target else "-",
            len(failures),
        )

        if created and target is not None:
            dispatch(self.dispatcher, SprintEvent.for_sprint(SPRINT_CREATED, target))
        if moved_to_backlog or moved_to_sprint:
            dispatch(
                self.dispatcher,
                SprintEvent.for_sprint(
                    SPRINT_TASKS_MIGRATED,
                    sprint,
                    moved_to_backlog=moved_to_backlog,
                    moved_to_sprint=moved_to_sprint,
                    target_sprint_id=target.id if target else None,
                ),
            )

        return CompletionResult(
            sprint=sprint,
            moved_to_backlog=moved_to_backlog,
            moved_to_sprint=moved_to_sprint,
            target_sprint=target,
            created_sprint=target if created else None,
            incomplete=[IncompleteTask.from_task(t) for t in stranded],
            skipped=skipped,
            partial_failures=failures,
        )
