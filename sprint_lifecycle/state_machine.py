"""Sprint lifecycle state machine.

Sprint states: planning → active → completed
               planning | active → cancelled
Completed and cancelled are terminal; nothing returns to planning.
"""

from __future__ import annotations

import logging
import sqlite3

from .database import atomic, now_timestamp
from .errors import ConflictError, InvalidStateError, NoTasksError, NotFoundError
from .migration import MigrationExecutor, MigrationTarget
from .models import ACTIVE, CANCELLED, COMPLETED, PLANNING, Sprint
from .notifications import (
    SPRINT_CANCELLED,
    SPRINT_STARTED,
    NotificationDispatcher,
    SprintEvent,
    dispatch,
)
from .sprint_store import SprintStore
from .task_store import TaskStore

logger = logging.getLogger(__name__)

TRANSITIONS: dict[str, frozenset[str]] = {
    PLANNING: frozenset({ACTIVE, CANCELLED}),
    ACTIVE: frozenset({COMPLETED, CANCELLED}),
    COMPLETED: frozenset(),  # terminal
    CANCELLED: frozenset(),  # terminal
}

_ACTION_NAMES = {ACTIVE: "started", COMPLETED: "completed", CANCELLED: "cancelled"}


def can_transition(current: str, target: str) -> bool:
    """Check if a sprint status transition is legal."""
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(sprint: Sprint, target: str) -> None:
    """Raise InvalidStateError unless ``sprint`` may move to ``target``."""
    if can_transition(sprint.status, target):
        return
    required = sorted(s for s, targets in TRANSITIONS.items() if target in targets)
    action = _ACTION_NAMES.get(target, f"moved to {target}")
    msg = (
        f"Sprint {sprint.id} is {sprint.status} "
        f"(must be {' or '.join(required) or 'nothing'} to be {action})"
    )
    raise InvalidStateError(msg)


class SprintStateMachine:
    """Start and cancel operations; completion lives in CompletionCoordinator."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        sprints: SprintStore,
        tasks: TaskStore,
        dispatcher: NotificationDispatcher | None = None,
    ):
        self.conn = conn
        self.sprints = sprints
        self.tasks = tasks
        self.executor = MigrationExecutor(tasks)
        self.dispatcher = dispatcher

    def _load(self, sprint_id: int) -> Sprint:
        sprint = self.sprints.find_sprint_by_id(sprint_id)
        if sprint is None:
            msg = f"Sprint {sprint_id} not found"
            raise NotFoundError(msg)
        return sprint

    def start(self, sprint_id: int) -> Sprint:
        """Move a planning sprint to active.

        Raises:
            NotFoundError: If the sprint does not exist.
            InvalidStateError: If the sprint is not in planning.
            NoTasksError: If no (non-archived) task is assigned to it.
            ConflictError: If another request changed its status first.
        """
        ensure_transition(self._load(sprint_id), ACTIVE)

        with atomic(self.conn, "start_sprint"):
            if self.tasks.count_active_tasks(sprint_id) == 0:
                msg = f"Sprint {sprint_id} has no tasks; add tasks before starting it"
                raise NoTasksError(msg)
            started = self.sprints.update_sprint_status(
                sprint_id,
                expected_status=PLANNING,
                status=ACTIVE,
                actual_start_date=now_timestamp(),
            )
            if started is None:
                msg = f"Sprint {sprint_id} changed status while starting"
                raise ConflictError(msg)

        logger.info("Sprint %d started", sprint_id)
        dispatch(self.dispatcher, SprintEvent.for_sprint(SPRINT_STARTED, started))
        return started

    def cancel(self, sprint_id: int) -> Sprint:
        """Cancel a planning or active sprint.

        Incomplete tasks still assigned are released to the backlog so no
        work stays stranded in a frozen sprint.

        Raises:
            NotFoundError: If the sprint does not exist.
            InvalidStateError: If the sprint is already completed or cancelled.
            ConflictError: If another request changed its status first.
        """
        sprint = self._load(sprint_id)
        ensure_transition(sprint, CANCELLED)

        released: list[int] = []
        with atomic(self.conn, "cancel_sprint"):
            current = self._load(sprint_id)
            if current.status != sprint.status:
                msg = f"Sprint {sprint_id} changed status while cancelling"
                raise ConflictError(msg)

            for task in self.tasks.find_tasks_by_sprint(sprint_id):
                if task.is_complete:
                    continue
                self.executor.move(
                    task.id, MigrationTarget.backlog(), from_sprint_id=sprint_id
                )
                released.append(task.id)

            cancelled = self.sprints.update_sprint_status(
                sprint_id,
                expected_status=current.status,
                status=CANCELLED,
                actual_end_date=now_timestamp() if current.status == ACTIVE else None,
            )
            if cancelled is None:
                msg = f"Sprint {sprint_id} changed status while cancelling"
                raise ConflictError(msg)

        logger.info(
            "Sprint %d cancelled (%d task(s) released to backlog)",
            sprint_id,
            len(released),
        )
        dispatch(
            self.dispatcher,
            SprintEvent.for_sprint(SPRINT_CANCELLED, cancelled, released=released),
        )
        return cancelled
