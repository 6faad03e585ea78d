"""Single-task sprint reassignment with provenance stamping."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import NotFoundError
from .models import SprintAssignment, Task
from .task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationTarget:
    """Destination for a migrated task: the backlog or a sprint."""

    to_sprint_id: int | None = None
    to_backlog: bool = False

    def __post_init__(self):
        if self.to_backlog == (self.to_sprint_id is not None):
            msg = "MigrationTarget needs exactly one of to_sprint_id or to_backlog"
            raise ValueError(msg)

    @classmethod
    def backlog(cls) -> MigrationTarget:
        return cls(to_backlog=True)

    @classmethod
    def sprint(cls, sprint_id: int) -> MigrationTarget:
        return cls(to_sprint_id=sprint_id)

    def assignment(self, from_sprint_id: int) -> SprintAssignment:
        if self.to_backlog:
            return SprintAssignment(
                sprint_id=None,
                moved_from_sprint=from_sprint_id,
                moved_to_sprint=None,
                moved_to_backlog=True,
            )
        return SprintAssignment(
            sprint_id=self.to_sprint_id,
            moved_from_sprint=from_sprint_id,
            moved_to_sprint=self.to_sprint_id,
            moved_to_backlog=False,
        )


class MigrationExecutor:
    """Moves one task out of a closing sprint.

    Only the sprint reference and the three provenance fields change; status,
    title and subtasks are left alone. Repeating a move with the same
    arguments writes nothing.
    """

    def __init__(self, tasks: TaskStore):
        self.tasks = tasks

    def move(self, task_id: int, target: MigrationTarget, *, from_sprint_id: int) -> Task:
        """Reassign a task to the backlog or another sprint.

        Returns:
            The task after the move.

        Raises:
            NotFoundError: If the task does not exist.
        """
        task = self.tasks.find_task_by_id(task_id)
        if task is None:
            msg = f"Task {task_id} not found"
            raise NotFoundError(msg)

        patch = target.assignment(from_sprint_id)
        if patch.matches(task):
            logger.debug("Task %d already migrated, nothing to write", task_id)
            return task

        updated = self.tasks.update_task_sprint_assignment(task_id, patch)
        if updated is None:
            msg = f"Task {task_id} not found"
            raise NotFoundError(msg)

        if target.to_backlog:
            logger.info("Moved task %d from sprint %d to backlog", task_id, from_sprint_id)
        else:
            logger.info(
                "Moved task %d from sprint %d to sprint %d",
                task_id,
                from_sprint_id,
                target.to_sprint_id,
            )
        return updated
