"""Sprint lifecycle operations shared by the JSON API and the CLI."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable

from .completion import CompletionCoordinator
from .errors import InvalidStateError, NotFoundError, ValidationError
from .factory import SprintFactory
from .models import (
    CompletionResult,
    IncompleteTask,
    MigrationPlan,
    Sprint,
    SprintSpec,
    Task,
)
from .notifications import NotificationDispatcher
from .sprint_store import SprintStore
from .state_machine import SprintStateMachine
from .task_store import TaskStore


class SprintService:
    """One entry point per lifecycle operation, over one connection.

    The caller is expected to have authorized the request already.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        dispatcher: NotificationDispatcher | None = None,
    ):
        self.conn = conn
        self.sprints = SprintStore(conn)
        self.tasks = TaskStore(conn)
        self.factory = SprintFactory(self.sprints, dispatcher)
        self.state_machine = SprintStateMachine(
            conn, self.sprints, self.tasks, dispatcher
        )
        self.coordinator = CompletionCoordinator(
            conn, self.sprints, self.tasks, self.factory, dispatcher
        )

    # --- Lifecycle ---

    def create_sprint(self, spec: SprintSpec) -> Sprint:
        return self.factory.create(spec)

    def start_sprint(self, sprint_id: int) -> Sprint:
        return self.state_machine.start(sprint_id)

    def get_incomplete_tasks(self, sprint_id: int) -> list[IncompleteTask]:
        return self.coordinator.get_incomplete_tasks(sprint_id)

    def complete_sprint(
        self, sprint_id: int, plan: MigrationPlan | None = None
    ) -> CompletionResult:
        return self.coordinator.complete(sprint_id, plan)

    def retry_migrations(self, sprint_id: int, plan: MigrationPlan) -> CompletionResult:
        """Retry moving tasks left in a completed sprint by failed migrations."""
        return self.coordinator.retry_migrations(sprint_id, plan)

    def cancel_sprint(self, sprint_id: int) -> Sprint:
        return self.state_machine.cancel(sprint_id)

    # --- Queries ---

    def get_sprint(self, sprint_id: int) -> Sprint:
        sprint = self.sprints.find_sprint_by_id(sprint_id)
        if sprint is None:
            msg = f"Sprint {sprint_id} not found"
            raise NotFoundError(msg)
        return sprint

    def list_sprints(self, project: str, *, status: str | None = None) -> list[Sprint]:
        return self.sprints.list_sprints(project, status=status)

    def get_task(self, task_id: int) -> Task:
        task = self.tasks.find_task_by_id(task_id)
        if task is None:
            msg = f"Task {task_id} not found"
            raise NotFoundError(msg)
        return task

    def list_sprint_tasks(self, sprint_id: int) -> list[Task]:
        self.get_sprint(sprint_id)
        return self.tasks.find_tasks_by_sprint(sprint_id)

    # --- Task maintenance (outside the lifecycle core) ---

    def add_task(
        self,
        project: str,
        title: str,
        *,
        status: str = "todo",
        sprint_id: int | None = None,
        story_points: int = 0,
        subtasks: Iterable[tuple[str, str]] = (),
    ) -> Task:
        """Create a task, optionally directly inside an open sprint."""
        if not project or not project.strip():
            msg = "project is required"
            raise ValidationError(msg, {"project": msg})
        if not title or not title.strip():
            msg = "title is required"
            raise ValidationError(msg, {"title": msg})
        if story_points < 0:
            msg = "story_points must be zero or more"
            raise ValidationError(msg, {"story_points": msg})
        if sprint_id is not None:
            self._ensure_open(sprint_id)
        return self.tasks.insert_task(
            project.strip(),
            title.strip(),
            status=status,
            sprint_id=sprint_id,
            story_points=story_points,
            subtasks=subtasks,
        )

    def assign_task(self, task_id: int, sprint_id: int) -> Task:
        """Put an existing task into an open sprint."""
        self.get_task(task_id)
        self._ensure_open(sprint_id)
        return self.tasks.assign_task(task_id, sprint_id)  # type: ignore[return-value]

    def set_task_status(self, task_id: int, status: str) -> Task:
        if not status or not status.strip():
            msg = "status is required"
            raise ValidationError(msg, {"status": msg})
        self.get_task(task_id)
        return self.tasks.update_task_status(task_id, status.strip())  # type: ignore[return-value]

    def _ensure_open(self, sprint_id: int) -> Sprint:
        sprint = self.get_sprint(sprint_id)
        if sprint.is_frozen:
            msg = f"Cannot add tasks to {sprint.status} sprint {sprint_id}"
            raise InvalidStateError(msg)
        return sprint
