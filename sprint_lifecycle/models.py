"""Domain models for sprints, tasks and lifecycle results."""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, field

from .errors import PartialFailureError

# Sprint statuses
PLANNING = "planning"
ACTIVE = "active"
COMPLETED = "completed"
CANCELLED = "cancelled"

SPRINT_STATUSES: tuple[str, ...] = (PLANNING, ACTIVE, COMPLETED, CANCELLED)

# Sprints that can still receive work
OPEN_STATUSES = frozenset({PLANNING, ACTIVE})

# Terminal statuses (no task add/remove, no further transitions)
FROZEN_STATUSES = frozenset({COMPLETED, CANCELLED})

# Task statuses that count as finished work
COMPLETE_TASK_STATUSES = frozenset({"done", "completed"})


def is_complete_status(status: str | None) -> bool:
    return (status or "").strip().lower() in COMPLETE_TASK_STATUSES


@dataclass(frozen=True)
class ProgressSnapshot:
    """Sprint progress captured once, at completion."""

    tasks_completed: int
    total_tasks: int
    story_points_completed: int
    total_story_points: int

    @property
    def completion_pct(self) -> int:
        if self.total_tasks == 0:
            return 0
        return int(self.tasks_completed / self.total_tasks * 100)


@dataclass(frozen=True)
class Sprint:
    id: int
    project: str
    name: str
    status: str
    start_date: str
    end_date: str
    capacity: float = 0
    goal: str = ""
    actual_start_date: str | None = None
    actual_end_date: str | None = None
    progress: ProgressSnapshot | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_frozen(self) -> bool:
        return self.status in FROZEN_STATUSES

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Sprint:
        progress = None
        if row["total_tasks"] is not None:
            progress = ProgressSnapshot(
                tasks_completed=row["tasks_completed"],
                total_tasks=row["total_tasks"],
                story_points_completed=row["story_points_completed"],
                total_story_points=row["total_story_points"],
            )
        return cls(
            id=row["id"],
            project=row["project"],
            name=row["name"],
            status=row["status"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            capacity=row["capacity"],
            goal=row["goal"] or "",
            actual_start_date=row["actual_start_date"],
            actual_end_date=row["actual_end_date"],
            progress=progress,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Subtask:
    title: str
    status: str = "todo"
    is_completed: bool = False

    @classmethod
    def create(cls, title: str, status: str = "todo") -> Subtask:
        """Build a subtask whose completion flag agrees with its status."""
        return cls(title=title, status=status, is_completed=is_complete_status(status))

    @property
    def is_incomplete(self) -> bool:
        return not is_complete_status(self.status) and not self.is_completed


@dataclass(frozen=True)
class Task:
    id: int
    project: str
    title: str
    status: str
    sprint_id: int | None = None
    archived: bool = False
    story_points: int = 0
    subtasks: tuple[Subtask, ...] = ()
    moved_from_sprint: int | None = None
    moved_to_sprint: int | None = None
    moved_to_backlog: bool = False
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_complete(self) -> bool:
        return is_complete_status(self.status)

    @property
    def incomplete_subtasks(self) -> tuple[Subtask, ...]:
        return tuple(s for s in self.subtasks if s.is_incomplete)

    @classmethod
    def from_row(cls, row: sqlite3.Row, subtasks: tuple[Subtask, ...] = ()) -> Task:
        return cls(
            id=row["id"],
            project=row["project"],
            title=row["title"],
            status=row["status"],
            sprint_id=row["sprint_id"],
            archived=bool(row["archived"]),
            story_points=row["story_points"],
            subtasks=subtasks,
            moved_from_sprint=row["moved_from_sprint"],
            moved_to_sprint=row["moved_to_sprint"],
            moved_to_backlog=bool(row["moved_to_backlog"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SprintAssignment:
    """The only task fields a migration may write."""

    sprint_id: int | None
    moved_from_sprint: int | None
    moved_to_sprint: int | None
    moved_to_backlog: bool

    def matches(self, task: Task) -> bool:
        return (
            task.sprint_id == self.sprint_id
            and task.moved_from_sprint == self.moved_from_sprint
            and task.moved_to_sprint == self.moved_to_sprint
            and task.moved_to_backlog == self.moved_to_backlog
        )


@dataclass(frozen=True)
class SprintSpec:
    """Input for creating a sprint. ``name=None`` requests auto-naming."""

    project: str
    start_date: str
    end_date: str
    name: str | None = None
    capacity: float = 0
    goal: str = ""


@dataclass(frozen=True)
class MigrationPlan:
    """Where incomplete tasks go when a sprint closes.

    Selected tasks go to ``target_sprint_id`` or to a sprint created from
    ``new_sprint``; every other incomplete task goes to the backlog.
    """

    selected_task_ids: frozenset[int] = frozenset()
    target_sprint_id: int | None = None
    new_sprint: SprintSpec | None = None


@dataclass(frozen=True)
class IncompleteTask:
    task_id: int
    title: str
    status: str
    subtasks: tuple[Subtask, ...]
    incomplete_subtasks: tuple[Subtask, ...]

    @classmethod
    def from_task(cls, task: Task) -> IncompleteTask:
        return cls(
            task_id=task.id,
            title=task.title,
            status=task.status,
            subtasks=task.subtasks,
            incomplete_subtasks=task.incomplete_subtasks,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CompletionResult:
    sprint: Sprint
    moved_to_backlog: list[int] = field(default_factory=list)
    moved_to_sprint: list[int] = field(default_factory=list)
    target_sprint: Sprint | None = None
    created_sprint: Sprint | None = None
    incomplete: list[IncompleteTask] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    partial_failures: list[int] = field(default_factory=list)

    def raise_for_failures(self) -> None:
        """Raise PartialFailureError if any task failed to migrate."""
        if self.partial_failures:
            msg = (
                f"Sprint {self.sprint.id} completed but "
                f"{len(self.partial_failures)} task(s) failed to migrate"
            )
            raise PartialFailureError(msg, list(self.partial_failures))

    def to_dict(self) -> dict:
        return asdict(self)
