"""Task data store backed by SQLite."""

import sqlite3
from collections.abc import Iterable

from .database import atomic, now_timestamp
from .models import Subtask, SprintAssignment, Task, is_complete_status


class TaskStore:
    """Task persistence operations, including embedded subtasks.

    Uses a shared sqlite3.Connection (caller manages lifecycle).
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _load_subtasks(self, task_ids: list[int]) -> dict[int, tuple[Subtask, ...]]:
        if not task_ids:
            return {}
        placeholders = ", ".join("?" for _ in task_ids)
        rows = self.conn.execute(
            f"""SELECT task_id, title, status, is_completed FROM subtasks
                WHERE task_id IN ({placeholders})
                ORDER BY task_id, position""",  # noqa: S608
            task_ids,
        ).fetchall()
        grouped: dict[int, list[Subtask]] = {}
        for r in rows:
            grouped.setdefault(r["task_id"], []).append(
                Subtask(
                    title=r["title"],
                    status=r["status"],
                    is_completed=bool(r["is_completed"]),
                )
            )
        return {task_id: tuple(subs) for task_id, subs in grouped.items()}

    def _build(self, rows: list[sqlite3.Row]) -> list[Task]:
        subtasks = self._load_subtasks([r["id"] for r in rows])
        return [Task.from_row(r, subtasks.get(r["id"], ())) for r in rows]

    def insert_task(
        self,
        project: str,
        title: str,
        *,
        status: str = "todo",
        sprint_id: int | None = None,
        story_points: int = 0,
        archived: bool = False,
        subtasks: Iterable[tuple[str, str]] = (),
    ) -> Task:
        """Insert a task with optional (title, status) subtasks.

        Subtask completion flags are derived from their status.
        """
        with atomic(self.conn, "insert_task"):
            cursor = self.conn.execute(
                """INSERT INTO tasks
                   (project, title, status, sprint_id, story_points, archived)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (project, title, status, sprint_id, story_points, int(archived)),
            )
            task_id = cursor.lastrowid
            for position, (sub_title, sub_status) in enumerate(subtasks):
                self.conn.execute(
                    """INSERT INTO subtasks
                       (task_id, position, title, status, is_completed)
                       VALUES (?, ?, ?, ?, ?)""",
                    (
                        task_id,
                        position,
                        sub_title,
                        sub_status,
                        int(is_complete_status(sub_status)),
                    ),
                )
        return self.find_task_by_id(task_id)  # type: ignore[arg-type,return-value]

    def find_task_by_id(self, task_id: int) -> Task | None:
        """Get a task by id.

        Returns:
            Task or None if not found.
        """
        row = self.conn.execute(
            "SELECT * FROM tasks WHERE id = ?", (task_id,)
        ).fetchone()
        if not row:
            return None
        return self._build([row])[0]

    def find_tasks_by_sprint(
        self, sprint_id: int, *, include_archived: bool = True
    ) -> list[Task]:
        """Get the tasks currently assigned to a sprint, ordered by id."""
        if include_archived:
            rows = self.conn.execute(
                "SELECT * FROM tasks WHERE sprint_id = ? ORDER BY id",
                (sprint_id,),
            ).fetchall()
        else:
            rows = self.conn.execute(
                """SELECT * FROM tasks
                   WHERE sprint_id = ? AND archived = 0
                   ORDER BY id""",
                (sprint_id,),
            ).fetchall()
        return self._build(rows)

    def count_active_tasks(self, sprint_id: int) -> int:
        """Count non-archived tasks assigned to a sprint."""
        row = self.conn.execute(
            """SELECT COUNT(*) AS cnt FROM tasks
               WHERE sprint_id = ? AND archived = 0""",
            (sprint_id,),
        ).fetchone()
        return row["cnt"]

    def update_task_sprint_assignment(
        self, task_id: int, patch: SprintAssignment
    ) -> Task | None:
        """Write a task's sprint reference and provenance fields.

        Nothing else on the task is touched, including ``updated_at``.

        Returns:
            The updated task, or None if not found.
        """
        with atomic(self.conn, "update_task_assignment"):
            cursor = self.conn.execute(
                """UPDATE tasks
                   SET sprint_id = ?, moved_from_sprint = ?, moved_to_sprint = ?,
                       moved_to_backlog = ?
                   WHERE id = ?""",
                (
                    patch.sprint_id,
                    patch.moved_from_sprint,
                    patch.moved_to_sprint,
                    int(patch.moved_to_backlog),
                    task_id,
                ),
            )
        if cursor.rowcount == 0:
            return None
        return self.find_task_by_id(task_id)

    def assign_task(self, task_id: int, sprint_id: int) -> Task | None:
        """Put a task into a sprint (planning-time assignment, no provenance).

        Returns:
            The updated task, or None if not found.
        """
        with atomic(self.conn, "assign_task"):
            cursor = self.conn.execute(
                "UPDATE tasks SET sprint_id = ?, updated_at = ? WHERE id = ?",
                (sprint_id, now_timestamp(), task_id),
            )
        if cursor.rowcount == 0:
            return None
        return self.find_task_by_id(task_id)

    def update_task_status(self, task_id: int, status: str) -> Task | None:
        """Change a task's workflow status.

        Returns:
            The updated task, or None if not found.
        """
        with atomic(self.conn, "update_task_status"):
            cursor = self.conn.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
                (status, now_timestamp(), task_id),
            )
        if cursor.rowcount == 0:
            return None
        return self.find_task_by_id(task_id)
