"""Sprint data store backed by SQLite."""

import sqlite3

from .database import atomic, now_timestamp
from .models import PLANNING, ProgressSnapshot, Sprint, SprintSpec


class SprintStore:
    """Sprint persistence operations.

    Uses a shared sqlite3.Connection (caller manages lifecycle). Writes run
    inside ``atomic()`` so they join any unit of work already open on the
    connection.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def insert_sprint(self, spec: SprintSpec) -> Sprint:
        """Insert a new sprint in 'planning' status.

        The spec is expected to be validated and named already
        (see SprintFactory).

        Raises:
            sqlite3.IntegrityError: If the row violates a table constraint.
        """
        with atomic(self.conn, "insert_sprint"):
            cursor = self.conn.execute(
                """INSERT INTO sprints
                   (project, name, status, start_date, end_date, capacity, goal)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    spec.project,
                    spec.name,
                    PLANNING,
                    spec.start_date,
                    spec.end_date,
                    spec.capacity,
                    spec.goal,
                ),
            )
            sprint_id = cursor.lastrowid
        return self.find_sprint_by_id(sprint_id)  # type: ignore[arg-type,return-value]

    def find_sprint_by_id(self, sprint_id: int) -> Sprint | None:
        """Get a sprint by id.

        Returns:
            Sprint or None if not found.
        """
        row = self.conn.execute(
            "SELECT * FROM sprints WHERE id = ?", (sprint_id,)
        ).fetchone()
        return Sprint.from_row(row) if row else None

    def list_sprints(self, project: str, *, status: str | None = None) -> list[Sprint]:
        """List a project's sprints, optionally filtered by status.

        Returns:
            List of sprints, newest first.
        """
        if status:
            rows = self.conn.execute(
                """SELECT * FROM sprints
                   WHERE project = ? AND status = ?
                   ORDER BY id DESC""",
                (project, status),
            ).fetchall()
        else:
            rows = self.conn.execute(
                """SELECT * FROM sprints
                   WHERE project = ?
                   ORDER BY id DESC""",
                (project,),
            ).fetchall()
        return [Sprint.from_row(r) for r in rows]

    def list_sprint_names(self, project: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT name FROM sprints WHERE project = ?", (project,)
        ).fetchall()
        return [r["name"] for r in rows]

    def count_sprints(self, project: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS cnt FROM sprints WHERE project = ?", (project,)
        ).fetchone()
        return row["cnt"]

    def update_sprint_status(
        self,
        sprint_id: int,
        *,
        expected_status: str,
        status: str,
        actual_start_date: str | None = None,
        actual_end_date: str | None = None,
        progress: ProgressSnapshot | None = None,
    ) -> Sprint | None:
        """Move a sprint to a new status if it is still in ``expected_status``.

        The status column is the concurrency gate: the UPDATE only matches
        while the sprint is in the expected status, so of two racing callers
        exactly one succeeds.

        Returns:
            The updated sprint, or None if the sprint is missing or no longer
            in ``expected_status``.
        """
        updates: dict[str, str | int | float | None] = {"status": status}
        if actual_start_date is not None:
            updates["actual_start_date"] = actual_start_date
        if actual_end_date is not None:
            updates["actual_end_date"] = actual_end_date
        if progress is not None:
            updates["tasks_completed"] = progress.tasks_completed
            updates["total_tasks"] = progress.total_tasks
            updates["story_points_completed"] = progress.story_points_completed
            updates["total_story_points"] = progress.total_story_points
        updates["updated_at"] = now_timestamp()

        set_clause = ", ".join(f"{k} = ?" for k in updates)
        params: list[str | int | float | None] = list(updates.values())
        params.extend([sprint_id, expected_status])

        with atomic(self.conn, "update_sprint_status"):
            cursor = self.conn.execute(
                f"UPDATE sprints SET {set_clause} "  # noqa: S608
                "WHERE id = ? AND status = ?",
                params,
            )
        if cursor.rowcount == 0:
            return None
        return self.find_sprint_by_id(sprint_id)
