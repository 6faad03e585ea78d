"""SQLite database connection manager for sprint lifecycle data."""

import contextlib
import logging
import sqlite3
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

from .config import load_settings

logger = logging.getLogger(__name__)

# Schema version: bump when adding migrations
CURRENT_SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS sprints (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project TEXT NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'planning'
        CHECK (status IN ('planning', 'active', 'completed', 'cancelled')),
    start_date TEXT NOT NULL,
    end_date TEXT NOT NULL,
    actual_start_date TEXT,
    actual_end_date TEXT,
    capacity REAL NOT NULL DEFAULT 0 CHECK (capacity >= 0),
    goal TEXT DEFAULT '',
    tasks_completed INTEGER,
    total_tasks INTEGER,
    story_points_completed INTEGER,
    total_story_points INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    CHECK (end_date >= start_date)
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project TEXT NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'todo',
    sprint_id INTEGER REFERENCES sprints(id) ON DELETE SET NULL,
    archived INTEGER NOT NULL DEFAULT 0,
    story_points INTEGER NOT NULL DEFAULT 0 CHECK (story_points >= 0),
    moved_from_sprint INTEGER,
    moved_to_sprint INTEGER REFERENCES sprints(id) ON DELETE SET NULL,
    moved_to_backlog INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS subtasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'todo',
    is_completed INTEGER NOT NULL DEFAULT 0,
    UNIQUE (task_id, position)
);

CREATE INDEX IF NOT EXISTS idx_sprints_project
    ON sprints(project);

CREATE INDEX IF NOT EXISTS idx_tasks_sprint
    ON tasks(sprint_id);

CREATE INDEX IF NOT EXISTS idx_subtasks_task
    ON subtasks(task_id);

-- Only planning -> active -> {completed, cancelled} and planning -> cancelled
CREATE TRIGGER IF NOT EXISTS trg_sprints_status_transition
BEFORE UPDATE OF status ON sprints
WHEN NEW.status <> OLD.status AND NOT (
    (OLD.status = 'planning' AND NEW.status IN ('active', 'cancelled'))
    OR (OLD.status = 'active' AND NEW.status IN ('completed', 'cancelled'))
)
BEGIN
    SELECT RAISE(ABORT, 'illegal sprint status transition');
END;

-- Progress snapshot is written once, at completion
CREATE TRIGGER IF NOT EXISTS trg_sprints_snapshot_immutable
BEFORE UPDATE OF tasks_completed, total_tasks, story_points_completed,
    total_story_points ON sprints
WHEN OLD.total_tasks IS NOT NULL AND (
    NEW.tasks_completed IS NOT OLD.tasks_completed
    OR NEW.total_tasks IS NOT OLD.total_tasks
    OR NEW.story_points_completed IS NOT OLD.story_points_completed
    OR NEW.total_story_points IS NOT OLD.total_story_points
)
BEGIN
    SELECT RAISE(ABORT, 'sprint progress snapshot is immutable');
END;
"""


def get_db_path() -> str:
    """Get database path from environment, config file or default."""
    return load_settings().db_path


def now_timestamp() -> str:
    """Current UTC time in the format stored in timestamp columns."""
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Create a new SQLite connection with proper settings.

    Args:
        db_path: Database file path. None uses env/default.
                 ":memory:" for in-memory database (testing).

    Returns:
        Configured sqlite3.Connection with WAL mode and foreign keys.
    """
    path = db_path if db_path is not None else get_db_path()

    # Ensure parent directory exists for file-based databases
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create tables, indexes and triggers if they don't exist.

    Idempotent, safe to call on every startup.
    """
    conn.executescript(SCHEMA_SQL)

    # Record schema version if not already present
    existing = conn.execute(
        "SELECT version FROM schema_version WHERE version = ?",
        (CURRENT_SCHEMA_VERSION,),
    ).fetchone()
    if not existing:
        conn.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (CURRENT_SCHEMA_VERSION,),
        )
        conn.commit()

    logger.info("Database schema initialized (version %d)", CURRENT_SCHEMA_VERSION)


@contextlib.contextmanager
def atomic(conn: sqlite3.Connection, name: str = "atomic") -> Iterator[None]:
    """Run a block as one unit of work.

    The outermost block takes the write lock up front (BEGIN IMMEDIATE) so
    concurrent writers on other connections queue instead of interleaving.
    Nested blocks become savepoints that roll back on their own.
    """
    if conn.in_transaction:
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            conn.execute(f"ROLLBACK TO {name}")
            conn.execute(f"RELEASE {name}")
            raise
        conn.execute(f"RELEASE {name}")
        return

    conn.execute("BEGIN IMMEDIATE")
    try:
        yield
    except BaseException:
        conn.rollback()
        raise
    conn.commit()


# Module-level connection singleton
_connection: sqlite3.Connection | None = None


def get_db() -> sqlite3.Connection:
    """Get the module-level database connection (created on first call).

    Initializes schema on first connection.
    """
    global _connection
    if _connection is None:
        _connection = get_connection()
        init_schema(_connection)
    return _connection


def close_db() -> None:
    """Close the module-level database connection."""
    global _connection
    if _connection is not None:
        _connection.close()
        _connection = None
