"""sprintctl: Sprint lifecycle CLI for terminal use.

Usage:
    sprintctl [--json] [--url URL | --db PATH] [--project PROJECT] [-v] COMMAND

Commands:
    sprint list [--status STATUS]       List a project's sprints
    sprint show ID                      Show sprint details with task ids
    sprint create --start D --end D     Create a sprint (auto-named if no --name)
    sprint start ID                     Start a planning sprint
    sprint incomplete ID                List unfinished tasks in a sprint
    sprint complete ID [opts]           Complete a sprint, migrating spillover
    sprint retry ID --task N... [opts]  Retry failed migrations of a completed sprint
    sprint cancel ID                    Cancel a sprint, releasing its tasks
    task add TITLE [opts]               Create a task
    task show ID                        Show a task
    task list SPRINT_ID                 List tasks in a sprint
    task status ID STATUS               Change a task's status
    task assign ID SPRINT_ID            Put a task into an open sprint

Mode:
    Local: reads and writes the SQLite database directly (default).
    HTTP client: set SPRINT_LIFECYCLE_URL or --url to talk to a running
    sprint-lifecycle server instead.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sqlite3
import sys
from typing import NoReturn

from .config import ConfigError, load_settings
from .database import get_connection, init_schema
from .errors import SprintLifecycleError
from .http_client import SprintLifecycleClient
from .models import SPRINT_STATUSES, MigrationPlan, SprintSpec, is_complete_status
from .notifications import close_dispatcher, get_dispatcher
from .service import SprintService


def _positive_int(value: str) -> int:
    """Argparse type: parse a positive integer (> 0)."""
    n = int(value)
    if n <= 0:
        msg = f"must be a positive integer, got {n}"
        raise argparse.ArgumentTypeError(msg)
    return n


def _spec_from_dict(data: dict, project: str = "") -> SprintSpec:
    return SprintSpec(
        project=project,
        name=data.get("name"),
        start_date=data.get("start_date") or "",
        end_date=data.get("end_date") or "",
        capacity=data.get("capacity", 0),
        goal=data.get("goal") or "",
    )


def _plan(
    task_ids: list[int] | None,
    target_sprint_id: int | None,
    new_sprint: dict | None,
) -> MigrationPlan:
    return MigrationPlan(
        selected_task_ids=frozenset(task_ids or ()),
        target_sprint_id=target_sprint_id,
        new_sprint=_spec_from_dict(new_sprint) if new_sprint else None,
    )


class LocalBackend:
    """SprintService over a local database, with the API's result shapes.

    Offers the same methods as SprintLifecycleClient so every command runs
    unchanged in either mode.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.service = SprintService(conn, get_dispatcher())

    def list_sprints(self, project: str, *, status: str | None = None) -> list[dict]:
        return [s.to_dict() for s in self.service.list_sprints(project, status=status)]

    def get_sprint(self, sprint_id: int) -> dict:
        data = self.service.get_sprint(sprint_id).to_dict()
        tasks = self.service.list_sprint_tasks(sprint_id)
        data["tasks"] = [t.id for t in tasks]
        data["task_count"] = len(tasks)
        return data

    def create_sprint(
        self,
        project: str,
        *,
        start_date: str,
        end_date: str,
        name: str | None = None,
        capacity: float = 0,
        goal: str = "",
    ) -> dict:
        spec = SprintSpec(
            project=project,
            name=name,
            start_date=start_date,
            end_date=end_date,
            capacity=capacity,
            goal=goal,
        )
        return self.service.create_sprint(spec).to_dict()

    def start_sprint(self, sprint_id: int) -> dict:
        return self.service.start_sprint(sprint_id).to_dict()

    def get_incomplete_tasks(self, sprint_id: int) -> list[dict]:
        return [t.to_dict() for t in self.service.get_incomplete_tasks(sprint_id)]

    def complete_sprint(
        self,
        sprint_id: int,
        *,
        selected_task_ids: list[int] | None = None,
        target_sprint_id: int | None = None,
        new_sprint: dict | None = None,
    ) -> dict:
        plan = _plan(selected_task_ids, target_sprint_id, new_sprint)
        return self.service.complete_sprint(sprint_id, plan).to_dict()

    def retry_migrations(
        self,
        sprint_id: int,
        *,
        task_ids: list[int],
        target_sprint_id: int | None = None,
        new_sprint: dict | None = None,
    ) -> dict:
        plan = _plan(task_ids, target_sprint_id, new_sprint)
        return self.service.retry_migrations(sprint_id, plan).to_dict()

    def cancel_sprint(self, sprint_id: int) -> dict:
        return self.service.cancel_sprint(sprint_id).to_dict()

    def list_sprint_tasks(self, sprint_id: int) -> list[dict]:
        return [t.to_dict() for t in self.service.list_sprint_tasks(sprint_id)]

    def add_task(
        self,
        project: str,
        title: str,
        *,
        status: str = "todo",
        sprint_id: int | None = None,
        story_points: int = 0,
        subtasks: list[tuple[str, str]] | None = None,
    ) -> dict:
        task = self.service.add_task(
            project,
            title,
            status=status,
            sprint_id=sprint_id,
            story_points=story_points,
            subtasks=subtasks or (),
        )
        return task.to_dict()

    def get_task(self, task_id: int) -> dict:
        return self.service.get_task(task_id).to_dict()

    def set_task_status(self, task_id: int, status: str) -> dict:
        return self.service.set_task_status(task_id, status).to_dict()

    def assign_task(self, task_id: int, sprint_id: int) -> dict:
        return self.service.assign_task(task_id, sprint_id).to_dict()

    def close(self) -> None:
        self.conn.close()


def _get_backend(args: argparse.Namespace) -> LocalBackend | SprintLifecycleClient:
    """Get the HTTP client when a server URL is set, else the local database.

    Stores the backend on args._backend so main() can close it.
    """
    settings = load_settings()
    url = args.url or settings.server_url
    backend: LocalBackend | SprintLifecycleClient
    if url:
        backend = SprintLifecycleClient(url)
    else:
        conn = get_connection(args.db or settings.db_path)
        init_schema(conn)
        backend = LocalBackend(conn)
    args._backend = backend  # noqa: SLF001
    return backend


def _require_project(args: argparse.Namespace) -> str:
    project = args.project or os.getenv("SPRINT_LIFECYCLE_PROJECT", "")
    if not project:
        print(
            "Error: --project or SPRINT_LIFECYCLE_PROJECT required", file=sys.stderr
        )
        sys.exit(1)
    return project


def _fail(e: Exception) -> NoReturn:
    print(f"Error: {e}", file=sys.stderr)
    sys.exit(1)


def _output(data: object, *, json_mode: bool) -> None:
    """Print output as JSON or human-readable text."""
    if json_mode:
        print(json.dumps(data, indent=2, default=str))
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, dict):
                _print_row(item)
            else:
                print(item)
    elif isinstance(data, dict):
        _print_row(data)
    else:
        print(data)


def _print_row(d: dict) -> None:
    """Print a dict as a compact key=value line."""
    parts = [f"{k}={v}" for k, v in d.items() if v is not None and v != ()]
    print("  ".join(parts))


def _ids(ids: list[int]) -> str:
    return ", ".join(f"#{n}" for n in ids)


def _new_sprint_arg(args: argparse.Namespace) -> dict | None:
    """Build the new-sprint body from --new-* options, if any were given."""
    if not (args.new_start or args.new_end):
        return None
    body: dict = {
        "start_date": args.new_start or "",
        "end_date": args.new_end or "",
        "capacity": args.new_capacity,
        "goal": args.new_goal,
    }
    if args.new_name is not None:
        body["name"] = args.new_name
    return body


def _print_migrations(result: dict, heading: str) -> None:
    print(heading)
    if result["moved_to_backlog"]:
        print(f"Moved to backlog: {_ids(result['moved_to_backlog'])}")
    target = result.get("target_sprint")
    if result["moved_to_sprint"] and target:
        print(f"Moved to {target['name']} (#{target['id']}): {_ids(result['moved_to_sprint'])}")
    if result["skipped"]:
        print(f"Skipped (left sprint): {_ids(result['skipped'])}")


def _exit_on_failures(result: dict) -> None:
    if result["partial_failures"]:
        print(
            f"Error: failed to migrate tasks: {result['partial_failures']}",
            file=sys.stderr,
        )
        sys.exit(1)


# --- Sprint commands ---


def cmd_sprint_list(args: argparse.Namespace) -> None:
    project = _require_project(args)
    backend = _get_backend(args)
    sprints = backend.list_sprints(project, status=args.status)
    if args.json:
        _output(sprints, json_mode=True)
        return
    if not sprints:
        print("No sprints found.")
        return
    print(f"{'ID':<6} {'Name':<16} {'Status':<11} {'Start':<12} {'End':<12} {'Goal'}")
    print("-" * 76)
    for s in sprints:
        print(
            f"{s['id']:<6} {s['name']:<16} {s['status']:<11} "
            f"{s['start_date']:<12} {s['end_date']:<12} {s['goal'] or ''}"
        )


def cmd_sprint_show(args: argparse.Namespace) -> None:
    backend = _get_backend(args)
    sprint = backend.get_sprint(args.sprint_id)
    if args.json:
        _output(sprint, json_mode=True)
        return

    print(
        f"{sprint['name']} (#{sprint['id']})  [{sprint['status']}]  "
        f"project={sprint['project']}"
    )
    if sprint["goal"]:
        print(f"Goal: {sprint['goal']}")
    print(
        f"Planned: {sprint['start_date']} .. {sprint['end_date']}  "
        f"Capacity: {sprint['capacity']}h"
    )
    if sprint["actual_start_date"] or sprint["actual_end_date"]:
        print(
            f"Actual: {sprint['actual_start_date'] or '-'} .. "
            f"{sprint['actual_end_date'] or '-'}"
        )
    print(f"Tasks ({sprint['task_count']}): {_ids(sprint['tasks']) or 'none'}")
    if p := sprint["progress"]:
        pct = int(p["tasks_completed"] / p["total_tasks"] * 100) if p["total_tasks"] else 0
        print(
            f"Completed: {p['tasks_completed']}/{p['total_tasks']} tasks ({pct}%), "
            f"{p['story_points_completed']}/{p['total_story_points']} pts"
        )


def cmd_sprint_create(args: argparse.Namespace) -> None:
    project = _require_project(args)
    backend = _get_backend(args)
    sprint = backend.create_sprint(
        project,
        start_date=args.start,
        end_date=args.end,
        name=args.name,
        capacity=args.capacity,
        goal=args.goal,
    )
    _output(sprint, json_mode=args.json)


def cmd_sprint_start(args: argparse.Namespace) -> None:
    backend = _get_backend(args)
    sprint = backend.start_sprint(args.sprint_id)
    _output(
        {
            "sprint": sprint["id"],
            "status": sprint["status"],
            "started": sprint["actual_start_date"],
        },
        json_mode=args.json,
    )


def cmd_sprint_incomplete(args: argparse.Namespace) -> None:
    backend = _get_backend(args)
    tasks = backend.get_incomplete_tasks(args.sprint_id)
    if args.json:
        _output(tasks, json_mode=True)
        return
    if not tasks:
        print("No incomplete tasks.")
        return
    for t in tasks:
        line = f"#{t['task_id']:<6} [{t['status']}] {t['title']}"
        if t["incomplete_subtasks"]:
            line += f"  ({len(t['incomplete_subtasks'])} open subtask(s))"
        print(line)


def cmd_sprint_complete(args: argparse.Namespace) -> None:
    backend = _get_backend(args)
    result = backend.complete_sprint(
        args.sprint_id,
        selected_task_ids=args.select,
        target_sprint_id=args.to,
        new_sprint=_new_sprint_arg(args),
    )
    if args.json:
        _output(result, json_mode=True)
    else:
        _print_migrations(result, f"Sprint {result['sprint']['id']} completed.")
    _exit_on_failures(result)


def cmd_sprint_retry(args: argparse.Namespace) -> None:
    backend = _get_backend(args)
    result = backend.retry_migrations(
        args.sprint_id,
        task_ids=args.task,
        target_sprint_id=args.to,
        new_sprint=_new_sprint_arg(args),
    )
    if args.json:
        _output(result, json_mode=True)
    else:
        moved = len(result["moved_to_backlog"]) + len(result["moved_to_sprint"])
        _print_migrations(
            result, f"Sprint {args.sprint_id}: {moved} task(s) migrated on retry."
        )
    _exit_on_failures(result)


def cmd_sprint_cancel(args: argparse.Namespace) -> None:
    backend = _get_backend(args)
    sprint = backend.cancel_sprint(args.sprint_id)
    _output({"sprint": sprint["id"], "status": sprint["status"]}, json_mode=args.json)


# --- Task commands ---


def cmd_task_add(args: argparse.Namespace) -> None:
    project = _require_project(args)
    subtasks = []
    for raw in args.subtask or ():
        title, _, status = raw.partition(":")
        subtasks.append((title, status or "todo"))

    backend = _get_backend(args)
    task = backend.add_task(
        project,
        args.title,
        status=args.status,
        sprint_id=args.sprint,
        story_points=args.points,
        subtasks=subtasks,
    )
    _output(task, json_mode=args.json)


def cmd_task_show(args: argparse.Namespace) -> None:
    backend = _get_backend(args)
    task = backend.get_task(args.task_id)
    if args.json:
        _output(task, json_mode=True)
        return
    print(f"#{task['id']} [{task['status']}] {task['title']}")
    print(f"Sprint: {task['sprint_id'] or 'backlog'}  Points: {task['story_points']}")
    if task["moved_from_sprint"] is not None:
        dest = (
            "backlog" if task["moved_to_backlog"] else f"sprint {task['moved_to_sprint']}"
        )
        print(f"Migrated from sprint {task['moved_from_sprint']} to {dest}")
    for sub in task["subtasks"]:
        done = sub["is_completed"] or is_complete_status(sub["status"])
        print(f"  [{'x' if done else ' '}] {sub['title']}")


def cmd_task_list(args: argparse.Namespace) -> None:
    backend = _get_backend(args)
    tasks = backend.list_sprint_tasks(args.sprint_id)
    if args.json:
        _output(tasks, json_mode=True)
        return
    if not tasks:
        print("No tasks.")
        return
    for t in tasks:
        print(f"#{t['id']:<6} {t['status']:<12} {t['story_points']:>3} pts  {t['title']}")


def cmd_task_status(args: argparse.Namespace) -> None:
    backend = _get_backend(args)
    task = backend.set_task_status(args.task_id, args.status)
    _output({"task": task["id"], "status": task["status"]}, json_mode=args.json)


def cmd_task_assign(args: argparse.Namespace) -> None:
    backend = _get_backend(args)
    task = backend.assign_task(args.task_id, args.sprint_id)
    _output({"task": task["id"], "sprint": task["sprint_id"]}, json_mode=args.json)


# --- Parser ---


def _add_new_sprint_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--new-start", help="Create a new sprint starting on date")
    parser.add_argument("--new-end", help="End date of the new sprint")
    parser.add_argument("--new-name", help="Name of the new sprint")
    parser.add_argument(
        "--new-capacity", type=float, default=0, help="Capacity of the new sprint"
    )
    parser.add_argument("--new-goal", default="", help="Goal of the new sprint")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sprintctl",
        description="Sprint lifecycle CLI",
    )
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument(
        "--url",
        help="sprint-lifecycle server URL (default: $SPRINT_LIFECYCLE_URL or config "
        "file; unset means local database)",
    )
    parser.add_argument(
        "--db",
        help="SQLite database path (default: $SPRINT_LIFECYCLE_DB or config file)",
    )
    parser.add_argument(
        "--project", help="Project key (default: $SPRINT_LIFECYCLE_PROJECT)"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log debug output to stderr"
    )

    sub = parser.add_subparsers(dest="command", help="Command group")

    # --- sprint subcommands ---
    sprint_parser = sub.add_parser("sprint", help="Sprint lifecycle")
    sprint_sub = sprint_parser.add_subparsers(dest="sprint_command")

    sp_list = sprint_sub.add_parser("list", help="List sprints")
    sp_list.add_argument("--status", choices=SPRINT_STATUSES)
    sp_list.set_defaults(func=cmd_sprint_list)

    sp_show = sprint_sub.add_parser("show", help="Show sprint details")
    sp_show.add_argument("sprint_id", type=_positive_int)
    sp_show.set_defaults(func=cmd_sprint_show)

    sp_create = sprint_sub.add_parser("create", help="Create a sprint")
    sp_create.add_argument("--name", help="Sprint name (default: next 'Sprint N')")
    sp_create.add_argument("--start", required=True, help="Start date (YYYY-MM-DD)")
    sp_create.add_argument("--end", required=True, help="End date (YYYY-MM-DD)")
    sp_create.add_argument("--capacity", type=float, default=0, help="Capacity (hours)")
    sp_create.add_argument("--goal", default="", help="Sprint goal")
    sp_create.set_defaults(func=cmd_sprint_create)

    sp_start = sprint_sub.add_parser("start", help="Start a sprint")
    sp_start.add_argument("sprint_id", type=_positive_int)
    sp_start.set_defaults(func=cmd_sprint_start)

    sp_incomplete = sprint_sub.add_parser(
        "incomplete", help="List incomplete tasks in a sprint"
    )
    sp_incomplete.add_argument("sprint_id", type=_positive_int)
    sp_incomplete.set_defaults(func=cmd_sprint_incomplete)

    sp_complete = sprint_sub.add_parser("complete", help="Complete a sprint")
    sp_complete.add_argument("sprint_id", type=_positive_int)
    sp_complete.add_argument(
        "--select",
        type=_positive_int,
        nargs="+",
        help="Incomplete task ids to move to a sprint (others go to backlog)",
    )
    sp_complete.add_argument(
        "--to", type=_positive_int, help="Existing sprint receiving selected tasks"
    )
    _add_new_sprint_options(sp_complete)
    sp_complete.set_defaults(func=cmd_sprint_complete)

    sp_retry = sprint_sub.add_parser(
        "retry", help="Retry failed task migrations of a completed sprint"
    )
    sp_retry.add_argument("sprint_id", type=_positive_int)
    sp_retry.add_argument(
        "--task",
        type=_positive_int,
        nargs="+",
        required=True,
        help="Task ids still left in the sprint (default destination: backlog)",
    )
    sp_retry.add_argument(
        "--to", type=_positive_int, help="Existing sprint receiving the tasks"
    )
    _add_new_sprint_options(sp_retry)
    sp_retry.set_defaults(func=cmd_sprint_retry)

    sp_cancel = sprint_sub.add_parser("cancel", help="Cancel a sprint")
    sp_cancel.add_argument("sprint_id", type=_positive_int)
    sp_cancel.set_defaults(func=cmd_sprint_cancel)

    # --- task subcommands ---
    task_parser = sub.add_parser("task", help="Task management")
    task_sub = task_parser.add_subparsers(dest="task_command")

    tk_add = task_sub.add_parser("add", help="Create a task")
    tk_add.add_argument("title")
    tk_add.add_argument("--status", default="todo")
    tk_add.add_argument("--sprint", type=_positive_int, help="Open sprint to add to")
    tk_add.add_argument("--points", type=int, default=0, help="Story points")
    tk_add.add_argument(
        "--subtask",
        action="append",
        help="Subtask as TITLE or TITLE:STATUS (repeatable)",
    )
    tk_add.set_defaults(func=cmd_task_add)

    tk_show = task_sub.add_parser("show", help="Show a task")
    tk_show.add_argument("task_id", type=_positive_int)
    tk_show.set_defaults(func=cmd_task_show)

    tk_list = task_sub.add_parser("list", help="List tasks in a sprint")
    tk_list.add_argument("sprint_id", type=_positive_int)
    tk_list.set_defaults(func=cmd_task_list)

    tk_status = task_sub.add_parser("status", help="Change a task's status")
    tk_status.add_argument("task_id", type=_positive_int)
    tk_status.add_argument("status")
    tk_status.set_defaults(func=cmd_task_status)

    tk_assign = task_sub.add_parser("assign", help="Assign a task to a sprint")
    tk_assign.add_argument("task_id", type=_positive_int)
    tk_assign.add_argument("sprint_id", type=_positive_int)
    tk_assign.set_defaults(func=cmd_task_assign)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        level = "DEBUG" if args.verbose else load_settings().log_level
    except ConfigError as e:
        _fail(e)
    logging.basicConfig(
        level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "sprint" and not getattr(args, "sprint_command", None):
        parser.parse_args([args.command, "--help"])

    if args.command == "task" and not getattr(args, "task_command", None):
        parser.parse_args([args.command, "--help"])

    if hasattr(args, "func"):
        try:
            args.func(args)
        except (SprintLifecycleError, ConfigError) as e:
            _fail(e)
        finally:
            close_dispatcher()
            backend = getattr(args, "_backend", None)
            if backend is not None:
                backend.close()
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
