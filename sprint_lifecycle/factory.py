"""Sprint creation with validation and sequential auto-naming."""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import date, datetime

from .errors import ValidationError
from .models import Sprint, SprintSpec
from .notifications import SPRINT_CREATED, NotificationDispatcher, SprintEvent, dispatch
from .sprint_store import SprintStore

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_SEQUENTIAL_NAME_RE = re.compile(r"^sprint\s+(\d+)$", re.IGNORECASE)

MAX_NAME_LENGTH = 100
MAX_GOAL_LENGTH = 500


def _parse_date(value: str | None, field_name: str, errors: dict[str, str]) -> date | None:
    """Parse a strict YYYY-MM-DD date, recording a message on failure."""
    if not value:
        errors[field_name] = f"{field_name} is required"
        return None
    if not _DATE_RE.match(value):
        errors[field_name] = f"Invalid {field_name}: expected YYYY-MM-DD format"
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()  # noqa: DTZ007
    except ValueError:
        errors[field_name] = f"Invalid {field_name}: not a valid date"
        return None


def validate_spec(spec: SprintSpec) -> None:
    """Check a sprint spec, reporting every problem at once.

    Raises:
        ValidationError: With a per-field ``errors`` dict.
    """
    errors: dict[str, str] = {}

    if not spec.project or not spec.project.strip():
        errors["project"] = "project is required"

    if spec.name is not None:
        if not spec.name.strip():
            errors["name"] = "name must not be empty"
        elif len(spec.name.strip()) > MAX_NAME_LENGTH:
            errors["name"] = f"name must be at most {MAX_NAME_LENGTH} characters"

    start = _parse_date(spec.start_date, "start_date", errors)
    end = _parse_date(spec.end_date, "end_date", errors)
    if start and end and end < start:
        errors["end_date"] = "end_date must not be before start_date"

    if spec.capacity is None or spec.capacity < 0:
        errors["capacity"] = "capacity must be zero or more hours"

    if spec.goal and len(spec.goal) > MAX_GOAL_LENGTH:
        errors["goal"] = f"goal must be at most {MAX_GOAL_LENGTH} characters"

    if errors:
        detail = "; ".join(errors.values())
        raise ValidationError(f"Invalid sprint: {detail}", errors)


def next_sprint_name(existing_names: list[str], total: int | None = None) -> str:
    """Pick the next "Sprint N" name.

    Uses the highest N among names shaped like "Sprint <integer>"; if none
    are, falls back to ``total`` (the project's sprint count, defaulting to
    the number of names given).
    """
    numbers = []
    for name in existing_names:
        if match := _SEQUENTIAL_NAME_RE.match(name.strip()):
            numbers.append(int(match.group(1)))
    if numbers:
        return f"Sprint {max(numbers) + 1}"
    if total is None:
        total = len(existing_names)
    return f"Sprint {total + 1}"


class SprintFactory:
    """Creates sprints in 'planning' status."""

    def __init__(
        self,
        sprints: SprintStore,
        dispatcher: NotificationDispatcher | None = None,
    ):
        self.sprints = sprints
        self.dispatcher = dispatcher

    def create(self, spec: SprintSpec, *, notify: bool = True) -> Sprint:
        """Validate, name and insert a new sprint.

        Callers creating a sprint inside a larger unit of work pass
        ``notify=False`` and raise the event themselves after commit.

        Raises:
            ValidationError: If the spec is malformed.
        """
        validate_spec(spec)

        project = spec.project.strip()
        if spec.name is None:
            name = next_sprint_name(
                self.sprints.list_sprint_names(project),
                self.sprints.count_sprints(project),
            )
        else:
            name = spec.name.strip()

        sprint = self.sprints.insert_sprint(
            replace(spec, project=project, name=name, goal=spec.goal or "")
        )
        logger.info("Created sprint %d (%s) in project %s", sprint.id, name, project)
        if notify:
            dispatch(self.dispatcher, SprintEvent.for_sprint(SPRINT_CREATED, sprint))
        return sprint
