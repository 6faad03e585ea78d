"""JSON API v1 endpoints for the sprint lifecycle.

All endpoints live under /api/v1/ and return JSON. Used by sprintctl
(``--url``) through SprintLifecycleClient and by any other integrations.
Requests are assumed to be authenticated and authorized upstream.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from .database import get_db
from .errors import SprintLifecycleError
from .models import SPRINT_STATUSES, MigrationPlan, SprintSpec
from .notifications import get_dispatcher
from .service import SprintService

logger = logging.getLogger(__name__)

router = APIRouter()

_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


def _validate_date_str(v: str | None) -> str | None:
    """Validate a date string is a real YYYY-MM-DD date."""
    if v is None:
        return v
    try:
        datetime.strptime(v, "%Y-%m-%d")  # noqa: DTZ007
    except ValueError:
        msg = f"Invalid date: '{v}' is not a valid YYYY-MM-DD date"
        raise ValueError(msg) from None
    return v


# --- Pydantic request models ---


class SprintCreate(BaseModel):
    name: str | None = Field(None, max_length=100)
    start_date: str = Field(pattern=_DATE_PATTERN)
    end_date: str = Field(pattern=_DATE_PATTERN)
    capacity: float = Field(0, ge=0, description="Team capacity in hours")
    goal: str = Field("", max_length=500)

    @field_validator("start_date", "end_date")
    @classmethod
    def check_date(cls, v: str | None) -> str | None:
        return _validate_date_str(v)

    def to_spec(self, project: str) -> SprintSpec:
        return SprintSpec(
            project=project,
            name=self.name,
            start_date=self.start_date,
            end_date=self.end_date,
            capacity=self.capacity,
            goal=self.goal,
        )


class SprintComplete(BaseModel):
    selected_task_ids: list[int] = Field(default_factory=list)
    target_sprint_id: int | None = Field(None, gt=0)
    new_sprint: SprintCreate | None = None

    def to_plan(self) -> MigrationPlan:
        return MigrationPlan(
            selected_task_ids=frozenset(self.selected_task_ids),
            target_sprint_id=self.target_sprint_id,
            new_sprint=self.new_sprint.to_spec("") if self.new_sprint else None,
        )


class SubtaskCreate(BaseModel):
    title: str = Field(min_length=1)
    status: str = "todo"


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    status: str = "todo"
    sprint_id: int | None = Field(None, gt=0)
    story_points: int = Field(0, ge=0)
    subtasks: list[SubtaskCreate] = Field(default_factory=list)


class TaskStatusUpdate(BaseModel):
    status: str = Field(min_length=1)


class TaskAssign(BaseModel):
    sprint_id: int = Field(gt=0)


# --- Helpers ---


def _get_service() -> SprintService:
    return SprintService(get_db(), get_dispatcher())


def _error(message: str, code: str, status: int) -> JSONResponse:
    return JSONResponse({"error": message, "code": code}, status_code=status)


def _handle_exception(e: Exception) -> JSONResponse:
    """Map lifecycle exceptions to JSON error responses."""
    if isinstance(e, SprintLifecycleError):
        return _error(str(e), e.code, e.status)
    if isinstance(e, sqlite3.IntegrityError):
        return _error(str(e), "conflict", 409)
    logger.exception("Unhandled error in API v1")
    return _error("Internal server error", "internal_error", 500)


# --- Sprint routes ---


@router.get("/api/v1/projects/{project}/sprints")
async def list_sprints(request: Request, project: str, status: str | None = None):
    if status and status not in SPRINT_STATUSES:
        return _error(f"Unknown status '{status}'", "validation_error", 400)
    service = _get_service()
    return [s.to_dict() for s in service.list_sprints(project, status=status)]


@router.post("/api/v1/projects/{project}/sprints", status_code=201)
async def create_sprint(request: Request, project: str, body: SprintCreate):
    service = _get_service()
    try:
        sprint = service.create_sprint(body.to_spec(project))
    except Exception as e:
        return _handle_exception(e)
    return sprint.to_dict()


@router.get("/api/v1/sprints/{sprint_id}")
async def get_sprint(request: Request, sprint_id: int):
    service = _get_service()
    try:
        sprint = service.get_sprint(sprint_id)
        tasks = service.list_sprint_tasks(sprint_id)
    except Exception as e:
        return _handle_exception(e)
    result = sprint.to_dict()
    result["tasks"] = [t.id for t in tasks]
    result["task_count"] = len(tasks)
    return result


@router.post("/api/v1/sprints/{sprint_id}/start")
async def start_sprint(request: Request, sprint_id: int):
    service = _get_service()
    try:
        sprint = service.start_sprint(sprint_id)
    except Exception as e:
        return _handle_exception(e)
    return sprint.to_dict()


@router.get("/api/v1/sprints/{sprint_id}/incomplete-tasks")
async def incomplete_tasks(request: Request, sprint_id: int):
    service = _get_service()
    try:
        tasks = service.get_incomplete_tasks(sprint_id)
    except Exception as e:
        return _handle_exception(e)
    return {"sprint": sprint_id, "tasks": [t.to_dict() for t in tasks]}


@router.post("/api/v1/sprints/{sprint_id}/complete")
async def complete_sprint(
    request: Request, sprint_id: int, body: SprintComplete | None = None
):
    service = _get_service()
    plan = body.to_plan() if body else None
    try:
        result = service.complete_sprint(sprint_id, plan)
    except Exception as e:
        return _handle_exception(e)
    return result.to_dict()


@router.post("/api/v1/sprints/{sprint_id}/retry-migrations")
async def retry_migrations(request: Request, sprint_id: int, body: SprintComplete):
    service = _get_service()
    try:
        result = service.retry_migrations(sprint_id, body.to_plan())
    except Exception as e:
        return _handle_exception(e)
    return result.to_dict()


@router.post("/api/v1/sprints/{sprint_id}/cancel")
async def cancel_sprint(request: Request, sprint_id: int):
    service = _get_service()
    try:
        sprint = service.cancel_sprint(sprint_id)
    except Exception as e:
        return _handle_exception(e)
    return sprint.to_dict()


@router.get("/api/v1/sprints/{sprint_id}/tasks")
async def list_sprint_tasks(request: Request, sprint_id: int):
    service = _get_service()
    try:
        tasks = service.list_sprint_tasks(sprint_id)
    except Exception as e:
        return _handle_exception(e)
    return [t.to_dict() for t in tasks]


# --- Task routes ---


@router.post("/api/v1/projects/{project}/tasks", status_code=201)
async def create_task(request: Request, project: str, body: TaskCreate):
    service = _get_service()
    try:
        task = service.add_task(
            project,
            body.title,
            status=body.status,
            sprint_id=body.sprint_id,
            story_points=body.story_points,
            subtasks=[(s.title, s.status) for s in body.subtasks],
        )
    except Exception as e:
        return _handle_exception(e)
    return task.to_dict()


@router.get("/api/v1/tasks/{task_id}")
async def get_task(request: Request, task_id: int):
    service = _get_service()
    try:
        task = service.get_task(task_id)
    except Exception as e:
        return _handle_exception(e)
    return task.to_dict()


@router.put("/api/v1/tasks/{task_id}/status")
async def set_task_status(request: Request, task_id: int, body: TaskStatusUpdate):
    service = _get_service()
    try:
        task = service.set_task_status(task_id, body.status)
    except Exception as e:
        return _handle_exception(e)
    return task.to_dict()


@router.put("/api/v1/tasks/{task_id}/sprint")
async def assign_task(request: Request, task_id: int, body: TaskAssign):
    service = _get_service()
    try:
        task = service.assign_task(task_id, body.sprint_id)
    except Exception as e:
        return _handle_exception(e)
    return task.to_dict()
