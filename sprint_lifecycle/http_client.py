"""HTTP client for the sprint-lifecycle JSON API v1.

Used by sprintctl in client-server mode to talk to a running
sprint-lifecycle instance over HTTP instead of accessing SQLite directly.
"""

from __future__ import annotations

from typing import Any

import httpx

from .errors import SprintLifecycleError, error_for_code


class ConnectionFailedError(SprintLifecycleError):
    """The API server could not be reached."""

    code = "connection_error"
    status = 0


class SprintLifecycleClient:
    """Synchronous HTTP client for sprint-lifecycle API v1.

    Mirrors the SprintService interface; API error bodies are turned back
    into the matching SprintLifecycleError subclass.
    """

    def __init__(self, base_url: str, **kwargs: Any):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=f"{self.base_url}/api/v1",
            timeout=30.0,
            **kwargs,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | list | None = None,
        params: dict | None = None,
    ) -> httpx.Response:
        """Make a request and handle errors.

        Wraps httpx transport errors (connection refused, timeout, DNS failure)
        as ConnectionFailedError so callers only need to catch one exception
        hierarchy.
        """
        try:
            resp = self._client.request(method, path, json=json, params=params)
        except httpx.RequestError as exc:
            raise ConnectionFailedError(f"Connection error: {exc}") from exc
        if resp.status_code >= 400:
            try:
                body = resp.json()
                msg = body.get("error", resp.text)
                code = body.get("code", "")
            except Exception:
                msg = resp.text
                code = ""
            err = error_for_code(code, msg)
            err.status = resp.status_code
            raise err
        return resp

    # --- Sprint operations ---

    def list_sprints(self, project: str, *, status: str | None = None) -> list[dict]:
        params = {}
        if status:
            params["status"] = status
        resp = self._request("GET", f"/projects/{project}/sprints", params=params)
        result: list[dict] = resp.json()
        return result

    def get_sprint(self, sprint_id: int) -> dict:
        resp = self._request("GET", f"/sprints/{sprint_id}")
        result: dict = resp.json()
        return result

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
        body: dict = {
            "start_date": start_date,
            "end_date": end_date,
            "capacity": capacity,
            "goal": goal,
        }
        if name is not None:
            body["name"] = name
        resp = self._request("POST", f"/projects/{project}/sprints", json=body)
        result: dict = resp.json()
        return result

    def start_sprint(self, sprint_id: int) -> dict:
        resp = self._request("POST", f"/sprints/{sprint_id}/start")
        result: dict = resp.json()
        return result

    def get_incomplete_tasks(self, sprint_id: int) -> list[dict]:
        resp = self._request("GET", f"/sprints/{sprint_id}/incomplete-tasks")
        data: dict = resp.json()
        tasks: list[dict] = data["tasks"]
        return tasks

    def complete_sprint(
        self,
        sprint_id: int,
        *,
        selected_task_ids: list[int] | None = None,
        target_sprint_id: int | None = None,
        new_sprint: dict | None = None,
    ) -> dict:
        body: dict = {"selected_task_ids": selected_task_ids or []}
        if target_sprint_id is not None:
            body["target_sprint_id"] = target_sprint_id
        if new_sprint is not None:
            body["new_sprint"] = new_sprint
        resp = self._request("POST", f"/sprints/{sprint_id}/complete", json=body)
        result: dict = resp.json()
        return result

    def retry_migrations(
        self,
        sprint_id: int,
        *,
        task_ids: list[int],
        target_sprint_id: int | None = None,
        new_sprint: dict | None = None,
    ) -> dict:
        body: dict = {"selected_task_ids": task_ids}
        if target_sprint_id is not None:
            body["target_sprint_id"] = target_sprint_id
        if new_sprint is not None:
            body["new_sprint"] = new_sprint
        resp = self._request("POST", f"/sprints/{sprint_id}/retry-migrations", json=body)
        result: dict = resp.json()
        return result

    def cancel_sprint(self, sprint_id: int) -> dict:
        resp = self._request("POST", f"/sprints/{sprint_id}/cancel")
        result: dict = resp.json()
        return result

    # --- Task operations ---

    def list_sprint_tasks(self, sprint_id: int) -> list[dict]:
        resp = self._request("GET", f"/sprints/{sprint_id}/tasks")
        result: list[dict] = resp.json()
        return result

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
        body: dict = {
            "title": title,
            "status": status,
            "story_points": story_points,
            "subtasks": [{"title": t, "status": s} for t, s in subtasks or []],
        }
        if sprint_id is not None:
            body["sprint_id"] = sprint_id
        resp = self._request("POST", f"/projects/{project}/tasks", json=body)
        result: dict = resp.json()
        return result

    def get_task(self, task_id: int) -> dict:
        resp = self._request("GET", f"/tasks/{task_id}")
        result: dict = resp.json()
        return result

    def set_task_status(self, task_id: int, status: str) -> dict:
        resp = self._request("PUT", f"/tasks/{task_id}/status", json={"status": status})
        result: dict = resp.json()
        return result

    def assign_task(self, task_id: int, sprint_id: int) -> dict:
        resp = self._request(
            "PUT", f"/tasks/{task_id}/sprint", json={"sprint_id": sprint_id}
        )
        result: dict = resp.json()
        return result

    def close(self) -> None:
        self._client.close()
