"""Exception taxonomy for sprint lifecycle operations.

Every error carries a machine-readable ``code`` and the HTTP status the API
maps it to, so the JSON API and the HTTP client agree on one contract.
"""

from __future__ import annotations


class SprintLifecycleError(Exception):
    """Base exception for sprint lifecycle operations."""

    code = "lifecycle_error"
    status = 400


class ValidationError(SprintLifecycleError):
    """Malformed sprint spec or migration plan."""

    code = "validation_error"

    def __init__(self, message: str, errors: dict[str, str] | None = None):
        super().__init__(message)
        self.errors = errors or {}


class NotFoundError(SprintLifecycleError):
    """Sprint, task or migration target does not exist."""

    code = "not_found"
    status = 404


class InvalidStateError(SprintLifecycleError):
    """Transition attempted from a status that does not allow it."""

    code = "invalid_state"


class NoTasksError(SprintLifecycleError):
    """Starting a sprint with no tasks assigned."""

    code = "no_tasks"


class InvalidTargetError(SprintLifecycleError):
    """Migration target sprint is not open for work."""

    code = "invalid_target"


class ConflictError(InvalidStateError):
    """Another request already moved the sprint out of the expected status."""

    code = "conflict"
    status = 409


class PartialFailureError(SprintLifecycleError):
    """Some tasks failed to migrate while the sprint still closed."""

    code = "partial_failure"
    status = 207

    def __init__(self, message: str, task_ids: list[int]):
        super().__init__(message)
        self.task_ids = task_ids


_ERRORS_BY_CODE: dict[str, type[SprintLifecycleError]] = {
    cls.code: cls
    for cls in (
        ValidationError,
        NotFoundError,
        InvalidStateError,
        NoTasksError,
        InvalidTargetError,
        ConflictError,
    )
}


def error_for_code(code: str, message: str) -> SprintLifecycleError:
    """Rebuild a domain exception from an API error body."""
    cls = _ERRORS_BY_CODE.get(code, SprintLifecycleError)
    return cls(message)
