"""Lifecycle event dispatch.

Events are one-way messages: the engine hands them to a dispatcher and never
waits on, or depends on, delivery.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import httpx
from cachetools import TTLCache

from .config import load_settings
from .database import now_timestamp
from .models import Sprint

logger = logging.getLogger(__name__)

SPRINT_CREATED = "sprint.created"
SPRINT_STARTED = "sprint.started"
SPRINT_COMPLETED = "sprint.completed"
SPRINT_CANCELLED = "sprint.cancelled"
SPRINT_TASKS_MIGRATED = "sprint.tasks_migrated"


@dataclass(frozen=True)
class SprintEvent:
    type: str
    sprint_id: int
    project: str
    occurred_at: str = field(default_factory=now_timestamp)
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_sprint(cls, event_type: str, sprint: Sprint, **payload: Any) -> SprintEvent:
        return cls(
            type=event_type,
            sprint_id=sprint.id,
            project=sprint.project,
            payload={"name": sprint.name, "status": sprint.status, **payload},
        )

    def to_dict(self) -> dict:
        return asdict(self)


class NotificationDispatcher(Protocol):
    def notify(self, event: SprintEvent) -> None: ...


class LoggingDispatcher:
    """Dispatcher that only records events in the log."""

    def notify(self, event: SprintEvent) -> None:
        logger.info(
            "Event %s for sprint %d (%s)", event.type, event.sprint_id, event.project
        )

    def close(self) -> None:
        pass


class WebhookDispatcher:
    """POST events as JSON to a webhook URL on a background worker.

    After a delivery failure, posts to the same URL are skipped for a few
    seconds so a dead endpoint is not hammered on every transition. At most
    ``max_pending`` events wait for delivery; further events are dropped.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        failure_ttl: float = 5.0,
        max_pending: int = 100,
        **kwargs: Any,
    ):
        self.url = url
        self.max_pending = max_pending
        self._client = httpx.Client(timeout=timeout, **kwargs)
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="sprint-webhook"
        )
        self._failure_cache: TTLCache[str, bool] = TTLCache(
            maxsize=10, ttl=failure_ttl
        )
        # Guards _failure_cache and _pending, shared with the delivery worker
        self._lock = threading.Lock()
        self._pending = 0

    def notify(self, event: SprintEvent) -> None:
        with self._lock:
            if self.url in self._failure_cache:
                logger.debug("Webhook %s recently failed, dropping %s", self.url, event.type)
                return
            if self._pending >= self.max_pending:
                logger.warning(
                    "Webhook queue full (%d pending), dropping %s for sprint %d",
                    self._pending,
                    event.type,
                    event.sprint_id,
                )
                return
            self._pending += 1
        self._executor.submit(self._run, event)

    def _run(self, event: SprintEvent) -> None:
        try:
            self._deliver(event)
        finally:
            with self._lock:
                self._pending -= 1

    def _deliver(self, event: SprintEvent) -> None:
        try:
            resp = self._client.post(self.url, json=event.to_dict())
            resp.raise_for_status()
        except httpx.HTTPError as e:
            with self._lock:
                self._failure_cache[self.url] = True
            logger.warning("Failed to deliver %s to %s: %s", event.type, self.url, e)
            return
        logger.debug("Delivered %s for sprint %d", event.type, event.sprint_id)

    def close(self) -> None:
        """Wait for queued deliveries, then close the HTTP client."""
        self._executor.shutdown(wait=True)
        self._client.close()


# Module-level dispatcher (created on first call)
_dispatcher: LoggingDispatcher | WebhookDispatcher | None = None


def get_dispatcher() -> LoggingDispatcher | WebhookDispatcher:
    """Get the configured dispatcher: webhook if a URL is set, else logging."""
    global _dispatcher
    if _dispatcher is None:
        settings = load_settings()
        if settings.webhook_url:
            _dispatcher = WebhookDispatcher(
                settings.webhook_url, timeout=settings.webhook_timeout
            )
        else:
            _dispatcher = LoggingDispatcher()
    return _dispatcher


def close_dispatcher() -> None:
    """Close the module-level dispatcher."""
    global _dispatcher
    if _dispatcher is not None:
        _dispatcher.close()
        _dispatcher = None


def dispatch(dispatcher: NotificationDispatcher | None, event: SprintEvent) -> None:
    """Hand an event to a dispatcher; failures are logged, never raised."""
    if dispatcher is None:
        return
    try:
        dispatcher.notify(event)
    except Exception:
        logger.warning(
            "Notification dispatch failed for %s (sprint %d)",
            event.type,
            event.sprint_id,
            exc_info=True,
        )
