"""Transition table for task instances.

Persisted statuses only move along the edges below. OVERDUE is derived on
read from ``due_at`` and is never required as a source status.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from app.models import TaskInstance, TaskStatus
from app.services.task_errors import InvalidTransition


class TaskAction(str, Enum):
    CLAIM = 'CLAIM'
    START = 'START'
    UPLOAD_PHOTO = 'UPLOAD_PHOTO'
    COMPLETE = 'COMPLETE'
    FORCE_COMPLETE = 'FORCE_COMPLETE'
    TRANSFER = 'TRANSFER'
    CANCEL = 'CANCEL'


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})
OPEN_STATUSES = frozenset(
    {
        TaskStatus.PENDING,
        TaskStatus.AVAILABLE,
        TaskStatus.CLAIMED,
        TaskStatus.IN_PROGRESS,
        TaskStatus.OVERDUE,
    }
)
HELD_STATUSES = frozenset({TaskStatus.CLAIMED, TaskStatus.IN_PROGRESS})

ALLOWED_SOURCES: dict[TaskAction, frozenset[TaskStatus]] = {
    TaskAction.CLAIM: frozenset({TaskStatus.AVAILABLE, TaskStatus.PENDING}),
    TaskAction.START: frozenset({TaskStatus.CLAIMED}),
    TaskAction.UPLOAD_PHOTO: OPEN_STATUSES,
    TaskAction.COMPLETE: HELD_STATUSES,
    TaskAction.FORCE_COMPLETE: OPEN_STATUSES,
    TaskAction.TRANSFER: HELD_STATUSES,
    TaskAction.CANCEL: OPEN_STATUSES,
}


def allowed_sources(action: TaskAction) -> frozenset[TaskStatus]:
    return ALLOWED_SOURCES[action]


def is_allowed(action: TaskAction, status: TaskStatus) -> bool:
    return status in ALLOWED_SOURCES[action]


def ensure_transition_allowed(action: TaskAction, status: TaskStatus) -> None:
    if not is_allowed(action, status):
        raise InvalidTransition(
            f'Cannot {action.value.lower().replace("_", " ")} a task that is {status.value.lower().replace("_", " ")}',
            status=status.value,
            action=action.value,
        )


def is_terminal(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def effective_status(instance: TaskInstance, now: datetime | None = None) -> TaskStatus:
    now = now or datetime.now(tz=timezone.utc)
    if instance.status in TERMINAL_STATUSES:
        return instance.status
    if instance.due_at is not None and instance.due_at < now:
        return TaskStatus.OVERDUE
    return instance.status
