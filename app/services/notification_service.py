from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.orm import Session

from app.models import TaskInstance

logger = logging.getLogger(__name__)

PENDING_EVENTS_KEY = 'pending_task_events'


@dataclass(frozen=True)
class TaskEvent:
    event_type: str
    task_id: int
    store_id: int
    status: str
    actor_principal_id: int | None
    payload: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


EventPublisher = Callable[[TaskEvent], None]


def _log_publisher(task_event: TaskEvent) -> None:
    logger.info(
        'task event %s task=%s store=%s status=%s',
        task_event.event_type,
        task_event.task_id,
        task_event.store_id,
        task_event.status,
    )


_publisher: EventPublisher = _log_publisher


def set_event_publisher(publisher: EventPublisher | None) -> None:
    global _publisher
    _publisher = publisher or _log_publisher


def queue_task_event(
    db: Session,
    *,
    event_type: str,
    instance: TaskInstance,
    actor_principal_id: int | None,
    payload: dict | None = None,
) -> None:
    """Hold an outbound event until the surrounding transaction commits."""
    db.info.setdefault(PENDING_EVENTS_KEY, []).append(
        TaskEvent(
            event_type=event_type,
            task_id=instance.id,
            store_id=instance.store_id,
            status=instance.status.value,
            actor_principal_id=actor_principal_id,
            payload=payload or {},
        )
    )


def _dispatch_after_commit(db: Session) -> None:
    events = db.info.pop(PENDING_EVENTS_KEY, [])
    for task_event in events:
        try:
            _publisher(task_event)
        except Exception:
            # The transition is already committed; a failed broadcast must not undo it.
            logger.exception('Failed to publish task event %s for task %s', task_event.event_type, task_event.task_id)


def _discard_after_rollback(db: Session) -> None:
    db.info.pop(PENDING_EVENTS_KEY, None)


def install_event_dispatch(target) -> None:
    event.listen(target, 'after_commit', _dispatch_after_commit)
    event.listen(target, 'after_rollback', _discard_after_rollback)
