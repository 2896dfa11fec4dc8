from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.models import TaskInstance, TaskItem, TaskPhoto
from app.services.geofence_service import Coordinate
from app.services.task_errors import InvalidPhoto, InvalidTransition, NotFound
from app.services.task_state_machine import TERMINAL_STATUSES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhotoGateStatus:
    required: int
    uploaded: int

    @property
    def satisfied(self) -> bool:
        return self.uploaded >= self.required

    @property
    def missing(self) -> int:
        return max(self.required - self.uploaded, 0)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def normalize_photo_requirement(photo_required: bool, photo_count: int | None) -> tuple[bool, int]:
    if not photo_required:
        return False, 0
    return True, max(int(photo_count or 0), 1)


def photo_gate_status(instance: TaskInstance) -> PhotoGateStatus:
    required = instance.photo_count if instance.photo_required else 0
    return PhotoGateStatus(required=max(required, 0), uploaded=instance.photos_uploaded or 0)


def photo_gate_satisfied(instance: TaskInstance) -> bool:
    return photo_gate_status(instance).satisfied


def append(
    db: Session,
    *,
    task_id: int,
    uploader_id: int,
    content_ref: str,
    filename: str,
    coordinate: Coordinate | None = None,
    task_item_id: int | None = None,
    content_type: str | None = None,
    size_bytes: int | None = None,
) -> TaskPhoto:
    if task_item_id is not None:
        item_task_id = db.execute(select(TaskItem.task_id).where(TaskItem.id == task_item_id)).scalar_one_or_none()
        if item_task_id != task_id:
            raise InvalidPhoto('Checklist item does not belong to this task')

    now = _now()
    # Counter and ledger row are written in one transaction; the counter goes
    # first so a closed task rejects the upload before anything is inserted.
    result = db.execute(
        update(TaskInstance)
        .where(TaskInstance.id == task_id, TaskInstance.status.notin_(TERMINAL_STATUSES))
        .values(photos_uploaded=TaskInstance.photos_uploaded + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        exists = db.execute(select(TaskInstance.id).where(TaskInstance.id == task_id)).scalar_one_or_none()
        if exists is None:
            raise NotFound('Task not found')
        raise InvalidTransition('Photos cannot be added to a closed task')

    photo = TaskPhoto(
        task_id=task_id,
        task_item_id=task_item_id,
        content_ref=content_ref,
        filename=filename,
        content_type=content_type,
        size_bytes=size_bytes,
        latitude=Decimal(str(coordinate.latitude)) if coordinate else None,
        longitude=Decimal(str(coordinate.longitude)) if coordinate else None,
        uploaded_by=uploader_id,
        uploaded_at=now,
    )
    db.add(photo)
    db.flush()

    logger.info('Photo %s appended to task %s by principal %s', photo.id, task_id, uploader_id)
    return photo


def count_for(db: Session, task_id: int) -> int:
    return db.execute(select(func.count(TaskPhoto.id)).where(TaskPhoto.task_id == task_id)).scalar_one()


def list_for(db: Session, task_id: int) -> list[TaskPhoto]:
    return db.execute(
        select(TaskPhoto).where(TaskPhoto.task_id == task_id).order_by(TaskPhoto.uploaded_at.asc(), TaskPhoto.id.asc())
    ).scalars().all()


def get_photo(db: Session, photo_id: int) -> TaskPhoto:
    photo = db.execute(select(TaskPhoto).where(TaskPhoto.id == photo_id)).scalar_one_or_none()
    if not photo:
        raise NotFound('Photo not found')
    return photo
