from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from app.auth import Capability, Principal, Role, is_admin_role
from app.config import settings
from app.models import (
    AssigneeType,
    Principal as PrincipalModel,
    Store,
    TaskInstance,
    TaskItem,
    TaskPhoto,
    TaskStatus,
    TaskTransfer,
)
from app.services import photo_ledger_service
from app.services.checkin_service import record_implicit_checkin
from app.services.geofence_service import (
    Coordinate,
    GeofenceClassification,
    GeofenceResult,
    evaluate_for_store,
    store_has_geofence,
)
from app.services.notification_service import queue_task_event
from app.services.photo_ledger_service import photo_gate_status
from app.services.recurrence_service import local_day_bounds
from app.services.task_errors import (
    InvalidTransition,
    LocationRequired,
    NotFound,
    NotHolder,
    OutsideGeofence,
    PhotosIncomplete,
)
from app.services.task_state_machine import (
    HELD_STATUSES,
    TERMINAL_STATUSES,
    TaskAction,
    allowed_sources,
    effective_status,
    ensure_transition_allowed,
    is_terminal,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_instance(db: Session, task_id: int) -> TaskInstance:
    instance = db.execute(
        select(TaskInstance).where(TaskInstance.id == task_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if not instance:
        raise NotFound('Task not found')
    return instance


def _get_store(db: Session, store_id: int) -> Store:
    store = db.execute(select(Store).where(Store.id == store_id)).scalar_one_or_none()
    if not store:
        raise NotFound('Store not found')
    return store


def _ensure_store_scope(actor: Principal, instance: TaskInstance) -> None:
    if actor.can(Capability.MANAGE_STORE_TASKS):
        return
    if actor.store_id != instance.store_id:
        raise NotHolder('You are not assigned to this store')


def _compare_and_set(db: Session, task_id: int, *conditions, **values) -> bool:
    result = db.execute(
        update(TaskInstance)
        .where(TaskInstance.id == task_id, *conditions)
        .values(updated_at=_now(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def verify_on_premises(
    db: Session,
    *,
    actor: Principal,
    store: Store,
    coordinate: Coordinate | None,
) -> GeofenceResult:
    """Geofence gate applied before claim, photo upload and completion."""
    if not settings.geofence_enforced or actor.can(Capability.BYPASS_GEOFENCE):
        return GeofenceResult(classification=GeofenceClassification.UNKNOWN)

    result = evaluate_for_store(store, coordinate)
    if result.classification == GeofenceClassification.UNKNOWN:
        if store_has_geofence(store):
            raise LocationRequired('Location is required to act on tasks at this store')
        return result
    if result.classification == GeofenceClassification.OUTSIDE:
        logger.warning(
            'Principal %s is %.0f m from store %s (radius %.0f m)',
            actor.id,
            result.distance_m,
            store.id,
            result.radius_m,
        )
        raise OutsideGeofence(distance_m=result.distance_m, radius_m=result.radius_m)

    if settings.geofence_records_checkin:
        record_implicit_checkin(db, principal_id=actor.id, store_id=store.id, coordinate=coordinate)
    return result


def _ensure_may_claim(actor: Principal, instance: TaskInstance) -> None:
    ensure_transition_allowed(TaskAction.CLAIM, instance.status)
    if instance.claimed_by is not None:
        raise InvalidTransition('Task is already claimed', status=instance.status.value)

    manages = actor.can(Capability.MANAGE_STORE_TASKS)
    if instance.assignee_type == AssigneeType.SPECIFIC_EMPLOYEE:
        if instance.assignee_id != actor.id and not manages:
            raise NotHolder('This task is assigned to someone else')
    elif instance.assignee_type == AssigneeType.MANAGER and not manages:
        raise NotHolder('Only managers can claim this task')


def claim(
    db: Session,
    *,
    task_id: int,
    actor: Principal,
    coordinate: Coordinate | None = None,
) -> TaskInstance:
    instance = get_instance(db, task_id)
    _ensure_store_scope(actor, instance)
    _ensure_may_claim(actor, instance)
    verify_on_premises(db, actor=actor, store=_get_store(db, instance.store_id), coordinate=coordinate)

    now = _now()
    claimed = _compare_and_set(
        db,
        task_id,
        TaskInstance.status.in_(allowed_sources(TaskAction.CLAIM)),
        TaskInstance.claimed_by.is_(None),
        status=TaskStatus.CLAIMED,
        claimed_by=actor.id,
        claimed_at=now,
    )
    if not claimed:
        logger.warning('Claim of task %s by principal %s lost to a concurrent update', task_id, actor.id)
        raise InvalidTransition('Task was claimed by someone else')

    instance = get_instance(db, task_id)
    logger.info('Task %s claimed by principal %s', task_id, actor.id)
    queue_task_event(db, event_type='task.claimed', instance=instance, actor_principal_id=actor.id)
    return instance


def start(db: Session, *, task_id: int, actor: Principal) -> TaskInstance:
    instance = get_instance(db, task_id)
    _ensure_store_scope(actor, instance)
    ensure_transition_allowed(TaskAction.START, instance.status)
    if instance.claimed_by != actor.id:
        raise NotHolder('Only the person holding this task can start it')

    started = _compare_and_set(
        db,
        task_id,
        TaskInstance.status == TaskStatus.CLAIMED,
        TaskInstance.claimed_by == actor.id,
        status=TaskStatus.IN_PROGRESS,
        started_at=_now(),
    )
    if not started:
        raise InvalidTransition('Task changed before it could be started')

    instance = get_instance(db, task_id)
    logger.info('Task %s started by principal %s', task_id, actor.id)
    queue_task_event(db, event_type='task.started', instance=instance, actor_principal_id=actor.id)
    return instance


def _ensure_may_act_on_evidence(actor: Principal, instance: TaskInstance) -> None:
    if actor.can(Capability.MANAGE_STORE_TASKS):
        return
    if instance.claimed_by is not None:
        if instance.claimed_by != actor.id:
            raise NotHolder('Only the person holding this task can add photos')
        return
    if instance.assignee_type == AssigneeType.SPECIFIC_EMPLOYEE and instance.assignee_id != actor.id:
        raise NotHolder('This task is assigned to someone else')


def upload_photo(
    db: Session,
    *,
    task_id: int,
    actor: Principal,
    content_ref: str,
    filename: str,
    coordinate: Coordinate | None = None,
    task_item_id: int | None = None,
    content_type: str | None = None,
    size_bytes: int | None = None,
) -> TaskPhoto:
    instance = get_instance(db, task_id)
    _ensure_store_scope(actor, instance)
    ensure_transition_allowed(TaskAction.UPLOAD_PHOTO, instance.status)
    _ensure_may_act_on_evidence(actor, instance)
    verify_on_premises(db, actor=actor, store=_get_store(db, instance.store_id), coordinate=coordinate)

    photo = photo_ledger_service.append(
        db,
        task_id=task_id,
        uploader_id=actor.id,
        content_ref=content_ref,
        filename=filename,
        coordinate=coordinate,
        task_item_id=task_item_id,
        content_type=content_type,
        size_bytes=size_bytes,
    )
    instance = get_instance(db, task_id)
    queue_task_event(
        db,
        event_type='task.photo_uploaded',
        instance=instance,
        actor_principal_id=actor.id,
        payload={'photo_id': photo.id, 'photos_uploaded': instance.photos_uploaded},
    )
    return photo


def _duration_minutes(instance: TaskInstance, finished_at: datetime) -> int | None:
    began = instance.started_at or instance.claimed_at
    if began is None:
        return None
    return max(int(round((finished_at - began).total_seconds() / 60)), 0)


def complete(
    db: Session,
    *,
    task_id: int,
    actor: Principal,
    coordinate: Coordinate | None = None,
    force_complete: bool = False,
    override_photo_requirement: bool = False,
    notes: str | None = None,
) -> TaskInstance:
    instance = get_instance(db, task_id)
    _ensure_store_scope(actor, instance)
    if is_terminal(instance.status):
        ensure_transition_allowed(TaskAction.COMPLETE, instance.status)

    force = force_complete and actor.can(Capability.FORCE_COMPLETE)
    override = override_photo_requirement and actor.can(Capability.OVERRIDE_PHOTO_REQUIREMENT)
    if (force_complete and not force) or (override_photo_requirement and not override):
        logger.warning('Ignoring administrative completion flags from principal %s on task %s', actor.id, task_id)

    if force:
        action = TaskAction.FORCE_COMPLETE
        ensure_transition_allowed(action, instance.status)
    else:
        action = TaskAction.COMPLETE
        if instance.status in HELD_STATUSES and instance.claimed_by != actor.id:
            raise NotHolder('Only the person holding this task can complete it')
        ensure_transition_allowed(action, instance.status)

    gate = photo_gate_status(instance)
    if not gate.satisfied and not override:
        logger.warning('Task %s completion blocked: %s of %s photos', task_id, gate.uploaded, gate.required)
        raise PhotosIncomplete(uploaded=gate.uploaded, required=gate.required)

    if not force:
        verify_on_premises(db, actor=actor, store=_get_store(db, instance.store_id), coordinate=coordinate)

    now = _now()
    conditions = [TaskInstance.status.in_(allowed_sources(action))]
    if not force:
        conditions.append(TaskInstance.claimed_by == actor.id)
    values = {
        'status': TaskStatus.COMPLETED,
        'completed_by': actor.id,
        'completed_at': now,
        'actual_duration_minutes': _duration_minutes(instance, now),
    }
    clean_notes = (notes or '').strip()
    if clean_notes:
        values['notes'] = clean_notes

    if not _compare_and_set(db, task_id, *conditions, **values):
        raise InvalidTransition('Task changed before it could be completed')

    instance = get_instance(db, task_id)
    logger.info('Task %s completed by principal %s (forced=%s)', task_id, actor.id, force)
    queue_task_event(
        db,
        event_type='task.completed',
        instance=instance,
        actor_principal_id=actor.id,
        payload={'actual_duration_minutes': instance.actual_duration_minutes, 'forced': force},
    )
    return instance


def _get_transfer_target(db: Session, principal_id: int, instance: TaskInstance) -> PrincipalModel:
    target = db.execute(
        select(PrincipalModel).where(PrincipalModel.id == principal_id, PrincipalModel.active.is_(True))
    ).scalar_one_or_none()
    if not target:
        raise NotFound('Transfer recipient not found')
    role = Role(target.role.value)
    if not is_admin_role(role) and target.store_id != instance.store_id:
        raise NotHolder('Tasks can only be transferred to someone at the same store')
    return target


def transfer(
    db: Session,
    *,
    task_id: int,
    actor: Principal,
    from_principal_id: int,
    to_principal_id: int,
    reason: str | None = None,
) -> TaskInstance:
    instance = get_instance(db, task_id)
    _ensure_store_scope(actor, instance)
    if actor.id != from_principal_id and not actor.can(Capability.TRANSFER_ANY):
        raise NotHolder('You can only hand off tasks you hold')
    if is_terminal(instance.status):
        ensure_transition_allowed(TaskAction.TRANSFER, instance.status)
    if instance.claimed_by != from_principal_id:
        raise NotHolder('Task is not held by the handing-off person')
    ensure_transition_allowed(TaskAction.TRANSFER, instance.status)
    if to_principal_id == from_principal_id:
        raise InvalidTransition('Task is already held by this person')
    _get_transfer_target(db, to_principal_id, instance)

    moved = _compare_and_set(
        db,
        task_id,
        TaskInstance.status.in_(allowed_sources(TaskAction.TRANSFER)),
        TaskInstance.claimed_by == from_principal_id,
        claimed_by=to_principal_id,
    )
    if not moved:
        raise NotHolder('Task is no longer held by the handing-off person')

    clean_reason = (reason or '').strip() or None
    db.add(
        TaskTransfer(
            task_id=task_id,
            from_principal_id=from_principal_id,
            to_principal_id=to_principal_id,
            reason=clean_reason,
            transferred_at=_now(),
        )
    )
    db.flush()

    instance = get_instance(db, task_id)
    logger.info('Task %s transferred from %s to %s', task_id, from_principal_id, to_principal_id)
    queue_task_event(
        db,
        event_type='task.transferred',
        instance=instance,
        actor_principal_id=actor.id,
        payload={'from_principal_id': from_principal_id, 'to_principal_id': to_principal_id, 'reason': clean_reason},
    )
    return instance


def cancel(db: Session, *, task_id: int, actor: Principal, reason: str | None = None) -> TaskInstance:
    instance = get_instance(db, task_id)
    if not actor.can(Capability.CANCEL_TASKS):
        raise NotHolder('Only managers can cancel tasks')
    ensure_transition_allowed(TaskAction.CANCEL, instance.status)

    if not _compare_and_set(
        db,
        task_id,
        TaskInstance.status.in_(allowed_sources(TaskAction.CANCEL)),
        status=TaskStatus.CANCELLED,
        cancelled_at=_now(),
    ):
        raise InvalidTransition('Task changed before it could be cancelled')

    instance = get_instance(db, task_id)
    logger.info('Task %s cancelled by principal %s', task_id, actor.id)
    queue_task_event(
        db,
        event_type='task.cancelled',
        instance=instance,
        actor_principal_id=actor.id,
        payload={'reason': (reason or '').strip() or None},
    )
    return instance


def set_item_completed(
    db: Session,
    *,
    task_id: int,
    item_id: int,
    actor: Principal,
    completed: bool,
) -> TaskItem:
    instance = get_instance(db, task_id)
    _ensure_store_scope(actor, instance)
    if is_terminal(instance.status):
        raise InvalidTransition('Checklist items cannot change on a closed task', status=instance.status.value)
    _ensure_may_act_on_evidence(actor, instance)

    item = db.execute(
        select(TaskItem).where(TaskItem.id == item_id, TaskItem.task_id == task_id)
    ).scalar_one_or_none()
    if not item:
        raise NotFound('Checklist item not found')

    if completed and not item.completed:
        item.completed = True
        item.completed_at = _now()
        item.completed_by = actor.id
    elif not completed and item.completed:
        item.completed = False
        item.completed_at = None
        item.completed_by = None
    db.flush()
    return item


def list_items(db: Session, *, task_id: int) -> list[TaskItem]:
    return db.execute(
        select(TaskItem).where(TaskItem.task_id == task_id).order_by(TaskItem.position.asc(), TaskItem.id.asc())
    ).scalars().all()


def list_transfers(db: Session, *, task_id: int) -> list[TaskTransfer]:
    return db.execute(
        select(TaskTransfer)
        .where(TaskTransfer.task_id == task_id)
        .order_by(TaskTransfer.transferred_at.asc(), TaskTransfer.id.asc())
    ).scalars().all()


def list_instances(
    db: Session,
    *,
    store_id: int,
    status: TaskStatus | None = None,
    assignee_id: int | None = None,
    claimed_by: int | None = None,
    on_date: date | None = None,
    include_cancelled: bool = False,
    now: datetime | None = None,
) -> list[TaskInstance]:
    now = now or _now()
    conditions = [TaskInstance.store_id == store_id]
    not_past_due = or_(TaskInstance.due_at.is_(None), TaskInstance.due_at >= now)

    if status == TaskStatus.OVERDUE:
        conditions.append(TaskInstance.status.notin_(TERMINAL_STATUSES))
        conditions.append(TaskInstance.due_at < now)
    elif status is not None:
        conditions.append(TaskInstance.status == status)
        if status not in TERMINAL_STATUSES:
            conditions.append(not_past_due)
    elif not include_cancelled:
        conditions.append(TaskInstance.status != TaskStatus.CANCELLED)

    if assignee_id is not None:
        conditions.append(TaskInstance.assignee_id == assignee_id)
    if claimed_by is not None:
        conditions.append(TaskInstance.claimed_by == claimed_by)
    if on_date is not None:
        day_start, day_end = local_day_bounds(on_date, _get_store(db, store_id).timezone)
        conditions.append(and_(TaskInstance.scheduled_for >= day_start, TaskInstance.scheduled_for < day_end))

    return db.execute(
        select(TaskInstance)
        .where(*conditions)
        .order_by(TaskInstance.scheduled_for.desc(), TaskInstance.id.asc())
    ).scalars().all()


def serialize_instance(instance: TaskInstance, now: datetime | None = None) -> dict:
    gate = photo_gate_status(instance)
    return {
        'id': instance.id,
        'template_id': instance.template_id,
        'store_id': instance.store_id,
        'period_key': instance.period_key,
        'title': instance.title,
        'description': instance.description,
        'assignee_type': instance.assignee_type.value,
        'assignee_id': instance.assignee_id,
        'status': effective_status(instance, now).value,
        'stored_status': instance.status.value,
        'priority': instance.priority.value,
        'scheduled_for': instance.scheduled_for,
        'due_at': instance.due_at,
        'claimed_by': instance.claimed_by,
        'claimed_at': instance.claimed_at,
        'started_at': instance.started_at,
        'completed_by': instance.completed_by,
        'completed_at': instance.completed_at,
        'estimated_duration_minutes': instance.estimated_duration_minutes,
        'actual_duration_minutes': instance.actual_duration_minutes,
        'photo_required': instance.photo_required,
        'photo_count': gate.required,
        'photos_uploaded': gate.uploaded,
        'photos_missing': gate.missing,
        'notes': instance.notes,
    }
