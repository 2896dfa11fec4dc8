from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.models import (
    AssigneeType,
    AssignmentEntityType,
    StoreAssignment,
    TaskInstance,
    TaskItem,
    TaskList,
    TaskPriority,
    TaskStatus,
    TaskTemplate,
)
from app.services.checkin_service import get_active_store
from app.services.notification_service import queue_task_event
from app.services.photo_ledger_service import normalize_photo_requirement
from app.services.recurrence_service import (
    ADHOC_PERIOD_KEY,
    PeriodKey,
    is_due_at,
    is_instantiated_automatically,
    period_key_for,
    resolve_recurrence_type,
)
from app.services.task_errors import DuplicateInstanceRace, NotFound

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def initial_status_for(assignee_type: AssigneeType) -> TaskStatus:
    if assignee_type == AssigneeType.SPECIFIC_EMPLOYEE:
        return TaskStatus.PENDING
    return TaskStatus.AVAILABLE


def _assigned_store_ids(db: Session) -> dict[tuple[AssignmentEntityType, int], set[int]]:
    rows = db.execute(
        select(StoreAssignment.entity_type, StoreAssignment.entity_id, StoreAssignment.store_id).where(
            StoreAssignment.active.is_(True)
        )
    ).all()
    assigned: dict[tuple[AssignmentEntityType, int], set[int]] = {}
    for row in rows:
        assigned.setdefault((row.entity_type, row.entity_id), set()).add(row.store_id)
    return assigned


def _applies_to_store(
    template: TaskTemplate,
    store_id: int,
    assigned: dict[tuple[AssignmentEntityType, int], set[int]],
) -> bool:
    if template.store_id is not None:
        return template.store_id == store_id

    scopes = [assigned.get((AssignmentEntityType.TEMPLATE, template.id))]
    if template.list_id is not None:
        scopes.append(assigned.get((AssignmentEntityType.LIST, template.list_id)))
    scopes = [scope for scope in scopes if scope]
    if not scopes:
        # Store-agnostic and unassigned: applies everywhere.
        return True
    return any(store_id in scope for scope in scopes)


def _active_lists_by_id(db: Session) -> dict[int, TaskList]:
    lists = db.execute(select(TaskList).where(TaskList.active.is_(True))).scalars().all()
    return {task_list.id: task_list for task_list in lists}


def templates_for_store(db: Session, *, store_id: int, list_id: int | None = None) -> list[TaskTemplate]:
    query = select(TaskTemplate).where(
        TaskTemplate.active.is_(True),
        (TaskTemplate.store_id == store_id) | (TaskTemplate.store_id.is_(None)),
    )
    if list_id is not None:
        query = query.where(TaskTemplate.list_id == list_id)
    templates = db.execute(
        query.order_by(TaskTemplate.list_id.asc(), TaskTemplate.position.asc(), TaskTemplate.id.asc())
    ).scalars().all()

    lists_by_id = _active_lists_by_id(db)
    assigned = _assigned_store_ids(db)
    return [
        template
        for template in templates
        if (template.list_id is None or template.list_id in lists_by_id)
        and _applies_to_store(template, store_id, assigned)
    ]


def _effective_recurrence(template: TaskTemplate, task_list: TaskList | None):
    raw = template.recurrence_type
    if raw is None and task_list is not None:
        raw = task_list.recurrence_type
    return resolve_recurrence_type(raw)


def _find_live_instance(db: Session, *, template_id: int, store_id: int, period_key: str) -> TaskInstance | None:
    return db.execute(
        select(TaskInstance)
        .where(
            TaskInstance.template_id == template_id,
            TaskInstance.store_id == store_id,
            TaskInstance.period_key == period_key,
            TaskInstance.status != TaskStatus.CANCELLED,
        )
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _insert_ignoring_conflict(db: Session, values: dict) -> int:
    dialect = db.get_bind().dialect.name
    if dialect == 'postgresql':
        stmt = postgresql.insert(TaskInstance)
    elif dialect == 'sqlite':
        stmt = sqlite.insert(TaskInstance)
    else:
        raise RuntimeError(f'Unsupported database dialect: {dialect}')

    new_id = db.execute(
        stmt.values(**values).on_conflict_do_nothing().returning(TaskInstance.id)
    ).scalar_one_or_none()
    if new_id is None:
        raise DuplicateInstanceRace(
            'Instance already exists for this period',
            template_id=values['template_id'],
            store_id=values['store_id'],
            period_key=values['period_key'],
        )
    return new_id


def _due_at_for(period: PeriodKey, scheduled_for: datetime, estimated_minutes: int | None) -> datetime | None:
    if period.ends_at is not None:
        return period.ends_at
    if estimated_minutes:
        return scheduled_for + timedelta(minutes=estimated_minutes)
    return None


def _ensure_for_template(
    db: Session,
    *,
    template: TaskTemplate,
    task_list: TaskList | None,
    store,
    at: datetime,
    actor_principal_id: int | None,
) -> TaskInstance:
    recurrence = _effective_recurrence(template, task_list)
    period = period_key_for(recurrence, at, store.timezone)

    if period.value != ADHOC_PERIOD_KEY:
        existing = _find_live_instance(db, template_id=template.id, store_id=store.id, period_key=period.value)
        if existing or not is_due_at(recurrence, at):
            return existing

    assignee_type = template.assignee_type or AssigneeType.STORE_WIDE
    photo_required, photo_count = normalize_photo_requirement(template.photo_required, template.photo_count)
    now = _now()
    values = {
        'template_id': template.id,
        'store_id': store.id,
        'period_key': period.value,
        'title': template.title,
        'description': template.description,
        'assignee_type': assignee_type,
        'assignee_id': template.assignee_id,
        'status': initial_status_for(assignee_type),
        'priority': template.priority or TaskPriority.NORMAL,
        'scheduled_for': at,
        'due_at': _due_at_for(period, at, template.estimated_duration_minutes),
        'estimated_duration_minutes': template.estimated_duration_minutes,
        'photo_required': photo_required,
        'photo_count': photo_count,
        'photos_uploaded': 0,
        'created_by_principal_id': actor_principal_id,
        'created_at': now,
        'updated_at': now,
    }

    try:
        new_id = _insert_ignoring_conflict(db, values)
    except DuplicateInstanceRace as exc:
        logger.debug('Instantiation race resolved to existing row: %s', exc.details)
        existing = _find_live_instance(db, template_id=template.id, store_id=store.id, period_key=period.value)
        if existing is None:
            raise
        return existing

    instance = db.get(TaskInstance, new_id)
    logger.info(
        'Created task %s from template %s for store %s period %s',
        instance.id,
        template.id,
        store.id,
        period.value,
    )
    queue_task_event(db, event_type='task.created', instance=instance, actor_principal_id=actor_principal_id)
    return instance


def ensure_instance(
    db: Session,
    *,
    template_id: int,
    store_id: int,
    at: datetime | None = None,
    actor_principal_id: int | None = None,
) -> TaskInstance:
    store = get_active_store(db, store_id)
    template = db.execute(
        select(TaskTemplate).where(TaskTemplate.id == template_id, TaskTemplate.active.is_(True))
    ).scalar_one_or_none()
    if not template:
        raise NotFound('Template not found')

    lists_by_id = _active_lists_by_id(db)
    if template.list_id is not None and template.list_id not in lists_by_id:
        raise NotFound('Template not found')
    if not _applies_to_store(template, store_id, _assigned_store_ids(db)):
        raise NotFound('Template is not assigned to this store')

    return _ensure_for_template(
        db,
        template=template,
        task_list=lists_by_id.get(template.list_id) if template.list_id else None,
        store=store,
        at=at or _now(),
        actor_principal_id=actor_principal_id,
    )


def _ensure_many(
    db: Session,
    *,
    store_id: int,
    list_id: int | None,
    at: datetime | None,
    actor_principal_id: int | None,
) -> list[TaskInstance]:
    store = get_active_store(db, store_id)
    at = at or _now()
    lists_by_id = _active_lists_by_id(db)
    instances = []
    for template in templates_for_store(db, store_id=store_id, list_id=list_id):
        task_list = lists_by_id.get(template.list_id) if template.list_id else None
        if not is_instantiated_automatically(_effective_recurrence(template, task_list)):
            continue
        instance = _ensure_for_template(
            db,
            template=template,
            task_list=task_list,
            store=store,
            at=at,
            actor_principal_id=actor_principal_id,
        )
        if instance is not None:
            instances.append(instance)
    return instances


def ensure_list_instances(
    db: Session,
    *,
    list_id: int,
    store_id: int,
    at: datetime | None = None,
    actor_principal_id: int | None = None,
) -> list[TaskInstance]:
    task_list = db.execute(
        select(TaskList).where(TaskList.id == list_id, TaskList.active.is_(True))
    ).scalar_one_or_none()
    if not task_list:
        raise NotFound('Task list not found')
    return _ensure_many(db, store_id=store_id, list_id=list_id, at=at, actor_principal_id=actor_principal_id)


def ensure_all_for_store(
    db: Session,
    *,
    store_id: int,
    at: datetime | None = None,
    actor_principal_id: int | None = None,
) -> list[TaskInstance]:
    return _ensure_many(db, store_id=store_id, list_id=None, at=at, actor_principal_id=actor_principal_id)


def ensure_tasks(
    db: Session,
    *,
    store_id: int,
    list_id: int | None = None,
    template_id: int | None = None,
    at: datetime | None = None,
    actor_principal_id: int | None = None,
) -> list[TaskInstance]:
    if template_id is not None:
        return [
            ensure_instance(
                db,
                template_id=template_id,
                store_id=store_id,
                at=at,
                actor_principal_id=actor_principal_id,
            )
        ]
    if list_id is not None:
        return ensure_list_instances(
            db,
            list_id=list_id,
            store_id=store_id,
            at=at,
            actor_principal_id=actor_principal_id,
        )
    return ensure_all_for_store(db, store_id=store_id, at=at, actor_principal_id=actor_principal_id)


def create_adhoc_instance(
    db: Session,
    *,
    store_id: int,
    title: str,
    created_by_principal_id: int | None,
    description: str | None = None,
    assignee_id: int | None = None,
    assignee_type: AssigneeType | None = None,
    priority: TaskPriority = TaskPriority.NORMAL,
    photo_required: bool = False,
    photo_count: int = 0,
    scheduled_for: datetime | None = None,
    due_at: datetime | None = None,
    estimated_duration_minutes: int | None = None,
    notes: str | None = None,
    item_titles: list[str] | None = None,
) -> TaskInstance:
    get_active_store(db, store_id)
    clean_title = title.strip()
    if not clean_title:
        raise ValueError('Title is required')

    if assignee_type is None:
        assignee_type = AssigneeType.SPECIFIC_EMPLOYEE if assignee_id else AssigneeType.STORE_WIDE
    if assignee_type == AssigneeType.SPECIFIC_EMPLOYEE and not assignee_id:
        raise ValueError('A specific assignee is required')

    photo_required, photo_count = normalize_photo_requirement(photo_required, photo_count)
    now = _now()
    scheduled_for = scheduled_for or now
    if due_at is None and estimated_duration_minutes:
        due_at = scheduled_for + timedelta(minutes=estimated_duration_minutes)

    instance = TaskInstance(
        template_id=None,
        store_id=store_id,
        period_key=ADHOC_PERIOD_KEY,
        title=clean_title,
        description=(description or '').strip() or None,
        assignee_type=assignee_type,
        assignee_id=assignee_id if assignee_type == AssigneeType.SPECIFIC_EMPLOYEE else None,
        status=initial_status_for(assignee_type),
        priority=priority,
        scheduled_for=scheduled_for,
        due_at=due_at,
        estimated_duration_minutes=estimated_duration_minutes,
        photo_required=photo_required,
        photo_count=photo_count,
        photos_uploaded=0,
        notes=(notes or '').strip() or None,
        created_by_principal_id=created_by_principal_id,
        created_at=now,
        updated_at=now,
    )
    db.add(instance)
    db.flush()

    clean_items = [item.strip() for item in (item_titles or []) if item and item.strip()]
    db.add_all(
        [
            TaskItem(task_id=instance.id, title=item_title, position=position, completed=False)
            for position, item_title in enumerate(clean_items, start=1)
        ]
    )
    db.flush()

    logger.info('Created ad hoc task %s for store %s', instance.id, store_id)
    queue_task_event(db, event_type='task.created', instance=instance, actor_principal_id=created_by_principal_id)
    return instance
