from __future__ import annotations

from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile

from app.auth import Capability, Principal, assert_store_scope, get_current_principal
from app.db import get_db
from app.dependencies import get_client_ip
from app.models import AssigneeType, TaskPhoto, TaskPriority, TaskStatus
from app.security.csrf import verify_csrf
from app.services import photo_ledger_service, photo_storage_service, task_lifecycle_service
from app.services.audit_service import list_task_audit, log_audit
from app.services.geofence_service import Coordinate, parse_coordinate
from app.services.task_errors import TaskError
from app.services.task_instantiation_service import create_adhoc_instance, ensure_tasks
from app.services.task_lifecycle_service import serialize_instance

router = APIRouter(tags=['tasks'])

TRUTHY = {'1', 'true', 'on', 'yes'}
PHOTO_READ_CHUNK_BYTES = 64 * 1024


def _task_error(exc: TaskError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def _form_text(form, key: str) -> str | None:
    value = form.get(key)
    if value is None or isinstance(value, UploadFile):
        return None
    return str(value).strip() or None


def _form_int(form, key: str) -> int | None:
    raw = _form_text(form, key)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f'Invalid {key}') from exc


def _form_flag(form, key: str) -> bool:
    return (_form_text(form, key) or '').lower() in TRUTHY


def _form_coordinate(form) -> Coordinate | None:
    try:
        return parse_coordinate(form.get('latitude'), form.get('longitude'))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _form_datetime(form, key: str) -> datetime | None:
    raw = _form_text(form, key)
    if raw is None:
        return None
    try:
        value = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f'Invalid {key}') from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _require(principal: Principal, capability: Capability) -> None:
    if not principal.can(capability):
        raise HTTPException(status_code=403, detail='Not permitted')


async def _read_photo(upload: UploadFile) -> bytes:
    chunks = []
    received = 0
    while True:
        chunk = await upload.read(PHOTO_READ_CHUNK_BYTES)
        if not chunk:
            break
        received += len(chunk)
        photo_storage_service.check_photo_size(received)
        chunks.append(chunk)
    return b''.join(chunks)


def _serialize_photo(photo: TaskPhoto) -> dict:
    return {
        'id': photo.id,
        'task_id': photo.task_id,
        'task_item_id': photo.task_item_id,
        'filename': photo.filename,
        'content_type': photo.content_type,
        'size_bytes': photo.size_bytes,
        'latitude': float(photo.latitude) if photo.latitude is not None else None,
        'longitude': float(photo.longitude) if photo.longitude is not None else None,
        'uploaded_by': photo.uploaded_by,
        'uploaded_at': photo.uploaded_at,
    }


def _task_detail(db: Session, task_id: int) -> dict:
    instance = task_lifecycle_service.get_instance(db, task_id)
    payload = serialize_instance(instance)
    payload['items'] = [
        {
            'id': item.id,
            'title': item.title,
            'position': item.position,
            'completed': item.completed,
            'completed_at': item.completed_at,
            'completed_by': item.completed_by,
        }
        for item in task_lifecycle_service.list_items(db, task_id=task_id)
    ]
    payload['photos'] = [_serialize_photo(photo) for photo in photo_ledger_service.list_for(db, task_id)]
    payload['transfers'] = [
        {
            'from_principal_id': row.from_principal_id,
            'to_principal_id': row.to_principal_id,
            'reason': row.reason,
            'transferred_at': row.transferred_at,
        }
        for row in task_lifecycle_service.list_transfers(db, task_id=task_id)
    ]
    return payload


def _load_scoped(db: Session, principal: Principal, task_id: int):
    try:
        instance = task_lifecycle_service.get_instance(db, task_id)
    except TaskError as exc:
        raise _task_error(exc) from exc
    assert_store_scope(principal, instance.store_id)
    return instance


@router.post('/stores/{store_id}/tasks/ensure')
async def ensure_store_tasks(
    store_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    assert_store_scope(principal, store_id)
    form = await request.form()
    list_id = _form_int(form, 'list_id')
    template_id = _form_int(form, 'template_id')
    at = _form_datetime(form, 'at')

    try:
        instances = ensure_tasks(
            db,
            store_id=store_id,
            list_id=list_id,
            template_id=template_id,
            at=at,
            actor_principal_id=principal.id,
        )
    except TaskError as exc:
        raise _task_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=principal.id,
        action='TASKS_ENSURED',
        task_id=None,
        ip=get_client_ip(request),
        metadata={
            'store_id': store_id,
            'list_id': list_id,
            'template_id': template_id,
            'at': at.isoformat() if at else None,
            'count': len(instances),
        },
    )
    db.commit()
    return [serialize_instance(instance) for instance in instances]


@router.get('/stores/{store_id}/tasks')
def list_store_tasks(
    store_id: int,
    status_filter: str | None = Query(None, alias='status'),
    assignee_id: int | None = None,
    claimed_by: int | None = None,
    on_date: date | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    status = None
    if status_filter:
        try:
            status = TaskStatus(status_filter.strip().upper())
        except ValueError as exc:
            raise HTTPException(status_code=400, detail='Invalid status') from exc

    try:
        instances = task_lifecycle_service.list_instances(
            db,
            store_id=store_id,
            status=status,
            assignee_id=assignee_id,
            claimed_by=claimed_by,
            on_date=on_date,
        )
    except TaskError as exc:
        raise _task_error(exc) from exc
    return [serialize_instance(instance) for instance in instances]


@router.post('/stores/{store_id}/tasks')
async def create_store_task(
    store_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    _require(principal, Capability.MANAGE_STORE_TASKS)
    form = await request.form()

    raw_assignee_type = _form_text(form, 'assignee_type')
    raw_priority = _form_text(form, 'priority')
    try:
        assignee_type = AssigneeType(raw_assignee_type.upper()) if raw_assignee_type else None
        priority = TaskPriority(raw_priority.upper()) if raw_priority else TaskPriority.NORMAL
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Invalid assignee type or priority') from exc

    try:
        instance = create_adhoc_instance(
            db,
            store_id=store_id,
            title=_form_text(form, 'title') or '',
            created_by_principal_id=principal.id,
            description=_form_text(form, 'description'),
            assignee_id=_form_int(form, 'assignee_id'),
            assignee_type=assignee_type,
            priority=priority,
            photo_required=_form_flag(form, 'photo_required'),
            photo_count=_form_int(form, 'photo_count') or 0,
            scheduled_for=_form_datetime(form, 'scheduled_for'),
            due_at=_form_datetime(form, 'due_at'),
            estimated_duration_minutes=_form_int(form, 'estimated_duration_minutes'),
            notes=_form_text(form, 'notes'),
            item_titles=[str(value) for value in form.getlist('items')],
        )
    except TaskError as exc:
        raise _task_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        actor_principal_id=principal.id,
        action='TASK_CREATED',
        task_id=instance.id,
        ip=get_client_ip(request),
        metadata={'store_id': store_id, 'title': instance.title},
    )
    db.commit()
    return _task_detail(db, instance.id)


@router.get('/tasks/{task_id}')
def task_detail(
    task_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    _load_scoped(db, principal, task_id)
    return _task_detail(db, task_id)


@router.get('/tasks/{task_id}/audit')
def task_audit(
    task_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    _require(principal, Capability.MANAGE_STORE_TASKS)
    _load_scoped(db, principal, task_id)
    return list_task_audit(db, task_id=task_id)


@router.post('/tasks/{task_id}/claim')
async def claim_task(
    task_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    coordinate = _form_coordinate(form)
    try:
        instance = task_lifecycle_service.claim(db, task_id=task_id, actor=principal, coordinate=coordinate)
    except TaskError as exc:
        raise _task_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=principal.id,
        action='TASK_CLAIMED',
        task_id=task_id,
        ip=get_client_ip(request),
        metadata={'has_location': coordinate is not None},
    )
    db.commit()
    return serialize_instance(instance)


@router.post('/tasks/{task_id}/start')
async def start_task(
    task_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    try:
        instance = task_lifecycle_service.start(db, task_id=task_id, actor=principal)
    except TaskError as exc:
        raise _task_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=principal.id,
        action='TASK_STARTED',
        task_id=task_id,
        ip=get_client_ip(request),
    )
    db.commit()
    return serialize_instance(instance)


@router.post('/tasks/{task_id}/photos')
async def upload_task_photo(
    task_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    upload = form.get('photo')
    if not isinstance(upload, UploadFile):
        raise HTTPException(status_code=400, detail='No photo uploaded')
    coordinate = _form_coordinate(form)
    task_item_id = _form_int(form, 'task_item_id')

    try:
        stored = photo_storage_service.save_photo_bytes(await _read_photo(upload), content_type=upload.content_type)
    except TaskError as exc:
        raise _task_error(exc) from exc

    try:
        photo = task_lifecycle_service.upload_photo(
            db,
            task_id=task_id,
            actor=principal,
            content_ref=stored.content_ref,
            filename=upload.filename or stored.content_ref,
            coordinate=coordinate,
            task_item_id=task_item_id,
            content_type=upload.content_type,
            size_bytes=stored.size_bytes,
        )
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='TASK_PHOTO_UPLOADED',
            task_id=task_id,
            ip=get_client_ip(request),
            metadata={'photo_id': photo.id, 'size_bytes': stored.size_bytes},
        )
        db.commit()
    except TaskError as exc:
        photo_storage_service.discard_photo(stored.content_ref)
        raise _task_error(exc) from exc
    except Exception:
        photo_storage_service.discard_photo(stored.content_ref)
        raise
    return _task_detail(db, task_id)


@router.get('/tasks/{task_id}/photos')
def list_task_photos(
    task_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    _load_scoped(db, principal, task_id)
    return [_serialize_photo(photo) for photo in photo_ledger_service.list_for(db, task_id)]


@router.get('/photos/{photo_id}')
def download_photo(
    photo_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    try:
        photo = photo_ledger_service.get_photo(db, photo_id)
        _load_scoped(db, principal, photo.task_id)
        path = photo_storage_service.open_photo_path(photo.content_ref)
    except TaskError as exc:
        raise _task_error(exc) from exc
    return FileResponse(path, media_type=photo.content_type or 'application/octet-stream', filename=photo.filename)


@router.post('/tasks/{task_id}/complete')
async def complete_task(
    task_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    force_complete = _form_flag(form, 'force_complete')
    override_photo_requirement = _form_flag(form, 'override_photo_requirement')
    try:
        instance = task_lifecycle_service.complete(
            db,
            task_id=task_id,
            actor=principal,
            coordinate=_form_coordinate(form),
            force_complete=force_complete,
            override_photo_requirement=override_photo_requirement,
            notes=_form_text(form, 'notes'),
        )
    except TaskError as exc:
        raise _task_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=principal.id,
        action='TASK_COMPLETED',
        task_id=task_id,
        ip=get_client_ip(request),
        metadata={
            'force_complete': force_complete,
            'override_photo_requirement': override_photo_requirement,
            'photos_uploaded': instance.photos_uploaded,
        },
    )
    db.commit()
    return serialize_instance(instance)


@router.post('/tasks/{task_id}/transfer')
async def transfer_task(
    task_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    to_principal_id = _form_int(form, 'to_principal_id')
    if to_principal_id is None:
        raise HTTPException(status_code=400, detail='to_principal_id is required')
    from_principal_id = _form_int(form, 'from_principal_id') or principal.id
    reason = _form_text(form, 'reason')

    try:
        instance = task_lifecycle_service.transfer(
            db,
            task_id=task_id,
            actor=principal,
            from_principal_id=from_principal_id,
            to_principal_id=to_principal_id,
            reason=reason,
        )
    except TaskError as exc:
        raise _task_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=principal.id,
        action='TASK_TRANSFERRED',
        task_id=task_id,
        ip=get_client_ip(request),
        metadata={'from_principal_id': from_principal_id, 'to_principal_id': to_principal_id, 'reason': reason},
    )
    db.commit()
    return serialize_instance(instance)


@router.post('/tasks/{task_id}/cancel')
async def cancel_task(
    task_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    reason = _form_text(form, 'reason')
    try:
        instance = task_lifecycle_service.cancel(db, task_id=task_id, actor=principal, reason=reason)
    except TaskError as exc:
        raise _task_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=principal.id,
        action='TASK_CANCELLED',
        task_id=task_id,
        ip=get_client_ip(request),
        metadata={'reason': reason},
    )
    db.commit()
    return serialize_instance(instance)


@router.post('/tasks/{task_id}/items/{item_id}')
async def update_task_item(
    task_id: int,
    item_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    completed = _form_flag(form, 'completed')
    try:
        task_lifecycle_service.set_item_completed(
            db,
            task_id=task_id,
            item_id=item_id,
            actor=principal,
            completed=completed,
        )
    except TaskError as exc:
        raise _task_error(exc) from exc

    log_audit(
        db,
        actor_principal_id=principal.id,
        action='TASK_ITEM_UPDATED',
        task_id=task_id,
        ip=get_client_ip(request),
        metadata={'item_id': item_id, 'completed': completed},
    )
    db.commit()
    return _task_detail(db, task_id)
