from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.auth import Principal, get_current_principal
from app.db import get_db
from app.dependencies import get_client_ip
from app.security.csrf import verify_csrf
from app.services.audit_service import log_audit
from app.services.checkin_service import check_in, check_out, checkin_snapshot
from app.services.geofence_service import parse_coordinate
from app.services.task_errors import TaskError

router = APIRouter(prefix='/checkins', tags=['checkins'])


@router.post('')
async def create_checkin(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    raw_store_id = str(form.get('store_id', '')).strip()
    if raw_store_id:
        if not raw_store_id.isdigit():
            raise HTTPException(status_code=400, detail='Invalid store_id')
        store_id = int(raw_store_id)
    elif principal.store_id is not None:
        store_id = principal.store_id
    else:
        raise HTTPException(status_code=400, detail='store_id is required')

    try:
        coordinate = parse_coordinate(form.get('latitude'), form.get('longitude'))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        checkin = check_in(db, principal=principal, store_id=store_id, coordinate=coordinate)
    except TaskError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc

    log_audit(
        db,
        actor_principal_id=principal.id,
        action='CHECKED_IN',
        task_id=None,
        ip=get_client_ip(request),
        metadata={'store_id': store_id, 'checkin_id': checkin.id},
    )
    db.commit()
    return checkin_snapshot(db, principal.id)


@router.post('/checkout')
async def checkout(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    closed = check_out(db, principal_id=principal.id)
    if closed:
        log_audit(
            db,
            actor_principal_id=principal.id,
            action='CHECKED_OUT',
            task_id=None,
            ip=get_client_ip(request),
        )
    db.commit()
    return {'checked_out': closed}


@router.get('/me')
def my_checkin(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return checkin_snapshot(db, principal.id)
