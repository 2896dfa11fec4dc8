from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.auth import Capability, Principal
from app.config import settings
from app.models import CheckIn, Store
from app.services.geofence_service import Coordinate, GeofenceClassification, evaluate_for_store, store_has_geofence
from app.services.task_errors import LocationRequired, NotFound, NotHolder, OutsideGeofence

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_active_store(db: Session, store_id: int) -> Store:
    store = db.execute(select(Store).where(Store.id == store_id, Store.active.is_(True))).scalar_one_or_none()
    if not store:
        raise NotFound('Store not found')
    return store


def get_active_checkin(db: Session, principal_id: int) -> CheckIn | None:
    return db.execute(
        select(CheckIn)
        .where(CheckIn.principal_id == principal_id, CheckIn.checked_out_at.is_(None))
        .order_by(CheckIn.checked_in_at.desc(), CheckIn.id.desc())
    ).scalars().first()


def is_checked_in(db: Session, principal_id: int, store_id: int) -> bool:
    active = get_active_checkin(db, principal_id)
    return bool(active and active.store_id == store_id)


def _open_checkin(
    db: Session,
    *,
    principal_id: int,
    store_id: int,
    coordinate: Coordinate | None,
    source: str,
) -> CheckIn:
    now = _now()
    # A principal is on premises at one store at a time.
    db.execute(
        update(CheckIn)
        .where(CheckIn.principal_id == principal_id, CheckIn.checked_out_at.is_(None))
        .values(checked_out_at=now)
        .execution_options(synchronize_session=False)
    )
    checkin = CheckIn(
        principal_id=principal_id,
        store_id=store_id,
        latitude=Decimal(str(coordinate.latitude)) if coordinate else None,
        longitude=Decimal(str(coordinate.longitude)) if coordinate else None,
        source=source,
        checked_in_at=now,
    )
    db.add(checkin)
    db.flush()
    return checkin


def check_in(db: Session, *, principal: Principal, store_id: int, coordinate: Coordinate | None) -> CheckIn:
    store = get_active_store(db, store_id)
    if not principal.can(Capability.BYPASS_GEOFENCE):
        if principal.store_id is not None and principal.store_id != store_id:
            raise NotHolder('You are not assigned to this store')
        if settings.geofence_enforced and store_has_geofence(store):
            result = evaluate_for_store(store, coordinate)
            if result.classification == GeofenceClassification.UNKNOWN:
                raise LocationRequired('Location required for geofenced check-in')
            if result.classification == GeofenceClassification.OUTSIDE:
                raise OutsideGeofence(distance_m=result.distance_m, radius_m=result.radius_m)

    checkin = _open_checkin(db, principal_id=principal.id, store_id=store_id, coordinate=coordinate, source='EXPLICIT')
    logger.info('Principal %s checked in at store %s', principal.id, store_id)
    return checkin


def record_implicit_checkin(
    db: Session,
    *,
    principal_id: int,
    store_id: int,
    coordinate: Coordinate | None,
) -> CheckIn | None:
    """Record that an on-geofence action placed the principal at the store."""
    if is_checked_in(db, principal_id, store_id):
        return None
    checkin = _open_checkin(db, principal_id=principal_id, store_id=store_id, coordinate=coordinate, source='GEOFENCE')
    logger.debug('Implicit check-in for principal %s at store %s', principal_id, store_id)
    return checkin


def check_out(db: Session, *, principal_id: int) -> bool:
    result = db.execute(
        update(CheckIn)
        .where(CheckIn.principal_id == principal_id, CheckIn.checked_out_at.is_(None))
        .values(checked_out_at=_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


def checkin_snapshot(db: Session, principal_id: int) -> dict:
    active = get_active_checkin(db, principal_id)
    if not active:
        return {'checked_in': False}
    store_name = db.execute(select(Store.name).where(Store.id == active.store_id)).scalar_one_or_none()
    return {
        'checked_in': True,
        'store_id': active.store_id,
        'store_name': store_name,
        'at': active.checked_in_at,
        'source': active.source,
    }
