from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from app.auth import Role, build_principal
from app.models import (
    AssigneeType,
    AssignmentEntityType,
    Base,
    Principal,
    PrincipalRole,
    RecurrenceType,
    Store,
    StoreAssignment,
    TaskList,
    TaskTemplate,
)
from app.services.notification_service import install_event_dispatch

STORE_LAT = 33.0
STORE_LNG = -86.0
# Roughly 11 m north of the store center.
INSIDE = (33.0001, -86.0)
# Roughly 222 m north of the store center.
OUTSIDE = (33.002, -86.0)


class SqliteDatabase:
    """File-backed SQLite database so several sessions and threads can share it."""

    def __init__(self, *, serialized: bool = False) -> None:
        handle, self.path = tempfile.mkstemp(suffix='.sqlite3')
        os.close(handle)
        self.engine = create_engine(
            f'sqlite:///{self.path}',
            connect_args={'check_same_thread': False, 'timeout': 30},
        )
        if serialized:
            serialize_writers(self.engine)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        install_event_dispatch(self.Session)

    def close(self) -> None:
        self.engine.dispose()
        os.unlink(self.path)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def add_store(db, *, name='Downtown', geofenced=True, radius_m=50, timezone_name='UTC') -> Store:
    store = Store(
        name=name,
        timezone=timezone_name,
        latitude=Decimal(str(STORE_LAT)) if geofenced else None,
        longitude=Decimal(str(STORE_LNG)) if geofenced else None,
        geofence_radius_m=radius_m,
        active=True,
    )
    db.add(store)
    db.flush()
    return store


def add_principal(db, *, username, role=PrincipalRole.EMPLOYEE, store_id=None, active=True) -> Principal:
    principal = Principal(username=username, role=role, store_id=store_id, active=active)
    db.add(principal)
    db.flush()
    return principal


def actor_for(row: Principal):
    return build_principal(
        id=row.id,
        username=row.username,
        role=Role(row.role.value),
        store_id=row.store_id,
        active=row.active,
    )


def add_template(
    db,
    *,
    title='Clean Floor',
    store_id=None,
    list_id=None,
    recurrence_type=RecurrenceType.DAILY,
    photo_required=False,
    photo_count=0,
    assignee_type=AssigneeType.STORE_WIDE,
    assignee_id=None,
    estimated_duration_minutes=None,
) -> TaskTemplate:
    template = TaskTemplate(
        title=title,
        store_id=store_id,
        list_id=list_id,
        recurrence_type=recurrence_type,
        photo_required=photo_required,
        photo_count=photo_count,
        assignee_type=assignee_type,
        assignee_id=assignee_id,
        estimated_duration_minutes=estimated_duration_minutes,
        active=True,
    )
    db.add(template)
    db.flush()
    return template


def add_list(db, *, name='Opening', recurrence_type=RecurrenceType.DAILY, store_ids=()) -> TaskList:
    task_list = TaskList(name=name, recurrence_type=recurrence_type, active=True)
    db.add(task_list)
    db.flush()
    for store_id in store_ids:
        db.add(StoreAssignment(entity_type=AssignmentEntityType.LIST, entity_id=task_list.id, store_id=store_id))
    db.flush()
    return task_list


def serialize_writers(engine) -> None:
    """Make every SQLite transaction take the write lock up front.

    Threads then queue on the busy timeout instead of failing lock upgrades.
    """

    @event.listens_for(engine, 'connect')
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _begin_immediate(connection):
        connection.exec_driver_sql('BEGIN IMMEDIATE')
