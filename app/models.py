from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer(), 'sqlite')


class UTCDateTime(TypeDecorator):
    """Timestamp column that always hands back timezone-aware UTC datetimes."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == 'sqlite':
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class PrincipalRole(str, Enum):
    ADMIN = 'ADMIN'
    MANAGER = 'MANAGER'
    LEAD = 'LEAD'
    EMPLOYEE = 'EMPLOYEE'


class TaskStatus(str, Enum):
    PENDING = 'PENDING'
    AVAILABLE = 'AVAILABLE'
    CLAIMED = 'CLAIMED'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'
    OVERDUE = 'OVERDUE'
    CANCELLED = 'CANCELLED'


class RecurrenceType(str, Enum):
    NONE = 'NONE'
    DAILY = 'DAILY'
    WEEKLY = 'WEEKLY'
    MONTHLY = 'MONTHLY'


class AssigneeType(str, Enum):
    STORE_WIDE = 'STORE_WIDE'
    MANAGER = 'MANAGER'
    SPECIFIC_EMPLOYEE = 'SPECIFIC_EMPLOYEE'


class TaskPriority(str, Enum):
    LOW = 'LOW'
    NORMAL = 'NORMAL'
    HIGH = 'HIGH'


class AssignmentEntityType(str, Enum):
    TEMPLATE = 'TEMPLATE'
    LIST = 'LIST'


class Store(Base):
    __tablename__ = 'stores'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    timezone: Mapped[str] = mapped_column(Text, nullable=False, default='UTC', server_default='UTC')
    latitude: Mapped[Decimal | None] = mapped_column(Numeric(10, 8))
    longitude: Mapped[Decimal | None] = mapped_column(Numeric(11, 8))
    geofence_radius_m: Mapped[int | None] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='1')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())


class Principal(Base):
    __tablename__ = 'principals'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    username: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(Text)
    role: Mapped[PrincipalRole] = mapped_column(SQLEnum(PrincipalRole, name='principal_role'), nullable=False)
    store_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('stores.id'))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='1')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('session_token', name='web_sessions_session_token_key'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_token: Mapped[str] = mapped_column(String(128), nullable=False)
    principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    ip: Mapped[str | None] = mapped_column(Text)
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    actor_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    task_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('tasks.id'))
    ip: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())


class TaskList(Base):
    __tablename__ = 'task_lists'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    recurrence_type: Mapped[RecurrenceType | None] = mapped_column(SQLEnum(RecurrenceType, name='recurrence_type'))
    recurrence_pattern: Mapped[str | None] = mapped_column(Text)
    assignee_type: Mapped[AssigneeType] = mapped_column(
        SQLEnum(AssigneeType, name='assignee_type'),
        nullable=False,
        default=AssigneeType.STORE_WIDE,
        server_default='STORE_WIDE',
    )
    assignee_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    created_by_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='1')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())


class TaskTemplate(Base):
    __tablename__ = 'task_templates'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    list_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('task_lists.id'))
    store_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('stores.id'))
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    recurrence_type: Mapped[RecurrenceType | None] = mapped_column(SQLEnum(RecurrenceType, name='recurrence_type'))
    recurrence_pattern: Mapped[str | None] = mapped_column(Text)
    estimated_duration_minutes: Mapped[int | None] = mapped_column(Integer)
    photo_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='0')
    photo_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    assignee_type: Mapped[AssigneeType] = mapped_column(
        SQLEnum(AssigneeType, name='assignee_type'),
        nullable=False,
        default=AssigneeType.STORE_WIDE,
        server_default='STORE_WIDE',
    )
    assignee_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    priority: Mapped[TaskPriority] = mapped_column(
        SQLEnum(TaskPriority, name='task_priority'),
        nullable=False,
        default=TaskPriority.NORMAL,
        server_default='NORMAL',
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_by_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='1')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())


class StoreAssignment(Base):
    __tablename__ = 'store_assignments'
    __table_args__ = (
        UniqueConstraint('entity_type', 'entity_id', 'store_id', name='store_assignments_entity_store_uniq'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    entity_type: Mapped[AssignmentEntityType] = mapped_column(
        SQLEnum(AssignmentEntityType, name='assignment_entity_type'), nullable=False
    )
    entity_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='1')
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())


class TaskInstance(Base):
    __tablename__ = 'tasks'
    __table_args__ = (
        # One live instance per template, store and period. Cancelled rows stay for audit;
        # one-off (ADHOC) rows are issued once per request and never de-duplicated.
        Index(
            'tasks_template_store_period_live_uniq',
            'template_id',
            'store_id',
            'period_key',
            unique=True,
            postgresql_where=text("status <> 'CANCELLED' AND period_key <> 'ADHOC'"),
            sqlite_where=text("status <> 'CANCELLED' AND period_key <> 'ADHOC'"),
        ),
        Index('tasks_store_status_idx', 'store_id', 'status'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    template_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('task_templates.id'))
    store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id'), nullable=False)
    period_key: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    assignee_type: Mapped[AssigneeType] = mapped_column(SQLEnum(AssigneeType, name='assignee_type'), nullable=False)
    assignee_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    status: Mapped[TaskStatus] = mapped_column(
        SQLEnum(TaskStatus, name='task_status'),
        nullable=False,
        default=TaskStatus.PENDING,
        server_default='PENDING',
    )
    priority: Mapped[TaskPriority] = mapped_column(
        SQLEnum(TaskPriority, name='task_priority'),
        nullable=False,
        default=TaskPriority.NORMAL,
        server_default='NORMAL',
    )
    scheduled_for: Mapped[datetime | None] = mapped_column(UTCDateTime())
    due_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    claimed_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    completed_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    estimated_duration_minutes: Mapped[int | None] = mapped_column(Integer)
    actual_duration_minutes: Mapped[int | None] = mapped_column(Integer)
    photo_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='0')
    photo_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    photos_uploaded: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    notes: Mapped[str | None] = mapped_column(Text)
    created_by_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())


class TaskItem(Base):
    __tablename__ = 'task_items'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    task_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='0')
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    completed_by: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))


class TaskPhoto(Base):
    __tablename__ = 'task_photos'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    task_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('tasks.id'), nullable=False, index=True)
    task_item_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('task_items.id'))
    content_ref: Mapped[str] = mapped_column(Text, nullable=False)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str | None] = mapped_column(Text)
    size_bytes: Mapped[int | None] = mapped_column(Integer)
    latitude: Mapped[Decimal | None] = mapped_column(Numeric(10, 8))
    longitude: Mapped[Decimal | None] = mapped_column(Numeric(11, 8))
    uploaded_by: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())


class TaskTransfer(Base):
    __tablename__ = 'task_transfers'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    task_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('tasks.id'), nullable=False, index=True)
    from_principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    to_principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    transferred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())


class CheckIn(Base):
    __tablename__ = 'check_ins'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id'), nullable=False)
    latitude: Mapped[Decimal | None] = mapped_column(Numeric(10, 8))
    longitude: Mapped[Decimal | None] = mapped_column(Numeric(11, 8))
    source: Mapped[str] = mapped_column(Text, nullable=False, default='EXPLICIT', server_default='EXPLICIT')
    checked_in_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, server_default=func.now())
    checked_out_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
