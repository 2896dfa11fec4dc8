from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor_principal_id: int | None,
    action: str,
    task_id: int | None,
    ip: str | None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_principal_id=actor_principal_id,
            action=action,
            task_id=task_id,
            ip=ip,
            meta=metadata or {},
        )
    )


def list_task_audit(db: Session, *, task_id: int) -> list[dict]:
    rows = db.execute(
        select(AuditLog).where(AuditLog.task_id == task_id).order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
    ).scalars().all()
    return [
        {
            'id': row.id,
            'action': row.action,
            'actor_principal_id': row.actor_principal_id,
            'metadata': row.meta,
            'created_at': row.created_at,
        }
        for row in rows
    ]
