from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import AuditLog

STATUS_CHANGED_ACTION = 'PURCHASE_ORDER_STATUS_CHANGED'


def log_audit(
    db: Session,
    *,
    actor_principal_id: int | None,
    action: str,
    purchase_order_id: int | None,
    ip: str | None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_principal_id=actor_principal_id,
            action=action,
            purchase_order_id=purchase_order_id,
            ip=ip,
            meta=metadata or {},
        )
    )


def record_status_change(
    db: Session,
    *,
    actor_principal_id: int | None,
    purchase_order_id: int,
    order_number: str,
    previous_status: str,
    new_status: str,
    ip: str | None = None,
) -> None:
    log_audit(
        db,
        actor_principal_id=actor_principal_id,
        action=STATUS_CHANGED_ACTION,
        purchase_order_id=purchase_order_id,
        ip=ip,
        metadata={'order_number': order_number, 'from': previous_status, 'to': new_status},
    )


def list_status_history(db: Session, *, purchase_order_id: int) -> list[dict]:
    rows = db.execute(
        select(AuditLog)
        .where(AuditLog.purchase_order_id == purchase_order_id, AuditLog.action == STATUS_CHANGED_ACTION)
        .order_by(AuditLog.id.asc())
    ).scalars().all()
    return [
        {
            'from': row.meta.get('from'),
            'to': row.meta.get('to'),
            'actorPrincipalId': row.actor_principal_id,
            'createdAt': row.created_at,
        }
        for row in rows
    ]
