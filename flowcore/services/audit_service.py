"""Audit logging service.

Writes append-only rows for approval transitions, administrative corrections,
dependency edge changes and rule administration. Rows are added to the
caller's transaction and flushed; the caller commits.

Guidelines:
- Store ids and field values, never notification payloads or free-form PII
- old_values / new_values hold only the fields that changed
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from flowcore.db.enums import AuditAction
from flowcore.db.models import AuditLog


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def log_event(
    db: Session,
    action: AuditAction,
    entity_type: str,
    entity_id: int | None,
    *,
    user_id: int | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
) -> AuditLog:
    """
    Append an audit row to the current transaction.

    Args:
        db: Database session
        action: What happened (from AuditAction)
        entity_type: Kind of entity affected ('time_entry', 'task', 'automation_rule', ...)
        entity_id: Id of the affected entity
        user_id: Actor (None for system / automation)
        old_values: Field values before the change
        new_values: Field values after the change

    Returns:
        The flushed audit row
    """
    entry = AuditLog(
        user_id=user_id,
        action=action.value,
        entity_type=entity_type,
        entity_id=entity_id,
        old_values=_jsonable(old_values) if old_values is not None else None,
        new_values=_jsonable(new_values) if new_values is not None else None,
    )
    db.add(entry)
    db.flush()
    return entry


def list_for_entity(db: Session, entity_type: str, entity_id: int) -> list[AuditLog]:
    """Audit rows for one entity, oldest first."""
    return (
        db.query(AuditLog)
        .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.id.asc())
        .all()
    )
