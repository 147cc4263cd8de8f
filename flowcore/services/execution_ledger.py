"""Execution ledger - append-only record of rule executions.

Each row is keyed by (rule, entity, triggering event). The unique constraint
on that key is what makes redelivered events a no-op: a second append for the
same key fails with IntegrityError, which the rule engine maps to ``skipped``.
Appends only flush; the rule engine commits them together with the rule's
counter update.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from flowcore.db.enums import EntityType, ExecutionOutcome
from flowcore.db.models import AutomationExecution
from flowcore.schemas.events import EntityRef


@dataclass(frozen=True)
class LedgerKey:
    """Idempotency key of one rule execution."""

    rule_id: int
    entity_type: EntityType
    entity_id: int
    event_id: UUID

    @classmethod
    def for_event(cls, rule_id: int, entity: EntityRef, event_id: UUID) -> "LedgerKey":
        return cls(rule_id, entity.kind, entity.id, event_id)


def exists(db: Session, key: LedgerKey) -> bool:
    """Check if this (rule, entity, event) already has a ledger row."""
    existing = (
        db.query(AutomationExecution.id)
        .filter(
            AutomationExecution.rule_id == key.rule_id,
            AutomationExecution.entity_type == key.entity_type.value,
            AutomationExecution.entity_id == key.entity_id,
            AutomationExecution.event_id == key.event_id,
        )
        .first()
    )
    return existing is not None


def append(
    db: Session,
    key: LedgerKey,
    outcome: ExecutionOutcome,
    *,
    event_type: str,
    executed_at: datetime,
    error_message: str | None = None,
    result: dict | None = None,
    duration_ms: int | None = None,
) -> AutomationExecution:
    """Add a ledger row and flush it. Raises IntegrityError on a duplicate key."""
    execution = AutomationExecution(
        rule_id=key.rule_id,
        entity_type=key.entity_type.value,
        entity_id=key.entity_id,
        event_id=key.event_id,
        event_type=event_type,
        outcome=outcome.value,
        error_message=error_message[:2000] if error_message else None,
        result=result,
        duration_ms=duration_ms,
        executed_at=executed_at,
    )
    db.add(execution)
    db.flush()
    return execution


def count_recent(
    db: Session,
    rule_id: int,
    since: datetime,
    entity: EntityRef | None = None,
) -> int:
    """Count non-skipped executions of a rule since ``since`` (rate limiting)."""
    query = db.query(func.count(AutomationExecution.id)).filter(
        AutomationExecution.rule_id == rule_id,
        AutomationExecution.executed_at >= since,
        AutomationExecution.outcome != ExecutionOutcome.SKIPPED.value,
    )
    if entity is not None:
        query = query.filter(
            AutomationExecution.entity_type == entity.kind.value,
            AutomationExecution.entity_id == entity.id,
        )
    return query.scalar() or 0


def list_executions(
    db: Session,
    rule_id: int | None = None,
    entity: EntityRef | None = None,
    outcome: ExecutionOutcome | str | None = None,
    limit: int = 100,
) -> list[AutomationExecution]:
    """Ledger rows for audit, newest first."""
    query = db.query(AutomationExecution)
    if rule_id is not None:
        query = query.filter(AutomationExecution.rule_id == rule_id)
    if entity is not None:
        query = query.filter(
            AutomationExecution.entity_type == entity.kind.value,
            AutomationExecution.entity_id == entity.id,
        )
    if outcome is not None:
        query = query.filter(AutomationExecution.outcome == ExecutionOutcome(outcome).value)
    return query.order_by(AutomationExecution.id.desc()).limit(limit).all()
