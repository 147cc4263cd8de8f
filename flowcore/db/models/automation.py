"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flowcore.db.base import Base


class AutomationRule(Base):
    """
    Automation rule definition.

    Rules are triggered by lifecycle events (task created, status changed, etc.)
    and execute one action when their condition tree matches. Retired rules are
    deactivated, never deleted, so the execution ledger keeps its references.
    """

    __tablename__ = "automation_rules"
    __table_args__ = (
        # Matching rules at trigger time
        Index("idx_rule_matching", "trigger_type", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Metadata
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Trigger
    trigger_type: Mapped[str] = mapped_column(String(50), nullable=False)
    trigger_conditions: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Action
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    action_params: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    # State (counters owned by the rule engine)
    is_active: Mapped[bool] = mapped_column(server_default=true(), default=True)
    execution_count: Mapped[int] = mapped_column(server_default=text("0"), default=0)
    last_executed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Rate limiting (None = unlimited)
    rate_limit_per_hour: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )  # Max executions per hour globally
    rate_limit_per_entity_per_day: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )  # Max times can run on same entity per 24h

    # Audit
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    executions: Mapped[list["AutomationExecution"]] = relationship(back_populates="rule")


class AutomationExecution(Base):
    """
    Execution ledger row.

    One row per (rule, entity, triggering event); the unique constraint is the
    idempotency key that makes redelivered events a no-op.
    """

    __tablename__ = "automation_executions"
    __table_args__ = (
        UniqueConstraint(
            "rule_id", "entity_type", "entity_id", "event_id", name="uq_execution_idempotency"
        ),
        Index("idx_exec_rule", "rule_id", "executed_at"),
        Index("idx_exec_entity", "entity_type", "entity_id"),
        Index("idx_exec_event", "event_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(
        ForeignKey("automation_rules.id", ondelete="RESTRICT"), nullable=False
    )

    # Context
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Result
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(nullable=True)

    executed_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    rule: Mapped["AutomationRule"] = relationship(back_populates="executions")
