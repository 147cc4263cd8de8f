"""SQLAlchemy ORM models for approval-bearing entities."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from flowcore.db.base import Base
from flowcore.db.enums import ApprovalStatus


def _approval_constraints(prefix: str) -> tuple:
    """Table constraints shared by every approval-bearing table."""
    return (
        # approved_by / approved_at present iff a reviewer decided
        CheckConstraint(
            "(approval_status IN ('approved', 'rejected') "
            "AND approved_by IS NOT NULL AND approved_at IS NOT NULL) OR "
            "(approval_status IN ('pending', 'changes_requested') "
            "AND approved_by IS NULL AND approved_at IS NULL)",
            name=f"chk_{prefix}_approval_audit",
        ),
        # rejection_reason present iff rejected or sent back
        CheckConstraint(
            "(approval_status IN ('rejected', 'changes_requested') "
            "AND rejection_reason IS NOT NULL) OR "
            "(approval_status IN ('pending', 'approved') AND rejection_reason IS NULL)",
            name=f"chk_{prefix}_rejection_reason",
        ),
        Index(f"idx_{prefix}_approval_status", "approval_status"),
        Index(f"idx_{prefix}_user", "user_id"),
        Index(f"idx_{prefix}_project", "project_id"),
    )


class ApprovalFieldsMixin:
    """Columns owned by the approval state machine."""

    approval_status: Mapped[str] = mapped_column(
        String(20), server_default=text(f"'{ApprovalStatus.PENDING.value}'"), nullable=False
    )
    approved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class TimeEntry(ApprovalFieldsMixin, Base):
    """Logged hours submitted for approval."""

    __tablename__ = "time_entries"
    __table_args__ = _approval_constraints("time_entries")

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    task_id: Mapped[int | None] = mapped_column(
        ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True
    )
    start_time: Mapped[datetime] = mapped_column(nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(nullable=True)
    duration_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )


class Expense(ApprovalFieldsMixin, Base):
    """Reimbursable expense submitted for approval."""

    __tablename__ = "expenses"
    __table_args__ = _approval_constraints("expenses")

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    task_id: Mapped[int | None] = mapped_column(
        ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )
