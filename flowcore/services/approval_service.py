"""Approval service - state machine for time entries and expenses.

    pending --approve--> approved
    pending --reject--> rejected
    pending --request_changes--> changes_requested --resubmit--> pending

approved_by / approved_at are set exactly when the entry is approved or
rejected; rejection_reason is set exactly when it is rejected or sent back.
Approved entries are immutable except through an administrative correction,
which is recorded as its own audit event.

After each transition commits: one audit row (same transaction), a
best-effort notification to the entry owner, and a ``<kind>_<verb>`` event.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from flowcore.core.deps import get_clock
from flowcore.core.locks import entity_locks
from flowcore.db.enums import ApprovalStatus, AuditAction, EntityType
from flowcore.db.models import Expense, Project, Task, TimeEntry
from flowcore.schemas.approval import CORRECTABLE_FIELDS, ExpenseCreate, TimeEntryCreate
from flowcore.schemas.events import EntityRef
from flowcore.services import audit_service, automation_triggers, notification_service
from flowcore.services.errors import (
    InvalidTransitionError,
    MissingReasonError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_MODELS: dict[EntityType, type[TimeEntry] | type[Expense]] = {
    EntityType.TIME_ENTRY: TimeEntry,
    EntityType.EXPENSE: Expense,
}

_CREATE_SCHEMAS = {
    EntityType.TIME_ENTRY: TimeEntryCreate,
    EntityType.EXPENSE: ExpenseCreate,
}

_APPROVAL_FIELDS = ("approval_status", "approved_by", "approved_at", "rejection_reason")


def _model_for(kind: EntityType | str) -> type[TimeEntry] | type[Expense]:
    kind = EntityType(kind)
    if kind not in _MODELS:
        raise ValidationError(f"{kind.value} entities have no approval workflow")
    return _MODELS[kind]


def get_entry(db: Session, ref: EntityRef) -> TimeEntry | Expense:
    entry = db.get(_model_for(ref.kind), ref.id)
    if not entry:
        raise NotFoundError(ref.kind.value, ref.id)
    return entry


def _approval_state(entry: TimeEntry | Expense) -> dict[str, Any]:
    return {field: getattr(entry, field) for field in _APPROVAL_FIELDS}


def _require_reason(reason: str | None) -> str:
    if reason is None or not reason.strip():
        raise MissingReasonError("A reason is required")
    return reason.strip()


# =============================================================================
# Submission
# =============================================================================


def _check_project_and_task(db: Session, project_id: int, task_id: int | None) -> None:
    if not db.get(Project, project_id):
        raise NotFoundError("project", project_id)
    if task_id is not None:
        task = db.get(Task, task_id)
        if not task:
            raise NotFoundError("task", task_id)
        if task.project_id != project_id:
            raise ValidationError(f"Task {task_id} does not belong to project {project_id}")


def submit_time_entry(db: Session, data: TimeEntryCreate, actor_id: int | None = None) -> TimeEntry:
    """Create a time entry in pending and publish time_entry_created."""
    _check_project_and_task(db, data.project_id, data.task_id)
    entry = TimeEntry(
        user_id=data.user_id,
        project_id=data.project_id,
        task_id=data.task_id,
        start_time=data.start_time,
        end_time=data.end_time,
        duration_hours=data.duration_hours,
        notes=data.notes,
        approval_status=ApprovalStatus.PENDING.value,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    automation_triggers.trigger_time_entry_created(
        db, entry, actor_id=actor_id if actor_id is not None else data.user_id
    )
    return entry


def submit_expense(db: Session, data: ExpenseCreate, actor_id: int | None = None) -> Expense:
    """Create an expense in pending and publish expense_created."""
    _check_project_and_task(db, data.project_id, data.task_id)
    expense = Expense(
        user_id=data.user_id,
        project_id=data.project_id,
        task_id=data.task_id,
        amount=data.amount,
        category=data.category,
        description=data.description,
        expense_date=data.expense_date,
        approval_status=ApprovalStatus.PENDING.value,
    )
    db.add(expense)
    db.commit()
    db.refresh(expense)
    automation_triggers.trigger_expense_created(
        db, expense, actor_id=actor_id if actor_id is not None else data.user_id
    )
    return expense


# =============================================================================
# Transitions
# =============================================================================

_VERBS = {
    ApprovalStatus.APPROVED: ("approve", "approved", AuditAction.APPROVAL_APPROVED),
    ApprovalStatus.REJECTED: ("reject", "rejected", AuditAction.APPROVAL_REJECTED),
    ApprovalStatus.CHANGES_REQUESTED: (
        "request_changes",
        "changes_requested",
        AuditAction.APPROVAL_CHANGES_REQUESTED,
    ),
    ApprovalStatus.PENDING: ("resubmit", "resubmitted", AuditAction.APPROVAL_RESUBMITTED),
}

_ALLOWED_FROM = {
    ApprovalStatus.APPROVED: ApprovalStatus.PENDING,
    ApprovalStatus.REJECTED: ApprovalStatus.PENDING,
    ApprovalStatus.CHANGES_REQUESTED: ApprovalStatus.PENDING,
    ApprovalStatus.PENDING: ApprovalStatus.CHANGES_REQUESTED,
}


def _transition(
    db: Session,
    ref: EntityRef,
    target: ApprovalStatus,
    actor_id: int,
    reason: str | None = None,
) -> TimeEntry | Expense:
    attempted, verb, audit_action = _VERBS[target]
    with entity_locks.hold(ref.lock_key):
        entry = get_entry(db, ref)
        current = entry.approval_status
        if current != _ALLOWED_FROM[target].value:
            raise InvalidTransitionError(current, attempted)
        if target in (ApprovalStatus.REJECTED, ApprovalStatus.CHANGES_REQUESTED):
            reason = _require_reason(reason)

        before = _approval_state(entry)
        entry.approval_status = target.value
        if target in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED):
            entry.approved_by = actor_id
            entry.approved_at = get_clock().now()
        else:
            entry.approved_by = None
            entry.approved_at = None
        if target in (ApprovalStatus.REJECTED, ApprovalStatus.CHANGES_REQUESTED):
            entry.rejection_reason = reason
        else:
            entry.rejection_reason = None

        audit_service.log_event(
            db,
            audit_action,
            ref.kind.value,
            ref.id,
            user_id=actor_id,
            old_values=before,
            new_values=_approval_state(entry),
        )
        db.commit()
        db.refresh(entry)

    logger.info("%s %s by user %s", ref, verb, actor_id)

    if target != ApprovalStatus.PENDING:
        notification_service.notify_best_effort(
            entry.user_id,
            f"{ref.kind.value}_{verb}",
            {
                "entry_id": ref.id,
                "reviewer_id": actor_id,
                "reason": entry.rejection_reason,
            },
        )
    automation_triggers.trigger_approval_transition(
        db, ref, entry, verb, before["approval_status"], actor_id=actor_id
    )
    return entry


def approve(db: Session, ref: EntityRef, reviewer_id: int) -> TimeEntry | Expense:
    """pending -> approved."""
    return _transition(db, ref, ApprovalStatus.APPROVED, reviewer_id)


def reject(db: Session, ref: EntityRef, reviewer_id: int, reason: str | None) -> TimeEntry | Expense:
    """pending -> rejected. A non-blank reason is required."""
    return _transition(db, ref, ApprovalStatus.REJECTED, reviewer_id, reason)


def request_changes(
    db: Session, ref: EntityRef, reviewer_id: int, reason: str | None
) -> TimeEntry | Expense:
    """pending -> changes_requested. A non-blank reason is required."""
    return _transition(db, ref, ApprovalStatus.CHANGES_REQUESTED, reviewer_id, reason)


def resubmit(db: Session, ref: EntityRef, actor_id: int) -> TimeEntry | Expense:
    """changes_requested -> pending; clears the reviewer's reason."""
    return _transition(db, ref, ApprovalStatus.PENDING, actor_id)


# =============================================================================
# Listing and bulk operations
# =============================================================================


def list_pending(
    db: Session,
    kind: EntityType | str,
    user_id: int | None = None,
    project_id: int | None = None,
) -> list[TimeEntry] | list[Expense]:
    """Entries awaiting review, oldest first."""
    model = _model_for(kind)
    query = db.query(model).filter(model.approval_status == ApprovalStatus.PENDING.value)
    if user_id is not None:
        query = query.filter(model.user_id == user_id)
    if project_id is not None:
        query = query.filter(model.project_id == project_id)
    return query.order_by(model.id.asc()).all()


def bulk_approve(
    db: Session,
    kind: EntityType | str,
    ids: list[int],
    reviewer_id: int,
) -> list[TimeEntry] | list[Expense]:
    """
    Approve every listed entry that is still pending.

    Missing or already-decided entries are skipped, not raised.
    """
    kind = EntityType(kind)
    _model_for(kind)
    approved = []
    for entry_id in dict.fromkeys(ids):
        ref = EntityRef(kind=kind, id=entry_id)
        try:
            approved.append(approve(db, ref, reviewer_id))
        except (InvalidTransitionError, NotFoundError) as exc:
            logger.info("Bulk approve skipped %s: %s", ref, exc)
    return approved


# =============================================================================
# Administrative correction
# =============================================================================


def apply_admin_correction(
    db: Session,
    ref: EntityRef,
    admin_id: int,
    changes: dict[str, Any],
    reason: str | None,
) -> TimeEntry | Expense:
    """
    Edit non-approval fields of an approved entry.

    The approval fields are never rewritten; the correction is recorded as a
    new audit event carrying the old values, new values and the reason.
    """
    reason = _require_reason(reason)
    allowed = CORRECTABLE_FIELDS.get(ref.kind.value)
    if allowed is None:
        raise ValidationError(f"{ref.kind.value} entities have no approval workflow")
    if not changes:
        raise ValidationError("No changes given")
    rejected = sorted(set(changes) - allowed)
    if rejected:
        raise ValidationError(f"Fields not correctable: {rejected}")

    with entity_locks.hold(ref.lock_key):
        entry = get_entry(db, ref)
        if entry.approval_status != ApprovalStatus.APPROVED.value:
            raise InvalidTransitionError(entry.approval_status, "correct")

        schema = _CREATE_SCHEMAS[ref.kind]
        current = {field: getattr(entry, field) for field in schema.model_fields}
        try:
            validated = schema.model_validate({**current, **changes})
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if "task_id" in changes:
            _check_project_and_task(db, entry.project_id, validated.task_id)

        old_values = {field: getattr(entry, field) for field in changes}
        for field in changes:
            setattr(entry, field, getattr(validated, field))
        new_values = {field: getattr(entry, field) for field in changes}

        audit_service.log_event(
            db,
            AuditAction.ADMIN_CORRECTION,
            ref.kind.value,
            ref.id,
            user_id=admin_id,
            old_values=old_values,
            new_values={**new_values, "reason": reason},
        )
        db.commit()
        db.refresh(entry)

    logger.info("%s corrected by admin %s: %s", ref, admin_id, sorted(changes))
    return entry
