"""Automation triggers - hooks called by mutating services after they commit."""

from __future__ import annotations

import uuid
from datetime import date, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from flowcore.core.config import settings
from flowcore.core.deps import get_clock, get_event_bus
from flowcore.db.enums import (
    AutomationEventSource,
    AutomationTriggerType,
    EntityType,
    TaskStatus,
)
from flowcore.db.models import Expense, Project, Task, TimeEntry
from flowcore.schemas.events import DomainEvent, EntityRef, snapshot_of
from flowcore.services.event_bus import EventBus

# Namespace for deterministic sweep event ids
_SWEEP_NAMESPACE = uuid.UUID("6f1c2a8e-3b7d-4f0a-9c55-2d8e41b7a9f3")


def publish_event(
    db: Session,
    event_type: AutomationTriggerType | str,
    entity: EntityRef,
    snapshot: dict[str, Any],
    data: dict[str, Any] | None = None,
    *,
    source: AutomationEventSource = AutomationEventSource.USER,
    actor_id: int | None = None,
    event_id: UUID | None = None,
    bus: EventBus | None = None,
) -> DomainEvent:
    """Build a DomainEvent and publish it on the event bus."""
    if isinstance(event_type, AutomationTriggerType):
        event_type = event_type.value
    event = DomainEvent(
        event_id=event_id or uuid.uuid4(),
        event_type=event_type,
        entity=entity,
        snapshot=snapshot,
        data=data or {},
        occurred_at=get_clock().now(),
        source=source,
        actor_id=actor_id,
    )
    (bus or get_event_bus()).publish(db, event)
    return event


# =============================================================================
# Task / Project Triggers (called from task_service.py)
# =============================================================================


def trigger_task_created(db: Session, task: Task, actor_id: int | None = None) -> DomainEvent:
    """Trigger rules when a task is created."""
    return publish_event(
        db,
        AutomationTriggerType.TASK_CREATED,
        EntityRef(kind=EntityType.TASK, id=task.id),
        snapshot_of(task),
        actor_id=actor_id,
    )


def trigger_task_status_changed(
    db: Session,
    task: Task,
    old_status: str,
    actor_id: int | None = None,
) -> DomainEvent | None:
    """Trigger rules when a task moves to another status."""
    if old_status == task.status:
        return None
    return publish_event(
        db,
        AutomationTriggerType.TASK_STATUS_CHANGED,
        EntityRef(kind=EntityType.TASK, id=task.id),
        snapshot_of(task),
        {"old_status": old_status, "new_status": task.status},
        actor_id=actor_id,
    )


def trigger_project_status_changed(
    db: Session,
    project: Project,
    old_status: str,
    actor_id: int | None = None,
) -> DomainEvent | None:
    """Trigger rules when a project status changes."""
    if old_status == project.status:
        return None
    return publish_event(
        db,
        AutomationTriggerType.PROJECT_STATUS_CHANGED,
        EntityRef(kind=EntityType.PROJECT, id=project.id),
        snapshot_of(project),
        {"old_status": old_status, "new_status": project.status},
        actor_id=actor_id,
    )


# =============================================================================
# Approval Triggers (called from approval_service.py)
# =============================================================================


def trigger_time_entry_created(
    db: Session, entry: TimeEntry, actor_id: int | None = None
) -> DomainEvent:
    """Trigger rules when a time entry is submitted."""
    return publish_event(
        db,
        AutomationTriggerType.TIME_ENTRY_CREATED,
        EntityRef(kind=EntityType.TIME_ENTRY, id=entry.id),
        snapshot_of(entry),
        actor_id=actor_id,
    )


def trigger_expense_created(
    db: Session, expense: Expense, actor_id: int | None = None
) -> DomainEvent:
    """Trigger rules when an expense is submitted."""
    return publish_event(
        db,
        AutomationTriggerType.EXPENSE_CREATED,
        EntityRef(kind=EntityType.EXPENSE, id=expense.id),
        snapshot_of(expense),
        actor_id=actor_id,
    )


def trigger_approval_transition(
    db: Session,
    ref: EntityRef,
    entry: TimeEntry | Expense,
    verb: str,
    old_status: str,
    actor_id: int | None = None,
) -> DomainEvent:
    """Trigger ``<kind>_<verb>`` (approved, rejected, changes_requested, resubmitted)."""
    return publish_event(
        db,
        f"{ref.kind.value}_{verb}",
        ref,
        snapshot_of(entry),
        {
            "old_status": old_status,
            "new_status": entry.approval_status,
            "reviewer_id": entry.approved_by,
            "reason": entry.rejection_reason,
        },
        actor_id=actor_id,
    )


# =============================================================================
# Due-date Sweep (called from the scheduler job and the CLI)
# =============================================================================


def sweep_event_id(task_id: int, due_date: date, today: date) -> UUID:
    """One event id per task, due date and sweep day; re-running a sweep is a no-op."""
    return uuid.uuid5(_SWEEP_NAMESPACE, f"due_date_approaching:{task_id}:{due_date}:{today}")


def trigger_due_date_approaching(db: Session, task: Task, today: date) -> DomainEvent:
    """Trigger rules for a task whose due date is inside the sweep window."""
    return publish_event(
        db,
        AutomationTriggerType.DUE_DATE_APPROACHING,
        EntityRef(kind=EntityType.TASK, id=task.id),
        snapshot_of(task),
        {"days_until_due": (task.due_date - today).days},
        source=AutomationEventSource.SYSTEM,
        event_id=sweep_event_id(task.id, task.due_date, today),
    )


def trigger_due_date_sweep(db: Session, horizon_days: int | None = None) -> int:
    """
    Find unfinished tasks due within the horizon and trigger rules for each.

    Returns the number of events published.
    """
    horizon = horizon_days if horizon_days is not None else settings.DUE_DATE_HORIZON_DAYS
    today = get_clock().now().date()
    window_end = today + timedelta(days=horizon)

    task_ids = [
        task_id
        for (task_id,) in db.query(Task.id)
        .filter(
            Task.due_date.isnot(None),
            Task.due_date >= today,
            Task.due_date <= window_end,
            Task.status != TaskStatus.DONE.value,
        )
        .order_by(Task.due_date.asc(), Task.id.asc())
        .all()
    ]

    published = 0
    for task_id in task_ids:
        task = db.get(Task, task_id)
        if task is None:
            continue
        trigger_due_date_approaching(db, task, today)
        published += 1
    return published
