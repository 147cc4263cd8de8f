"""Automation engine adapters for domain-specific behavior."""

from __future__ import annotations

import logging
from contextlib import ExitStack
from datetime import date, timedelta
from typing import Any, Protocol

from sqlalchemy.orm import Session

from flowcore.core.config import settings
from flowcore.core.constants import MAX_PROGRESS, MAX_TASK_PRIORITY, MIN_PROGRESS, MIN_TASK_PRIORITY
from flowcore.core.deps import get_clock
from flowcore.core.locks import entity_locks
from flowcore.db.enums import (
    ApprovalStatus,
    AutomationActionType,
    AutomationEventSource,
    AutomationTriggerType,
    EntityType,
    TaskStatus,
)
from flowcore.db.models import AutomationRule, Expense, Project, Task, TimeEntry
from flowcore.schemas.automation import (
    ALLOWED_UPDATE_FIELDS,
    AssignUserActionConfig,
    ChangeStatusActionConfig,
    CreateTaskActionConfig,
    SendNotificationActionConfig,
    UpdateFieldActionConfig,
    is_reference,
)
from flowcore.schemas.events import DomainEvent, EntityRef, snapshot_of
from flowcore.services import dependency_service, notification_service
from flowcore.services.automation_conditions import event_value, resolve_relative_date
from flowcore.services.errors import NotFoundError, RuleActionFailedError

logger = logging.getLogger(__name__)

_ENTITY_MODELS = {
    EntityType.PROJECT: Project,
    EntityType.TASK: Task,
    EntityType.TIME_ENTRY: TimeEntry,
    EntityType.EXPENSE: Expense,
}

_UNRESOLVED = object()


class RuleDomainAdapter(Protocol):
    def resolve_params(self, params: dict[str, Any], event: DomainEvent) -> dict[str, Any]: ...

    def execute_action(
        self,
        db: Session,
        rule: AutomationRule,
        config: Any,
        event: DomainEvent,
        follow_ups: list[DomainEvent],
        locks: ExitStack,
    ) -> dict: ...


def resolve_reference(value: Any, event: DomainEvent) -> Any:
    """
    Substitute a ``$event.<field>`` / ``$entity.<field>`` placeholder.

    ``$event.`` reads the event data, then the event's own attributes
    (``actor_id``, ``creator_id``, ``occurred_at``, ...), then the snapshot;
    ``$entity.`` reads the snapshot. Other values are returned unchanged.
    """
    if not is_reference(value):
        return value
    source, _, field = value[1:].partition(".")
    if source == "event":
        found = event_value(event, field, default=_UNRESOLVED)
        if found is not _UNRESOLVED:
            return found
    if field in event.snapshot:
        return event.snapshot[field]
    raise RuleActionFailedError(f"Cannot resolve '{value}' for {event.event_type}")


def _resolve_all(value: Any, event: DomainEvent) -> Any:
    if isinstance(value, dict):
        return {k: _resolve_all(v, event) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_all(v, event) for v in value]
    return resolve_reference(value, event)


def _as_int(value: Any, label: str) -> int:
    if isinstance(value, bool) or value is None:
        raise RuleActionFailedError(f"{label} is not set")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise RuleActionFailedError(f"{label} must be an integer, got {value!r}") from exc


def _with_action_type(action_type: str, result: dict) -> dict:
    if "action_type" not in result:
        result["action_type"] = action_type
    return result


class DefaultRuleDomainAdapter:
    """Default adapter backed by the task, project and approval models."""

    def resolve_params(self, params: dict[str, Any], event: DomainEvent) -> dict[str, Any]:
        """Resolve every placeholder in an action's params."""
        return _resolve_all(params, event)

    def execute_action(
        self,
        db: Session,
        rule: AutomationRule,
        config: Any,
        event: DomainEvent,
        follow_ups: list[DomainEvent],
        locks: ExitStack,
    ) -> dict:
        """
        Execute one action and return a JSON summary.

        Mutating actions enter their target's entity lock on ``locks`` and
        re-read the target once it is held. The engine keeps ``locks`` open
        until the rule's ledger row is committed.

        Raises RuleActionFailedError (or a dependency / not-found error) when
        the action cannot be carried out; the engine rolls back and records
        the failure. Follow-up events are appended to ``follow_ups``.
        """
        action_type = config.action_type

        if action_type == AutomationActionType.ASSIGN_USER.value:
            result = self._action_assign_user(db, config, event, locks)
        elif action_type == AutomationActionType.CHANGE_STATUS.value:
            result = self._action_change_status(db, config, event, follow_ups, locks)
        elif action_type == AutomationActionType.CREATE_TASK.value:
            result = self._action_create_task(db, config, event, follow_ups, locks)
        elif action_type == AutomationActionType.SEND_NOTIFICATION.value:
            result = self._action_send_notification(config, event)
        elif action_type == AutomationActionType.UPDATE_FIELD.value:
            result = self._action_update_field(db, config, event, locks)
        else:
            raise RuleActionFailedError(f"Unknown action type: {action_type}")
        return _with_action_type(action_type, result)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load_locked(self, db: Session, locks: ExitStack, ref: EntityRef) -> Any:
        """Take the entity lock, then load the entity's committed state."""
        locks.enter_context(entity_locks.hold(ref.lock_key))
        entity = db.get(_ENTITY_MODELS[ref.kind], ref.id, populate_existing=True)
        if entity is None:
            raise NotFoundError(ref.kind.value, ref.id)
        return entity

    def _target_task(
        self, db: Session, task_id: Any, event: DomainEvent, locks: ExitStack
    ) -> Task:
        if task_id is None:
            if event.entity.kind != EntityType.TASK:
                raise RuleActionFailedError(
                    f"No target task for a {event.entity.kind.value} event"
                )
            task_id = event.entity.id
        ref = EntityRef(kind=EntityType.TASK, id=_as_int(resolve_reference(task_id, event), "task_id"))
        return self._load_locked(db, locks, ref)

    def _follow_up(
        self,
        trigger_type: AutomationTriggerType,
        entity: Any,
        kind: EntityType,
        event: DomainEvent,
        data: dict[str, Any] | None = None,
    ) -> DomainEvent:
        return DomainEvent(
            event_type=trigger_type.value,
            entity=EntityRef(kind=kind, id=entity.id),
            snapshot=snapshot_of(entity),
            data=data or {},
            occurred_at=get_clock().now(),
            source=AutomationEventSource.AUTOMATION,
            depth=event.depth + 1,
        )

    # =========================================================================
    # Action Executors
    # =========================================================================

    def _action_assign_user(
        self,
        db: Session,
        config: AssignUserActionConfig,
        event: DomainEvent,
        locks: ExitStack,
    ) -> dict:
        """Set a task's assignee."""
        user_id = _as_int(resolve_reference(config.user_id, event), "user_id")
        task = self._target_task(db, config.task_id, event, locks)
        old_assignee = task.assigned_to
        task.assigned_to = user_id
        db.flush()
        return {
            "success": True,
            "task_id": task.id,
            "old_value": old_assignee,
            "new_value": user_id,
            "description": f"Assigned task {task.id} to user {user_id}",
        }

    def _action_change_status(
        self,
        db: Session,
        config: ChangeStatusActionConfig,
        event: DomainEvent,
        follow_ups: list[DomainEvent],
        locks: ExitStack,
    ) -> dict:
        """Move a task to another status, gated by its dependencies."""
        new_status = TaskStatus(config.status)
        task = self._target_task(db, config.task_id, event, locks)
        old_status = task.status
        if old_status == new_status.value:
            return {
                "success": True,
                "task_id": task.id,
                "changed": False,
                "description": f"Task {task.id} already {new_status.value}",
            }
        dependency_service.validate_status_transition(db, task.id, new_status)
        task.status = new_status.value
        if new_status == TaskStatus.DONE:
            task.progress_percentage = MAX_PROGRESS
        db.flush()

        follow_ups.append(
            self._follow_up(
                AutomationTriggerType.TASK_STATUS_CHANGED,
                task,
                EntityType.TASK,
                event,
                data={"old_status": old_status, "new_status": new_status.value},
            )
        )
        return {
            "success": True,
            "task_id": task.id,
            "changed": True,
            "old_value": old_status,
            "new_value": new_status.value,
            "description": f"Moved task {task.id} from {old_status} to {new_status.value}",
        }

    def _action_create_task(
        self,
        db: Session,
        config: CreateTaskActionConfig,
        event: DomainEvent,
        follow_ups: list[DomainEvent],
        locks: ExitStack,
    ) -> dict:
        """Create a task in the triggering project."""
        if config.project_id is not None:
            project_id = _as_int(resolve_reference(config.project_id, event), "project_id")
        elif event.entity.kind == EntityType.PROJECT:
            project_id = event.entity.id
        else:
            project_id = _as_int(event.snapshot.get("project_id"), "project_id")

        assigned_to = None
        if config.assigned_to is not None:
            assigned_to = _as_int(resolve_reference(config.assigned_to, event), "assigned_to")

        due_date = None
        if config.due_days is not None:
            due_date = get_clock().now().date() + timedelta(days=config.due_days)

        project = self._load_locked(db, locks, EntityRef(kind=EntityType.PROJECT, id=project_id))
        task = Task(
            project_id=project.id,
            title=config.title,
            description=config.description,
            priority=config.priority,
            due_date=due_date,
            assigned_to=assigned_to,
            status=TaskStatus.TODO.value,
            progress_percentage=0,
        )
        db.add(task)
        db.flush()
        db.refresh(task)

        follow_ups.append(
            self._follow_up(AutomationTriggerType.TASK_CREATED, task, EntityType.TASK, event)
        )
        return {
            "success": True,
            "task_id": task.id,
            "project_id": project.id,
            "description": f"Created task '{config.title}' in project {project.id}",
        }

    def _recipient_for(self, config: SendNotificationActionConfig, event: DomainEvent) -> int:
        recipient = config.recipient
        if recipient == "assignee":
            value = event.snapshot.get("assigned_to")
        elif recipient == "owner":
            # Time entries / expenses carry their owner in user_id
            value = event.snapshot.get("user_id", event.snapshot.get("assigned_to"))
        elif recipient == "creator":
            value = event.snapshot.get("created_by")
        else:
            value = resolve_reference(recipient, event)
        if value is None:
            raise RuleActionFailedError(f"No {recipient} recipient for {event.entity}")
        return _as_int(value, "recipient")

    def _action_send_notification(
        self, config: SendNotificationActionConfig, event: DomainEvent
    ) -> dict:
        """Send through the notification collaborator, bounded by the action timeout."""
        user_id = self._recipient_for(config, event)
        params = _resolve_all(dict(config.params), event)
        params.setdefault("entity_type", event.entity.kind.value)
        params.setdefault("entity_id", event.entity.id)

        delivered = notification_service.send(
            user_id,
            config.template_kind,
            params,
            timeout=settings.ACTION_TIMEOUT_SECONDS,
        )
        if not delivered:
            raise RuleActionFailedError(
                f"Notifier declined '{config.template_kind}' for user {user_id}"
            )
        return {
            "success": True,
            "recipient": user_id,
            "template_kind": config.template_kind,
            "description": f"Sent '{config.template_kind}' to user {user_id}",
        }

    def _coerce_update_value(self, field: str, value: Any) -> Any:
        if field == "due_date":
            if value is None or isinstance(value, date):
                return value
            relative = resolve_relative_date(value, get_clock().now())
            if relative is not None:
                return relative.date()
            try:
                return date.fromisoformat(str(value))
            except ValueError as exc:
                raise RuleActionFailedError(f"Invalid due_date: {value!r}") from exc
        if field == "priority":
            priority = _as_int(value, "priority")
            if not MIN_TASK_PRIORITY <= priority <= MAX_TASK_PRIORITY:
                raise RuleActionFailedError(f"priority out of range: {priority}")
            return priority
        if field == "progress_percentage":
            progress = _as_int(value, "progress_percentage")
            if not MIN_PROGRESS <= progress <= MAX_PROGRESS:
                raise RuleActionFailedError(f"progress_percentage out of range: {progress}")
            return progress
        if field in ("title", "name", "category") and not value:
            raise RuleActionFailedError(f"{field} cannot be empty")
        return value

    def _action_update_field(
        self,
        db: Session,
        config: UpdateFieldActionConfig,
        event: DomainEvent,
        locks: ExitStack,
    ) -> dict:
        """Update an allow-listed field on the triggering entity."""
        field = config.field
        if field not in ALLOWED_UPDATE_FIELDS[event.entity.kind]:
            raise RuleActionFailedError(
                f"Field '{field}' is not allowed for {event.entity.kind.value}"
            )
        value = self._coerce_update_value(field, resolve_reference(config.value, event))

        entity = self._load_locked(db, locks, event.entity)
        if getattr(entity, "approval_status", None) == ApprovalStatus.APPROVED.value:
            raise RuleActionFailedError(f"{event.entity} is approved and cannot be edited")
        old_value = getattr(entity, field)
        setattr(entity, field, value)
        db.flush()
        return {
            "success": True,
            "field": field,
            "old_value": None if old_value is None else str(old_value),
            "new_value": None if value is None else str(value),
            "description": f"Updated {field} on {event.entity}",
        }
