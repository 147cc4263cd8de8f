"""Automation-related enums."""

from enum import Enum


class AutomationTriggerType(str, Enum):
    """Events that can trigger an automation rule."""

    TASK_CREATED = "task_created"
    TASK_STATUS_CHANGED = "task_status_changed"
    PROJECT_STATUS_CHANGED = "project_status_changed"
    # Synthesized by the periodic due-date sweep
    DUE_DATE_APPROACHING = "due_date_approaching"
    # Approval lifecycle
    TIME_ENTRY_CREATED = "time_entry_created"
    TIME_ENTRY_APPROVED = "time_entry_approved"
    TIME_ENTRY_REJECTED = "time_entry_rejected"
    TIME_ENTRY_CHANGES_REQUESTED = "time_entry_changes_requested"
    TIME_ENTRY_RESUBMITTED = "time_entry_resubmitted"
    EXPENSE_CREATED = "expense_created"
    EXPENSE_APPROVED = "expense_approved"
    EXPENSE_REJECTED = "expense_rejected"
    EXPENSE_CHANGES_REQUESTED = "expense_changes_requested"
    EXPENSE_RESUBMITTED = "expense_resubmitted"


class AutomationActionType(str, Enum):
    """Actions a rule can execute."""

    ASSIGN_USER = "assign_user"
    CHANGE_STATUS = "change_status"
    CREATE_TASK = "create_task"
    SEND_NOTIFICATION = "send_notification"
    UPDATE_FIELD = "update_field"


class ConditionOperator(str, Enum):
    """Operators for condition leaves."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    CONTAINS = "contains"


class ExecutionOutcome(str, Enum):
    """Execution ledger outcome."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"  # duplicate delivery or rate limited


class AutomationEventSource(str, Enum):
    """Source that produced an event."""

    USER = "user"
    SYSTEM = "system"  # scheduler sweeps
    AUTOMATION = "automation"  # follow-up events from rule actions
