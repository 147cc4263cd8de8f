"""Enum definitions for application constants."""

from flowcore.db.enums.approvals import ApprovalStatus
from flowcore.db.enums.audit import AuditAction
from flowcore.db.enums.automation import (
    AutomationActionType,
    AutomationEventSource,
    AutomationTriggerType,
    ConditionOperator,
    ExecutionOutcome,
)
from flowcore.db.enums.entities import EntityType
from flowcore.db.enums.tasks import DependencyType, ProjectStatus, TaskStatus

__all__ = [
    "ApprovalStatus",
    "AuditAction",
    "AutomationActionType",
    "AutomationEventSource",
    "AutomationTriggerType",
    "ConditionOperator",
    "DependencyType",
    "EntityType",
    "ExecutionOutcome",
    "ProjectStatus",
    "TaskStatus",
]
