"""SQLAlchemy ORM models."""

from flowcore.db.models.approvals import Expense, TimeEntry
from flowcore.db.models.audit import AuditLog
from flowcore.db.models.automation import AutomationExecution, AutomationRule
from flowcore.db.models.tasks import Project, Task, TaskDependency

__all__ = [
    "AuditLog",
    "AutomationExecution",
    "AutomationRule",
    "Expense",
    "Project",
    "Task",
    "TaskDependency",
    "TimeEntry",
]
