"""Entity type enums."""

from enum import Enum


class EntityType(str, Enum):
    """Kinds of entities that events and executions can reference."""

    PROJECT = "project"
    TASK = "task"
    TIME_ENTRY = "time_entry"
    EXPENSE = "expense"
