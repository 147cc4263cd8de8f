"""Task and project enums."""

from enum import Enum


class TaskStatus(str, Enum):
    """Task board columns."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class DependencyType(str, Enum):
    """Temporal relationship of a precedence edge (task depends on predecessor)."""

    FINISH_TO_START = "finish_to_start"  # predecessor done before task starts
    START_TO_START = "start_to_start"  # predecessor started before task starts
    FINISH_TO_FINISH = "finish_to_finish"  # predecessor done before task finishes
    START_TO_FINISH = "start_to_finish"  # predecessor started before task finishes
