"""Application constants."""

# Statuses that count as "started" when evaluating precedence edges
STARTED_TASK_STATUSES = frozenset({"in_progress", "review", "done"})

# Task priority / progress bounds (mirrored by table check constraints)
MIN_TASK_PRIORITY = 0
MAX_TASK_PRIORITY = 5
MIN_PROGRESS = 0
MAX_PROGRESS = 100
