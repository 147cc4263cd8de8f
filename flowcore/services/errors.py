"""Service-layer exceptions.

Dependency and approval errors surface synchronously to the caller. Automation
failures are caught per rule by the engine and only show up in the execution
ledger and the logs.
"""

from __future__ import annotations


class FlowcoreError(Exception):
    """Base exception for flowcore service errors."""

    pass


class NotFoundError(FlowcoreError):
    """Referenced entity, rule or edge does not exist."""

    def __init__(self, kind: str, entity_id: object):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} not found")


class ValidationError(FlowcoreError):
    """Input rejected by a service precondition."""

    pass


class SelfDependencyError(ValidationError):
    """A task cannot depend on itself."""

    pass


class DuplicateDependencyError(ValidationError):
    """An edge already exists for the ordered task pair."""

    pass


class CycleDetectedError(FlowcoreError):
    """Adding the edge would close a cycle in the dependency graph."""

    def __init__(self, path: list[int]):
        self.path = path
        super().__init__("Dependency would create a cycle: " + " -> ".join(str(p) for p in path))


class DependencyNotSatisfiedError(FlowcoreError):
    """Status change blocked by unfinished predecessors."""

    def __init__(self, task_id: int, new_status: str, blocking: list[int]):
        self.task_id = task_id
        self.new_status = new_status
        self.blocking = blocking
        super().__init__(
            f"Task {task_id} cannot move to '{new_status}': blocked by tasks {blocking}"
        )


class InvalidTransitionError(FlowcoreError):
    """Approval transition not allowed from the current status."""

    def __init__(self, current: str, attempted: str):
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot {attempted} an entry in status '{current}'")


class MissingReasonError(ValidationError):
    """Reject / request-changes require a non-blank reason."""

    pass


class RuleActionFailedError(FlowcoreError):
    """An automation action could not be carried out."""

    pass


class ActionTimeoutError(RuleActionFailedError):
    """An external call made by an action exceeded its deadline."""

    pass
