"""Task dependency graph: acyclic precedence edges and status gating.

Edges read "task depends on depends_on_task". The edge set of every project is
kept acyclic: an insertion that would let ``task`` be reached from
``depends_on_task`` is refused with CycleDetectedError and leaves the graph
unchanged. Edge mutations are serialized per project through the entity lock
registry.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, joinedload

from flowcore.core.constants import STARTED_TASK_STATUSES
from flowcore.core.locks import entity_locks
from flowcore.db.enums import AuditAction, DependencyType, EntityType, TaskStatus
from flowcore.db.models import Task, TaskDependency
from flowcore.services import audit_service
from flowcore.services.errors import (
    CycleDetectedError,
    DependencyNotSatisfiedError,
    DuplicateDependencyError,
    NotFoundError,
    SelfDependencyError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _get_task(db: Session, task_id: int) -> Task:
    task = db.get(Task, task_id)
    if not task:
        raise NotFoundError("task", task_id)
    return task


def _project_lock_key(project_id: int) -> tuple[str, int]:
    return (EntityType.PROJECT.value, project_id)


def _project_adjacency(db: Session, project_id: int) -> dict[int, list[int]]:
    """task_id -> [depends_on_task_id, ...] for every edge inside the project."""
    dependent = aliased(Task)
    rows = db.execute(
        select(TaskDependency.task_id, TaskDependency.depends_on_task_id)
        .join(dependent, dependent.id == TaskDependency.task_id)
        .where(dependent.project_id == project_id)
        .order_by(TaskDependency.id)
    ).all()
    graph: dict[int, list[int]] = {}
    for task_id, depends_on_task_id in rows:
        graph.setdefault(task_id, []).append(depends_on_task_id)
    return graph


def _find_path(graph: dict[int, list[int]], start: int, goal: int) -> list[int] | None:
    """Iterative DFS from ``start``; returns the node path to ``goal`` or None."""
    parent: dict[int, int | None] = {start: None}
    stack: list[int] = [start]
    while stack:
        node = stack.pop()
        if node == goal:
            path = [node]
            while parent[path[-1]] is not None:
                path.append(parent[path[-1]])
            path.reverse()
            return path
        for nxt in graph.get(node, ()):
            if nxt not in parent:
                parent[nxt] = node
                stack.append(nxt)
    return None


def would_create_cycle(db: Session, task_id: int, depends_on_task_id: int) -> list[int] | None:
    """
    Return the cycle the edge ``task_id -> depends_on_task_id`` would close.

    The returned path starts and ends at ``task_id``
    (``[task, depends_on, ..., task]``); None means the edge is safe.
    """
    if task_id == depends_on_task_id:
        return [task_id, task_id]
    task = _get_task(db, task_id)
    graph = _project_adjacency(db, task.project_id)
    path = _find_path(graph, depends_on_task_id, task_id)
    if path is None:
        return None
    return [task_id, *path]


def add_dependency(
    db: Session,
    task_id: int,
    depends_on_task_id: int,
    dependency_type: DependencyType | str = DependencyType.FINISH_TO_START,
    actor_id: int | None = None,
) -> TaskDependency:
    """
    Insert a precedence edge after checking it keeps the project acyclic.

    Raises:
        SelfDependencyError: task_id == depends_on_task_id
        NotFoundError: either task is missing
        ValidationError: tasks belong to different projects
        DuplicateDependencyError: edge already exists for the ordered pair
        CycleDetectedError: the edge would close a cycle
    """
    if task_id == depends_on_task_id:
        raise SelfDependencyError("A task cannot depend on itself")
    dependency_type = DependencyType(dependency_type)

    task = _get_task(db, task_id)
    depends_on = _get_task(db, depends_on_task_id)
    if task.project_id != depends_on.project_id:
        raise ValidationError("Dependencies must stay within one project")

    with entity_locks.hold(_project_lock_key(task.project_id)):
        existing = (
            db.query(TaskDependency)
            .filter(
                TaskDependency.task_id == task_id,
                TaskDependency.depends_on_task_id == depends_on_task_id,
            )
            .first()
        )
        if existing:
            raise DuplicateDependencyError(
                f"Task {task_id} already depends on task {depends_on_task_id}"
            )

        graph = _project_adjacency(db, task.project_id)
        path = _find_path(graph, depends_on_task_id, task_id)
        if path is not None:
            logger.info(
                "Rejected dependency %s -> %s: cycle via %s",
                task_id,
                depends_on_task_id,
                path,
            )
            raise CycleDetectedError([task_id, *path])

        edge = TaskDependency(
            task_id=task_id,
            depends_on_task_id=depends_on_task_id,
            dependency_type=dependency_type.value,
        )
        db.add(edge)
        try:
            db.flush()
        except IntegrityError as exc:
            db.rollback()
            raise DuplicateDependencyError(
                f"Task {task_id} already depends on task {depends_on_task_id}"
            ) from exc

        audit_service.log_event(
            db,
            AuditAction.DEPENDENCY_ADDED,
            EntityType.TASK.value,
            task_id,
            user_id=actor_id,
            new_values={
                "depends_on_task_id": depends_on_task_id,
                "dependency_type": dependency_type.value,
            },
        )
        db.commit()
        db.refresh(edge)
    return edge


def remove_dependency(
    db: Session,
    task_id: int,
    depends_on_task_id: int,
    actor_id: int | None = None,
) -> None:
    """Delete an edge. Raises NotFoundError when it does not exist."""
    task = _get_task(db, task_id)
    with entity_locks.hold(_project_lock_key(task.project_id)):
        edge = (
            db.query(TaskDependency)
            .filter(
                TaskDependency.task_id == task_id,
                TaskDependency.depends_on_task_id == depends_on_task_id,
            )
            .first()
        )
        if not edge:
            raise NotFoundError("task_dependency", f"{task_id}->{depends_on_task_id}")

        old_values = {
            "depends_on_task_id": depends_on_task_id,
            "dependency_type": edge.dependency_type,
        }
        db.delete(edge)
        audit_service.log_event(
            db,
            AuditAction.DEPENDENCY_REMOVED,
            EntityType.TASK.value,
            task_id,
            user_id=actor_id,
            old_values=old_values,
        )
        db.commit()


def edges_for(db: Session, task_id: int) -> list[TaskDependency]:
    """Incoming edges: what ``task_id`` depends on."""
    return (
        db.query(TaskDependency)
        .options(joinedload(TaskDependency.depends_on))
        .filter(TaskDependency.task_id == task_id)
        .order_by(TaskDependency.id)
        .all()
    )


def dependents_of(db: Session, task_id: int) -> list[TaskDependency]:
    """Outgoing edges: tasks that depend on ``task_id``."""
    return (
        db.query(TaskDependency)
        .options(joinedload(TaskDependency.task))
        .filter(TaskDependency.depends_on_task_id == task_id)
        .order_by(TaskDependency.id)
        .all()
    )


def _edge_satisfied(dependency_type: str, predecessor_status: str, new_status: TaskStatus) -> bool:
    """Whether one edge allows moving its dependent task to ``new_status``."""
    predecessor_done = predecessor_status == TaskStatus.DONE.value
    predecessor_started = predecessor_status in STARTED_TASK_STATUSES
    entering_started = new_status.value in STARTED_TASK_STATUSES
    entering_done = new_status == TaskStatus.DONE

    if dependency_type == DependencyType.FINISH_TO_START.value:
        return predecessor_done or not entering_started
    if dependency_type == DependencyType.START_TO_START.value:
        return predecessor_started or not entering_started
    if dependency_type == DependencyType.FINISH_TO_FINISH.value:
        return predecessor_done or not entering_done
    if dependency_type == DependencyType.START_TO_FINISH.value:
        return predecessor_started or not entering_done
    logger.warning("Unknown dependency type %s, treating as finish_to_start", dependency_type)
    return predecessor_done or not entering_started


def blocking_predecessors(db: Session, task_id: int, new_status: TaskStatus | str) -> list[int]:
    """Ids of predecessors that block ``task_id`` from entering ``new_status``."""
    new_status = TaskStatus(new_status)
    if new_status == TaskStatus.TODO:
        return []
    blocking: list[int] = []
    for edge in edges_for(db, task_id):
        if not _edge_satisfied(edge.dependency_type, edge.depends_on.status, new_status):
            blocking.append(edge.depends_on_task_id)
    return blocking


def validate_status_transition(db: Session, task_id: int, new_status: TaskStatus | str) -> None:
    """
    Check the task's incoming edges before a status change.

    Moving back to todo, or to the status the task already has, is never
    blocked. Raises DependencyNotSatisfiedError listing blocking predecessors.
    """
    task = _get_task(db, task_id)
    new_status = TaskStatus(new_status)
    if task.status == new_status.value:
        return
    blocking = blocking_predecessors(db, task_id, new_status)
    if blocking:
        raise DependencyNotSatisfiedError(task_id, new_status.value, blocking)
