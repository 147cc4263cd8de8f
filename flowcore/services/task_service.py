"""Task service - project and task mutations made through the editing API.

Every mutation takes the entity's lock, validates, commits, and only then
publishes its event (after the lock is released).
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from flowcore.core.constants import MAX_PROGRESS
from flowcore.core.locks import entity_locks
from flowcore.db.enums import EntityType, ProjectStatus, TaskStatus
from flowcore.db.models import Project, Task
from flowcore.schemas.task import ProjectCreate, TaskCreate
from flowcore.services import automation_triggers, dependency_service
from flowcore.services.errors import NotFoundError

logger = logging.getLogger(__name__)


def create_project(db: Session, data: ProjectCreate) -> Project:
    """Create a new project."""
    project = Project(
        name=data.name,
        description=data.description,
        status=data.status.value,
    )
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


def get_project(db: Session, project_id: int) -> Project:
    project = db.get(Project, project_id)
    if not project:
        raise NotFoundError("project", project_id)
    return project


def get_task(db: Session, task_id: int) -> Task:
    task = db.get(Task, task_id)
    if not task:
        raise NotFoundError("task", task_id)
    return task


def create_task(db: Session, data: TaskCreate, actor_id: int | None = None) -> Task:
    """Create a new task and publish task_created."""
    project = get_project(db, data.project_id)
    with entity_locks.hold((EntityType.PROJECT.value, project.id)):
        task = Task(
            project_id=project.id,
            title=data.title,
            description=data.description,
            status=data.status.value,
            priority=data.priority,
            due_date=data.due_date,
            progress_percentage=data.progress_percentage,
            assigned_to=data.assigned_to,
            created_by=actor_id,
        )
        db.add(task)
        db.commit()
        db.refresh(task)

    automation_triggers.trigger_task_created(db, task, actor_id=actor_id)
    return task


def change_task_status(
    db: Session,
    task_id: int,
    new_status: TaskStatus | str,
    actor_id: int | None = None,
) -> Task:
    """
    Move a task to another status.

    Raises DependencyNotSatisfiedError when an unfinished predecessor blocks
    the move; nothing is committed in that case.
    """
    new_status = TaskStatus(new_status)
    with entity_locks.hold((EntityType.TASK.value, task_id)):
        task = get_task(db, task_id)
        old_status = task.status
        if old_status == new_status.value:
            return task
        dependency_service.validate_status_transition(db, task_id, new_status)
        task.status = new_status.value
        if new_status == TaskStatus.DONE:
            task.progress_percentage = MAX_PROGRESS
        db.commit()
        db.refresh(task)

    logger.info("Task %s moved from %s to %s", task_id, old_status, new_status.value)
    automation_triggers.trigger_task_status_changed(db, task, old_status, actor_id=actor_id)
    return task


def update_project_status(
    db: Session,
    project_id: int,
    new_status: ProjectStatus | str,
    actor_id: int | None = None,
) -> Project:
    """Change a project's status and publish project_status_changed."""
    new_status = ProjectStatus(new_status)
    with entity_locks.hold((EntityType.PROJECT.value, project_id)):
        project = get_project(db, project_id)
        old_status = project.status
        if old_status == new_status.value:
            return project
        project.status = new_status.value
        db.commit()
        db.refresh(project)

    automation_triggers.trigger_project_status_changed(db, project, old_status, actor_id=actor_id)
    return project
