"""Pydantic schemas for projects and tasks."""

from datetime import date

from pydantic import BaseModel, Field

from flowcore.db.enums import ProjectStatus, TaskStatus


class ProjectCreate(BaseModel):
    """Request to create a project."""
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    status: ProjectStatus = ProjectStatus.ACTIVE


class TaskCreate(BaseModel):
    """Request to create a task."""
    project_id: int
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=2000)
    status: TaskStatus = TaskStatus.TODO
    priority: int = Field(0, ge=0, le=5)
    due_date: date | None = None
    progress_percentage: int = Field(0, ge=0, le=100)
    assigned_to: int | None = None
