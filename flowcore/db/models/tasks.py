"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flowcore.db.base import Base
from flowcore.db.enums import DependencyType, ProjectStatus, TaskStatus


class Project(Base):
    """Container for tasks, time entries and expenses."""

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), server_default=text(f"'{ProjectStatus.ACTIVE.value}'"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    tasks: Mapped[list["Task"]] = relationship(
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )


class Task(Base):
    """
    Work item on a project board.

    Mutated by users (through task_service) and by automation actions; status
    changes are gated by the task's precedence edges.
    """

    __tablename__ = "tasks"
    __table_args__ = (
        CheckConstraint("priority BETWEEN 0 AND 5", name="chk_task_priority"),
        CheckConstraint(
            "progress_percentage BETWEEN 0 AND 100", name="chk_task_progress"
        ),
        Index("idx_tasks_project", "project_id"),
        Index("idx_tasks_status", "status"),
        Index("idx_tasks_due", "due_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), server_default=text(f"'{TaskStatus.TODO.value}'"), nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, server_default=text("0"), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    progress_percentage: Mapped[int] = mapped_column(
        Integer, server_default=text("0"), nullable=False
    )
    # User ids belong to the surrounding application (no FK)
    assigned_to: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )

    project: Mapped["Project"] = relationship(back_populates="tasks")


class TaskDependency(Base):
    """
    Precedence edge: ``task_id`` depends on ``depends_on_task_id``.

    The edge set of a project is kept acyclic by dependency_service.
    """

    __tablename__ = "task_dependencies"
    __table_args__ = (
        CheckConstraint("task_id != depends_on_task_id", name="chk_no_self_dependency"),
        UniqueConstraint("task_id", "depends_on_task_id", name="uq_task_dependency"),
        Index("idx_task_dependencies_task", "task_id"),
        Index("idx_task_dependencies_depends_on", "depends_on_task_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False
    )
    depends_on_task_id: Mapped[int] = mapped_column(
        ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False
    )
    dependency_type: Mapped[str] = mapped_column(
        String(30),
        server_default=text(f"'{DependencyType.FINISH_TO_START.value}'"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    task: Mapped["Task"] = relationship(foreign_keys=[task_id])
    depends_on: Mapped["Task"] = relationship(foreign_keys=[depends_on_task_id])
