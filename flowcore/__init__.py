"""Workflow automation, approval and task-dependency engine."""

__version__ = "0.1.0"
