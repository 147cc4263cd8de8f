"""Pydantic schemas for approval-bearing entries."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator


class TimeEntryCreate(BaseModel):
    """Request to submit a time entry."""
    user_id: int
    project_id: int
    task_id: int | None = None
    start_time: datetime
    end_time: datetime | None = None
    duration_hours: Decimal = Field(..., gt=0, le=24, decimal_places=2)
    notes: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def validate_range(self) -> "TimeEntryCreate":
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self


class ExpenseCreate(BaseModel):
    """Request to submit an expense."""
    user_id: int
    project_id: int
    task_id: int | None = None
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    category: str = Field(..., min_length=1, max_length=100)
    description: str | None = Field(None, max_length=500)
    expense_date: date


# Fields an administrator may correct on an approved entry
CORRECTABLE_FIELDS = {
    "time_entry": frozenset({"start_time", "end_time", "duration_hours", "notes", "task_id"}),
    "expense": frozenset({"amount", "category", "description", "expense_date", "task_id"}),
}
