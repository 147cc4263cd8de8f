"""Approval enums."""

from enum import Enum


class ApprovalStatus(str, Enum):
    """Approval state of time entries and expenses."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"  # loops back to pending on resubmit
