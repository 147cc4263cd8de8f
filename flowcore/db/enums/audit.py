"""Audit enums."""

from enum import Enum


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    # Approval state machine
    APPROVAL_APPROVED = "approval_approved"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_CHANGES_REQUESTED = "approval_changes_requested"
    APPROVAL_RESUBMITTED = "approval_resubmitted"
    ADMIN_CORRECTION = "admin_correction"

    # Dependency graph
    DEPENDENCY_ADDED = "dependency_added"
    DEPENDENCY_REMOVED = "dependency_removed"

    # Rule administration
    RULE_CREATED = "rule_created"
    RULE_UPDATED = "rule_updated"
    RULE_DEACTIVATED = "rule_deactivated"
