from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from flowcore.core.config import settings
from flowcore.db.enums import ApprovalStatus, AuditAction, EntityType
from flowcore.db.models import AuditLog, TimeEntry
from flowcore.schemas.approval import ExpenseCreate, TimeEntryCreate
from flowcore.schemas.events import EntityRef
from flowcore.services import approval_service
from flowcore.services.errors import (
    InvalidTransitionError,
    MissingReasonError,
    NotFoundError,
    ValidationError,
)

OWNER_ID = 11
REVIEWER_ID = 22


@pytest.fixture
def published(bus):
    events = []
    bus.subscribe(lambda db, event: events.append(event), name="recorder")
    return events


@pytest.fixture
def submit_entry(db, project):
    def _submit(user_id: int = OWNER_ID, hours: str = "2.50"):
        return approval_service.submit_time_entry(
            db,
            TimeEntryCreate(
                user_id=user_id,
                project_id=project.id,
                start_time=datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc),
                duration_hours=Decimal(hours),
                notes="Design review",
            ),
        )

    return _submit


def _ref(entry) -> EntityRef:
    return EntityRef(kind=EntityType.TIME_ENTRY, id=entry.id)


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None)


def test_submit_creates_pending_entry_and_publishes(db, submit_entry, published):
    entry = submit_entry()

    assert entry.approval_status == ApprovalStatus.PENDING.value
    assert entry.approved_by is None
    assert entry.rejection_reason is None
    assert [e.event_type for e in published] == ["time_entry_created"]
    assert published[0].actor_id == OWNER_ID


def test_approve_sets_reviewer_and_timestamp(db, submit_entry, clock, notifier, published):
    entry = submit_entry()

    approved = approval_service.approve(db, _ref(entry), REVIEWER_ID)

    assert approved.approval_status == ApprovalStatus.APPROVED.value
    assert approved.approved_by == REVIEWER_ID
    assert _naive(approved.approved_at) == _naive(clock.now())
    assert approved.rejection_reason is None
    assert notifier.sent[0][:2] == (OWNER_ID, "time_entry_approved")
    assert published[-1].event_type == "time_entry_approved"
    assert published[-1].data["old_status"] == "pending"

    audit = db.query(AuditLog).filter(AuditLog.action == AuditAction.APPROVAL_APPROVED.value).one()
    assert audit.entity_type == "time_entry"
    assert audit.old_values["approval_status"] == "pending"
    assert audit.new_values["approval_status"] == "approved"


def test_approve_twice_is_invalid(db, submit_entry):
    entry = submit_entry()
    approval_service.approve(db, _ref(entry), REVIEWER_ID)

    with pytest.raises(InvalidTransitionError) as exc_info:
        approval_service.approve(db, _ref(entry), REVIEWER_ID)
    assert exc_info.value.current == "approved"


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_reject_requires_reason(db, submit_entry, reason):
    entry = submit_entry()

    with pytest.raises(MissingReasonError):
        approval_service.reject(db, _ref(entry), REVIEWER_ID, reason)

    db.refresh(entry)
    assert entry.approval_status == ApprovalStatus.PENDING.value


def test_reject_records_reviewer_and_reason(db, submit_entry, notifier, published):
    entry = submit_entry()

    rejected = approval_service.reject(db, _ref(entry), REVIEWER_ID, "  Wrong project  ")

    assert rejected.approval_status == ApprovalStatus.REJECTED.value
    assert rejected.approved_by == REVIEWER_ID
    assert rejected.approved_at is not None
    assert rejected.rejection_reason == "Wrong project"
    assert notifier.kinds() == ["time_entry_rejected"]
    assert published[-1].event_type == "time_entry_rejected"
    assert published[-1].data["reason"] == "Wrong project"


def test_request_changes_then_resubmit_then_approve(db, submit_entry, published):
    entry = submit_entry()

    sent_back = approval_service.request_changes(db, _ref(entry), REVIEWER_ID, "Split by task")
    assert sent_back.approval_status == ApprovalStatus.CHANGES_REQUESTED.value
    assert sent_back.approved_by is None
    assert sent_back.approved_at is None
    assert sent_back.rejection_reason == "Split by task"

    resubmitted = approval_service.resubmit(db, _ref(entry), OWNER_ID)
    assert resubmitted.approval_status == ApprovalStatus.PENDING.value
    assert resubmitted.rejection_reason is None

    approved = approval_service.approve(db, _ref(entry), REVIEWER_ID)
    assert approved.approval_status == ApprovalStatus.APPROVED.value
    assert [e.event_type for e in published] == [
        "time_entry_created",
        "time_entry_changes_requested",
        "time_entry_resubmitted",
        "time_entry_approved",
    ]


def test_request_changes_requires_reason(db, submit_entry):
    entry = submit_entry()
    with pytest.raises(MissingReasonError):
        approval_service.request_changes(db, _ref(entry), REVIEWER_ID, "")


def test_resubmit_only_from_changes_requested(db, submit_entry):
    entry = submit_entry()
    with pytest.raises(InvalidTransitionError):
        approval_service.resubmit(db, _ref(entry), OWNER_ID)


def test_decided_entries_cannot_be_decided_again(db, submit_entry):
    entry = submit_entry()
    approval_service.reject(db, _ref(entry), REVIEWER_ID, "Duplicate")

    with pytest.raises(InvalidTransitionError):
        approval_service.approve(db, _ref(entry), REVIEWER_ID)
    with pytest.raises(InvalidTransitionError):
        approval_service.request_changes(db, _ref(entry), REVIEWER_ID, "Again")


def test_notification_failure_does_not_fail_transition(db, submit_entry, notifier):
    notifier.fail_with = RuntimeError("smtp down")
    entry = submit_entry()

    approved = approval_service.approve(db, _ref(entry), REVIEWER_ID)

    assert approved.approval_status == ApprovalStatus.APPROVED.value
    assert notifier.sent == []


def test_slow_notifier_is_cut_off(db, submit_entry, notifier, monkeypatch):
    monkeypatch.setattr(settings, "NOTIFICATION_TIMEOUT_SECONDS", 0.05)
    notifier.delay = 1.0
    entry = submit_entry()

    approved = approval_service.approve(db, _ref(entry), REVIEWER_ID)

    assert approved.approval_status == ApprovalStatus.APPROVED.value
    assert notifier.sent == []


def test_expense_approval(db, project, notifier, published):
    expense = approval_service.submit_expense(
        db,
        ExpenseCreate(
            user_id=OWNER_ID,
            project_id=project.id,
            amount=Decimal("42.10"),
            category="travel",
            expense_date=date(2026, 1, 4),
        ),
    )
    ref = EntityRef(kind=EntityType.EXPENSE, id=expense.id)

    approval_service.approve(db, ref, REVIEWER_ID)

    assert notifier.kinds() == ["expense_approved"]
    assert [e.event_type for e in published] == ["expense_created", "expense_approved"]


def test_tasks_have_no_approval_workflow(db, make_task):
    task = make_task()
    with pytest.raises(ValidationError):
        approval_service.approve(db, EntityRef(kind=EntityType.TASK, id=task.id), REVIEWER_ID)


def test_unknown_entry(db):
    with pytest.raises(NotFoundError):
        approval_service.approve(db, EntityRef(kind=EntityType.TIME_ENTRY, id=999), REVIEWER_ID)


def test_list_pending_filters(db, submit_entry):
    first = submit_entry(user_id=1)
    second = submit_entry(user_id=2)
    approval_service.approve(db, _ref(first), REVIEWER_ID)

    pending = approval_service.list_pending(db, EntityType.TIME_ENTRY)
    assert [e.id for e in pending] == [second.id]
    assert approval_service.list_pending(db, "time_entry", user_id=1) == []


def test_bulk_approve_skips_decided_and_missing(db, submit_entry):
    first = submit_entry()
    second = submit_entry()
    third = submit_entry()
    approval_service.reject(db, _ref(second), REVIEWER_ID, "No")

    approved = approval_service.bulk_approve(
        db, EntityType.TIME_ENTRY, [first.id, second.id, third.id, 999], REVIEWER_ID
    )

    assert [e.id for e in approved] == [first.id, third.id]
    db.refresh(second)
    assert second.approval_status == ApprovalStatus.REJECTED.value


def test_admin_correction_keeps_approval_fields(db, submit_entry):
    entry = submit_entry()
    approval_service.approve(db, _ref(entry), REVIEWER_ID)
    db.refresh(entry)
    approved_at = entry.approved_at

    corrected = approval_service.apply_admin_correction(
        db,
        _ref(entry),
        admin_id=99,
        changes={"duration_hours": Decimal("3.00"), "notes": "Design review (corrected)"},
        reason="Timer was off",
    )

    assert corrected.duration_hours == Decimal("3.00")
    assert corrected.notes == "Design review (corrected)"
    assert corrected.approval_status == ApprovalStatus.APPROVED.value
    assert corrected.approved_by == REVIEWER_ID
    assert corrected.approved_at == approved_at

    audit = db.query(AuditLog).filter(AuditLog.action == AuditAction.ADMIN_CORRECTION.value).one()
    assert audit.user_id == 99
    assert audit.old_values == {"duration_hours": "2.50", "notes": "Design review"}
    assert audit.new_values["reason"] == "Timer was off"


def test_admin_correction_rules(db, submit_entry):
    entry = submit_entry()

    with pytest.raises(InvalidTransitionError):
        approval_service.apply_admin_correction(db, _ref(entry), 99, {"notes": "x"}, "typo")

    approval_service.approve(db, _ref(entry), REVIEWER_ID)
    with pytest.raises(ValidationError):
        approval_service.apply_admin_correction(
            db, _ref(entry), 99, {"approval_status": "pending"}, "undo"
        )
    with pytest.raises(MissingReasonError):
        approval_service.apply_admin_correction(db, _ref(entry), 99, {"notes": "x"}, " ")
    with pytest.raises(ValidationError):
        approval_service.apply_admin_correction(
            db, _ref(entry), 99, {"duration_hours": Decimal("-1")}, "negative"
        )


def test_table_constraint_rejects_approved_without_reviewer(db, project):
    db.add(
        TimeEntry(
            user_id=OWNER_ID,
            project_id=project.id,
            start_time=datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc),
            duration_hours=Decimal("1.00"),
            approval_status=ApprovalStatus.APPROVED.value,
        )
    )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_table_constraint_rejects_rejected_without_reason(db, project):
    db.add(
        TimeEntry(
            user_id=OWNER_ID,
            project_id=project.id,
            start_time=datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc),
            duration_hours=Decimal("1.00"),
            approval_status=ApprovalStatus.REJECTED.value,
            approved_by=REVIEWER_ID,
            approved_at=datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc),
        )
    )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()
