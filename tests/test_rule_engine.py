import threading
import time
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from flowcore.core.config import settings
from flowcore.core.locks import entity_locks
from flowcore.db.enums import EntityType, ExecutionOutcome, TaskStatus
from flowcore.db.models import AutomationExecution, AutomationRule, Task
from flowcore.schemas.approval import TimeEntryCreate
from flowcore.schemas.events import DomainEvent, EntityRef, snapshot_of
from flowcore.services import (
    approval_service,
    automation_triggers,
    dependency_service,
    execution_ledger,
    task_service,
)
from flowcore.services.automation_engine_core import DUPLICATE_DELIVERY


def _status_event(task, old_status: str = "todo", depth: int = 0) -> DomainEvent:
    return DomainEvent(
        event_type="task_status_changed",
        entity=EntityRef(kind=EntityType.TASK, id=task.id),
        snapshot=snapshot_of(task),
        data={"old_status": old_status, "new_status": task.status},
        depth=depth,
    )


def _describe_rule(make_rule, text: str, **kwargs):
    return make_rule(
        name=f"Describe {text}",
        trigger_type="task_status_changed",
        action_type="update_field",
        action_params={"field": "description", "value": text},
        **kwargs,
    )


def _executions(db, **filters) -> list[AutomationExecution]:
    return list(reversed(execution_ledger.list_executions(db, **filters)))


# =============================================================================
# Matching
# =============================================================================


def test_rules_run_in_id_order(db, rule_engine, make_task, make_rule):
    task = make_task()
    first = _describe_rule(make_rule, "first")
    second = _describe_rule(make_rule, "second")

    results = rule_engine.on_event(db, _status_event(task))

    assert [r.rule_id for r in results] == [first.id, second.id]
    assert all(r.outcome == "success" for r in results)
    assert results[0].result["action_type"] == "update_field"
    db.refresh(task)
    assert task.description == "second"


def test_non_matching_and_inactive_rules_are_ignored(db, rule_engine, make_task, make_rule):
    task = make_task(priority=1)
    _describe_rule(make_rule, "urgent", trigger_conditions={"priority": {"gte": 4}})
    _describe_rule(make_rule, "retired", is_active=False)
    make_rule(
        name="Other trigger",
        trigger_type="task_created",
        action_type="update_field",
        action_params={"field": "description", "value": "created"},
    )

    assert rule_engine.on_event(db, _status_event(task)) == []
    assert _executions(db) == []


def test_success_updates_counters(db, rule_engine, clock, make_task, make_rule):
    task = make_task()
    rule = _describe_rule(make_rule, "counted")

    rule_engine.on_event(db, _status_event(task))
    clock.advance(minutes=5)
    rule_engine.on_event(db, _status_event(task))

    db.refresh(rule)
    assert rule.execution_count == 2
    assert rule.last_executed_at.replace(tzinfo=None) == clock.now().replace(tzinfo=None)


# =============================================================================
# Idempotency
# =============================================================================


def test_redelivered_event_is_skipped_without_ledger_row(db, rule_engine, make_task, make_rule):
    task = make_task()
    rule = _describe_rule(make_rule, "once")
    event = _status_event(task)

    first = rule_engine.on_event(db, event)
    second = rule_engine.on_event(db, event)

    assert first[0].outcome == "success"
    assert first[0].execution_id is not None
    assert second[0].outcome == "skipped"
    assert second[0].execution_id is None
    assert second[0].error_message == DUPLICATE_DELIVERY
    assert len(_executions(db, rule_id=rule.id)) == 1
    db.refresh(rule)
    assert rule.execution_count == 1


def test_lost_append_race_rolls_back_action(db, rule_engine, make_task, make_rule, monkeypatch):
    task = make_task()
    _describe_rule(make_rule, "automated")
    event = _status_event(task)
    rule_engine.on_event(db, event)

    task.description = "manual"
    db.commit()

    # Second delivery does not see the first row before appending
    monkeypatch.setattr(execution_ledger, "exists", lambda db, key: False)
    results = rule_engine.on_event(db, event)

    assert results[0].outcome == "skipped"
    assert results[0].execution_id is None
    db.refresh(task)
    assert task.description == "manual"
    assert db.query(AutomationExecution).count() == 1


# =============================================================================
# Failure isolation
# =============================================================================


def test_failed_action_does_not_stop_later_rules(db, rule_engine, make_task, make_rule):
    blocker = make_task("Design")
    task = make_task("Build")
    dependency_service.add_dependency(db, task.id, blocker.id)
    failing = make_rule(
        name="Auto-complete",
        trigger_type="task_status_changed",
        action_type="change_status",
        action_params={"status": "done"},
    )
    assigning = make_rule(
        name="Assign",
        trigger_type="task_status_changed",
        action_type="assign_user",
        action_params={"user_id": 7},
    )

    results = rule_engine.on_event(db, _status_event(task))

    assert [(r.rule_id, r.outcome) for r in results] == [
        (failing.id, "failed"),
        (assigning.id, "success"),
    ]
    assert results[0].error_message.startswith("DependencyNotSatisfiedError")
    db.refresh(task)
    assert task.status == TaskStatus.TODO.value
    assert task.assigned_to == 7

    failed_row = _executions(db, rule_id=failing.id)[0]
    assert failed_row.outcome == ExecutionOutcome.FAILED.value
    db.refresh(failing)
    assert failing.execution_count == 0


def test_unexpected_exception_is_recorded(db, rule_engine, notifier, make_task, make_rule):
    notifier.fail_with = RuntimeError("mail server unreachable")
    task = make_task(assigned_to=5)
    make_rule(
        name="Notify",
        trigger_type="task_status_changed",
        action_type="send_notification",
        action_params={"template_kind": "task_moved"},
    )

    results = rule_engine.on_event(db, _status_event(task))

    assert results[0].outcome == "failed"
    assert results[0].error_message == "RuntimeError: mail server unreachable"


def test_notification_timeout_fails_rule(db, rule_engine, notifier, make_task, make_rule, monkeypatch):
    monkeypatch.setattr(settings, "ACTION_TIMEOUT_SECONDS", 0.05)
    notifier.delay = 1.0
    task = make_task(assigned_to=5)
    make_rule(
        name="Notify",
        trigger_type="task_status_changed",
        action_type="send_notification",
        action_params={"template_kind": "task_moved"},
    )

    results = rule_engine.on_event(db, _status_event(task))

    assert results[0].outcome == "failed"
    assert results[0].error_message.startswith("ActionTimeoutError")
    assert notifier.sent == []


def test_notifier_declining_fails_rule(db, rule_engine, notifier, make_task, make_rule):
    notifier.result = False
    task = make_task(assigned_to=5)
    make_rule(
        name="Notify",
        trigger_type="task_status_changed",
        action_type="send_notification",
        action_params={"template_kind": "task_moved"},
    )

    results = rule_engine.on_event(db, _status_event(task))

    assert results[0].outcome == "failed"
    assert "declined" in results[0].error_message


def test_missing_recipient_fails_rule(db, rule_engine, make_task, make_rule):
    task = make_task()
    make_rule(
        name="Notify",
        trigger_type="task_status_changed",
        action_type="send_notification",
        action_params={"template_kind": "task_moved", "recipient": "assignee"},
    )

    results = rule_engine.on_event(db, _status_event(task))

    assert results[0].outcome == "failed"
    assert "recipient" in results[0].error_message


def test_corrupt_stored_conditions_fail_the_rule(db, rule_engine, make_task, make_rule):
    task = make_task()
    rule = _describe_rule(make_rule, "never")
    db.query(AutomationRule).filter(AutomationRule.id == rule.id).update(
        {"trigger_conditions": {"field": "status", "operator": "between", "value": 1}}
    )
    db.commit()

    results = rule_engine.on_event(db, _status_event(task))

    assert results[0].outcome == "failed"
    assert results[0].error_message.startswith("Invalid conditions")


# =============================================================================
# Rate limits
# =============================================================================


def test_per_entity_daily_limit(db, rule_engine, make_task, make_rule):
    task = make_task("Limited")
    other = make_task("Other")
    rule = _describe_rule(make_rule, "limited", rate_limit_per_entity_per_day=1)

    assert rule_engine.on_event(db, _status_event(task))[0].outcome == "success"
    limited = rule_engine.on_event(db, _status_event(task))[0]
    assert limited.outcome == "skipped"
    assert limited.execution_id is not None
    assert limited.error_message.startswith("Entity rate limit exceeded")
    assert rule_engine.on_event(db, _status_event(other))[0].outcome == "success"

    db.refresh(rule)
    assert rule.execution_count == 2


def test_hourly_limit(db, rule_engine, clock, make_task, make_rule):
    tasks = [make_task(f"Task {n}") for n in range(4)]
    _describe_rule(make_rule, "hourly", rate_limit_per_hour=2)

    outcomes = [rule_engine.on_event(db, _status_event(t))[0].outcome for t in tasks[:3]]
    assert outcomes == ["success", "success", "skipped"]

    assert rule_engine.on_event(db, _status_event(tasks[3]))[0].outcome == "skipped"

    clock.advance(minutes=61)
    assert rule_engine.on_event(db, _status_event(tasks[3]))[0].outcome == "success"


# =============================================================================
# Loop protection and follow-up events
# =============================================================================


def test_depth_limit_returns_nothing(db, rule_engine, make_task, make_rule):
    task = make_task()
    _describe_rule(make_rule, "deep")

    assert rule_engine.on_event(db, _status_event(task, depth=3)) == []
    assert _executions(db) == []


def test_ping_pong_rules_stop_at_max_depth(db, make_task, make_rule):
    task = make_task()
    to_review = make_rule(
        name="To review",
        trigger_type="task_status_changed",
        trigger_conditions={"status": "in_progress"},
        action_type="change_status",
        action_params={"status": "review"},
    )
    back = make_rule(
        name="Back to work",
        trigger_type="task_status_changed",
        trigger_conditions={"status": "review"},
        action_type="change_status",
        action_params={"status": "in_progress"},
    )

    task_service.change_task_status(db, task.id, TaskStatus.IN_PROGRESS, actor_id=1)

    rows = _executions(db)
    assert [row.rule_id for row in rows] == [to_review.id, back.id, to_review.id]
    assert all(row.outcome == "success" for row in rows)
    db.refresh(task)
    assert task.status == TaskStatus.REVIEW.value


def test_follow_up_events_trigger_other_rules(db, project, make_rule):
    creator = make_rule(
        name="Retrospective on completion",
        trigger_type="project_status_changed",
        trigger_conditions={"status": "completed"},
        action_type="create_task",
        action_params={"title": "Retrospective", "priority": 2, "due_days": 7},
    )
    assigner = make_rule(
        name="Assign retrospectives",
        trigger_type="task_created",
        trigger_conditions={"title": "Retrospective"},
        action_type="assign_user",
        action_params={"user_id": 9},
    )

    task_service.update_project_status(db, project.id, "completed", actor_id=1)

    db.refresh(project)
    assert [t.title for t in project.tasks] == ["Retrospective"]
    created = project.tasks[0]
    assert created.assigned_to == 9
    assert created.due_date == date(2026, 1, 12)

    rows = _executions(db)
    assert [(row.rule_id, row.entity_type, row.outcome) for row in rows] == [
        (creator.id, "project", "success"),
        (assigner.id, "task", "success"),
    ]


def test_placeholders_resolve_from_event(db, rule_engine, notifier, make_task, make_rule):
    task = make_task("Ship release", assigned_to=5)
    make_rule(
        name="Notify",
        trigger_type="task_status_changed",
        action_type="send_notification",
        action_params={
            "template_kind": "task_moved",
            "params": {"title": "$entity.title", "from": "$event.old_status"},
        },
    )

    rule_engine.on_event(db, _status_event(task, old_status="review"))

    assert notifier.sent == [
        (
            5,
            "task_moved",
            {"title": "Ship release", "from": "review", "entity_type": "task", "entity_id": task.id},
        )
    ]


def test_follow_ups_stay_inside_the_engine(db, bus, make_task, make_rule):
    task = make_task()
    make_rule(
        name="Straight to review",
        trigger_type="task_status_changed",
        trigger_conditions={"status": "in_progress"},
        action_type="change_status",
        action_params={"status": "review"},
    )
    seen = []
    bus.subscribe(lambda _db, event: seen.append(event.snapshot["status"]), name="recorder")

    task_service.change_task_status(db, task.id, TaskStatus.IN_PROGRESS, actor_id=1)

    assert seen == [TaskStatus.IN_PROGRESS.value]
    db.refresh(task)
    assert task.status == TaskStatus.REVIEW.value


def test_inline_publish_returns_after_rules_committed(session_factory, make_task, make_rule):
    make_rule(
        name="Assign",
        trigger_type="task_created",
        action_type="assign_user",
        action_params={"user_id": 3},
    )

    task_id = make_task().id

    reader = session_factory()
    assert reader.query(AutomationExecution).count() == 1
    assert reader.get(Task, task_id).assigned_to == 3
    reader.close()


def test_placeholders_resolve_event_actor(db, make_task, make_rule):
    make_rule(
        name="Assign to actor",
        trigger_type="task_created",
        action_type="assign_user",
        action_params={"user_id": "$event.actor_id"},
    )
    make_rule(
        name="Assign to creator",
        trigger_type="task_created",
        action_type="assign_user",
        action_params={"user_id": "$event.creator_id"},
    )

    task = make_task("Kickoff", actor_id=5)

    rows = _executions(db)
    assert [(row.outcome, row.error_message) for row in rows] == [
        ("success", None),
        ("success", None),
    ]
    assert rows[0].result["new_value"] == 5
    db.refresh(task)
    assert task.assigned_to == 5


def test_actor_placeholder_without_actor_fails_rule(db, make_task, make_rule):
    make_rule(
        name="Assign to actor",
        trigger_type="task_created",
        action_type="assign_user",
        action_params={"user_id": "$event.actor_id"},
    )

    task = make_task("Imported")

    row = _executions(db)[0]
    assert row.outcome == "failed"
    assert "user_id is not set" in row.error_message
    db.refresh(task)
    assert task.assigned_to is None


# =============================================================================
# Entity locking
# =============================================================================


def _review_when_todo_rule(make_rule):
    return make_rule(
        name="Move to review",
        trigger_type="task_status_changed",
        trigger_conditions={"status": "todo"},
        action_type="change_status",
        action_params={"status": "review"},
    )


def test_action_rereads_target_after_taking_lock(
    db, session_factory, rule_engine, make_task, make_rule
):
    task = make_task()
    _review_when_todo_rule(make_rule)
    # db now caches the task as todo
    event = _status_event(task)

    other = session_factory()
    task_service.change_task_status(other, task.id, TaskStatus.DONE, actor_id=2)
    other.close()

    [result] = rule_engine.on_event(db, event)

    assert result.outcome == "success"
    assert result.result["old_value"] == TaskStatus.DONE.value
    db.refresh(task)
    assert task.status == TaskStatus.REVIEW.value


def test_action_holds_entity_lock_until_ledger_commit(
    db, rule_engine, make_task, make_rule, monkeypatch
):
    task = make_task()
    key = (EntityType.TASK.value, task.id)
    make_rule(
        name="Assign",
        trigger_type="task_status_changed",
        action_type="assign_user",
        action_params={"user_id": 4},
    )
    holders = []
    append = execution_ledger.append

    def append_and_record(*args, **kwargs):
        holders.append(entity_locks.users(key))
        return append(*args, **kwargs)

    monkeypatch.setattr(execution_ledger, "append", append_and_record)

    rule_engine.on_event(db, _status_event(task))

    assert holders == [1]
    assert entity_locks.users(key) == 0


def test_action_waiting_on_lock_applies_after_concurrent_edit(
    session_factory, rule_engine, make_task, make_rule
):
    task_id = make_task().id
    key = (EntityType.TASK.value, task_id)
    _review_when_todo_rule(make_rule)

    worker_db = session_factory()
    event = _status_event(worker_db.get(Task, task_id))
    outcome = {}

    def run_rules():
        outcome["results"] = rule_engine.on_event(worker_db, event)

    with entity_locks.hold(key):
        worker = threading.Thread(target=run_rules)
        worker.start()
        for _ in range(500):
            if entity_locks.users(key) > 1:
                break
            time.sleep(0.01)
        human_db = session_factory()
        task_service.change_task_status(human_db, task_id, TaskStatus.DONE, actor_id=2)
        human_db.close()

    worker.join(timeout=10)
    worker_db.close()

    [result] = outcome["results"]
    assert result.outcome == "success"
    assert result.result["old_value"] == TaskStatus.DONE.value
    check_db = session_factory()
    assert check_db.get(Task, task_id).status == TaskStatus.REVIEW.value
    check_db.close()
    assert entity_locks.users(key) == 0


# =============================================================================
# update_field guards
# =============================================================================


def test_update_field_refuses_approved_entries(db, rule_engine, project, make_rule):
    make_rule(
        name="Annotate approvals",
        trigger_type="time_entry_approved",
        action_type="update_field",
        action_params={"field": "notes", "value": "auto"},
    )
    entry = approval_service.submit_time_entry(
        db,
        TimeEntryCreate(
            user_id=3,
            project_id=project.id,
            start_time=datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc),
            duration_hours=Decimal("1.00"),
            notes="original",
        ),
    )

    approval_service.approve(db, EntityRef(kind=EntityType.TIME_ENTRY, id=entry.id), 4)

    row = _executions(db)[0]
    assert row.outcome == "failed"
    assert "approved" in row.error_message
    db.refresh(entry)
    assert entry.notes == "original"


def test_update_field_validates_values(db, rule_engine, make_task, make_rule):
    task = make_task()
    make_rule(
        name="Bad priority",
        trigger_type="task_status_changed",
        action_type="update_field",
        action_params={"field": "priority", "value": 9},
    )
    make_rule(
        name="Relative due date",
        trigger_type="task_status_changed",
        action_type="update_field",
        action_params={"field": "due_date", "value": "+2d"},
    )

    results = rule_engine.on_event(db, _status_event(task))

    assert [r.outcome for r in results] == ["failed", "success"]
    db.refresh(task)
    assert task.due_date == date(2026, 1, 7)
    assert task.priority == 0


# =============================================================================
# Due-date scenario
# =============================================================================


def test_due_date_sweep_notifies_once_per_day(db, notifier, clock, make_task, make_rule):
    task = make_task("Ship", due_date=date(2026, 1, 7), assigned_to=5)
    make_task("Later", due_date=date(2026, 1, 30), assigned_to=5)
    rule = make_rule(
        name="Due soon",
        trigger_type="due_date_approaching",
        trigger_conditions={"field": "due_date", "operator": "lte", "value": "+3d"},
        action_type="send_notification",
        action_params={"template_kind": "task_due_soon", "params": {"title": "$entity.title"}},
    )

    assert automation_triggers.trigger_due_date_sweep(db, 3) == 1
    assert automation_triggers.trigger_due_date_sweep(db, 3) == 1

    assert notifier.kinds() == ["task_due_soon"]
    assert notifier.sent[0][2]["title"] == "Ship"
    rows = _executions(db, rule_id=rule.id)
    assert len(rows) == 1
    assert rows[0].entity_id == task.id

    # Next day is a new occurrence
    clock.advance(days=1)
    automation_triggers.trigger_due_date_sweep(db, 3)
    assert notifier.kinds() == ["task_due_soon", "task_due_soon"]


def test_due_date_condition_not_matched_leaves_no_row(db, rule_engine, make_task, make_rule):
    soon = make_task("Soon", due_date=date(2026, 1, 7), assigned_to=5)
    later = make_task("Later", due_date=date(2026, 1, 15), assigned_to=5)
    make_rule(
        name="Due soon",
        trigger_type="due_date_approaching",
        trigger_conditions={"due_date": {"lte": "+3d"}},
        action_type="send_notification",
        action_params={"template_kind": "task_due_soon"},
    )

    def _due_event(task):
        return DomainEvent(
            event_type="due_date_approaching",
            entity=EntityRef(kind=EntityType.TASK, id=task.id),
            snapshot=snapshot_of(task),
        )

    assert rule_engine.on_event(db, _due_event(later)) == []
    assert _executions(db) == []

    [result] = rule_engine.on_event(db, _due_event(soon))
    assert result.outcome == "success"
    assert [row.entity_id for row in _executions(db)] == [soon.id]


def test_done_rule_fires_once_across_redeliveries(db, rule_engine, make_task, make_rule):
    task = make_task()
    rule = make_rule(
        name="On done",
        trigger_type="task_status_changed",
        trigger_conditions={"status": {"eq": "done"}},
        action_type="update_field",
        action_params={"field": "description", "value": "closed"},
    )
    task_service.change_task_status(db, task.id, TaskStatus.DONE)
    [row] = _executions(db, rule_id=rule.id)

    event = DomainEvent(
        event_id=row.event_id,
        event_type="task_status_changed",
        entity=EntityRef(kind=EntityType.TASK, id=task.id),
        snapshot=snapshot_of(task),
        data={"old_status": "todo", "new_status": "done"},
    )
    for _ in range(2):
        assert rule_engine.on_event(db, event)[0].outcome == "skipped"

    assert len(_executions(db, rule_id=rule.id)) == 1
    db.refresh(rule)
    assert rule.execution_count == 1
