"""Automation service - administration of automation rules."""

from datetime import timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from flowcore.core.deps import get_clock
from flowcore.db.enums import AuditAction, AutomationTriggerType, ExecutionOutcome
from flowcore.db.models import AutomationExecution, AutomationRule
from flowcore.schemas.automation import (
    DryRunResult,
    RuleCreate,
    RuleStats,
    RuleUpdate,
    parse_condition_tree,
)
from flowcore.schemas.events import DomainEvent
from flowcore.services import audit_service, automation_conditions
from flowcore.services.automation_engine import engine
from flowcore.services.errors import NotFoundError, RuleActionFailedError, ValidationError

_RULE_ENTITY = "automation_rule"

_EDITABLE_FIELDS = (
    "name",
    "description",
    "trigger_type",
    "trigger_conditions",
    "action_type",
    "action_params",
    "is_active",
    "rate_limit_per_hour",
    "rate_limit_per_entity_per_day",
)


def _rule_values(rule: AutomationRule) -> dict:
    return {field: getattr(rule, field) for field in _EDITABLE_FIELDS}


# =============================================================================
# CRUD Operations
# =============================================================================

def create_rule(db: Session, data: RuleCreate, actor_id: int | None = None) -> AutomationRule:
    """Create a new rule. Conditions and action params arrive validated and normalized."""
    now = get_clock().now()
    rule = AutomationRule(
        name=data.name,
        description=data.description,
        trigger_type=data.trigger_type.value,
        trigger_conditions=data.trigger_conditions,
        action_type=data.action_type.value,
        action_params=data.action_params,
        is_active=data.is_active,
        rate_limit_per_hour=data.rate_limit_per_hour,
        rate_limit_per_entity_per_day=data.rate_limit_per_entity_per_day,
        created_by=actor_id,
        updated_by=actor_id,
        created_at=now,
        updated_at=now,
    )
    db.add(rule)
    db.flush()
    audit_service.log_event(
        db,
        AuditAction.RULE_CREATED,
        _RULE_ENTITY,
        rule.id,
        user_id=actor_id,
        new_values=_rule_values(rule),
    )
    db.commit()
    db.refresh(rule)
    return rule


def update_rule(
    db: Session,
    rule_id: int,
    data: RuleUpdate,
    actor_id: int | None = None,
) -> AutomationRule:
    """
    Update a rule.

    The merged definition is validated as a whole, so changing the trigger
    re-checks the existing action against the new entity kind.
    """
    rule = get_rule(db, rule_id)
    changes = data.model_dump(exclude_unset=True)
    if not changes:
        return rule

    merged = {**_rule_values(rule), **changes}
    try:
        validated = RuleCreate.model_validate(merged)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    old_values = {field: getattr(rule, field) for field in changes}
    rule.name = validated.name
    rule.description = validated.description
    rule.trigger_type = validated.trigger_type.value
    rule.trigger_conditions = validated.trigger_conditions
    rule.action_type = validated.action_type.value
    rule.action_params = validated.action_params
    rule.is_active = validated.is_active
    rule.rate_limit_per_hour = validated.rate_limit_per_hour
    rule.rate_limit_per_entity_per_day = validated.rate_limit_per_entity_per_day
    rule.updated_by = actor_id
    rule.updated_at = get_clock().now()

    audit_service.log_event(
        db,
        AuditAction.RULE_UPDATED,
        _RULE_ENTITY,
        rule.id,
        user_id=actor_id,
        old_values=old_values,
        new_values={field: getattr(rule, field) for field in changes},
    )
    db.commit()
    db.refresh(rule)
    return rule


def deactivate_rule(db: Session, rule_id: int, actor_id: int | None = None) -> AutomationRule:
    """Retire a rule. Rules are never deleted so their ledger rows stay referenced."""
    rule = get_rule(db, rule_id)
    if not rule.is_active:
        return rule
    rule.is_active = False
    rule.updated_by = actor_id
    rule.updated_at = get_clock().now()
    audit_service.log_event(
        db,
        AuditAction.RULE_DEACTIVATED,
        _RULE_ENTITY,
        rule.id,
        user_id=actor_id,
        old_values={"is_active": True},
        new_values={"is_active": False},
    )
    db.commit()
    db.refresh(rule)
    return rule


def get_rule(db: Session, rule_id: int) -> AutomationRule:
    rule = db.get(AutomationRule, rule_id)
    if not rule:
        raise NotFoundError(_RULE_ENTITY, rule_id)
    return rule


def list_rules(
    db: Session,
    is_active: bool | None = None,
    trigger_type: AutomationTriggerType | None = None,
) -> list[AutomationRule]:
    """List rules, ordered by id."""
    query = db.query(AutomationRule)
    if is_active is not None:
        query = query.filter(AutomationRule.is_active.is_(is_active))
    if trigger_type is not None:
        query = query.filter(AutomationRule.trigger_type == AutomationTriggerType(trigger_type).value)
    return query.order_by(AutomationRule.id.asc()).all()


# =============================================================================
# Stats and Preview
# =============================================================================

def get_rule_stats(db: Session) -> RuleStats:
    """Get rule statistics for dashboard."""
    day_ago = get_clock().now() - timedelta(hours=24)

    total = db.query(func.count(AutomationRule.id)).scalar() or 0
    active = db.query(func.count(AutomationRule.id)).filter(
        AutomationRule.is_active.is_(True)
    ).scalar() or 0

    # Executions in last 24h
    executions_24h = db.query(func.count(AutomationExecution.id)).filter(
        AutomationExecution.executed_at >= day_ago,
    ).scalar() or 0

    # Success rate
    if executions_24h > 0:
        successes = db.query(func.count(AutomationExecution.id)).filter(
            AutomationExecution.executed_at >= day_ago,
            AutomationExecution.outcome == ExecutionOutcome.SUCCESS.value,
        ).scalar() or 0
        success_rate = round(successes / executions_24h * 100, 1)
    else:
        success_rate = 0.0

    # By trigger type
    by_trigger = {}
    trigger_counts = db.query(
        AutomationRule.trigger_type,
        func.count(AutomationRule.id),
    ).group_by(AutomationRule.trigger_type).all()
    for trigger_type, count in trigger_counts:
        by_trigger[trigger_type] = count

    return RuleStats(
        total_rules=total,
        active_rules=active,
        total_executions_24h=executions_24h,
        success_rate_24h=success_rate,
        by_trigger_type=by_trigger,
    )


def dry_run(db: Session, rule_id: int, event: DomainEvent) -> DryRunResult:
    """
    Preview a rule against an event.

    Evaluates the conditions and resolves action placeholders; nothing is
    executed and nothing is recorded.
    """
    rule = get_rule(db, rule_id)
    if rule.trigger_type != event.event_type:
        return DryRunResult(
            rule_id=rule.id,
            matched=False,
            action_type=rule.action_type,
            error=f"Rule triggers on {rule.trigger_type}, event is {event.event_type}",
        )

    tree = parse_condition_tree(rule.trigger_conditions)
    matched = automation_conditions.evaluate(tree, event, get_clock().now())
    if not matched:
        return DryRunResult(rule_id=rule.id, matched=False, action_type=rule.action_type)

    try:
        resolved = engine.adapter.resolve_params(dict(rule.action_params or {}), event)
    except RuleActionFailedError as exc:
        return DryRunResult(
            rule_id=rule.id,
            matched=True,
            action_type=rule.action_type,
            error=str(exc),
        )
    return DryRunResult(
        rule_id=rule.id,
        matched=True,
        action_type=rule.action_type,
        resolved_params=resolved,
    )
