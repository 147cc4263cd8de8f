"""Rule engine core - evaluates rules for events with idempotency and loop protection."""

from __future__ import annotations

import logging
import time
from contextlib import ExitStack
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flowcore.core.config import settings
from flowcore.core.deps import get_clock
from flowcore.core.structured_logging import build_log_context
from flowcore.db.enums import ExecutionOutcome
from flowcore.db.models import AutomationRule
from flowcore.schemas.automation import ExecutionResult, parse_action_config, parse_condition_tree
from flowcore.schemas.events import DomainEvent
from flowcore.services import automation_conditions, execution_ledger
from flowcore.services.automation_engine_adapters import RuleDomainAdapter
from flowcore.services.errors import FlowcoreError
from flowcore.services.execution_ledger import LedgerKey

logger = logging.getLogger(__name__)

DUPLICATE_DELIVERY = "Duplicate event delivery"


def _elapsed_ms(start_time: float) -> int:
    return int((time.monotonic() - start_time) * 1000)


class RuleEngine:
    """
    Core rule evaluation engine.

    For every event, active rules with a matching trigger run in ascending id
    order. Each rule is isolated: its action and ledger row commit together,
    and a failure rolls back only that rule's work.
    """

    def __init__(self, adapter: RuleDomainAdapter, max_depth: int | None = None) -> None:
        self.adapter = adapter
        self.max_depth = max_depth if max_depth is not None else settings.AUTOMATION_MAX_DEPTH

    def on_event(self, db: Session, event: DomainEvent) -> list[ExecutionResult]:
        """
        Evaluate all matching rules for an event.

        Returns one result per rule whose conditions matched. Follow-up events
        produced by actions are evaluated after the rule commits and are
        recorded in the ledger, not in the returned list.

        Follow-ups do not go back through the event bus: they are evaluated
        here, on the calling thread and session, before the next rule runs.
        Other bus subscribers never receive them, and in worker mode a
        follow-up about another entity is handled on the triggering event's
        worker rather than on that entity's shard. Entity locks still
        serialize the mutations themselves.
        """
        # Loop protection
        if event.depth >= self.max_depth:
            logger.warning(
                "Max automation depth (%s) reached for event %s",
                self.max_depth,
                event.event_id,
                extra=build_log_context(event_id=str(event.event_id), event_type=event.event_type),
            )
            return []

        results: list[ExecutionResult] = []
        for rule in self._find_matching_rules(db, event.event_type):
            follow_ups: list[DomainEvent] = []
            result = self._execute_rule(db, rule, event, follow_ups)
            if result is None:
                continue
            results.append(result)
            for follow_up in follow_ups:
                self.on_event(db, follow_up)
        return results

    def _find_matching_rules(self, db: Session, event_type: str) -> list[AutomationRule]:
        """Active rules for the trigger, ordered by id."""
        return (
            db.query(AutomationRule)
            .filter(
                AutomationRule.trigger_type == event_type,
                AutomationRule.is_active.is_(True),
            )
            .order_by(AutomationRule.id.asc())
            .all()
        )

    def _execute_rule(
        self,
        db: Session,
        rule: AutomationRule,
        event: DomainEvent,
        follow_ups: list[DomainEvent],
    ) -> ExecutionResult | None:
        """Execute a single rule and record the outcome."""
        start_time = time.monotonic()
        now = get_clock().now()
        rule_id = rule.id
        key = LedgerKey.for_event(rule_id, event.entity, event.event_id)
        log_context = build_log_context(
            rule_id=rule_id,
            event_id=str(event.event_id),
            event_type=event.event_type,
            entity_type=event.entity.kind.value,
            entity_id=event.entity.id,
        )

        try:
            tree = parse_condition_tree(rule.trigger_conditions)
        except ValueError as exc:
            return self._record_failure(
                db, key, event, now, f"Invalid conditions: {exc}", start_time, log_context
            )
        if not automation_conditions.evaluate(tree, event, now):
            return None

        # Redelivered event: already handled, nothing to record
        if execution_ledger.exists(db, key):
            logger.info("Rule %s already ran for event %s", rule_id, event.event_id, extra=log_context)
            return ExecutionResult(
                rule_id=rule_id,
                outcome=ExecutionOutcome.SKIPPED.value,
                error_message=DUPLICATE_DELIVERY,
            )

        rate_limit_error = self._check_rate_limits(db, rule, event, now)
        if rate_limit_error:
            logger.info("Rule %s rate limited: %s", rule_id, rate_limit_error, extra=log_context)
            return self._record(
                db,
                key,
                event,
                now,
                ExecutionOutcome.SKIPPED,
                start_time,
                error_message=rate_limit_error,
            )

        # Entity locks taken by the action stay held until the ledger commit
        with ExitStack() as locks:
            try:
                config = parse_action_config(rule.action_type, rule.action_params)
                action_result = self.adapter.execute_action(
                    db, rule, config, event, follow_ups, locks
                )
                db.flush()
            except Exception as exc:
                follow_ups.clear()
                db.rollback()
                if isinstance(exc, FlowcoreError):
                    logger.warning("Rule %s action failed: %s", rule_id, exc, extra=log_context)
                else:
                    logger.exception("Rule %s action crashed", rule_id, extra=log_context)
                return self._record_failure(
                    db, key, event, now, f"{type(exc).__name__}: {exc}", start_time, log_context
                )

            result = self._record(
                db,
                key,
                event,
                now,
                ExecutionOutcome.SUCCESS,
                start_time,
                result=action_result,
            )
        if result.execution_id is None:
            # Lost the race against a concurrent delivery; its action won
            follow_ups.clear()
        return result

    def _record(
        self,
        db: Session,
        key: LedgerKey,
        event: DomainEvent,
        now: datetime,
        outcome: ExecutionOutcome,
        start_time: float,
        *,
        error_message: str | None = None,
        result: dict | None = None,
    ) -> ExecutionResult:
        """
        Append the ledger row and commit.

        A success also bumps the rule's counters in the same transaction. A
        concurrent duplicate append maps to a non-persisted ``skipped``.
        """
        duration_ms = _elapsed_ms(start_time)
        try:
            execution = execution_ledger.append(
                db,
                key,
                outcome,
                event_type=event.event_type,
                executed_at=now,
                error_message=error_message,
                result=result,
                duration_ms=duration_ms,
            )
            execution_id = execution.id
            if outcome == ExecutionOutcome.SUCCESS:
                db.execute(
                    update(AutomationRule)
                    .where(AutomationRule.id == key.rule_id)
                    .values(
                        execution_count=AutomationRule.execution_count + 1,
                        last_executed_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info(
                "Concurrent delivery already recorded rule %s for event %s",
                key.rule_id,
                key.event_id,
            )
            return ExecutionResult(
                rule_id=key.rule_id,
                outcome=ExecutionOutcome.SKIPPED.value,
                error_message=DUPLICATE_DELIVERY,
            )
        return ExecutionResult(
            rule_id=key.rule_id,
            outcome=outcome.value,
            execution_id=execution_id,
            error_message=error_message,
            result=result,
            duration_ms=duration_ms,
        )

    def _record_failure(
        self,
        db: Session,
        key: LedgerKey,
        event: DomainEvent,
        now: datetime,
        error_message: str,
        start_time: float,
        log_context: dict,
    ) -> ExecutionResult:
        logger.info("Recording failed execution for rule %s", key.rule_id, extra=log_context)
        return self._record(
            db,
            key,
            event,
            now,
            ExecutionOutcome.FAILED,
            start_time,
            error_message=error_message,
        )

    def _check_rate_limits(
        self,
        db: Session,
        rule: AutomationRule,
        event: DomainEvent,
        now: datetime,
    ) -> str | None:
        """
        Check if a rule execution would exceed its rate limits.

        Returns error message if rate limited, None if OK to proceed.
        """
        # Per-hour limit (global for this rule)
        if rule.rate_limit_per_hour:
            executions_this_hour = execution_ledger.count_recent(
                db, rule.id, now - timedelta(hours=1)
            )
            if executions_this_hour >= rule.rate_limit_per_hour:
                return (
                    f"Rate limit exceeded: {executions_this_hour}/{rule.rate_limit_per_hour} per hour"
                )

        # Per-entity-per-day limit
        if rule.rate_limit_per_entity_per_day:
            executions_for_entity = execution_ledger.count_recent(
                db, rule.id, now - timedelta(hours=24), entity=event.entity
            )
            if executions_for_entity >= rule.rate_limit_per_entity_per_day:
                return (
                    f"Entity rate limit exceeded: {executions_for_entity}/"
                    f"{rule.rate_limit_per_entity_per_day} per day for this entity"
                )

        return None
