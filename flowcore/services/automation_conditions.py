"""Condition tree evaluation for automation rules.

Leaves read the event snapshot (the entity state after the mutation). A field
prefixed with ``event.`` reads the event instead: its data first (e.g.
``event.old_status`` on ``task_status_changed``), then its own attributes
such as ``event.actor_id`` or ``event.source``. A field absent from the source
makes its leaf false. Relative date values (``+3d``, ``-2w``, ``+12h``)
resolve against the clock passed in.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import Any

from flowcore.db.enums import ConditionOperator
from flowcore.schemas.automation import AllOf, AnyOf, Condition, ConditionNode
from flowcore.schemas.events import DomainEvent

EVENT_FIELD_PREFIX = "event."

_RELATIVE_DATE = re.compile(r"^([+-])(\d+)([hdw])$")
_UNITS = {"h": "hours", "d": "days", "w": "weeks"}

_MISSING = object()

# Event attributes reachable as ``event.<name>`` / ``$event.<name>``
_EVENT_ATTRIBUTES = {
    "event_id": lambda event: str(event.event_id),
    "event_type": lambda event: event.event_type,
    "occurred_at": lambda event: event.occurred_at.isoformat(),
    "source": lambda event: event.source.value,
    "actor_id": lambda event: event.actor_id,
    "creator_id": lambda event: event.actor_id,
    "depth": lambda event: event.depth,
    "entity_type": lambda event: event.entity.kind.value,
    "entity_id": lambda event: event.entity.id,
}


def resolve_relative_date(value: Any, now: datetime) -> datetime | None:
    """``+3d`` -> now + 3 days. Returns None when ``value`` is not relative."""
    if not isinstance(value, str):
        return None
    match = _RELATIVE_DATE.match(value.strip())
    if not match:
        return None
    sign, amount, unit = match.groups()
    delta = timedelta(**{_UNITS[unit]: int(amount)})
    return now + delta if sign == "+" else now - delta


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _normalize_list_value(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [_as_text(v) for v in value if _as_text(v)]
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [_as_text(value)] if _as_text(value) else []


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def event_value(event: DomainEvent, name: str, default: Any = _MISSING) -> Any:
    """
    Read ``name`` from the event: its data, then its own attributes.

    ``creator_id`` is the actor whose mutation produced the event.
    """
    if name in event.data:
        return event.data[name]
    getter = _EVENT_ATTRIBUTES.get(name)
    if getter is None:
        return default
    return getter(event)


def lookup_field(field: str, event: DomainEvent) -> Any:
    """Value a leaf reads, or the module's missing sentinel."""
    if field.startswith(EVENT_FIELD_PREFIX):
        return event_value(event, field[len(EVENT_FIELD_PREFIX):])
    return event.snapshot.get(field, _MISSING)


def evaluate_condition(
    operator: ConditionOperator | str,
    entity_value: Any,
    condition_value: Any,
    now: datetime,
) -> bool:
    """Evaluate a single leaf."""
    operator = ConditionOperator(operator)

    relative = resolve_relative_date(condition_value, now)
    if relative is not None:
        return _compare_dates(operator, entity_value, relative)

    if operator == ConditionOperator.EQ:
        if entity_value is None or condition_value is None:
            return entity_value is None and condition_value is None
        return _as_text(entity_value) == _as_text(condition_value)

    if operator == ConditionOperator.NEQ:
        if entity_value is None or condition_value is None:
            return (entity_value is None) != (condition_value is None)
        return _as_text(entity_value) != _as_text(condition_value)

    if operator == ConditionOperator.IN:
        values = _normalize_list_value(condition_value)
        if not values or entity_value is None:
            return False
        return _as_text(entity_value) in values

    if operator == ConditionOperator.CONTAINS:
        if entity_value is None or condition_value is None:
            return False
        if isinstance(entity_value, (list, tuple, set)):
            return _as_text(condition_value) in {_as_text(v) for v in entity_value}
        return _as_text(condition_value) in str(entity_value)

    # Ordering operators: numeric first, then ISO dates
    if entity_value is None or condition_value is None:
        return False
    try:
        left, right = float(entity_value), float(condition_value)
    except (TypeError, ValueError):
        left_dt, right_dt = _as_datetime(entity_value), _as_datetime(condition_value)
        if left_dt is None or right_dt is None:
            return False
        return _ordered(operator, left_dt, right_dt)
    return _ordered(operator, left, right)


def _ordered(operator: ConditionOperator, left: Any, right: Any) -> bool:
    if operator == ConditionOperator.GT:
        return left > right
    if operator == ConditionOperator.GTE:
        return left >= right
    if operator == ConditionOperator.LT:
        return left < right
    if operator == ConditionOperator.LTE:
        return left <= right
    return False


def _compare_dates(operator: ConditionOperator, entity_value: Any, target: datetime) -> bool:
    actual = _as_datetime(entity_value)
    if actual is None:
        return False
    # Date-only snapshot values compare by calendar day
    date_only = isinstance(entity_value, date) and not isinstance(entity_value, datetime)
    if isinstance(entity_value, str) and len(entity_value.strip()) == 10:
        date_only = True
    if date_only:
        left: Any = actual.date()
        right: Any = target.astimezone(timezone.utc).date()
    else:
        left, right = actual, target

    if operator == ConditionOperator.EQ:
        return left == right
    if operator == ConditionOperator.NEQ:
        return left != right
    return _ordered(operator, left, right)


def evaluate(node: ConditionNode | None, event: DomainEvent, now: datetime) -> bool:
    """Evaluate a condition tree. An empty tree matches every event."""
    if node is None:
        return True
    if isinstance(node, AllOf):
        return all(evaluate(child, event, now) for child in node.all)
    if isinstance(node, AnyOf):
        return any(evaluate(child, event, now) for child in node.any)
    if isinstance(node, Condition):
        value = lookup_field(node.field, event)
        if value is _MISSING:
            return False
        return evaluate_condition(node.operator, value, node.value, now)
    raise TypeError(f"Unsupported condition node: {type(node).__name__}")
