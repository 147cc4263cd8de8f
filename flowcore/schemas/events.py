"""Pydantic schemas for domain events."""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import inspect as sa_inspect

from flowcore.db.enums import AutomationEventSource, EntityType


class EntityRef(BaseModel):
    """Tagged reference to a polymorphic entity."""

    model_config = ConfigDict(frozen=True)

    kind: EntityType
    id: int

    @property
    def lock_key(self) -> tuple[str, int]:
        return (self.kind.value, self.id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


class DomainEvent(BaseModel):
    """
    An occurrence of an entity-lifecycle event.

    ``event_id`` identifies the occurrence; redelivering the same event (same
    id) never runs a rule twice. ``snapshot`` is the entity state after the
    mutation and is what rule conditions read. ``data`` carries event-specific
    values such as the previous status.
    """

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    event_type: str
    entity: EntityRef
    snapshot: dict[str, Any] = Field(default_factory=dict)
    data: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: AutomationEventSource = AutomationEventSource.USER
    actor_id: int | None = None
    depth: int = Field(default=0, ge=0)


def _snapshot_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def snapshot_of(obj: Any) -> dict[str, Any]:
    """JSON-safe column snapshot of an ORM entity, as read by rule conditions."""
    mapper = sa_inspect(obj).mapper
    return {attr.key: _snapshot_value(getattr(obj, attr.key)) for attr in mapper.column_attrs}
