"""Rule engine wiring - process-wide engine and default event bus."""

from __future__ import annotations

from flowcore.core.config import settings
from flowcore.services.automation_engine_adapters import DefaultRuleDomainAdapter
from flowcore.services.automation_engine_core import RuleEngine
from flowcore.services.event_bus import EventBus

engine = RuleEngine(DefaultRuleDomainAdapter())


def build_default_bus(rule_engine: RuleEngine | None = None) -> EventBus:
    """Event bus with the rule engine subscribed, sized from settings."""
    from flowcore.db.session import SessionLocal

    bus = EventBus(
        session_factory=SessionLocal,
        workers=settings.EVENT_BUS_WORKERS,
        queue_size=settings.EVENT_BUS_QUEUE_SIZE,
    )
    bus.subscribe((rule_engine or engine).on_event, name="rule_engine")
    return bus
