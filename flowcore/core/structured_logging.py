"""Structured logging helpers (PII-safe)."""

import logging
from typing import Any


def build_log_context(
    *,
    rule_id: int | None = None,
    event_id: str | None = None,
    event_type: str | None = None,
    entity_type: str | None = None,
    entity_id: int | None = None,
    actor_id: int | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict for ``extra=``."""
    context: dict[str, Any] = {}
    if rule_id is not None:
        context["rule_id"] = rule_id
    if event_id:
        context["event_id"] = event_id
    if event_type:
        context["event_type"] = event_type
    if entity_type:
        context["entity_type"] = entity_type
    if entity_id is not None:
        context["entity_id"] = entity_id
    if actor_id is not None:
        context["actor_id"] = actor_id
    return context


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for CLI and scheduler entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
