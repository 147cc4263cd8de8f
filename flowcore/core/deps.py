"""Process-wide collaborator wiring.

Services resolve the clock, the notification collaborator and the event bus
through these getters so that the surrounding application (and tests) can
swap them with ``override``.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from flowcore.core.clock import Clock, SystemClock

if TYPE_CHECKING:
    from flowcore.services.event_bus import EventBus
    from flowcore.services.notification_service import Notifier

_overrides: dict[str, Any] = {}
_defaults: dict[str, Any] = {}


def get_clock() -> Clock:
    if "clock" in _overrides:
        return _overrides["clock"]
    if "clock" not in _defaults:
        _defaults["clock"] = SystemClock()
    return _defaults["clock"]


def get_notifier() -> "Notifier":
    if "notifier" in _overrides:
        return _overrides["notifier"]
    if "notifier" not in _defaults:
        from flowcore.services.notification_service import LoggingNotifier

        _defaults["notifier"] = LoggingNotifier()
    return _defaults["notifier"]


def get_event_bus() -> "EventBus":
    if "event_bus" in _overrides:
        return _overrides["event_bus"]
    if "event_bus" not in _defaults:
        from flowcore.services.automation_engine import build_default_bus

        _defaults["event_bus"] = build_default_bus()
    return _defaults["event_bus"]


@contextmanager
def override(**collaborators: Any) -> Iterator[None]:
    """Temporarily replace collaborators (clock=, notifier=, event_bus=)."""
    unknown = set(collaborators) - {"clock", "notifier", "event_bus"}
    if unknown:
        raise ValueError(f"Unknown collaborators: {sorted(unknown)}")
    previous = dict(_overrides)
    _overrides.update(collaborators)
    try:
        yield
    finally:
        _overrides.clear()
        _overrides.update(previous)
