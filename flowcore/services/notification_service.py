"""
Notification Service - delivery seam for approval and automation notices.

The notification collaborator is external (email / in-app delivery belongs to
the surrounding application). The engine only needs ``Notifier.send``; the
default ``LoggingNotifier`` records a dry-run line.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from flowcore.core.async_utils import run_async
from flowcore.core.config import settings
from flowcore.core.deps import get_notifier
from flowcore.services.errors import ActionTimeoutError

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, user_id: int, template_kind: str, params: dict[str, Any]) -> bool: ...


class LoggingNotifier:
    """Dry-run notifier: logs the send and reports success."""

    async def send(self, user_id: int, template_kind: str, params: dict[str, Any]) -> bool:
        logger.info(
            "Notification dry-run: template=%s user_id=%s params=%s",
            template_kind,
            user_id,
            sorted(params),
        )
        return True


def send(
    user_id: int,
    template_kind: str,
    params: dict[str, Any] | None = None,
    *,
    timeout: float | None = None,
) -> bool:
    """
    Send through the configured notifier with a deadline.

    Raises ActionTimeoutError when the notifier does not answer in time; other
    notifier exceptions propagate.
    """
    notifier = get_notifier()
    deadline = timeout if timeout is not None else settings.ACTION_TIMEOUT_SECONDS
    try:
        return bool(
            run_async(notifier.send(user_id, template_kind, dict(params or {})), timeout=deadline)
        )
    except TimeoutError as exc:
        raise ActionTimeoutError(
            f"Notification '{template_kind}' to user {user_id} timed out after {deadline}s"
        ) from exc


def notify_best_effort(
    user_id: int | None,
    template_kind: str,
    params: dict[str, Any] | None = None,
) -> bool:
    """
    Non-critical notification: failures are logged, never raised.

    Used after approval transitions have committed.
    """
    if user_id is None:
        return False
    try:
        return send(
            user_id,
            template_kind,
            params,
            timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        )
    except Exception:
        logger.warning(
            "Notification failed (non-critical): template=%s user_id=%s",
            template_kind,
            user_id,
            exc_info=True,
        )
        return False
