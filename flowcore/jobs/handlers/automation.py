"""Automation-related job handlers (invoked by the external scheduler)."""

from __future__ import annotations

import logging

import anyio

logger = logging.getLogger(__name__)


async def process_due_date_sweep(db, job) -> int:
    """
    Process a DUE_DATE_SWEEP job - periodic scan for tasks whose due date is near.

    Payload:
        - horizon_days: Days ahead to scan (optional, defaults to DUE_DATE_HORIZON_DAYS)

    Returns the number of due_date_approaching events published.
    """
    from flowcore.services import automation_triggers

    payload = getattr(job, "payload", None) or {}
    horizon_days = payload.get("horizon_days")

    logger.info("Starting due-date sweep: horizon_days=%s", horizon_days)
    try:
        # Rule actions call async collaborators through run_async, which needs
        # a worker thread rather than the event loop thread.
        published = await anyio.to_thread.run_sync(
            automation_triggers.trigger_due_date_sweep, db, horizon_days
        )
    except Exception as e:
        logger.error("Due-date sweep failed: %s", e)
        db.rollback()
        raise

    logger.info("Due-date sweep finished: %s events published", published)
    return published
