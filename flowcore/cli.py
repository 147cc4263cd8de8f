"""CLI tools for flowcore administration and scheduled sweeps."""

import click

from flowcore.core.config import settings
from flowcore.core.deps import get_event_bus
from flowcore.core.structured_logging import configure_logging
from flowcore.db.base import Base
from flowcore.db.session import SessionLocal, engine


@click.group()
def cli():
    """flowcore CLI tools."""
    configure_logging(settings.LOG_LEVEL)


@cli.command("init-db")
def init_db():
    """Create all tables in the configured database."""
    import flowcore.db.models  # noqa: F401  (registers the models)

    Base.metadata.create_all(bind=engine)
    click.echo("✓ Database schema created")


@cli.command("sweep-due-dates")
@click.option("--days", type=int, default=None, help="Days ahead to scan (default: DUE_DATE_HORIZON_DAYS)")
def sweep_due_dates(days: int | None):
    """
    Publish due_date_approaching for unfinished tasks due soon.

    Meant to be run by cron; re-running on the same day is a no-op for rules
    that already ran.

    Example:
        flowcore sweep-due-dates --days 3
    """
    from flowcore.services import automation_triggers

    db = SessionLocal()
    try:
        published = automation_triggers.trigger_due_date_sweep(db, days)
        get_event_bus().drain()
        click.echo(f"✓ Published {published} due_date_approaching events")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command("list-executions")
@click.option("--rule-id", type=int, default=None, help="Only executions of this rule")
@click.option("--outcome", type=click.Choice(["success", "failed", "skipped"]), default=None)
@click.option("--limit", type=int, default=20, show_default=True)
def list_executions(rule_id: int | None, outcome: str | None, limit: int):
    """Print recent execution ledger rows, newest first."""
    from flowcore.services import execution_ledger

    db = SessionLocal()
    try:
        rows = execution_ledger.list_executions(db, rule_id=rule_id, outcome=outcome, limit=limit)
        if not rows:
            click.echo("No executions found")
            return
        for row in rows:
            line = (
                f"#{row.id} rule={row.rule_id} {row.entity_type}:{row.entity_id} "
                f"{row.event_type} {row.outcome}"
            )
            if row.error_message:
                line += f" ({row.error_message})"
            click.echo(line)
    finally:
        db.close()


if __name__ == "__main__":
    cli()
