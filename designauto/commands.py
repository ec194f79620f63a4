from collections import Counter
from datetime import datetime, timedelta

import click
from flask.cli import with_appcontext
from sqlalchemy import and_, or_

from .entitlements import expire_overdue, process
from .extensions import db
from .models import WebhookLog


@click.command("init-db")
@with_appcontext
def init_db_command():
    db.create_all()
    click.echo("Database tables created.")


@click.command("reprocess-pending")
@click.option("--limit", default=50, show_default=True, help="Maximum number of webhooks to reprocess.")
@click.option("--max-attempts", default=3, show_default=True, help="Skip webhooks retried this many times.")
@click.option("--stale-minutes", default=15, show_default=True,
              help="Also retry webhooks stuck in processing for this long.")
@with_appcontext
def reprocess_pending_command(limit, max_attempts, stale_minutes):
    """Retry webhooks left in received/error state, oldest first."""
    stuck_before = datetime.utcnow() - timedelta(minutes=stale_minutes)
    logs = (
        WebhookLog.query.filter(
            or_(
                WebhookLog.status.in_(("received", "error")),
                and_(WebhookLog.status == "processing", WebhookLog.updated_at < stuck_before),
            ),
            WebhookLog.retry_count < max_attempts,
        )
        .order_by(WebhookLog.id)
        .limit(limit)
        .all()
    )
    if not logs:
        click.echo("No pending webhooks.")
        return

    outcomes = Counter()
    for log in logs:
        log.retry_count = (log.retry_count or 0) + 1
        db.session.commit()
        result = process(log)
        outcomes[result["status"]] += 1
        if result["status"] == "error":
            click.echo(f"Webhook {log.id} failed: {result['message']}")

    summary = ", ".join(f"{status}={count}" for status, count in sorted(outcomes.items()))
    click.echo(f"Reprocessed {len(logs)} webhooks: {summary}")


@click.command("expire-subscriptions")
@with_appcontext
def expire_subscriptions_command():
    count = expire_overdue()
    click.echo(f"Expired {count} subscriptions.")
