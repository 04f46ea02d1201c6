import click

from minicrm.extensions import db
from minicrm.services.subscription_service import get_subscription_service


def register_commands(app):

    @app.cli.command("init-db")
    def init_db():
        """Create all database tables."""
        db.create_all()
        click.echo("Database initialized")

    @app.cli.command("sync-subscriptions")
    def sync_subscriptions():
        """Reconcile every recurring subscription with the gateway."""
        report = get_subscription_service().sync_all()
        click.echo(f"Synced {report['synced']}, skipped {report['skipped']}, failed {report['failed']}")
        for error in report["errors"]:
            click.echo(f"  {error['subscriptionId']}: {error['error']}", err=True)
