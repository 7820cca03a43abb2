"""
Change Governance Core
Flask Application Factory.

Usage:
    from change_governance import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask

from change_governance.config import config
from change_governance.middleware.logging_config import configure_logging
from change_governance.models import db

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)

    # ── Import all models so metadata is complete ────────────────────────
    from change_governance.models import directory as _directory_models    # noqa: F401
    from change_governance.models import change as _change_models          # noqa: F401
    from change_governance.models import approval as _approval_models      # noqa: F401
    from change_governance.models import governance as _governance_models  # noqa: F401
    from change_governance.models import workflow as _workflow_models      # noqa: F401
    from change_governance.models import audit as _audit_models            # noqa: F401
    from change_governance.models import notification as _notification_models  # noqa: F401
    from change_governance.models import scheduling as _scheduling_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if config_name != "testing":
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("approvals-orchestrate")
    def approvals_orchestrate_cmd():
        """Run the approval SLA sweep once (reminders, then escalations)."""
        from change_governance.services.approval_orchestration import orchestrate
        result = orchestrate()
        logger.info(
            "Approval sweep: %d reminders sent, %d escalated",
            result["reminders_sent"], result["escalated"],
        )
        click.echo(f"reminders_sent={result['reminders_sent']} escalated={result['escalated']}")

    @app.cli.command("cab-refresh-agenda")
    @click.argument("meeting_id", type=int)
    def cab_refresh_agenda_cmd(meeting_id):
        """Sync a planned CAB meeting's agenda to the pending review set."""
        from change_governance.services.cab_meeting_service import refresh_cab_meeting_agenda
        result = refresh_cab_meeting_agenda(meeting_id)
        click.echo(
            f"added={result['added']} removed={result['removed']} total={result['total']} "
            f"pending_available={result['pending_available']} updated={result['updated']}"
        )

    @app.cli.command("seed-governance-defaults")
    def seed_governance_defaults_cmd():
        """Write default governance AppSetting rows (quorum, SLA hours, …)."""
        from change_governance.services.governance_config import seed_governance_defaults
        count = seed_governance_defaults()
        db.session.commit()
        logger.info("Seeded %s governance settings.", count)
        click.echo(f"seeded={count}")

    # ── Scheduler initialization (import jobs to register them) ──────────
    from change_governance.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)
    if app.config.get("SCHEDULER_ENABLED"):
        _SchedulerSvc.ensure_jobs_registered()

    return app
