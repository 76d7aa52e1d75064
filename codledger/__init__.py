import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash

from codledger.config import config_by_name
from codledger.errors import LedgerError
from codledger.extensions import db, migrate, login_manager, csrf, limiter

logger = logging.getLogger(__name__)


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from codledger import models  # noqa: F401

    # --- Register blueprints ---
    from codledger.blueprints.auth import auth_bp
    from codledger.blueprints.webhooks import webhooks_bp
    from codledger.blueprints.tasks import tasks_bp
    from codledger.blueprints.cod import cod_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(tasks_bp)
    app.register_blueprint(cod_bp)

    # Exempt webhooks from CSRF — raw body needed for signature verification
    csrf.exempt(webhooks_bp)
    # Operator API is Bearer-token or same-site session JSON, not form posts
    csrf.exempt(tasks_bp)
    csrf.exempt(cod_bp)

    # --- Settlement lock table ---
    from codledger.services.settlement_service import configure_lock_table
    configure_lock_table(app.config["SETTLEMENT_LOCK_TABLE_SIZE"])

    # --- Health check ---
    @app.route("/health")
    def health():
        return jsonify({"status": "success", "data": {"service": "codledger"}})

    # --- Error handlers ---
    @app.errorhandler(LedgerError)
    def ledger_error(e):
        db.session.rollback()
        if e.status_code >= 500:
            logger.error(f"{e.kind}: {e.message}")
        else:
            logger.info(f"{e.kind}: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def http_error(e):
        return jsonify({
            "status": "error",
            "error": (e.name or "error").lower().replace(" ", "_"),
            "message": e.description,
        }), e.code

    @app.errorhandler(500)
    def server_error(e):
        db.session.rollback()
        return jsonify({
            "status": "error",
            "error": "internal_error",
            "message": "Internal server error",
        }), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "no-referrer"
        # JSON only; nothing to render or load
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Ledger data is never cached
        response.headers["Cache-Control"] = "no-store"
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    # --- Background retry scheduler ---
    # The dev reloader runs the factory twice; only start in the serving child.
    if (
        app.config.get("WEBHOOK_SCHEDULER_ENABLED")
        and not app.testing
        and (not app.debug or os.environ.get("WERKZEUG_RUN_MAIN") == "true")
    ):
        from codledger.services.retry_scheduler import RetryScheduler
        scheduler = RetryScheduler(app)
        scheduler.start()
        app.extensions["retry_scheduler"] = scheduler

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-operator")
    @click.option("--email", default="ops@codledger.local", help="Operator email")
    @click.option("--password", default="admin123", help="Operator password")
    @click.option("--name", default="Operator", help="Full name")
    def seed_operator(email, password, name):
        """Create an admin operator account.

        Usage:
            flask seed-operator
            flask seed-operator --email ops@example.com --password s3cret
        """
        from codledger.models.user import User

        email = email.lower().strip()
        existing = User.query.filter_by(email=email).first()
        if existing:
            click.echo(f"Operator already exists: {email}")
            return

        user = User(
            email=email,
            password_hash=generate_password_hash(password),
            full_name=name,
            is_admin=True,
        )
        db.session.add(user)
        db.session.commit()
        click.echo(f"Created operator: {email} (id: {user.id})")

    @app.cli.command("process-webhooks")
    def process_webhooks():
        """Run one retry sweep over pending/failed webhook events.

        Cron friendly:
            */5 * * * * flask process-webhooks
        """
        from codledger.services.retry_scheduler import run_sweep

        summary = run_sweep()
        click.echo(
            "Processed: {processed}  Failed: {failed}  Dead-lettered: {dead_lettered}  "
            "Skipped (backoff): {skipped}  Recovered: {recovered}".format(**summary)
        )

    @app.cli.command("run-scheduler")
    @click.option("--interval", type=int, default=None,
                  help="Seconds between sweeps (default WEBHOOK_SWEEP_INTERVAL_SECONDS).")
    def run_scheduler(interval):
        """Run the retry sweep loop in the foreground until interrupted."""
        import time

        from codledger.services.retry_scheduler import RetryScheduler

        scheduler = RetryScheduler(app, interval=interval)
        click.echo(f"Retry scheduler running every {scheduler.interval}s (Ctrl+C to stop)")
        try:
            while True:
                summary = scheduler.run_once()
                if summary:
                    click.echo(f"Sweep: {summary}")
                time.sleep(scheduler.interval)
        except KeyboardInterrupt:
            click.echo("Stopped.")

    @app.cli.command("dead-letters")
    @click.option("--retry", "retry_id", default=None, help="Reset this event id for retry.")
    @click.option("--limit", type=int, default=50)
    def dead_letters(retry_id, limit):
        """List dead-lettered webhook events, or reset one for retry.

        Usage:
            flask dead-letters
            flask dead-letters --retry <event-id>
        """
        from codledger.services import event_store

        if retry_id:
            event = event_store.reset_for_retry(retry_id, actor_id="cli")
            click.echo(f"Event {event.id} reset to pending.")
            return

        events = event_store.list_dead_lettered(
            app.config["WEBHOOK_MAX_RETRIES"], limit=limit
        )
        if not events:
            click.echo("No dead-lettered events.")
            return
        for event in events:
            click.echo(
                f"{event.id}  job={event.external_task_id}  {event.event_type}  "
                f"retries={event.retry_count}  error={event.error_message}"
            )

    @app.cli.command("settle-driver")
    @click.argument("driver_id")
    @click.option("--payment-method", default="cash", help="How the driver paid in.")
    @click.option("--operator", default="cli", help="Operator id for the audit trail.")
    def settle_driver(driver_id, payment_method, operator):
        """Settle the oldest pending COD entry for DRIVER_ID."""
        from codledger.services.settlement_service import settle_oldest

        try:
            attempt = settle_oldest(driver_id, payment_method, operator)
        except LedgerError as e:
            db.session.rollback()
            raise click.ClickException(f"{e.kind}: {e.message}")
        click.echo(
            f"Settled entry {attempt.entry_id} ({attempt.amount}) for driver {driver_id}"
        )

    @app.cli.command("reconciliation-report")
    def reconciliation_report():
        """List unresolved partial settlements; alert on stale ones."""
        from codledger.services.settlement_service import (
            list_needs_reconciliation,
            stale_partial_failures,
        )

        attempts = list_needs_reconciliation()
        if not attempts:
            click.echo("Nothing needs reconciliation.")
            return

        hours = app.config["RECONCILIATION_ALERT_HOURS"]
        stale_ids = {a.id for a in stale_partial_failures(hours)}
        for attempt in attempts:
            marker = "STALE " if attempt.id in stale_ids else ""
            click.echo(
                f"{marker}{attempt.id}  entry={attempt.entry_id}  driver={attempt.driver_id}  "
                f"merchant={attempt.merchant_id}  amount={attempt.amount}  "
                f"error={attempt.error_message}"
            )
            if attempt.id in stale_ids:
                logger.error(
                    f"Partial settlement {attempt.id} unresolved for more than {hours}h "
                    f"(driver {attempt.driver_id} credited, merchant {attempt.merchant_id} not)"
                )
