import os
from pathlib import Path
import logging
from logging.handlers import RotatingFileHandler

import click
import json_log_formatter
import sentry_sdk
from flask import Flask, jsonify
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from .extensions import db, migrate, login_manager, mail
from .config import Config
from . import models  # noqa: F401  register mappers
from . import security  # noqa: F401  register principal loaders

# Blueprints
from .blueprints.errors import errors_bp
from .blueprints.api import api_bp
from .blueprints.webhooks import webhooks_bp


def _init_sentry(app):
    dsn = app.config.get("SENTRY_DSN")
    if not dsn:
        return
    try:
        sentry_sdk.init(
            dsn=dsn,
            integrations=[FlaskIntegration(), SqlalchemyIntegration()],
            traces_sample_rate=app.config.get("SENTRY_TRACES_SAMPLE_RATE", 0.0),
            environment=os.getenv("ENV", "development"),
            release=app.config.get("APP_VERSION"),
            send_default_pii=False,
        )
        app.logger.info("Sentry initialized.")
    except Exception as e:
        app.logger.warning(f"Sentry init failed: {e}")


def _init_logging(app):
    level_name = app.config.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)

    log_dir = Path(app.config.get("LOG_DIR", "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / app.config.get("LOG_FILENAME", "trustwork.log")

    # Formatter: text or JSON
    if app.config.get("LOG_JSON", False):
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s in %(module)s: %(message)s")

    # Rotating file handler (5MB x 5)
    file_handler = RotatingFileHandler(
        log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)

    # app.logger is the "trustwork" logger, so service modules inherit these handlers
    for handler in list(app.logger.handlers):
        app.logger.removeHandler(handler)
        handler.close()
    app.logger.addHandler(file_handler)
    app.logger.addHandler(stream_handler)

    app.logger.info("Logging initialized.")


def _register_cli(app):
    from .models.user import User, ROLES
    from .security import issue_token
    from .services import disputes, email_service, escrow, skill_tests

    @app.cli.command("sweep-attempts")
    def sweep_attempts():
        """Finalize skill-test attempts past their deadline."""
        click.echo(f"finalized {skill_tests.sweep_expired()} attempts")

    @app.cli.command("flag-overdue-disputes")
    def flag_overdue_disputes():
        """Flag open disputes whose respondent missed the deadline."""
        click.echo(f"flagged {disputes.flag_overdue()} disputes")

    @app.cli.command("retry-payouts")
    def retry_payouts():
        """Re-send deferred payouts and fail those past PAYOUT_MAX_RETRIES."""
        click.echo(f"retried {escrow.retry_failed_payouts()} payouts")

    @app.cli.command("dispatch-events")
    @click.option("--limit", default=100, show_default=True)
    def dispatch_events(limit):
        """Send notifications for undispatched outbox events."""
        seen, sent = email_service.dispatch_pending(limit)
        click.echo(f"dispatched {seen} events, {sent} emails")

    @app.cli.command("create-principal")
    @click.option("--email", required=True)
    @click.option("--name", required=True)
    @click.option("--role", type=click.Choice(ROLES), default="client", show_default=True)
    def create_principal(email, name, role):
        """Register a principal and print a bearer token for it."""
        email = email.strip().lower()
        if db.session.query(User).filter_by(email=email).first():
            raise click.ClickException("User with that email already exists.")
        user = User(name=name.strip(), email=email, role=role)
        db.session.add(user)
        db.session.commit()
        click.echo(issue_token(user))


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)
    app.config.from_pyfile("config.py", silent=True)

    Path(app.instance_path).mkdir(parents=True, exist_ok=True)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    mail.init_app(app)

    # Logging must come before blueprints so errors during register are captured
    _init_logging(app)
    _init_sentry(app)

    app.register_blueprint(errors_bp)  # error handlers
    app.register_blueprint(api_bp, url_prefix="/api/v1")
    app.register_blueprint(webhooks_bp)

    @app.route("/healthz")
    def healthz():
        return jsonify({"ok": True, "version": app.config.get("APP_VERSION")})

    _register_cli(app)
    return app
