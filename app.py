"""Application factory, clean entry point for the Flask application."""

from __future__ import annotations

import logging
import os
from functools import partial
from typing import Callable, Optional

import click
from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event
from werkzeug.exceptions import HTTPException

import mailer
from config import enable_sqlite_fks, load_config
from config_models import Settings
from errors import ApiError
from extensions import db, limiter
from routes import register_blueprints
from seed_data import seed_demo_users, seed_plans
from services.auth import AuthService
from services.billing import SubscriptionSyncEngine
from services.stripe_billing import BillingProvider, StripeProvider
from utils import api_response, isoformat, utc_now

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _error(code: str, message: str, status: int):
    return jsonify({"success": False, "error": {"code": code, "message": message}}), status


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Optional[Settings] = None,
    provider: Optional[BillingProvider] = None,
    clock: Optional[Callable] = None,
    send_mail: Optional[Callable[..., bool]] = None,
    config: Optional[dict] = None,
):
    """Create and configure the Flask application.

    Every collaborator can be injected; omitted ones are built from
    :func:`config.load_config`.  *config* is merged into ``app.config``
    before extensions are initialised (tests pass ``RATELIMIT_ENABLED``).
    """
    settings = settings or load_config()
    clock = clock or utc_now

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = settings.database_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["RATELIMIT_DEFAULT"] = settings.security.rate_limit_default
    app.config["RATELIMIT_AUTH"] = settings.security.rate_limit_auth
    app.config["RATELIMIT_WEBHOOK"] = settings.security.rate_limit_webhook
    app.config["RATELIMIT_HEADERS_ENABLED"] = True
    app.config.update(config or {})

    # Initialize extensions
    limiter.init_app(app)
    db.init_app(app)

    # SQLite foreign key enforcement
    if settings.database_uri.startswith("sqlite"):
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()

    if provider is None:
        provider = StripeProvider(settings.stripe)
    if send_mail is None:
        send_mail = partial(mailer.send_template, settings.email)

    app.extensions["settings"] = settings
    app.extensions["billing_provider"] = provider
    app.extensions["auth_service"] = AuthService(settings, clock=clock, send_mail=send_mail)
    app.extensions["sync_engine"] = SubscriptionSyncEngine(provider, settings, clock=clock)

    # Register all blueprints
    register_blueprints(app)

    @app.route("/health", methods=["GET"])
    @limiter.exempt
    def health():
        return api_response(
            {"status": "ok", "environment": settings.app.env, "timestamp": isoformat(clock())}
        )

    # ------------------------------------------------------------------
    # Security headers
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "0"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), camera=(), microphone=()"
        if settings.app.env == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # ------------------------------------------------------------------
    # Error handlers
    # ------------------------------------------------------------------

    @app.errorhandler(ApiError)
    def api_error(error: ApiError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found(_exc):
        return _error("NOT_FOUND", "Resource not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(_exc):
        return _error("METHOD_NOT_ALLOWED", "Method not allowed", 405)

    @app.errorhandler(429)
    def ratelimit_handler(_exc):
        return _error("RATE_LIMITED", "Too many requests, please try again later", 429)

    @app.errorhandler(500)
    def server_error(_exc):
        return _error("INTERNAL_ERROR", "Internal server error", 500)

    @app.errorhandler(Exception)
    def unhandled(error: Exception):
        if isinstance(error, HTTPException):
            return _error("HTTP_ERROR", error.description or error.name, error.code or 500)
        logger.exception("Unhandled error: %s", error)
        db.session.rollback()
        return _error("INTERNAL_ERROR", "Internal server error", 500)

    # ------------------------------------------------------------------
    # CLI commands
    # ------------------------------------------------------------------

    @app.cli.command("init-db")
    def init_db_command():
        """Create all database tables."""
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command("seed-plans")
    @click.option("--demo-users", is_flag=True, help="Also create demo and admin accounts.")
    def seed_plans_command(demo_users):
        """Upsert the plan catalog keyed by provider price id."""
        created, updated = seed_plans()
        click.echo(f"Plans: {created} created, {updated} updated.")
        if demo_users:
            users = seed_demo_users(app.extensions["auth_service"])
            click.echo(f"Demo accounts ready: {', '.join(u.email for u in users)}")

    logger.info("Application created (env=%s)", settings.app.env)
    return app


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app = create_app()
    debug_mode = os.environ.get("FLASK_DEBUG", "false").lower() in (
        "true",
        "1",
        "yes",
    )
    host = os.environ.get("FLASK_HOST", "127.0.0.1")
    port = int(os.environ.get("FLASK_PORT", 5000))
    logger.info("Starting application on %s:%s (debug=%s)", host, port, debug_mode)
    app.run(host=host, port=port, debug=debug_mode)
