"""Configuration loading: YAML file plus environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import (
    AppConfig,
    AuthConfig,
    EmailConfig,
    SecurityConfig,
    Settings,
    StripeConfig,
)

logger = logging.getLogger(__name__)


def _env_bool(name: str, default) -> bool:
    return os.environ.get(name, str(default)).lower() in ("true", "1", "yes")


def _secret(name: str, configured: str) -> str:
    value = os.environ.get(name, configured or "")
    if not value or value == "change-me":
        value = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated %s. Set it in the environment or config.yaml "
            "so issued tokens survive restarts.",
            name,
        )
    return value


def load_config() -> Settings:
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    auth_cfg = raw.get("auth", {})
    stripe_cfg = raw.get("stripe", {})
    email_cfg = raw.get("email", {})
    security_cfg = raw.get("security", {})
    db_cfg = raw.get("database", {})

    jwt_secret = _secret("JWT_SECRET", auth_cfg.get("jwt_secret", ""))
    jwt_refresh_secret = _secret(
        "JWT_REFRESH_SECRET", auth_cfg.get("jwt_refresh_secret", "")
    )
    if jwt_secret == jwt_refresh_secret:
        raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must be different")

    stripe_secret = os.environ.get("STRIPE_SECRET_KEY", stripe_cfg.get("secret_key", ""))
    webhook_secret = os.environ.get(
        "STRIPE_WEBHOOK_SECRET", stripe_cfg.get("webhook_secret", "")
    )
    if not stripe_secret or not webhook_secret:
        logger.warning("Stripe is not fully configured; billing calls will fail")

    return Settings(
        app=AppConfig(
            name=app_cfg.get("name", "Billing API"),
            env=os.environ.get("APP_ENV", app_cfg.get("env", "development")),
            client_url=os.environ.get(
                "CLIENT_URL", app_cfg.get("client_url", "http://localhost:5173")
            ).rstrip("/"),
            enable_email_verification=_env_bool(
                "ENABLE_EMAIL_VERIFICATION",
                app_cfg.get("enable_email_verification", False),
            ),
            enable_trial_periods=_env_bool(
                "ENABLE_TRIAL_PERIODS", app_cfg.get("enable_trial_periods", True)
            ),
        ),
        auth=AuthConfig(
            jwt_secret=jwt_secret,
            jwt_refresh_secret=jwt_refresh_secret,
            access_ttl_seconds=int(
                os.environ.get(
                    "JWT_ACCESS_TTL_SECONDS", auth_cfg.get("access_ttl_seconds", 900)
                )
            ),
            refresh_ttl_days=int(
                os.environ.get("JWT_REFRESH_TTL_DAYS", auth_cfg.get("refresh_ttl_days", 30))
            ),
            password_hash_method=os.environ.get(
                "PASSWORD_HASH_METHOD",
                auth_cfg.get("password_hash_method", "scrypt:32768:8:1"),
            ),
            max_failed_logins=int(
                os.environ.get("MAX_FAILED_LOGINS", auth_cfg.get("max_failed_logins", 5))
            ),
            lockout_minutes=int(
                os.environ.get("LOCKOUT_MINUTES", auth_cfg.get("lockout_minutes", 30))
            ),
        ),
        stripe=StripeConfig(
            secret_key=stripe_secret,
            webhook_secret=webhook_secret,
            timeout_seconds=int(
                os.environ.get("STRIPE_TIMEOUT_SECONDS", stripe_cfg.get("timeout_seconds", 10))
            ),
            webhook_tolerance=int(
                os.environ.get(
                    "STRIPE_WEBHOOK_TOLERANCE", stripe_cfg.get("webhook_tolerance", 300)
                )
            ),
        ),
        email=EmailConfig(
            enabled=_env_bool("EMAIL_ENABLED", email_cfg.get("enabled", False)),
            smtp_host=os.environ.get("SMTP_HOST", email_cfg.get("smtp_host", "")),
            smtp_port=int(os.environ.get("SMTP_PORT", email_cfg.get("smtp_port", 587))),
            smtp_user=os.environ.get("SMTP_USER", email_cfg.get("smtp_user", "")),
            smtp_password=os.environ.get("SMTP_PASSWORD", email_cfg.get("smtp_password", "")),
            sender=os.environ.get("EMAIL_FROM", email_cfg.get("sender", "noreply@example.com")),
        ),
        security=SecurityConfig(
            rate_limit_default=os.environ.get(
                "RATE_LIMIT_DEFAULT", security_cfg.get("rate_limit_default", "100 per 15 minutes")
            ),
            rate_limit_auth=os.environ.get(
                "RATE_LIMIT_AUTH", security_cfg.get("rate_limit_auth", "5 per 15 minutes")
            ),
            rate_limit_webhook=os.environ.get(
                "RATE_LIMIT_WEBHOOK", security_cfg.get("rate_limit_webhook", "100 per minute")
            ),
        ),
        database_uri=os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///billing.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
