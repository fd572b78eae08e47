"""Flask extensions, single instances bound to each application via ``init_app``."""

from flask import current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
limiter = Limiter(get_remote_address, storage_uri="memory://")


def auth_rate_limit() -> str:
    return current_app.config["RATELIMIT_AUTH"]


def webhook_rate_limit() -> str:
    return current_app.config["RATELIMIT_WEBHOOK"]
