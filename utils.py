"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import hashlib
import logging
import uuid
from datetime import timezone
from typing import Optional

from flask import jsonify, request

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

def new_id() -> str:
    """Return a fresh opaque identifier.  Used as primary-key default."""
    return str(uuid.uuid4())


def hash_token(raw: str) -> str:
    """SHA-256 hex digest of a bearer secret; only the digest is ever stored."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def from_unix(raw) -> Optional[datetime.datetime]:
    """Convert a provider epoch-seconds field; zero and missing mean "not set"."""
    if raw in (None, "", 0):
        return None
    try:
        return datetime.datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError):
        logger.warning("Could not parse epoch timestamp: %r", raw)
        return None


def isoformat(value: Optional[datetime.datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# JSON envelope
# ---------------------------------------------------------------------------

def api_response(data=None, status: int = 200, message: Optional[str] = None):
    """Wrap *data* in the ``{success, data}`` envelope."""
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return jsonify(body), status


def json_body() -> dict:
    """Decoded JSON object of the current request; empty dict when absent."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default
