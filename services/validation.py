"""Request payload validation.

Each ``validate_*`` function takes the decoded JSON body, returns the cleaned
values, and raises :class:`errors.ValidationError` with a field -> messages
map when anything is wrong.
"""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urlparse

from errors import ValidationError

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
NAME_RE = re.compile(r"^[a-zA-Z\s'-]+$")
# Leaves room in the column for the suffix a soft delete appends.
MAX_EMAIL_LENGTH = 200
MAX_REASON_LENGTH = 500


class _Errors(dict):
    def add(self, field: str, message: str) -> None:
        self.setdefault(field, []).append(message)

    def raise_if_any(self) -> None:
        if self:
            raise ValidationError(details=dict(self))


def _validate_password(password: str, label: str = "Password") -> Optional[str]:
    """Return error message if password is weak, else None."""
    if len(password) < 8:
        return f"{label} must be at least 8 characters long"
    if not (
        re.search(r"[A-Z]", password)
        and re.search(r"[a-z]", password)
        and re.search(r"\d", password)
    ):
        return (
            f"{label} must contain at least one uppercase letter, "
            "one lowercase letter, and one number"
        )
    return None


def _str(data: dict, key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else ""


def _check_email(errs: _Errors, data: dict) -> str:
    email = _str(data, "email").strip().lower()
    if not EMAIL_RE.match(email):
        errs.add("email", "Please provide a valid email address")
    elif len(email) > MAX_EMAIL_LENGTH:
        errs.add("email", f"Email must be at most {MAX_EMAIL_LENGTH} characters")
    return email


def _check_name(errs: _Errors, field: str, label: str, value: str) -> str:
    value = value.strip()
    if not 1 <= len(value) <= 100:
        errs.add(field, f"{label} is required and must be less than 100 characters")
    elif not NAME_RE.match(value):
        errs.add(field, f"{label} contains invalid characters")
    return value


def _check_new_password(
    errs: _Errors, data: dict, field: str, confirm_field: str, label: str
) -> str:
    password = _str(data, field)
    error = _validate_password(password, label)
    if error:
        errs.add(field, error)
    if confirm_field in data and data.get(confirm_field) != password:
        errs.add(confirm_field, "Passwords do not match")
    return password


def _is_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# ---------------------------------------------------------------------------
# Auth payloads
# ---------------------------------------------------------------------------

def validate_registration(data: dict) -> dict:
    errs = _Errors()
    cleaned = {
        "email": _check_email(errs, data),
        "password": _check_new_password(
            errs, data, "password", "confirmPassword", "Password"
        ),
        "first_name": _check_name(errs, "firstName", "First name", _str(data, "firstName")),
        "last_name": _check_name(errs, "lastName", "Last name", _str(data, "lastName")),
    }
    errs.raise_if_any()
    return cleaned


def validate_login(data: dict) -> dict:
    errs = _Errors()
    email = _check_email(errs, data)
    password = _str(data, "password")
    if not password:
        errs.add("password", "Password is required")
    errs.raise_if_any()
    return {"email": email, "password": password}


def validate_forgot_password(data: dict) -> str:
    errs = _Errors()
    email = _check_email(errs, data)
    errs.raise_if_any()
    return email


def validate_reset_password(data: dict) -> dict:
    errs = _Errors()
    token = _str(data, "token")
    if not token:
        errs.add("token", "Reset token is required")
    password = _check_new_password(errs, data, "password", "confirmPassword", "Password")
    errs.raise_if_any()
    return {"token": token, "password": password}


def validate_change_password(data: dict) -> dict:
    errs = _Errors()
    current = _str(data, "currentPassword")
    if not current:
        errs.add("currentPassword", "Current password is required")
    new = _check_new_password(
        errs, data, "newPassword", "confirmNewPassword", "New password"
    )
    errs.raise_if_any()
    return {"current_password": current, "new_password": new}


# ---------------------------------------------------------------------------
# Profile / billing payloads
# ---------------------------------------------------------------------------

def validate_profile_update(data: dict) -> dict:
    """Only the fields present in *data* are validated and returned."""
    errs = _Errors()
    cleaned = {}
    if "firstName" in data:
        cleaned["first_name"] = _check_name(
            errs, "firstName", "First name", _str(data, "firstName")
        )
    if "lastName" in data:
        cleaned["last_name"] = _check_name(
            errs, "lastName", "Last name", _str(data, "lastName")
        )
    errs.raise_if_any()
    return cleaned


def validate_checkout(data: dict) -> dict:
    errs = _Errors()
    plan_id = _str(data, "planId").strip()
    if not plan_id:
        errs.add("planId", "Valid plan ID is required")
    success_url = _str(data, "successUrl")
    if not _is_url(success_url):
        errs.add("successUrl", "Valid success URL is required")
    cancel_url = _str(data, "cancelUrl")
    if not _is_url(cancel_url):
        errs.add("cancelUrl", "Valid cancel URL is required")
    errs.raise_if_any()
    return {"plan_id": plan_id, "success_url": success_url, "cancel_url": cancel_url}


def validate_cancel(data: dict) -> dict:
    errs = _Errors()
    reason = data.get("reason")
    if reason is not None:
        if not isinstance(reason, str):
            errs.add("reason", "Reason must be a string")
        elif len(reason.strip()) > MAX_REASON_LENGTH:
            errs.add("reason", f"Reason must be at most {MAX_REASON_LENGTH} characters")
        else:
            reason = reason.strip() or None
    errs.raise_if_any()
    return {"immediate": data.get("immediate") is True, "reason": reason}
