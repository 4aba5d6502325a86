import secrets

from flask import Request, session
from werkzeug.security import check_password_hash, generate_password_hash

from app.breakage.constants import MIN_PASSWORD_LENGTH


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form or header."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(token, expected))


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


def password_problems(password: str, confirmation: str | None = None) -> list[str]:
    """Return human-readable problems with a new password (empty list when acceptable)."""
    errors = []
    if len(password or "") < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.")
    if confirmation is not None and password != confirmation:
        errors.append("Password and confirmation do not match.")
    return errors
