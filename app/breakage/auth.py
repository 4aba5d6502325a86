from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for

from app.breakage.audit import record_event
from app.breakage.db import db_session
from app.breakage.errors import ConflictError, ValidationError
from app.breakage.models import User
from app.breakage.modules.users.service import Profile, authenticate, normalize_email, register_user

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _safe_next(nxt: str) -> str | None:
    # Only allow local paths to avoid open redirects.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def home_for(user: User) -> str:
    if user.is_admin:
        return url_for("admin.index")
    return url_for("submissions.history")


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie and assigns a per-request
    request_id (for audit/log correlation). The user row is re-read on every request
    so role and status changes apply immediately.
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None
        return

    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


@bp.get("/login")
def login_get():
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt)


@bp.post("/login")
def login_post():
    email = normalize_email(request.form.get("email"))
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        flash("Too many login attempts. Please wait 5 minutes.", "danger")
        return redirect(url_for("auth.login_get"))

    _record_attempt(ip)

    s = db_session()
    user = authenticate(s, email, password)
    if not user:
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            target_type="User",
            target_id=email,
            details={"email": email},
        )
        s.commit()
        flash("Invalid credentials.", "danger")
        return redirect(url_for("auth.login_get", next=nxt) if nxt else url_for("auth.login_get"))

    session.clear()
    session["user_id"] = user.id
    _login_attempts[ip].clear()
    record_event(s, actor=user, action="auth.login", target_type="User", target_id=user.id)
    s.commit()
    return redirect(_safe_next(nxt) or home_for(user))


@bp.get("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_event(s, actor=user, action="auth.logout", target_type="User", target_id=user.id)
        s.commit()
    session.pop("user_id", None)
    return redirect(url_for("routes.index"))


@bp.get("/register")
def register_get():
    return render_template("auth/register.html", form={})


@bp.post("/register")
def register_post():
    s = db_session()
    form = request.form
    try:
        register_user(
            s,
            email=form.get("email") or "",
            password=form.get("password") or "",
            confirmation=form.get("confirm_password") or "",
            profile=Profile.from_form(form),
        )
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return render_template("auth/register.html", form=form), 400
    except ConflictError as e:
        s.rollback()
        flash(e.message, "warning")
        return render_template("auth/register.html", form=form), 409

    s.commit()
    flash("Account created. You can sign in now.", "success")
    return redirect(url_for("auth.login_get"))
