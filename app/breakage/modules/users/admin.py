from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.breakage import policy
from app.breakage.audit import entry_details, list_entries
from app.breakage.constants import VALID_ROLES, VALID_USER_STATUSES
from app.breakage.db import db_session
from app.breakage.errors import ValidationError
from app.breakage.models import User
from app.breakage.modules.submissions.service import status_counts
from app.breakage.modules.users.service import change_password, delete_user, get_user, list_users, update_own_name, update_user
from app.breakage.rbac import require_admin, require_login

bp = Blueprint("users", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


# ---------- Administration ----------
@bp.get("/admin/users")
@require_admin
def users_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    role = (request.args.get("role") or "").strip()
    status = (request.args.get("status") or "").strip()
    users = list_users(s, _current_user(), search=search, role=role, status=status)
    return render_template(
        "users/list.html",
        users=users,
        search=search,
        role=role,
        status=status,
        roles=VALID_ROLES,
        statuses=VALID_USER_STATUSES,
    )


@bp.get("/admin/users/<int:user_id>/edit")
@require_admin
def users_edit_get(user_id: int):
    s = db_session()
    u = _current_user()
    user = get_user(s, user_id)
    policy.authorize(u, policy.UPDATE, policy.USER, user)
    return render_template(
        "users/edit.html",
        user=user,
        roles=VALID_ROLES,
        statuses=VALID_USER_STATUSES,
        counts=status_counts(s, user_id=user.id),
    )


@bp.post("/admin/users/<int:user_id>/edit")
@require_admin
def users_edit_post(user_id: int):
    s = db_session()
    u = _current_user()
    user = get_user(s, user_id)
    payload = {
        "name": request.form.get("name"),
        "role": request.form.get("role"),
        "status": request.form.get("status"),
    }
    try:
        update_user(s, u, user, payload)
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return redirect(url_for("users.users_edit_get", user_id=user_id))
    s.commit()
    flash("User updated.", "success")
    return redirect(url_for("users.users_list"))


@bp.post("/admin/users/<int:user_id>/delete")
@require_admin
def users_delete_post(user_id: int):
    s = db_session()
    u = _current_user()
    user = get_user(s, user_id)
    email = user.email
    try:
        outcome = delete_user(s, u, user)
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return redirect(url_for("users.users_list"))
    s.commit()
    if outcome == "deactivated":
        flash(f"{email} has submissions on record and was deactivated instead of deleted.", "warning")
    else:
        flash(f"{email} deleted.", "success")
    return redirect(url_for("users.users_list"))


# ---------- Own account ----------
@bp.get("/account/settings")
@require_login
def account_settings():
    s = db_session()
    u = _current_user()
    return render_template("account/settings.html", user=u, counts=status_counts(s, user_id=u.id))


@bp.post("/account/profile")
@require_login
def account_profile_post():
    s = db_session()
    u = _current_user()
    try:
        update_own_name(s, u, request.form.get("name") or "")
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return redirect(url_for("users.account_settings"))
    s.commit()
    flash("Name updated.", "success")
    return redirect(url_for("users.account_settings"))


@bp.post("/account/password")
@require_login
def account_password_post():
    s = db_session()
    u = _current_user()
    try:
        change_password(
            s,
            u,
            current=request.form.get("current_password") or "",
            new=request.form.get("new_password") or "",
            confirmation=request.form.get("confirm_password") or "",
        )
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return redirect(url_for("users.account_settings"))
    s.commit()
    flash("Password changed.", "success")
    return redirect(url_for("users.account_settings"))


@bp.get("/account/activity")
@require_login
def account_activity():
    s = db_session()
    u = _current_user()
    entries = [e for e in list_entries(s, u) if e.actor_user_id == u.id]
    return render_template(
        "activity/list.html",
        entries=[(e, entry_details(e)) for e in entries],
        show_actor=False,
    )
