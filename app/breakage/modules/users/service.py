from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.breakage import policy
from app.breakage.audit import record_event
from app.breakage.constants import (
    ROLE_USER,
    USER_ACTIVE,
    USER_INACTIVE,
    VALID_ROLES,
    VALID_USER_STATUSES,
)
from app.breakage.errors import ConflictError, NotFoundError, ValidationError
from app.breakage.models import User
from app.breakage.modules.submissions.models import Submission
from app.breakage.security import hash_password, password_problems, verify_password

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class Profile:
    """Typed user profile; both fields are required."""

    name: str
    employee_id: str

    @classmethod
    def from_form(cls, form) -> "Profile":
        return cls(
            name=(form.get("name") or "").strip(),
            employee_id=(form.get("employee_id") or "").strip(),
        )

    def problems(self) -> list[str]:
        errors = []
        if not self.name:
            errors.append("Name is required.")
        if not self.employee_id:
            errors.append("Employee ID is required.")
        return errors


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def get_user(s: Session, user_id: int) -> User:
    user = s.get(User, user_id)
    if not user:
        raise NotFoundError("User", user_id)
    return user


def register_user(
    s: Session,
    *,
    email: str,
    password: str,
    confirmation: str | None,
    profile: Profile,
    role: str = ROLE_USER,
) -> User:
    """Sign-up: new accounts are active regular users unless a seed script says otherwise."""
    email = normalize_email(email)
    errors = profile.problems()
    if not _EMAIL_RE.match(email):
        errors.append("A valid e-mail address is required.")
    errors.extend(password_problems(password, confirmation))
    if role not in VALID_ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(VALID_ROLES)}")
    if errors:
        raise ValidationError(errors)

    if s.query(User.id).filter(User.email == email).first():
        raise ConflictError("An account with this e-mail already exists.")
    if s.query(User.id).filter(User.employee_id == profile.employee_id).first():
        raise ConflictError("An account with this employee ID already exists.")

    now = datetime.utcnow()
    user = User(
        email=email,
        password_hash=hash_password(password),
        name=profile.name,
        employee_id=profile.employee_id,
        role=role,
        status=USER_ACTIVE,
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()

    record_event(
        s,
        actor=user,
        action="user.register",
        target_type="User",
        target_id=user.id,
        details={"email": email, "employee_id": profile.employee_id, "role": role},
    )
    logger.info("Registered user id=%s role=%s", user.id, role)
    return user


def authenticate(s: Session, email: str, password: str) -> User | None:
    """Return the active user for the credentials, or None."""
    user = s.query(User).filter(User.email == normalize_email(email)).one_or_none()
    if not user or not user.is_active or not verify_password(user.password_hash, password):
        return None
    return user


# ---------- Self-service ----------
def update_own_name(s: Session, actor: User, name: str) -> User:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Name is required.")
    if name != actor.name:
        old = actor.name
        actor.name = name
        actor.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=actor,
            action="account.update_profile",
            target_type="User",
            target_id=actor.id,
            details={"name": {"old": old, "new": name}},
        )
    return actor


def change_password(s: Session, actor: User, *, current: str, new: str, confirmation: str) -> None:
    if not verify_password(actor.password_hash, current):
        raise ValidationError("Current password is incorrect.")
    errors = password_problems(new, confirmation)
    if errors:
        raise ValidationError(errors)
    actor.password_hash = hash_password(new)
    actor.updated_at = datetime.utcnow()
    record_event(s, actor=actor, action="account.change_password", target_type="User", target_id=actor.id)


# ---------- Administration ----------
def list_users(
    s: Session,
    actor: User,
    *,
    search: str = "",
    role: str = "",
    status: str = "",
) -> list[User]:
    policy.authorize(actor, policy.UPDATE, policy.USER)
    q = s.query(User)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(User.name.ilike(like), User.email.ilike(like), User.employee_id.ilike(like)))
    if role in VALID_ROLES:
        q = q.filter(User.role == role)
    if status in VALID_USER_STATUSES:
        q = q.filter(User.status == status)
    return q.order_by(User.name.asc()).all()


def validate_user_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("Name is required.")
    role = (payload.get("role") or "").strip()
    if role not in VALID_ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(VALID_ROLES)}")
    status = (payload.get("status") or "").strip()
    if status not in VALID_USER_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(VALID_USER_STATUSES)}")
    return errors


def update_user(s: Session, actor: User, user: User, payload: dict) -> User:
    """Admin edit of name, role and status."""
    policy.authorize(actor, policy.UPDATE, policy.USER, user)
    errors = validate_user_payload(payload)
    if errors:
        raise ValidationError(errors)

    name = payload["name"].strip()
    role = payload["role"].strip()
    status = payload["status"].strip()

    if user.id == actor.id:
        if status == USER_INACTIVE:
            raise ValidationError("You cannot deactivate your own account.")
        if role != actor.role:
            raise ValidationError("You cannot change your own role.")

    changes = {}
    if name != user.name:
        changes["name"] = {"old": user.name, "new": name}
        user.name = name
    if role != user.role:
        changes["role"] = {"old": user.role, "new": role}
        user.role = role
    if status != user.status:
        changes["status"] = {"old": user.status, "new": status}
        user.status = status

    if changes:
        user.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=actor,
            action="user.edit",
            target_type="User",
            target_id=user.id,
            details={"email": user.email, "changes": changes},
        )
    return user


def delete_user(s: Session, actor: User, user: User) -> str:
    """
    Remove a user. Users that own submissions are deactivated instead of deleted.
    Returns "deactivated" or "deleted".
    """
    policy.authorize(actor, policy.DELETE, policy.USER, user)
    if user.id == actor.id:
        raise ValidationError("You cannot delete your own account.")

    owned = s.query(func.count(Submission.id)).filter(Submission.user_id == user.id).scalar() or 0
    if owned:
        user.status = USER_INACTIVE
        user.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=actor,
            action="user.deactivate",
            target_type="User",
            target_id=user.id,
            details={"email": user.email, "submissions": owned},
        )
        return "deactivated"

    record_event(
        s,
        actor=actor,
        action="user.delete",
        target_type="User",
        target_id=user.id,
        details={"email": user.email, "employee_id": user.employee_id},
    )
    s.delete(user)
    s.flush()
    return "deleted"
