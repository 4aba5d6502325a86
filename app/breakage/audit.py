import json
from datetime import date
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.breakage import policy
from app.breakage.models import LogEntry, User
from app.breakage.utils import day_bounds


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    target_type: str | None = None,
    target_id: str | int | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> LogEntry:
    """
    Append-only activity log helper.
    Works outside a request (scripts, tests); request id and client IP are then left empty.
    """
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    entry = LogEntry(
        request_id=rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        details_json=json.dumps(details, sort_keys=True, default=str) if details else None,
        client_ip=request.remote_addr if in_request else None,
    )
    s.add(entry)
    return entry


def entry_details(entry: LogEntry) -> dict[str, Any]:
    if not entry.details_json:
        return {}
    try:
        value = json.loads(entry.details_json)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def list_entries(
    s: Session,
    actor: User,
    *,
    action: str = "",
    actor_email: str = "",
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 200,
) -> list[LogEntry]:
    """
    Newest entries first. Admins see every entry; other users only their own.
    """
    q = s.query(LogEntry)
    if not policy.is_admin(actor):
        q = q.filter(LogEntry.actor_user_id == actor.id)
    if action:
        q = q.filter(LogEntry.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(LogEntry.actor_user_email.like(f"%{actor_email.lower()}%"))
    lo, hi = day_bounds(date_from, date_to)
    if lo:
        q = q.filter(LogEntry.created_at >= lo)
    if hi:
        q = q.filter(LogEntry.created_at < hi)
    rows = q.order_by(LogEntry.created_at.desc(), LogEntry.id.desc()).limit(limit).all()
    return [e for e in rows if policy.can_read_log(actor, e)]
