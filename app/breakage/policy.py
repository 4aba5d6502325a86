"""
Access policy evaluator.

Row-level authorization rules for submissions, items, products, users and
the activity log, expressed as pure predicates over (actor, row). Nothing
here touches the database or caches a decision: callers evaluate the policy
on every access with freshly loaded rows, so a role or status change takes
effect on the next request.

An actor that is missing or inactive is denied everything.
"""
from __future__ import annotations

from typing import Any

from app.breakage.constants import STATUS_PENDING
from app.breakage.errors import AuthorizationError

# Operations
READ = "read"
INSERT = "insert"
UPDATE = "update"
DELETE = "delete"
DECIDE = "decide"
EXPORT = "export"

# Resources
SUBMISSION = "submission"
ITEM = "item"
PRODUCT = "product"
USER = "user"
LOG = "log"
REPORT = "report"
DASHBOARD = "dashboard"

# Submission fields an owner may change while pending. Everything else is admin-only.
OWNER_EDITABLE_FIELDS = frozenset({"title"})


def _active(actor: Any) -> bool:
    return actor is not None and bool(getattr(actor, "is_active", False))


def is_admin(actor: Any) -> bool:
    return _active(actor) and bool(getattr(actor, "is_admin", False))


def is_owner(actor: Any, submission: Any) -> bool:
    return _active(actor) and submission is not None and submission.user_id == actor.id


def is_pending(submission: Any) -> bool:
    return submission is not None and submission.status == STATUS_PENDING


# ---------- Submissions ----------
def can_read_submission(actor: Any, submission: Any) -> bool:
    return is_admin(actor) or is_owner(actor, submission)


def can_insert_submission(actor: Any, owner_id: int) -> bool:
    return _active(actor) and owner_id == actor.id


def can_update_submission(actor: Any, submission: Any, fields: set[str] | frozenset[str] | None = None) -> bool:
    if is_admin(actor):
        return True
    if not (is_owner(actor, submission) and is_pending(submission)):
        return False
    return not fields or set(fields) <= OWNER_EDITABLE_FIELDS


def can_delete_submission(actor: Any, submission: Any) -> bool:
    return is_admin(actor) or (is_owner(actor, submission) and is_pending(submission))


def can_decide_submission(actor: Any, submission: Any = None) -> bool:
    return is_admin(actor)


# ---------- Items (authorized through the parent submission) ----------
def can_read_item(actor: Any, submission: Any) -> bool:
    return can_read_submission(actor, submission)


def can_insert_item(actor: Any, submission: Any) -> bool:
    return is_pending(submission) and (is_owner(actor, submission) or is_admin(actor))


def can_update_item(actor: Any, submission: Any) -> bool:
    return is_pending(submission) and (is_owner(actor, submission) or is_admin(actor))


def can_delete_item(actor: Any, submission: Any) -> bool:
    return can_update_item(actor, submission)


# ---------- Products ----------
def can_read_product(actor: Any, product: Any = None) -> bool:
    return _active(actor)


def can_write_product(actor: Any, product: Any = None) -> bool:
    return is_admin(actor)


# ---------- Users ----------
def can_read_user(actor: Any, user: Any) -> bool:
    return is_admin(actor) or (_active(actor) and user is not None and user.id == actor.id)


def can_manage_users(actor: Any, user: Any = None) -> bool:
    return is_admin(actor)


# ---------- Activity log ----------
def can_read_log(actor: Any, entry: Any) -> bool:
    return is_admin(actor) or (_active(actor) and entry is not None and entry.actor_user_id == actor.id)


def can_insert_log(actor: Any, actor_user_id: int | None) -> bool:
    return _active(actor) and actor_user_id == actor.id


# ---------- Aggregates / exports ----------
def can_export_reports(actor: Any, row: Any = None) -> bool:
    return is_admin(actor)


def can_view_dashboard(actor: Any, row: Any = None) -> bool:
    return is_admin(actor)


_RULES = {
    (SUBMISSION, READ): can_read_submission,
    (SUBMISSION, UPDATE): can_update_submission,
    (SUBMISSION, DELETE): can_delete_submission,
    (SUBMISSION, DECIDE): can_decide_submission,
    (ITEM, READ): can_read_item,
    (ITEM, INSERT): can_insert_item,
    (ITEM, UPDATE): can_update_item,
    (ITEM, DELETE): can_delete_item,
    (PRODUCT, READ): can_read_product,
    (PRODUCT, INSERT): can_write_product,
    (PRODUCT, UPDATE): can_write_product,
    (PRODUCT, DELETE): can_write_product,
    (USER, READ): can_read_user,
    (USER, UPDATE): can_manage_users,
    (USER, DELETE): can_manage_users,
    (LOG, READ): can_read_log,
    (REPORT, EXPORT): can_export_reports,
    (DASHBOARD, READ): can_view_dashboard,
}


def evaluate(actor: Any, operation: str, resource: str, row: Any = None, **kwargs: Any) -> bool:
    """
    Decide allow/deny for `operation` on `resource`.

    For item operations `row` is the parent submission. Submission inserts take
    the prospective owner id as `row`; log inserts take the actor id.
    Unknown (resource, operation) pairs are denied.
    """
    if resource == SUBMISSION and operation == INSERT:
        return can_insert_submission(actor, row)
    if resource == LOG and operation == INSERT:
        return can_insert_log(actor, row)
    rule = _RULES.get((resource, operation))
    if rule is None:
        return False
    return bool(rule(actor, row, **kwargs))


def authorize(actor: Any, operation: str, resource: str, row: Any = None, **kwargs: Any) -> None:
    """Raise AuthorizationError unless the policy allows the operation."""
    if not evaluate(actor, operation, resource, row, **kwargs):
        raise AuthorizationError(f"Not allowed to {operation} this {resource}.")
