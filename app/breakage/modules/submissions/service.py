"""
Submission service layer.
Handles submission/item CRUD, photo uploads and the approval state machine.
"""
from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from app.breakage import policy
from app.breakage.audit import record_event
from app.breakage.constants import (
    ALLOWED_PHOTO_EXTENSIONS,
    PHOTO_CONTENT_TYPES,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    VALID_OPERATION_TYPES,
    VALID_SUBMISSION_STATUSES,
)
from app.breakage.errors import ConflictError, NotFoundError, ValidationError
from app.breakage.models import User
from app.breakage.modules.products.models import Product
from app.breakage.storage import Storage, StorageError, discard_after_commit, remove_quietly, track_uploads
from app.breakage.utils import day_bounds

from .models import Item, Submission

logger = logging.getLogger(__name__)

# Valid status transitions
STATUS_TRANSITIONS = {
    STATUS_PENDING: {STATUS_APPROVED, STATUS_REJECTED},
    STATUS_APPROVED: set(),
    STATUS_REJECTED: set(),
}

DECISIONS = {
    "approve": STATUS_APPROVED,
    "reject": STATUS_REJECTED,
}


@dataclass(frozen=True)
class PhotoUpload:
    filename: str
    data: bytes
    content_type: str | None = None

    @property
    def extension(self) -> str:
        name = self.filename or ""
        return name.rsplit(".", 1)[-1].lower() if "." in name else ""


@dataclass
class ItemInput:
    product_id: int | None
    quantity: int | None
    reason: str
    operation_type: str
    photos: list[PhotoUpload] = field(default_factory=list)


@dataclass
class PhotoSettings:
    max_bytes: int = 5 * 1024 * 1024
    upload_workers: int = 4
    require_photo: bool = True


# ---------- Validation ----------
def photo_problems(photos: list[PhotoUpload], max_bytes: int) -> list[str]:
    errors = []
    for p in photos:
        if p.extension not in ALLOWED_PHOTO_EXTENSIONS:
            errors.append(f"{p.filename or 'Photo'}: unsupported file type.")
        elif len(p.data) > max_bytes:
            errors.append(f"{p.filename}: larger than {max_bytes // (1024 * 1024)} MB.")
        elif not p.data:
            errors.append(f"{p.filename}: file is empty.")
    return errors


def item_problems(s: Session, item: ItemInput, *, label: str, require_photo: bool, max_bytes: int) -> list[str]:
    errors = []
    if item.product_id is None or s.get(Product, item.product_id) is None:
        errors.append(f"{label}: select a product.")
    if item.quantity is None or item.quantity <= 0:
        errors.append(f"{label}: quantity must be greater than zero.")
    if not (item.reason or "").strip():
        errors.append(f"{label}: reason is required.")
    if item.operation_type not in VALID_OPERATION_TYPES:
        errors.append(f"{label}: type must be one of {', '.join(VALID_OPERATION_TYPES)}.")
    if require_photo and not item.photos:
        errors.append(f"{label}: upload at least one photo.")
    errors.extend(f"{label}: {e}" for e in photo_problems(item.photos, max_bytes))
    return errors


# ---------- Photos ----------
def build_photo_key(owner_id: int, upload: PhotoUpload) -> str:
    """Unique storage key, organised per owner."""
    ext = upload.extension or "bin"
    return f"photos/{owner_id}/{uuid.uuid4().hex}.{ext}"


def store_photos(storage: Storage, owner_id: int, uploads: list[PhotoUpload], *, workers: int = 4) -> list[str]:
    """
    Upload photos concurrently and return their keys in upload order.
    Any failed upload raises StorageError after the photos that did land are removed.
    """
    if not uploads:
        return []
    keys = [build_photo_key(owner_id, u) for u in uploads]

    def _put(key: str, upload: PhotoUpload) -> str:
        content_type = upload.content_type or PHOTO_CONTENT_TYPES.get(upload.extension)
        storage.put_bytes(key, upload.data, content_type=content_type)
        return key

    stored: list[str] = []
    error: StorageError | None = None
    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(uploads)))) as pool:
        futures = [pool.submit(_put, key, upload) for key, upload in zip(keys, uploads)]
        for fut in futures:
            try:
                stored.append(fut.result())
            except StorageError as e:
                error = error or e
    if error is not None:
        remove_quietly(storage, stored)
        raise error
    return keys


def _store_item_photos(
    s: Session, storage: Storage, owner_id: int, uploads: list[PhotoUpload], ps: PhotoSettings
) -> list[str]:
    keys = store_photos(storage, owner_id, uploads, workers=ps.upload_workers)
    track_uploads(s, storage, keys)
    return keys


# ---------- Queries ----------
def get_submission(s: Session, actor: User, submission_id: int) -> Submission:
    submission = s.get(Submission, submission_id)
    if not submission:
        raise NotFoundError("Submission", submission_id)
    policy.authorize(actor, policy.READ, policy.SUBMISSION, submission)
    return submission


def get_item(s: Session, actor: User, submission: Submission, item_id: int) -> Item:
    item = s.get(Item, item_id)
    if not item or item.submission_id != submission.id:
        raise NotFoundError("Item", item_id)
    policy.authorize(actor, policy.READ, policy.ITEM, submission)
    return item


def list_submissions_for(
    s: Session,
    actor: User,
    *,
    status: str = "",
    date_from: date | None = None,
    date_to: date | None = None,
    user_id: int | None = None,
) -> list[Submission]:
    """
    Submission history, newest first.
    Users see their own submissions; admins see everyone's and may narrow to one owner.
    """
    q = s.query(Submission)
    if not policy.is_admin(actor):
        q = q.filter(Submission.user_id == actor.id)
    elif user_id is not None:
        q = q.filter(Submission.user_id == user_id)
    if status in VALID_SUBMISSION_STATUSES:
        q = q.filter(Submission.status == status)
    lo, hi = day_bounds(date_from, date_to)
    if lo:
        q = q.filter(Submission.created_at >= lo)
    if hi:
        q = q.filter(Submission.created_at < hi)
    rows = q.order_by(Submission.created_at.desc(), Submission.id.desc()).all()
    return [r for r in rows if policy.can_read_submission(actor, r)]


def list_pending(s: Session, actor: User) -> list[Submission]:
    policy.authorize(actor, policy.DECIDE, policy.SUBMISSION)
    return (
        s.query(Submission)
        .filter(Submission.status == STATUS_PENDING)
        .order_by(Submission.created_at.desc(), Submission.id.desc())
        .all()
    )


def first_photo(submission: Submission) -> tuple[Item, int] | None:
    for item in submission.items:
        if item.photos:
            return item, 0
    return None


# ---------- Edit guards ----------
def _guard_edit(actor: User, submission: Submission, operation: str, resource: str, **kwargs) -> None:
    """
    Readers that may not edit because the submission was decided get a state error;
    everyone else gets the plain policy denial.
    """
    policy.authorize(actor, policy.READ, policy.SUBMISSION, submission)
    if submission.status != STATUS_PENDING:
        raise ConflictError(f"Submission {submission.id} is already {submission.status} and can no longer be edited.")
    policy.authorize(actor, operation, resource, submission, **kwargs)


# ---------- Create ----------
def create_submission(
    s: Session,
    actor: User,
    *,
    title: str | None,
    items: list[ItemInput],
    storage: Storage,
    photo_settings: PhotoSettings | None = None,
) -> Submission:
    """Create a pending submission with its items. Photos are uploaded before any row is written."""
    ps = photo_settings or PhotoSettings()
    policy.authorize(actor, policy.INSERT, policy.SUBMISSION, actor.id)

    errors = []
    if not items:
        errors.append("Add at least one item.")
    for idx, item in enumerate(items, start=1):
        errors.extend(item_problems(s, item, label=f"Item {idx}", require_photo=ps.require_photo, max_bytes=ps.max_bytes))
    if errors:
        raise ValidationError(errors)

    photo_keys = [_store_item_photos(s, storage, actor.id, item.photos, ps) for item in items]

    now = datetime.utcnow()
    submission = Submission(
        user_id=actor.id,
        title=(title or "").strip() or None,
        status=STATUS_PENDING,
        created_at=now,
        updated_at=now,
    )
    for position, (item, keys) in enumerate(zip(items, photo_keys)):
        submission.items.append(
            Item(
                product_id=item.product_id,
                position=position,
                quantity=item.quantity,
                reason=item.reason.strip(),
                operation_type=item.operation_type,
                photos=keys,
                created_at=now,
                updated_at=now,
            )
        )
    s.add(submission)
    s.flush()

    record_event(
        s,
        actor=actor,
        action="submission.create",
        target_type="Submission",
        target_id=submission.id,
        details={
            "title": submission.title,
            "items": len(submission.items),
            "photos": sum(len(k) for k in photo_keys),
        },
    )
    logger.info("Submission %s created by user %s with %s item(s)", submission.id, actor.id, len(items))
    return submission


# ---------- Owner / admin edits while pending ----------
def update_submission_title(s: Session, actor: User, submission: Submission, title: str | None) -> Submission:
    _guard_edit(actor, submission, policy.UPDATE, policy.SUBMISSION, fields={"title"})

    new_title = (title or "").strip() or None
    if new_title != submission.title:
        old = submission.title
        submission.title = new_title
        submission.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=actor,
            action="submission.edit",
            target_type="Submission",
            target_id=submission.id,
            details={"title": {"old": old, "new": new_title}},
        )
    return submission


def add_item(
    s: Session,
    actor: User,
    submission: Submission,
    item: ItemInput,
    *,
    storage: Storage,
    photo_settings: PhotoSettings | None = None,
) -> Item:
    ps = photo_settings or PhotoSettings()
    _guard_edit(actor, submission, policy.INSERT, policy.ITEM)

    errors = item_problems(s, item, label="Item", require_photo=ps.require_photo, max_bytes=ps.max_bytes)
    if errors:
        raise ValidationError(errors)

    keys = _store_item_photos(s, storage, submission.user_id, item.photos, ps)
    now = datetime.utcnow()
    position = max((i.position for i in submission.items), default=-1) + 1
    row = Item(
        product_id=item.product_id,
        position=position,
        quantity=item.quantity,
        reason=item.reason.strip(),
        operation_type=item.operation_type,
        photos=keys,
        created_at=now,
        updated_at=now,
    )
    submission.items.append(row)
    submission.updated_at = now
    s.flush()

    record_event(
        s,
        actor=actor,
        action="item.create",
        target_type="Item",
        target_id=row.id,
        details={"submission_id": submission.id, "product_id": row.product_id, "quantity": row.quantity},
    )
    return row


def update_item(
    s: Session,
    actor: User,
    submission: Submission,
    item: Item,
    changes: ItemInput,
    *,
    remove_photos: set[int] | None = None,
    storage: Storage,
    photo_settings: PhotoSettings | None = None,
) -> Item:
    """Edit an item; new photos are appended, `remove_photos` are indexes into the current list."""
    ps = photo_settings or PhotoSettings()
    _guard_edit(actor, submission, policy.UPDATE, policy.ITEM)

    kept = [ref for idx, ref in enumerate(item.photos or []) if idx not in (remove_photos or set())]
    errors = item_problems(s, changes, label="Item", require_photo=False, max_bytes=ps.max_bytes)
    if ps.require_photo and not kept and not changes.photos:
        errors.append("Item: keep or upload at least one photo.")
    if errors:
        raise ValidationError(errors)

    new_keys = _store_item_photos(s, storage, submission.user_id, changes.photos, ps)

    diff = {}
    for attr, new in (
        ("product_id", changes.product_id),
        ("quantity", changes.quantity),
        ("reason", changes.reason.strip()),
        ("operation_type", changes.operation_type),
    ):
        old = getattr(item, attr)
        if new != old:
            diff[attr] = {"old": old, "new": new}
            setattr(item, attr, new)
    photos = kept + new_keys
    if photos != list(item.photos or []):
        diff["photos"] = {"removed": len(item.photos or []) - len(kept), "added": len(new_keys)}
        discard_after_commit(s, storage, [ref for ref in (item.photos or []) if ref not in kept])
        item.photos = photos

    if diff:
        now = datetime.utcnow()
        item.updated_at = now
        submission.updated_at = now
        record_event(
            s,
            actor=actor,
            action="item.edit",
            target_type="Item",
            target_id=item.id,
            details={"submission_id": submission.id, "changes": diff},
        )
    return item


def delete_item(s: Session, actor: User, submission: Submission, item: Item, *, storage: Storage | None = None) -> None:
    _guard_edit(actor, submission, policy.DELETE, policy.ITEM)
    if len(submission.items) <= 1:
        raise ValidationError("A submission needs at least one item. Delete the submission instead.")

    record_event(
        s,
        actor=actor,
        action="item.delete",
        target_type="Item",
        target_id=item.id,
        details={"submission_id": submission.id, "product_id": item.product_id, "quantity": item.quantity},
    )
    submission.items.remove(item)
    submission.updated_at = datetime.utcnow()
    s.flush()
    if storage is not None:
        discard_after_commit(s, storage, list(item.photos or []))


def delete_submission(s: Session, actor: User, submission: Submission, *, storage: Storage | None = None) -> None:
    """Delete a submission; its items go with it. Their photos are removed from `storage` on commit."""
    policy.authorize(actor, policy.READ, policy.SUBMISSION, submission)
    if not policy.is_admin(actor) and submission.status != STATUS_PENDING:
        raise ConflictError(f"Submission {submission.id} is already {submission.status} and can no longer be deleted.")
    policy.authorize(actor, policy.DELETE, policy.SUBMISSION, submission)

    record_event(
        s,
        actor=actor,
        action="submission.delete",
        target_type="Submission",
        target_id=submission.id,
        details={"owner_id": submission.user_id, "status": submission.status, "items": len(submission.items)},
    )
    if storage is not None:
        discard_after_commit(s, storage, [ref for item in submission.items for ref in (item.photos or [])])
    s.delete(submission)
    s.flush()


# ---------- Approval state machine ----------
def can_transition_to(current: str, new_status: str) -> tuple[bool, list[str]]:
    """Check whether a submission in `current` may move to `new_status`."""
    if current not in STATUS_TRANSITIONS:
        return False, [f"Current status '{current}' is invalid"]
    if new_status not in STATUS_TRANSITIONS[current]:
        return False, [f"Cannot transition from '{current}' to '{new_status}'"]
    return True, []


def decide_submission(
    s: Session,
    actor: User,
    submission_id: int,
    *,
    decision: str,
    comments: str | None = None,
) -> Submission:
    """
    Approve or reject a pending submission.

    The status change is a conditional UPDATE guarded on status = 'pending', so two
    admins deciding at once cannot both win: the loser matches zero rows and gets a
    ConflictError ("already decided") instead of overwriting the first decision.
    """
    new_status = DECISIONS.get((decision or "").strip().lower())
    if new_status is None:
        raise ValidationError(f"Invalid decision. Must be one of: {', '.join(DECISIONS)}")

    submission = s.get(Submission, submission_id)
    if not submission:
        raise NotFoundError("Submission", submission_id)
    policy.authorize(actor, policy.DECIDE, policy.SUBMISSION, submission)

    ok, _ = can_transition_to(submission.status, new_status)
    if not ok:
        raise ConflictError(f"Submission {submission_id} was already {submission.status}.")

    now = datetime.utcnow()
    # a blank decision comment keeps whatever was noted while pending
    comment = (comments or "").strip() or submission.comments
    result = s.execute(
        update(Submission)
        .where(Submission.id == submission_id, Submission.status == STATUS_PENDING)
        .values(
            status=new_status,
            comments=comment,
            decided_at=now,
            decided_by_user_id=actor.id,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        s.rollback()
        current = s.get(Submission, submission_id, populate_existing=True)
        status = current.status if current else "removed"
        logger.info("Decision conflict on submission %s (now %s) by user %s", submission_id, status, actor.id)
        raise ConflictError(f"Submission {submission_id} was already {status} by another reviewer.")

    record_event(
        s,
        actor=actor,
        action=f"submission.{decision.strip().lower()}",
        target_type="Submission",
        target_id=submission_id,
        details={"from": STATUS_PENDING, "to": new_status, "comments": comment},
    )
    return s.get(Submission, submission_id, populate_existing=True)


def amend_comment(s: Session, actor: User, submission: Submission, comments: str | None) -> Submission:
    """Reviewer comment stays editable by admins after a decision (record-keeping only)."""
    policy.authorize(actor, policy.UPDATE, policy.SUBMISSION, submission, fields={"comments"})
    new = (comments or "").strip() or None
    if new != submission.comments:
        old = submission.comments
        submission.comments = new
        submission.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=actor,
            action="submission.comment",
            target_type="Submission",
            target_id=submission.id,
            details={"old": old, "new": new, "status": submission.status},
        )
    return submission


# ---------- Aggregates ----------
def status_counts(s: Session, *, user_id: int | None = None) -> dict[str, int]:
    q = s.query(Submission.status, func.count(Submission.id))
    if user_id is not None:
        q = q.filter(Submission.user_id == user_id)
    counts = {st: 0 for st in VALID_SUBMISSION_STATUSES}
    for status, n in q.group_by(Submission.status).all():
        counts[status] = n
    return counts
