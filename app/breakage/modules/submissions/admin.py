from __future__ import annotations

import io
import re

from flask import (
    Blueprint,
    abort,
    current_app,
    flash,
    g,
    redirect,
    render_template,
    request,
    send_file,
    url_for,
)

from app.breakage import policy
from app.breakage.constants import PHOTO_CONTENT_TYPES, STATUS_PENDING, VALID_OPERATION_TYPES, VALID_SUBMISSION_STATUSES
from app.breakage.db import db_session
from app.breakage.errors import ConflictError, ValidationError
from app.breakage.models import User
from app.breakage.modules.products.models import Product
from app.breakage.modules.reports.service import (
    build_photo_archive,
    record_export,
    rows_for_submission,
    submission_archive_filename,
)
from app.breakage.modules.submissions.service import (
    ItemInput,
    PhotoSettings,
    PhotoUpload,
    add_item,
    amend_comment,
    create_submission,
    decide_submission,
    delete_item,
    delete_submission,
    first_photo,
    get_item,
    get_submission,
    list_pending,
    list_submissions_for,
    update_item,
    update_submission_title,
)
from app.breakage.rbac import require_admin, require_login
from app.breakage.storage import StorageError, is_remote_reference, storage_from_config
from app.breakage.utils import parse_date, parse_int

bp = Blueprint("submissions", __name__)

_ITEM_KEY_RE = re.compile(r"^items-(\d+)-")


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _photo_settings() -> PhotoSettings:
    return PhotoSettings(max_bytes=int(current_app.config.get("PHOTO_MAX_BYTES") or 5 * 1024 * 1024))


def _flash_errors(e: ValidationError) -> None:
    for msg in e.errors:
        flash(msg, "danger")


def _int_field(form, name: str) -> int | None:
    try:
        return parse_int(form.get(name))
    except ValueError:
        return None


def _uploads(files) -> list[PhotoUpload]:
    out = []
    for f in files:
        # Browsers send an empty part for untouched file inputs.
        if not f or not (f.filename or "").strip():
            continue
        out.append(PhotoUpload(filename=f.filename, data=f.read(), content_type=f.mimetype or None))
    return out


def _item_from_form(form, files, prefix: str = "") -> ItemInput:
    return ItemInput(
        product_id=_int_field(form, f"{prefix}product_id"),
        quantity=_int_field(form, f"{prefix}quantity"),
        reason=form.get(f"{prefix}reason") or "",
        operation_type=(form.get(f"{prefix}operation_type") or "").strip(),
        photos=_uploads(files.getlist(f"{prefix}photos")),
    )


def _items_from_form(form, files) -> list[ItemInput]:
    """Items are posted as items-<n>-<field>; rows are kept in index order."""
    indexes = set()
    for key in list(form.keys()) + list(files.keys()):
        m = _ITEM_KEY_RE.match(key)
        if m:
            indexes.add(int(m.group(1)))
    return [_item_from_form(form, files, prefix=f"items-{idx}-") for idx in sorted(indexes)]


def _products(s) -> list[Product]:
    return s.query(Product).order_by(Product.name.asc()).all()


def _photo_url(submission_id: int, item, n: int) -> str:
    return url_for("submissions.item_photo", submission_id=submission_id, item_id=item.id, n=n)


# ---------- History ----------
@bp.get("/submissions")
@require_login
def history():
    s = db_session()
    u = _current_user()
    status = (request.args.get("status") or "").strip()
    try:
        date_from = parse_date(request.args.get("date_from"))
        date_to = parse_date(request.args.get("date_to"))
    except ValueError:
        flash("Dates must be YYYY-MM-DD.", "danger")
        date_from = date_to = None
    try:
        user_id = parse_int(request.args.get("user_id"))
    except ValueError:
        user_id = None

    show_owner = policy.is_admin(u)
    submissions = list_submissions_for(
        s, u, status=status, date_from=date_from, date_to=date_to, user_id=user_id if show_owner else None
    )
    return render_template(
        "submissions/list.html",
        submissions=submissions,
        show_owner=show_owner,
        users=s.query(User).order_by(User.name.asc()).all() if show_owner else [],
        user_id=user_id,
        statuses=VALID_SUBMISSION_STATUSES,
        status=status,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )


# ---------- New ----------
@bp.get("/submissions/new")
@require_login
def new_get():
    s = db_session()
    return render_template(
        "submissions/new.html",
        products=_products(s),
        operation_types=VALID_OPERATION_TYPES,
    )


@bp.post("/submissions/new")
@require_login
def new_post():
    s = db_session()
    u = _current_user()
    try:
        submission = create_submission(
            s,
            u,
            title=request.form.get("title"),
            items=_items_from_form(request.form, request.files),
            storage=storage_from_config(current_app.config),
            photo_settings=_photo_settings(),
        )
    except ValidationError as e:
        s.rollback()
        _flash_errors(e)
        return redirect(url_for("submissions.new_get"))
    except StorageError as e:
        s.rollback()
        current_app.logger.warning("Photo upload failed (request_id=%s): %s", getattr(g, "request_id", None), e)
        flash("Photo upload failed. Please try again.", "danger")
        return redirect(url_for("submissions.new_get"))

    s.commit()
    flash("Submission sent for approval.", "success")
    return redirect(url_for("submissions.detail", submission_id=submission.id))


# ---------- Detail ----------
@bp.get("/submissions/<int:submission_id>")
@require_login
def detail(submission_id: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    editable = policy.can_update_item(u, submission)
    return render_template(
        "submissions/detail.html",
        submission=submission,
        editable=editable,
        can_delete=policy.can_delete_submission(u, submission),
        photo_url=_photo_url,
    )


@bp.post("/submissions/<int:submission_id>/edit")
@require_login
def edit_post(submission_id: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    try:
        update_submission_title(s, u, submission, request.form.get("title"))
    except ConflictError as e:
        s.rollback()
        flash(e.message, "warning")
        return redirect(url_for("submissions.detail", submission_id=submission_id))
    s.commit()
    flash("Submission updated.", "success")
    return redirect(url_for("submissions.detail", submission_id=submission_id))


@bp.post("/submissions/<int:submission_id>/delete")
@require_login
def delete_post(submission_id: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    try:
        delete_submission(s, u, submission, storage=storage_from_config(current_app.config))
    except ConflictError as e:
        s.rollback()
        flash(e.message, "warning")
        return redirect(url_for("submissions.detail", submission_id=submission_id))
    s.commit()
    flash("Submission deleted.", "success")
    if policy.is_admin(u) and submission.user_id != u.id:
        return redirect(url_for("submissions.approvals"))
    return redirect(url_for("submissions.history"))


# ---------- Items ----------
@bp.get("/submissions/<int:submission_id>/items/new")
@require_login
def item_new_get(submission_id: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    if submission.status != STATUS_PENDING:
        flash(f"Submission is already {submission.status} and can no longer be edited.", "warning")
        return redirect(url_for("submissions.detail", submission_id=submission_id))
    policy.authorize(u, policy.INSERT, policy.ITEM, submission)
    return render_template(
        "submissions/item_form.html",
        submission=submission,
        item=None,
        products=_products(s),
        operation_types=VALID_OPERATION_TYPES,
        photo_url=_photo_url,
    )


@bp.post("/submissions/<int:submission_id>/items/new")
@require_login
def item_new_post(submission_id: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    try:
        add_item(
            s,
            u,
            submission,
            _item_from_form(request.form, request.files),
            storage=storage_from_config(current_app.config),
            photo_settings=_photo_settings(),
        )
    except ValidationError as e:
        s.rollback()
        _flash_errors(e)
        return redirect(url_for("submissions.item_new_get", submission_id=submission_id))
    except ConflictError as e:
        s.rollback()
        flash(e.message, "warning")
        return redirect(url_for("submissions.detail", submission_id=submission_id))
    except StorageError as e:
        s.rollback()
        current_app.logger.warning("Photo upload failed (request_id=%s): %s", getattr(g, "request_id", None), e)
        flash("Photo upload failed. Please try again.", "danger")
        return redirect(url_for("submissions.item_new_get", submission_id=submission_id))

    s.commit()
    flash("Item added.", "success")
    return redirect(url_for("submissions.detail", submission_id=submission_id))


@bp.get("/submissions/<int:submission_id>/items/<int:item_id>/edit")
@require_login
def item_edit_get(submission_id: int, item_id: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    item = get_item(s, u, submission, item_id)
    if submission.status != STATUS_PENDING:
        flash(f"Submission is already {submission.status} and can no longer be edited.", "warning")
        return redirect(url_for("submissions.detail", submission_id=submission_id))
    policy.authorize(u, policy.UPDATE, policy.ITEM, submission)
    return render_template(
        "submissions/item_form.html",
        submission=submission,
        item=item,
        products=_products(s),
        operation_types=VALID_OPERATION_TYPES,
        photo_url=_photo_url,
    )


@bp.post("/submissions/<int:submission_id>/items/<int:item_id>/edit")
@require_login
def item_edit_post(submission_id: int, item_id: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    item = get_item(s, u, submission, item_id)

    remove = set()
    for raw in request.form.getlist("remove_photo"):
        try:
            remove.add(int(raw))
        except ValueError:
            continue

    try:
        update_item(
            s,
            u,
            submission,
            item,
            _item_from_form(request.form, request.files),
            remove_photos=remove,
            storage=storage_from_config(current_app.config),
            photo_settings=_photo_settings(),
        )
    except ValidationError as e:
        s.rollback()
        _flash_errors(e)
        return redirect(url_for("submissions.item_edit_get", submission_id=submission_id, item_id=item_id))
    except ConflictError as e:
        s.rollback()
        flash(e.message, "warning")
        return redirect(url_for("submissions.detail", submission_id=submission_id))
    except StorageError as e:
        s.rollback()
        current_app.logger.warning("Photo upload failed (request_id=%s): %s", getattr(g, "request_id", None), e)
        flash("Photo upload failed. Please try again.", "danger")
        return redirect(url_for("submissions.item_edit_get", submission_id=submission_id, item_id=item_id))

    s.commit()
    flash("Item updated.", "success")
    return redirect(url_for("submissions.detail", submission_id=submission_id))


@bp.post("/submissions/<int:submission_id>/items/<int:item_id>/delete")
@require_login
def item_delete_post(submission_id: int, item_id: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    item = get_item(s, u, submission, item_id)
    try:
        delete_item(s, u, submission, item, storage=storage_from_config(current_app.config))
    except ValidationError as e:
        s.rollback()
        _flash_errors(e)
        return redirect(url_for("submissions.detail", submission_id=submission_id))
    except ConflictError as e:
        s.rollback()
        flash(e.message, "warning")
        return redirect(url_for("submissions.detail", submission_id=submission_id))
    s.commit()
    flash("Item removed.", "success")
    return redirect(url_for("submissions.detail", submission_id=submission_id))


# ---------- Media ----------
@bp.get("/submissions/<int:submission_id>/items/<int:item_id>/photos/<int:n>")
@require_login
def item_photo(submission_id: int, item_id: int, n: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    item = get_item(s, u, submission, item_id)
    photos = item.photos or []
    if n < 0 or n >= len(photos):
        abort(404)
    ref = photos[n]
    if is_remote_reference(ref):
        return redirect(ref)

    storage = storage_from_config(current_app.config)
    try:
        data = storage.get_bytes(ref)
    except StorageError as e:
        current_app.logger.warning("Photo read failed for item %s (request_id=%s): %s", item_id, getattr(g, "request_id", None), e)
        abort(404)
    ext = ref.rsplit(".", 1)[-1].lower() if "." in ref else ""
    return send_file(io.BytesIO(data), mimetype=PHOTO_CONTENT_TYPES.get(ext, "application/octet-stream"), max_age=300)


@bp.get("/submissions/<int:submission_id>/photos.zip")
@require_login
def photos_zip(submission_id: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    rows = rows_for_submission(submission)
    archive = build_photo_archive(
        storage_from_config(current_app.config),
        rows,
        workers=int(current_app.config.get("EXPORT_FETCH_WORKERS") or 4),
        timeout=float(current_app.config.get("EXPORT_FETCH_TIMEOUT") or 60.0),
    )
    if archive.failed:
        current_app.logger.warning(
            "Submission %s photo ZIP: %s of %s photo(s) missing", submission_id, len(archive.failed), archive.requested
        )
    record_export(s, u, fmt="zip", row_count=len(rows), archive=archive, submission_id=submission.id)
    s.commit()

    resp = send_file(
        io.BytesIO(archive.data),
        mimetype="application/zip",
        as_attachment=True,
        download_name=submission_archive_filename(submission),
    )
    resp.headers["X-Photos-Requested"] = str(archive.requested)
    resp.headers["X-Photos-Included"] = str(archive.completed)
    return resp


# ---------- Approvals (admin) ----------
@bp.get("/admin/approvals")
@require_admin
def approvals():
    s = db_session()
    u = _current_user()
    pending = list_pending(s, u)
    previews = {}
    for sub in pending:
        hit = first_photo(sub)
        if hit:
            item, n = hit
            previews[sub.id] = _photo_url(sub.id, item, n)
    return render_template("approvals/list.html", submissions=pending, previews=previews)


@bp.get("/admin/approvals/<int:submission_id>")
@require_admin
def approval_detail(submission_id: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    return render_template("approvals/detail.html", submission=submission, photo_url=_photo_url)


@bp.post("/admin/approvals/<int:submission_id>/decide")
@require_admin
def decide(submission_id: int):
    s = db_session()
    u = _current_user()
    decision = (request.form.get("decision") or "").strip().lower()
    try:
        submission = decide_submission(s, u, submission_id, decision=decision, comments=request.form.get("comments"))
    except ValidationError as e:
        s.rollback()
        _flash_errors(e)
        return redirect(url_for("submissions.approval_detail", submission_id=submission_id))
    except ConflictError as e:
        s.rollback()
        flash(e.message, "warning")
        return redirect(url_for("submissions.approvals"))

    s.commit()
    flash(f"Submission {submission.id} {submission.status}.", "success")
    return redirect(url_for("submissions.approvals"))


@bp.post("/admin/submissions/<int:submission_id>/comment")
@require_admin
def comment_post(submission_id: int):
    s = db_session()
    u = _current_user()
    submission = get_submission(s, u, submission_id)
    amend_comment(s, u, submission, request.form.get("comments"))
    s.commit()
    flash("Comment saved.", "success")
    return redirect(url_for("submissions.detail", submission_id=submission_id))
