from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, send_file, url_for

from app.breakage.constants import VALID_SUBMISSION_STATUSES
from app.breakage.db import db_session
from app.breakage.errors import ValidationError
from app.breakage.models import User
from app.breakage.modules.products.models import Product
from app.breakage.modules.reports.service import (
    REPORT_COLUMNS,
    ReportFilters,
    build_photo_archive,
    export_filename,
    query_report_rows,
    record_export,
    render_csv,
    render_xlsx,
)
from app.breakage.rbac import require_admin
from app.breakage.storage import storage_from_config

bp = Blueprint("reports", __name__)

_PREVIEW_LIMIT = 100


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _filters_or_redirect():
    try:
        return ReportFilters.from_args(request.args), None
    except ValidationError as e:
        for msg in e.errors:
            flash(msg, "danger")
        return None, redirect(url_for("reports.reports_index"))


@bp.get("/reports")
@require_admin
def reports_index():
    s = db_session()
    u = _current_user()
    try:
        filters = ReportFilters.from_args(request.args)
    except ValidationError as e:
        for msg in e.errors:
            flash(msg, "danger")
        filters = ReportFilters()

    rows = query_report_rows(s, u, filters)
    return render_template(
        "reports/index.html",
        columns=REPORT_COLUMNS,
        rows=rows[:_PREVIEW_LIMIT],
        total_rows=len(rows),
        filters=filters.as_dict(),
        statuses=VALID_SUBMISSION_STATUSES,
        users=s.query(User).order_by(User.name.asc()).all(),
        products=s.query(Product).order_by(Product.name.asc()).all(),
        query_string=request.query_string.decode("utf-8", "replace"),
    )


@bp.get("/reports/export.csv")
@require_admin
def reports_export_csv():
    s = db_session()
    u = _current_user()
    filters, bounce = _filters_or_redirect()
    if bounce:
        return bounce
    rows = query_report_rows(s, u, filters)
    data = render_csv(rows)
    record_export(s, u, fmt="csv", filters=filters, row_count=len(rows))
    s.commit()
    return send_file(
        io.BytesIO(data),
        mimetype="text/csv",
        as_attachment=True,
        download_name=export_filename("Breakage_Report", "csv", date.today()),
    )


@bp.get("/reports/export.xlsx")
@require_admin
def reports_export_xlsx():
    s = db_session()
    u = _current_user()
    filters, bounce = _filters_or_redirect()
    if bounce:
        return bounce
    rows = query_report_rows(s, u, filters)
    data = render_xlsx(rows)
    record_export(s, u, fmt="xlsx", filters=filters, row_count=len(rows))
    s.commit()
    return send_file(
        io.BytesIO(data),
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        as_attachment=True,
        download_name=export_filename("Breakage_Report", "xlsx", date.today()),
    )


@bp.get("/reports/photos.zip")
@require_admin
def reports_photos_zip():
    s = db_session()
    u = _current_user()
    filters, bounce = _filters_or_redirect()
    if bounce:
        return bounce
    rows = query_report_rows(s, u, filters)
    archive = build_photo_archive(
        storage_from_config(current_app.config),
        rows,
        workers=int(current_app.config.get("EXPORT_FETCH_WORKERS") or 4),
        timeout=float(current_app.config.get("EXPORT_FETCH_TIMEOUT") or 60.0),
    )
    if archive.failed:
        current_app.logger.warning(
            "Report photo ZIP: %s of %s photo(s) missing (request_id=%s)",
            len(archive.failed),
            archive.requested,
            getattr(g, "request_id", None),
        )
    record_export(s, u, fmt="zip", filters=filters, row_count=len(rows), archive=archive)
    s.commit()

    resp = send_file(
        io.BytesIO(archive.data),
        mimetype="application/zip",
        as_attachment=True,
        download_name=export_filename("Breakage_Photos", "zip", date.today()),
    )
    resp.headers["X-Photos-Requested"] = str(archive.requested)
    resp.headers["X-Photos-Included"] = str(archive.completed)
    return resp
