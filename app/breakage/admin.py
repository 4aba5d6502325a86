from datetime import date, datetime, timedelta

from flask import Blueprint, flash, g, render_template, request
from sqlalchemy import func

from app.breakage import policy
from app.breakage.audit import entry_details, list_entries
from app.breakage.db import db_session
from app.breakage.models import User
from app.breakage.modules.products.models import Product
from app.breakage.modules.submissions.models import Submission
from app.breakage.modules.submissions.service import status_counts
from app.breakage.rbac import require_admin
from app.breakage.utils import parse_date

bp = Blueprint("admin", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _date_arg(name: str) -> date | None:
    raw = (request.args.get(name) or "").strip()
    try:
        return parse_date(raw)
    except ValueError:
        flash(f"{name} must be YYYY-MM-DD", "danger")
        return None


@bp.get("/")
@require_admin
def index():
    s = db_session()
    u = _current_user()
    policy.authorize(u, policy.READ, policy.DASHBOARD)

    today_start = datetime.combine(date.today(), datetime.min.time())
    by_status = status_counts(s)
    counts = {
        "pending": by_status["pending"],
        "approved": by_status["approved"],
        "rejected": by_status["rejected"],
        "total": sum(by_status.values()),
        "today": s.query(func.count(Submission.id))
        .filter(Submission.created_at >= today_start, Submission.created_at < today_start + timedelta(days=1))
        .scalar()
        or 0,
        "products": s.query(func.count(Product.id)).scalar() or 0,
        "users": s.query(func.count(User.id)).scalar() or 0,
    }
    recent = s.query(Submission).order_by(Submission.created_at.desc(), Submission.id.desc()).limit(10).all()
    return render_template("admin/index.html", counts=counts, recent=recent)


@bp.get("/activity")
@require_admin
def activity():
    """
    Activity log (last 200 entries) with simple filters:
    - action (contains)
    - actor_email (contains)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    entries = list_entries(
        s,
        _current_user(),
        action=action,
        actor_email=actor_email,
        date_from=_date_arg("date_from"),
        date_to=_date_arg("date_to"),
    )
    return render_template(
        "activity/list.html",
        entries=[(e, entry_details(e)) for e in entries],
        show_actor=True,
        action=action,
        actor_email=actor_email,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )
