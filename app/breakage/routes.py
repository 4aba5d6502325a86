from flask import Blueprint, g, redirect, render_template

from app.breakage.auth import home_for

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    user = getattr(g, "current_user", None)
    if user:
        return redirect(home_for(user))
    return render_template("public/index.html")


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """Fast health check for container probes. No DB access."""
    return "ok", 200
