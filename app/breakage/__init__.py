import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, flash, g, redirect, render_template, request, session, url_for

from app.breakage.admin import bp as admin_bp
from app.breakage.auth import bp as auth_bp, load_current_user
from app.breakage.config import load_config
from app.breakage.db import init_db, teardown_db_session
from app.breakage.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.breakage.modules.products.admin import bp as products_bp
from app.breakage.modules.reports.admin import bp as reports_bp
from app.breakage.modules.submissions.admin import bp as submissions_bp
from app.breakage.modules.users.admin import bp as users_bp
from app.breakage.routes import bp as routes_bp
from app.breakage.storage import StorageError


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    app.logger.setLevel(app.config["LOG_LEVEL"])
    logging.getLogger("app.breakage").setLevel(app.config["LOG_LEVEL"])

    # CSRF protection (minimal)
    from app.breakage.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_user() -> dict:
        from app.breakage import policy

        user = getattr(g, "current_user", None)
        return {"current_user": user, "is_admin": policy.is_admin(user)}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow safe auth endpoints to pass through (login/logout/register)
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage config check (log loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(reports_bp, url_prefix="/admin")
    app.register_blueprint(submissions_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(users_bp)

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(AuthorizationError)
    def _err_authorization(e: AuthorizationError):
        app.logger.warning(
            "Forbidden: %s user_id=%s request_id=%s",
            e.message,
            getattr(getattr(g, "current_user", None), "id", None),
            getattr(g, "request_id", None),
        )
        return render_template("errors/403.html", message=e.message), 403

    @app.errorhandler(NotFoundError)
    def _err_not_found(e: NotFoundError):
        return render_template("errors/404.html", message=e.message), 404

    @app.errorhandler(ConflictError)
    def _err_conflict(e: ConflictError):
        return render_template("errors/409.html", message=e.message), 409

    @app.errorhandler(ValidationError)
    def _err_validation(e: ValidationError):
        return render_template("errors/400.html", message="; ".join(e.errors)), 400

    @app.errorhandler(StorageError)
    def _err_storage(e: StorageError):
        if getattr(g, "db_session", None) is not None:
            g.db_session.rollback()
        app.logger.warning("Storage error: %s request_id=%s", e.message, getattr(g, "request_id", None))
        flash("Photo storage is unavailable right now. Please try again.", "danger")
        return _redirect_back()

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        denied = getattr(g, "denied_capability", None)
        if denied:
            app.logger.warning("Forbidden: missing capability=%s request_id=%s", denied, getattr(g, "request_id", None))
        return render_template("errors/403.html", message=None), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html", message=None), 404

    @app.errorhandler(409)
    def _err_409(e):  # type: ignore[no-redef]
        return render_template("errors/409.html", message=None), 409

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        flash("Upload too large. Maximum request size is 50MB.", "danger")
        return _redirect_back()

    def _redirect_back():
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("routes.index")), 302

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
