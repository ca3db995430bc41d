from datetime import timedelta

from flask import Flask, flash, g, jsonify, redirect, render_template, request, session, url_for
from dotenv import load_dotenv

from app.saaskit.config import load_config
from app.saaskit.db import init_db, teardown_db_session
from app.saaskit.errors import ServiceError
from app.saaskit.extensions import RATE_LIMIT_MESSAGE, limiter
from app.saaskit.routes import bp as routes_bp
from app.saaskit.auth import bp as auth_bp, load_current_user
from app.saaskit.admin import bp as admin_bp
from app.saaskit.modules.accounts.routes import bp as accounts_bp
from app.saaskit.modules.organizations.routes import bp as team_bp
from app.saaskit.modules.projects.routes import bp as projects_bp
from app.saaskit.modules.projects.api import bp as projects_api_bp
from app.saaskit.modules.billing.routes import bp as billing_bp
from app.saaskit.modules.blog.routes import bp as blog_bp
from app.saaskit.modules.blog.admin import bp as blog_admin_bp
from app.saaskit.modules.files.routes import bp as files_bp

# Endpoints that authenticate without the session cookie.
CSRF_EXEMPT_ENDPOINTS = ("billing.stripe_webhook",)


def _wants_json() -> bool:
    if request.path.startswith("/api/"):
        return True
    if request.is_json:
        return True
    return request.accept_mimetypes.best == "application/json"


def create_app(config_overrides: dict | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    if config_overrides:
        app.config.update(config_overrides)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    limiter.init_app(app)

    # CSRF protection (minimal)
    from app.saaskit.api_auth import bearer_token
    from app.saaskit.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.saaskit.rbac import is_admin, user_has_permission

        user = getattr(g, "current_user", None)

        def has_perm(key: str) -> bool:
            return user_has_permission(user, key)

        return {"has_perm": has_perm, "current_user": user, "user_is_admin": is_admin(user)}

    @app.context_processor
    def _inject_unread() -> dict:
        from sqlalchemy.exc import SQLAlchemyError

        from app.saaskit import dal

        user = getattr(g, "current_user", None)
        if not user:
            return {"unread_notifications": 0}
        # Error pages must still render when the database is down.
        try:
            return {"unread_notifications": dal.get_unread_notification_count(user.id)}
        except SQLAlchemyError:
            app.logger.exception("Failed to count unread notifications")
            return {"unread_notifications": 0}

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
            endpoint = request.endpoint or ""
            # Allow safe auth endpoints to pass through (login/logout)
            if endpoint.startswith("auth.") or endpoint in CSRF_EXEMPT_ENDPOINTS:
                return None
            # API keys are not ambient credentials; a session cookie is.
            if bearer_token() and not session.get("user_id"):
                return None
            if not validate_csrf(request):
                if _wants_json():
                    return jsonify({"error": "CSRF token missing or invalid."}), 400
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
        if app.config.get("STRIPE_WEBHOOK_ENABLED") and not app.config.get("STRIPE_WEBHOOK_SECRET"):
            raise RuntimeError("STRIPE_WEBHOOK_SECRET is required when the Stripe webhook is enabled.")
        if app.config.get("RATELIMIT_STORAGE_URI", "").startswith("memory"):
            app.logger.warning("Rate limits use in-memory storage; counters are per worker process.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = []
        for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
            if not app.config.get(key):
                missing_s3.append(key)
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            from botocore.exceptions import BotoCoreError, ClientError

            from app.saaskit.storage import S3Storage, storage_from_config

            try:
                storage = storage_from_config(app.config)
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except (BotoCoreError, ClientError) as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(accounts_bp)
    app.register_blueprint(team_bp)
    app.register_blueprint(projects_bp)
    app.register_blueprint(projects_api_bp, url_prefix="/api/projects")
    app.register_blueprint(billing_bp)
    app.register_blueprint(blog_bp)
    app.register_blueprint(files_bp)
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(blog_admin_bp, url_prefix="/admin")

    def _load_user_wrapper():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    # Runs before the CSRF guard so g.request_id and g.current_user are always set.
    app.before_request_funcs.setdefault(None, []).insert(0, _load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(ServiceError)
    def _service_error(e: ServiceError):
        from app.saaskit.errors import ValidationError

        if e.status_code == 403:
            g.missing_permission = getattr(g, "missing_permission", None) or "ability"
        if _wants_json():
            if isinstance(e, ValidationError):
                return jsonify({"error": "Invalid data", "details": e.errors}), 400
            return jsonify({"error": e.message}), e.status_code
        if e.status_code == 403:
            return _err_403(e)
        if e.status_code == 404:
            return render_template("errors/404.html"), 404
        if e.status_code == 400:
            return render_template("errors/400.html", message=e.message), 400
        app.logger.error("Service error (request_id=%s): %s", getattr(g, "request_id", None), e.message)
        return render_template("errors/500.html"), e.status_code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        # Ensure stack trace shows in logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        if _wants_json():
            return jsonify({"error": "Internal server error"}), 500
        return render_template("errors/500.html"), 500

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        if _wants_json():
            return jsonify({"error": "Bad request"}), 400
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(401)
    def _err_401(e):  # type: ignore[no-redef]
        if _wants_json():
            return jsonify({"error": "Not authenticated"}), 401
        return redirect(url_for("auth.login_get", next=request.path))

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        if _wants_json():
            return jsonify({"error": "Not authorized"}), 403
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        if _wants_json():
            return jsonify({"error": "Not found"}), 404
        return render_template("errors/404.html"), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        max_mb = (app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        if _wants_json():
            return jsonify({"error": f"File too large. Maximum size is {max_mb}MB."}), 413
        flash(f"File too large. Maximum size is {max_mb}MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("routes.index")), 302

    @app.errorhandler(429)
    def _err_429(e):  # type: ignore[no-redef]
        app.logger.warning("Rate limit hit: %s %s (request_id=%s)", request.method, request.path, getattr(g, "request_id", None))
        endpoint = request.endpoint or ""
        if _wants_json() or endpoint in ("blog.post_like", "blog.post_view"):
            return jsonify({"success": False, "message": RATE_LIMIT_MESSAGE}), 429
        flash(RATE_LIMIT_MESSAGE, "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(request.path), 302

    # Startup logging
    import logging
    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
