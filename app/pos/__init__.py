import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, render_template, request, session

from app.pos.admin import bp as admin_bp
from app.pos.auth import bp as auth_bp, load_current_user
from app.pos.config import load_config
from app.pos.db import init_db, teardown_db_session
from app.pos.errors import ActionError
from app.pos.money import peso
from app.pos.modules.cashier_shifts.admin import bp as cashier_shifts_bp
from app.pos.modules.catalog.admin import bp as catalog_bp
from app.pos.modules.clearance.admin import bp as clearance_bp
from app.pos.modules.customers.admin import bp as customers_bp
from app.pos.modules.dispatch.admin import bp as dispatch_bp
from app.pos.modules.fleet.admin import bp as fleet_bp
from app.pos.modules.orders.admin import bp as orders_bp
from app.pos.modules.pricing.admin import bp as pricing_bp
from app.pos.modules.remit.admin import bp as remit_bp
from app.pos.routes import bp as routes_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.logger.setLevel(app.config["LOG_LEVEL"])
    logging.getLogger("app.pos").setLevel(app.config["LOG_LEVEL"])

    # CSRF protection (minimal)
    from app.pos.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_roles() -> dict:
        from app.pos.rbac import user_has_role

        def has_role(*keys: str) -> bool:
            return user_has_role(getattr(g, "current_user", None), *keys)

        return {"has_role": has_role}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d %H:%M") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    app.add_template_filter(peso, "peso")

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/static/", "/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout carry no session token yet.
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

    if hasattr(os, "register_at_fork"):

        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp)
    app.register_blueprint(catalog_bp)
    app.register_blueprint(customers_bp)
    app.register_blueprint(pricing_bp)
    app.register_blueprint(fleet_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(dispatch_bp)
    app.register_blueprint(clearance_bp)
    app.register_blueprint(cashier_shifts_bp)
    app.register_blueprint(remit_bp)

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(ActionError)
    def _action_error(e: ActionError):
        # The request session may hold half-applied writes from the failed action.
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        level = logging.WARNING if e.status_code >= 403 else logging.INFO
        app.logger.log(
            level,
            "Action rejected (%s): %s endpoint=%s request_id=%s",
            e.status_code,
            e.message,
            request.endpoint,
            getattr(g, "request_id", None),
        )
        if request.is_json or request.accept_mimetypes.best == "application/json":
            return jsonify({"ok": False, "error": e.message}), e.status_code
        return render_template("errors/action.html", message=e.message, status_code=e.status_code), e.status_code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_role", None)
        if missing:
            app.logger.warning("Forbidden: missing_role=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_role=missing), 403

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
