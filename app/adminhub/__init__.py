import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from app.adminhub.audit import AuditTrail
from app.adminhub.auth import bp as auth_bp, load_current_user
from app.adminhub.config import load_config
from app.adminhub.db import init_db, session_scope, teardown_db_session
from app.adminhub.modules.access_control.admin import bp as access_control_bp
from app.adminhub.modules.access_control.guard import install_access_guard
from app.adminhub.modules.access_control.service import check_access_configuration
from app.adminhub.modules.audit_logs.admin import bp as audit_logs_bp
from app.adminhub.modules.users.admin import bp as users_bp
from app.adminhub.routes import bp as routes_bp
from app.adminhub.security import csrf_required, ensure_csrf_token, validate_csrf


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    root.setLevel(level)
    logging.getLogger("app.adminhub").setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _configure_logging(app.config["LOG_LEVEL"])

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
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    trail = AuditTrail(app.extensions["sqlalchemy_sessionmaker"])
    trail.install()
    app.extensions["audit_trail"] = trail

    # Malformed route map rows or policy operators stop the app from booting.
    with session_scope(app) as s:
        route_count = check_access_configuration(s)
    app.logger.info("Access configuration OK (%d route mapping(s))", route_count)

    api_prefix = app.config["API_PREFIX"]
    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(users_bp, url_prefix=api_prefix)
    app.register_blueprint(access_control_bp, url_prefix=api_prefix)
    app.register_blueprint(audit_logs_bp, url_prefix=api_prefix)

    def _error_response(status: int, message: str):
        return jsonify({"error": message, "request_id": getattr(g, "request_id", None)}), status

    # Order matters: user first, then CSRF, then the access decision.
    app.before_request(load_current_user)

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        session.permanent = True
        if not csrf_required(request):
            return None
        ensure_csrf_token()
        if not validate_csrf(request):
            return _error_response(400, "CSRF token missing or invalid.")
        return None

    install_access_guard(app)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return _error_response(e.code or 500, e.description or e.name)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return _error_response(500, "Internal server error.")

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
