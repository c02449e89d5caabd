from flask import Blueprint, current_app
from sqlalchemy import text

from app.adminhub.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint: DB ping plus the audit write failure counter."""
    status = {"ok": True, "db_connected": False, "audit_write_failures": 0}
    try:
        db_session().execute(text("SELECT 1"))
        status["db_connected"] = True
    except Exception as e:
        current_app.logger.error("Health check DB ping failed: %s", e)
        status["ok"] = False
    trail = current_app.extensions.get("audit_trail")
    if trail is not None:
        status["audit_write_failures"] = trail.write_failures
    return status, 200 if status["ok"] else 503


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s/DO probes. No DB access, minimal overhead.
    """
    return "ok", 200
