import hmac
import secrets

from flask import Request, session

CSRF_EXEMPT_ENDPOINTS = frozenset({"auth.login"})
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate the CSRF token from the X-CSRF-Token header or the JSON body."""
    token = req.headers.get("X-CSRF-Token")
    if not token and req.is_json:
        json_data = req.get_json(silent=True)
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and hmac.compare_digest(str(token), expected))


def csrf_required(req: Request) -> bool:
    if req.method in SAFE_METHODS:
        return False
    return (req.endpoint or "") not in CSRF_EXEMPT_ENDPOINTS
