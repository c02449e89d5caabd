from __future__ import annotations

from collections.abc import Callable
from typing import Any

from flask import abort, request

_TRUE = {"1", "true", "yes", "on", "y", "t"}
_FALSE = {"0", "false", "no", "off", "n", "f", ""}


def parse_bool(v: Any, default: bool = False) -> bool:
    """Accept JSON booleans as well as the usual form/query spellings."""
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return bool(v)
    text = str(v).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"not a boolean: {v!r}")


def parse_int(v: Any) -> int | None:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, int):
        return v
    text = str(v).strip()
    if not text:
        return None
    return int(text)


def clean_str(v: Any) -> str | None:
    """Strip strings; empty becomes None."""
    if v is None:
        return None
    text = str(v).strip()
    return text or None


def json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        abort(400, description="Request body must be a JSON object.")
    return payload


def pagination_args(default_size: int = 50, max_size: int = 200) -> tuple[int, int]:
    try:
        page = max(int(request.args.get("page") or 1), 1)
        page_size = int(request.args.get("page_size") or default_size)
    except ValueError:
        abort(400, description="page and page_size must be integers.")
    return page, min(max(page_size, 1), max_size)


def query_int(name: str) -> int | None:
    raw = request.args.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError:
        abort(400, description=f"{name} must be an integer.")


def coerce_payload(payload: dict, fields: dict[str, Callable[[Any], Any]]) -> tuple[dict[str, Any], list[str]]:
    """Pick known keys from a JSON payload and convert them. Unknown keys are ignored."""
    values: dict[str, Any] = {}
    errors: list[str] = []
    for key, conv in fields.items():
        if key not in payload:
            continue
        try:
            values[key] = conv(payload[key])
        except (TypeError, ValueError):
            errors.append(f"Invalid value for {key}.")
    return values, errors
