from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from app.adminhub.modules.access_control.errors import ConfigurationError

logger = logging.getLogger(__name__)

HTTP_METHODS = frozenset({"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"})


@dataclass(frozen=True)
class FeatureRef:
    id: int
    name: str


@dataclass(frozen=True)
class RouteEntry:
    id: int | None
    path: str
    method: str | None
    feature: FeatureRef


def normalize_path(path: str) -> str:
    path = (path or "").split("?", 1)[0].strip()
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def normalize_method(method: str | None) -> str | None:
    m = (method or "").strip().upper()
    return m or None


def validate_route(path: str | None, method: str | None) -> list[str]:
    errors = []
    p = (path or "").strip()
    if not p:
        errors.append("Path is required.")
    elif not p.startswith("/"):
        errors.append(f"Path must start with '/' (got {p!r}).")
    elif any(seg == ":" for seg in p.split("/")):
        errors.append(f"Path parameter without a name in {p!r}.")
    m = normalize_method(method)
    if m is not None and m not in HTTP_METHODS:
        errors.append(f"Unknown HTTP method {method!r}.")
    return errors


@dataclass(frozen=True)
class _CompiledRoute:
    entry: RouteEntry
    segments: tuple[str, ...]
    param_count: int

    def matches(self, segments: list[str]) -> bool:
        if len(segments) != len(self.segments):
            return False
        for pattern, actual in zip(self.segments, segments):
            if pattern.startswith(":"):
                if not actual:
                    return False
                continue
            if pattern != actual:
                return False
        return True

    def rank(self, method: str | None) -> tuple[int, tuple[int, ...], int]:
        # Fewer parameters first; on ties, the earliest literal segment wins; then exact method,
        # then a GET row serving HEAD, then NULL.
        literal_mask = tuple(1 if s.startswith(":") else 0 for s in self.segments)
        if self.entry.method is None:
            method_rank = 2
        else:
            method_rank = 0 if self.entry.method == method else 1
        return (self.param_count, literal_mask, method_rank)


class RouteMap:
    """
    Resolves a concrete request path against stored path patterns.

    Patterns use ``:name`` segments (``/api/v1/users/:id``). A literal pattern beats
    a parameterised one, and for the same pattern a row with an explicit method
    beats the ``method = NULL`` row. HEAD requests also match GET rows.
    """

    def __init__(self, routes: list[_CompiledRoute]):
        self._routes = routes

    @classmethod
    def from_entries(cls, entries: Iterable[RouteEntry], *, strict: bool = True) -> "RouteMap":
        compiled: list[_CompiledRoute] = []
        problems: list[str] = []
        for e in entries:
            errors = validate_route(e.path, e.method)
            if errors:
                msg = f"route_features#{e.id}: " + " ".join(errors)
                if strict:
                    problems.append(msg)
                else:
                    logger.error("Skipping malformed route mapping %s", msg)
                continue
            path = normalize_path(e.path)
            segments = tuple(path.split("/"))
            entry = RouteEntry(id=e.id, path=path, method=normalize_method(e.method), feature=e.feature)
            compiled.append(
                _CompiledRoute(
                    entry=entry,
                    segments=segments,
                    param_count=sum(1 for s in segments if s.startswith(":")),
                )
            )
        if problems:
            raise ConfigurationError("Malformed route mappings", problems)
        return cls(compiled)

    def __len__(self) -> int:
        return len(self._routes)

    def resolve(self, path: str, method: str | None) -> RouteEntry | None:
        segments = normalize_path(path).split("/")
        m = normalize_method(method)
        # HEAD is a bodiless GET: rows mapped to GET guard it too.
        accepted = {None, m, "GET"} if m == "HEAD" else {None, m}
        candidates = [r for r in self._routes if r.entry.method in accepted and r.matches(segments)]
        if not candidates:
            return None
        return min(candidates, key=lambda r: r.rank(m)).entry
