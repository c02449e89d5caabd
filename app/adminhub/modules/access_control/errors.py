from __future__ import annotations


class AccessControlError(RuntimeError):
    pass


class ConfigurationError(AccessControlError):
    """Malformed route map entry or policy. Raised at startup/admin time, never at decision time."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or []


class StoreError(AccessControlError):
    """A lookup against the relational store failed. Callers must fail closed."""


class StoreTimeoutError(StoreError):
    pass
