"""Error taxonomy raised by the bookkeeping services.

``status_code`` mirrors the HTTP status a web layer would answer with, so
callers can translate errors without a lookup table of their own.
"""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import ValidationError


class LedgerError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailed(LedgerError):
    """Malformed or out-of-policy input, rejected before any write."""

    status_code = 422

    def __init__(self, errors: Mapping[str, str], message: str | None = None) -> None:
        self.errors: dict[str, str] = dict(errors)
        detail = "; ".join(f"{field}: {reason}" for field, reason in self.errors.items())
        super().__init__(message or detail or "Invalid input")

    @classmethod
    def from_pydantic(cls, exc: ValidationError) -> "ValidationFailed":
        errors: dict[str, str] = {}
        for item in exc.errors():
            field = ".".join(str(part) for part in item.get("loc", ())) or "__root__"
            errors.setdefault(field, item.get("msg", "Invalid value"))
        return cls(errors)

    @classmethod
    def single(cls, field: str, reason: str) -> "ValidationFailed":
        return cls({field: reason})


class ConsistencyError(LedgerError):
    """The operation would break an invariant between stored rows."""

    status_code = 409


class InvalidStateTransition(ConsistencyError):
    def __init__(self, entity: str, current: Any, target: Any) -> None:
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(f"{entity} cannot move from {current_value} to {target_value}")
        self.entity = entity
        self.current = current
        self.target = target


class NotFoundError(LedgerError):
    status_code = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class AccessDenied(LedgerError):
    """The actor does not own the row, or the row is a shared system row."""

    status_code = 403

    def __init__(self, entity: str, entity_id: Any, reason: str | None = None) -> None:
        super().__init__(reason or f"{entity} {entity_id} does not belong to this user")
        self.entity = entity
        self.entity_id = entity_id
