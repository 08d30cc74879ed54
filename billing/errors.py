from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class BillingError(Exception):
    """Base class for caller-correctable errors.

    ``context`` carries what the caller needs to retry or fix the input
    (current status, attempted transition, versions, ...).
    """

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
        return f"{self.message} ({details})"


class MissingCurrency(BillingError):
    def __init__(self, message: str = "No currency could be resolved", **context: Any) -> None:
        super().__init__(message, **context)


class IncompleteDocument(BillingError):
    def __init__(self, missing: Iterable[str], **context: Any) -> None:
        self.missing = list(missing)
        super().__init__("Document is incomplete", missing=self.missing, **context)


class InvalidTransition(BillingError):
    def __init__(self, current: str, target: str, **context: Any) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move from '{current}' to '{target}'", current=current, target=target, **context
        )


class DocumentFrozen(BillingError):
    def __init__(self, status: str, fields: Iterable[str], **context: Any) -> None:
        self.status = status
        self.fields = sorted(fields)
        super().__init__(
            "Document is frozen, use an amendment", status=status, fields=self.fields, **context
        )


class Conflict(BillingError):
    def __init__(self, expected: Optional[int], actual: Optional[int], **context: Any) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            "Stale version, re-read and retry", expected=expected, actual=actual, **context
        )


class NotFound(BillingError):
    def __init__(self, entity: str, key: Any, **context: Any) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found", key=key, **context)


class ValidationError(BillingError):
    """Malformed input: bad line item, unknown field, empty amendment..."""


class StorageUnavailable(BillingError):
    """The backing store could not commit the unit of work."""
