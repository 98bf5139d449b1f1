from __future__ import annotations

from typing import Any, Dict


class CirculationError(Exception):
    """
    Base class for every failure the engine reports to its callers.

    `code` is a stable machine-readable tag the HTTP layer can map to a status
    code; `message` is the human-readable reason shown to the user.
    """

    code = "error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            payload["context"] = dict(self.details)
        return payload


class ValidationError(CirculationError):
    """Malformed input; the caller can fix it and try again."""

    code = "invalid"


class NotFoundError(CirculationError):
    """Unknown student, book, transaction or fine."""

    code = "not_found"


class ConflictError(CirculationError):
    """The row exists but its current state forbids the operation."""

    code = "conflict"


class PolicyViolationError(CirculationError):
    """Borrowing cap exceeded or the student is blocked."""

    code = "policy_violation"


class StoreError(CirculationError):
    """The ledger store failed; the enclosing unit was rolled back."""

    code = "store_error"
