"""Typed business errors raised by the engine.

Every error carries a stable ``code`` and the HTTP status the API layer
maps it to. Messages are user-facing: the client shows them verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID


class EngineError(Exception):
    """Base class for all business-rule violations."""

    code = "ENGINE_ERROR"
    http_status = 400

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "code": self.code}
        for key, value in self.context.items():
            payload[key] = str(value) if isinstance(value, UUID) else value
        return payload


class ValidationError(EngineError):
    """Malformed or missing input."""

    code = "VALIDATION_ERROR"
    http_status = 422

    def __init__(self, message: str, field: str | None = None, **context: Any):
        self.field = field
        if field is not None:
            context["field"] = field
        super().__init__(message, **context)


class ConflictError(EngineError):
    """Overlapping entries, duplicate open timer, overlapping rate windows."""

    code = "CONFLICT"
    http_status = 409


class InvalidStateError(EngineError):
    """Transition not legal from the current state."""

    code = "INVALID_STATE"
    http_status = 409

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        **context: Any,
    ):
        self.current_state = current_state
        if current_state is not None:
            context["current_state"] = current_state
        super().__init__(message, **context)


class NotFoundError(EngineError):
    """Entity absent (or invisible to the caller's organization)."""

    code = "NOT_FOUND"
    http_status = 404


class ForbiddenError(EngineError):
    """Permission check failure or entity owned by someone else."""

    code = "FORBIDDEN"
    http_status = 403


class CurrencyMismatchError(EngineError):
    """Aggregation across incompatible currencies."""

    code = "CURRENCY_MISMATCH"
    http_status = 422

    def __init__(self, currencies: set[str] | list[str], message: str | None = None):
        self.currencies = sorted(set(currencies))
        super().__init__(
            message or f"Cannot combine amounts in different currencies: {', '.join(self.currencies)}",
            currencies=self.currencies,
        )


class DeliveryError(EngineError):
    """Outbound delivery (e-mail) failed."""

    code = "DELIVERY_FAILED"
    http_status = 502


@dataclass(frozen=True)
class BatchItemFailure:
    """Why a single item of a batch operation was rejected."""

    item_id: UUID
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"item_id": str(self.item_id), "code": self.code, "message": self.message}


class BatchOperationError(EngineError):
    """An all-or-nothing batch was aborted; nothing was written."""

    code = "BATCH_REJECTED"
    http_status = 409

    def __init__(self, failures: list[BatchItemFailure]):
        self.failures = failures
        first = failures[0]
        super().__init__(
            f"Batch rejected: {len(failures)} item(s) failed; first: {first.item_id}: {first.message}",
            failures=[f.to_dict() for f in failures],
        )
