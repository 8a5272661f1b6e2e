# Overview: Typed error taxonomy shared by every service and the operation surface.

"""
Engine error taxonomy.

Every business failure is a subclass of EngineError carrying a stable
machine-readable `code`, a human message and a `details` dict. The operation
surface (ordercore.operations) turns these into `{success: False, error: ...}`
values, and the HTTP layer maps `code` to a status via ERROR_HTTP_STATUS.

Anything that is NOT an EngineError (IntegrityError from a CHECK constraint,
programming errors) is an unexpected internal fault.
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for expected, caller-visible business failures."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFound(EngineError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})


class ValidationError(EngineError, ValueError):
    """Input rejected at the boundary, before any mutation."""

    code = "VALIDATION_ERROR"


class NoValidOrders(ValidationError):
    code = "NO_VALID_ORDERS"


class LeadCancelled(ValidationError):
    code = "LEAD_CANCELLED"


class InvalidTransition(EngineError):
    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, channel: str, reason: str | None = None):
        message = f"cannot move from {from_status} to {to_status} ({channel})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            {"from": from_status, "to": to_status, "channel": channel},
        )
        self.from_status = from_status
        self.to_status = to_status
        self.channel = channel


class InsufficientStock(EngineError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, variant_id: int, requested: int, available: int):
        super().__init__(
            f"variant {variant_id}: requested {requested}, available {available}",
            {"variant_id": variant_id, "requested": requested, "available": available},
        )
        self.variant_id = variant_id
        self.requested = requested
        self.available = available


class InvalidAmount(EngineError):
    code = "INVALID_AMOUNT"


class AlreadyProcessed(EngineError):
    code = "ALREADY_PROCESSED"


class AlreadyConverted(AlreadyProcessed):
    code = "ALREADY_CONVERTED"

    def __init__(self, lead_id: int, order_id: int | None):
        super().__init__(
            f"lead {lead_id} is already converted",
            {"lead_id": lead_id, "order_id": order_id},
        )
        self.order_id = order_id


class ConcurrencyConflict(EngineError):
    """Lock contention that outlived the bounded retry loop. Safe to retry."""

    code = "CONCURRENCY_CONFLICT"


class ImmutableRecordError(EngineError):
    """An append-only audit row was about to be updated or deleted."""

    code = "IMMUTABLE_RECORD"


ERROR_HTTP_STATUS = {
    NotFound.code: 404,
    ValidationError.code: 400,
    NoValidOrders.code: 400,
    LeadCancelled.code: 409,
    InvalidTransition.code: 409,
    InsufficientStock.code: 409,
    InvalidAmount.code: 422,
    AlreadyProcessed.code: 409,
    AlreadyConverted.code: 409,
    ConcurrencyConflict.code: 503,
    ImmutableRecordError.code: 500,
}
