"""
Centralized HTTP exceptions for consistent error handling.

Domain services raise these; FastAPI turns them into responses, so the
mapping from error kind to status code lives in exactly one place.

Usage:
    from shared.utils.exceptions import NotFoundError, InvalidStateError

    raise NotFoundError("Order", order_id)
    raise InvalidStateError("Only SERVED orders can generate a bill", order_id=order.id)
"""

from enum import Enum
from typing import Any

from fastapi import HTTPException, status

from shared.config.logging import get_logger

logger = get_logger(__name__)


class ErrorKind(str, Enum):
    """Fixed set of failure kinds surfaced by the consistency layer."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    CONFLICT = "conflict"
    GATEWAY = "gateway"
    INTERNAL = "internal"


class AppException(HTTPException):
    """
    Base exception with automatic logging.

    ``log_context`` is logged with the error (entity ids, gateway names) but is
    never part of the response body.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        status_code: int,
        detail: str,
        log_level: str = "warning",
        headers: dict[str, str] | None = None,
        **log_context: Any,
    ):
        log_fn = getattr(logger, log_level, logger.warning)
        log_fn(detail, status_code=status_code, kind=self.kind.value, **log_context)

        self.log_context = log_context
        super().__init__(status_code=status_code, detail=detail, headers=headers)


# =============================================================================
# 404 Not Found Errors
# =============================================================================


class NotFoundError(AppException):
    """
    Entity not found error (404).

    Usage:
        raise NotFoundError("Order", order_id)
        raise NotFoundError("Menu item", restaurant_id=restaurant_id)
    """

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id: str | None = None, **log_context: Any):
        if entity_id is not None:
            detail = f"{entity} {entity_id} not found"
        else:
            detail = f"{entity} not found"

        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
            log_level="warning",
            entity=entity,
            entity_id=entity_id,
            **log_context,
        )


# =============================================================================
# 400 Bad Request Errors
# =============================================================================


class ValidationError(AppException):
    """
    Input validation error (400).

    Usage:
        raise ValidationError("items are required")
        raise ValidationError("Invalid quantity", field="quantity", value=-1)
    """

    kind = ErrorKind.VALIDATION

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail,
            log_level="warning",
            **log_context,
        )


class InvalidStateError(ValidationError):
    """Entity is in an invalid state for the operation."""

    kind = ErrorKind.INVALID_STATE


class InvalidTransitionError(InvalidStateError):
    """Invalid status transition."""

    def __init__(self, entity: str, from_status: str, to_status: str, **log_context: Any):
        detail = f"Invalid transition from '{from_status}' to '{to_status}' for {entity}"
        super().__init__(detail, entity=entity, from_status=from_status, to_status=to_status, **log_context)


class MissingDataError(InvalidStateError):
    """A required association (e.g. the order's table) is missing."""


class PaymentAmountError(ValidationError):
    """Payment amount validation error."""

    def __init__(self, amount_cents: int, reason: str, **log_context: Any):
        detail = f"Invalid payment amount ({amount_cents}): {reason}"
        super().__init__(detail, amount_cents=amount_cents, **log_context)


# =============================================================================
# 409 Conflict Errors
# =============================================================================


class ConflictError(AppException):
    """
    Resource conflict error (409).

    Only raised when a uniqueness race cannot be resolved by returning the
    winning entity.
    """

    kind = ErrorKind.CONFLICT

    def __init__(self, detail: str, **log_context: Any):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
            log_level="error",
            **log_context,
        )


# =============================================================================
# 5xx Errors
# =============================================================================


class GatewayError(AppException):
    """
    Payment gateway returned something we cannot interpret (502),
    or is unavailable (503).
    """

    kind = ErrorKind.GATEWAY

    def __init__(
        self,
        gateway: str,
        reason: str,
        is_unavailable: bool = False,
        retry_after: int | None = None,
        **log_context: Any,
    ):
        if is_unavailable:
            status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            detail = f"Payment gateway {gateway} temporarily unavailable"
        else:
            status_code = status.HTTP_502_BAD_GATEWAY
            detail = f"Unexpected response from payment gateway {gateway}"

        headers = {"Retry-After": str(retry_after)} if retry_after else None
        self.reason = reason

        super().__init__(
            status_code=status_code,
            detail=detail,
            log_level="error",
            headers=headers,
            gateway=gateway,
            reason=reason,
            **log_context,
        )
