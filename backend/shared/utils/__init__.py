"""
Utilities module: Exceptions, schemas.
"""

from shared.utils.exceptions import (
    ErrorKind,
    AppException,
    NotFoundError,
    ValidationError,
    InvalidStateError,
    ConflictError,
    GatewayError,
)

__all__ = [
    "ErrorKind",
    "AppException",
    "NotFoundError",
    "ValidationError",
    "InvalidStateError",
    "ConflictError",
    "GatewayError",
]
