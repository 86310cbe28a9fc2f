"""Error handling framework for incident capture.

This package provides:
- Error code registry with E-XXXX format codes
- Typed domain exceptions raised by the service layer
- Error formatting utilities

Error categories:
- E-1xxx: Lookup errors
- E-2xxx: Validation errors
- E-3xxx: Record state errors
- E-4xxx: System/internal errors
"""

from src.errors.domain import (
    AuditWriteError,
    ConflictError,
    DomainError,
    LockedError,
    MissingMandatoryFieldsError,
    NotFoundError,
    RedactionInputError,
    ValidationError,
)
from src.errors.formatter import (
    IncidentCaptureError,
    format_domain_error,
    format_error,
)
from src.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    # Domain
    "DomainError",
    "NotFoundError",
    "ValidationError",
    "MissingMandatoryFieldsError",
    "RedactionInputError",
    "LockedError",
    "ConflictError",
    "AuditWriteError",
    # Formatter
    "IncidentCaptureError",
    "format_error",
    "format_domain_error",
]
