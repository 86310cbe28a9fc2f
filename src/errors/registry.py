"""Error code registry with E-XXXX format codes.

This module defines the error code system for incident capture, organizing
errors into categories:
- E-1xxx: Lookup errors
- E-2xxx: Validation errors
- E-3xxx: Record state errors
- E-4xxx: System/internal errors

Each error includes a code, title, message template, and remediation steps.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    LOOKUP = "lookup"  # E-1xxx: Lookup errors
    VALIDATION = "validation"  # E-2xxx: Validation errors
    RECORD_STATE = "record_state"  # E-3xxx: Record state errors
    SYSTEM = "system"  # E-4xxx: System/internal errors


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str  # E-XXXX format
    category: ErrorCategory
    title: str  # Short title for display
    message_template: str  # Message with {placeholders}
    remediation: str  # Action user should take
    is_retryable: bool = False  # Can be retried without user action


# Error registry - all defined error codes
ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Lookup errors (E-1xxx)
    "E-1001": ErrorCode(
        code="E-1001",
        category=ErrorCategory.LOOKUP,
        title="Record Not Found",
        message_template="{resource_type} '{identifier}' was not found.",
        remediation="Check the identifier, or reload the page to pick up deleted records.",
    ),
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Incident Data",
        message_template="The submitted changes are not valid: {reason}",
        remediation="Correct the highlighted fields and submit again.",
    ),
    "E-2002": ErrorCode(
        code="E-2002",
        category=ErrorCategory.VALIDATION,
        title="Missing Required Field",
        message_template="The incident cannot be signed until these fields are filled: {fields}.",
        remediation="Complete the missing fields in the ABC form, then sign again.",
    ),
    "E-2003": ErrorCode(
        code="E-2003",
        category=ErrorCategory.VALIDATION,
        title="Invalid Message",
        message_template="The conversation message is not valid: {reason}",
        remediation="Send a non-empty message with role user, assistant or system.",
    ),
    "E-2004": ErrorCode(
        code="E-2004",
        category=ErrorCategory.VALIDATION,
        title="Invalid Redaction Names",
        message_template="The list of names to redact is malformed: {reason}",
        remediation="Pass a list of student names as plain text strings.",
    ),
    # Record state errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.RECORD_STATE,
        title="Record Locked",
        message_template="{resource_type} '{identifier}' is {current_status} and cannot {attempted}.",
        remediation="Signed incidents are final. Ask an administrator if a correction is required.",
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.RECORD_STATE,
        title="Edit Conflict",
        message_template="The incident was changed by someone else while you were editing.",
        remediation="Reload the incident to see the latest version and apply your changes again.",
        is_retryable=True,
    ),
    # System errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.SYSTEM,
        title="Database Error",
        message_template="Database operation failed: {reason}",
        remediation="This is a system error. Retry the operation. Contact support if issue persists.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.SYSTEM,
        title="Audit Entry Not Recorded",
        message_template="Incident '{incident_id}' was saved but its change history could not be recorded.",
        remediation="Do not retry the edit. Contact support so the missing history entry can be reconciled.",
    ),
    "E-4003": ErrorCode(
        code="E-4003",
        category=ErrorCategory.SYSTEM,
        title="Extraction Failed",
        message_template="The incident details could not be extracted from the conversation: {reason}",
        remediation="Add more detail about what happened before, during and after the incident, then try again.",
        is_retryable=True,
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category.

    Args:
        category: The error category to filter by.

    Returns:
        List of ErrorCode objects in the specified category.
    """
    return [e for e in ERROR_REGISTRY.values() if e.category == category]
