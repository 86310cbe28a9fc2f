"""Error formatting utilities.

This module provides:
- IncidentCaptureError exception class for application errors
- Error formatting for user display
- Translation of typed domain errors into registry-backed responses
"""

from dataclasses import dataclass, field

from src.errors.domain import DomainError
from src.errors.registry import get_error


@dataclass
class IncidentCaptureError(Exception):
    """Application error with code, message, and context.

    Attributes:
        code: Error code in E-XXXX format.
        message: Human-readable error message.
        remediation: Action user should take to resolve.
        fields: Affected incident field names, if applicable.
        is_retryable: Whether the operation can be retried without user action.
        details: Additional context dictionary.
    """

    code: str
    message: str
    remediation: str
    fields: list[str] = field(default_factory=list)  # Affected field names
    is_retryable: bool = False
    details: dict = field(default_factory=dict)  # Additional context

    def __str__(self) -> str:
        """Return string representation of the error."""
        return f"{self.code}: {self.message}"

    @classmethod
    def from_code(cls, code: str, **kwargs: object) -> "IncidentCaptureError":
        """Create error from registry code with context substitution.

        Args:
            code: Error code in E-XXXX format.
            **kwargs: Context values for message template substitution.
                Special keys 'fields' and 'details' are used for
                IncidentCaptureError fields rather than message substitution.

        Returns:
            IncidentCaptureError instance with formatted message.
        """
        fields = kwargs.get("fields", [])
        if not isinstance(fields, list):
            fields = []
        details = kwargs.get("details", {})
        if not isinstance(details, dict):
            details = {}

        error_def = get_error(code)
        if not error_def:
            return cls(
                code=code,
                message=f"Unknown error: {code}",
                remediation="Contact support.",
                fields=fields,
                details=details,
            )

        template_kwargs = {k: v for k, v in kwargs.items() if k != "details"}
        if isinstance(template_kwargs.get("fields"), list):
            template_kwargs["fields"] = ", ".join(str(f) for f in fields)
        try:
            message = error_def.message_template.format(**template_kwargs)
        except KeyError:
            # Keep template if some placeholders are missing
            message = error_def.message_template

        return cls(
            code=error_def.code,
            message=message,
            remediation=error_def.remediation,
            fields=fields,
            is_retryable=error_def.is_retryable,
            details=details,
        )

    @classmethod
    def from_domain(cls, exc: DomainError) -> "IncidentCaptureError":
        """Build a registry-backed error from a typed domain exception."""
        context = exc.context()
        return cls.from_code(
            exc.code,
            reason=exc.message,
            details={"reason": exc.message, **context},
            **{k: v for k, v in context.items() if k not in ("details", "reason")},
        )


def format_error(error: IncidentCaptureError, include_remediation: bool = True) -> str:
    """Format error for display to user.

    Args:
        error: The IncidentCaptureError to format.
        include_remediation: Whether to include remediation steps.

    Returns:
        Multi-line formatted string suitable for user display.
    """
    lines = [f"{error.code}: {error.message}"]

    if error.fields:
        lines.append(f"  Fields: {', '.join(error.fields)}")

    if include_remediation:
        lines.append(f"  Action: {error.remediation}")

    return "\n".join(lines)


def format_domain_error(exc: DomainError) -> dict:
    """Render a domain exception as a JSON-serializable error body."""
    error = IncidentCaptureError.from_domain(exc)
    return {
        "code": error.code,
        "message": error.message,
        "remediation": error.remediation,
        "is_retryable": error.is_retryable,
        "details": error.details,
    }
