"""Typed domain exceptions for API error mapping.

These exceptions carry enough structure (codes, current status, attempted
transition, versions) for callers to render a user-facing message without
parsing strings. Routes catch them through a single exception handler that
maps each type to an HTTP status.

Usage:
    # In service layer
    raise NotFoundError("Incident", incident_id)

    # In route handler (via the registered exception handler)
    except LockedError as e:
        return JSONResponse(status_code=423, content=format_domain_error(e))
"""

from typing import Any


class DomainError(Exception):
    """Base exception for all domain errors."""

    code = "E-4001"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def context(self) -> dict[str, Any]:
        """Structured details for error responses."""
        return {}


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    code = "E-1001"
    http_status = 404

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier

    def context(self) -> dict[str, Any]:
        return {"resource_type": self.resource_type, "identifier": self.identifier}


class ValidationError(DomainError):
    """Validation failure (missing mandatory field, malformed patch). Maps to HTTP 400."""

    code = "E-2001"
    http_status = 400

    def __init__(self, message: str, fields: list[str] | None = None) -> None:
        super().__init__(message)
        self.fields = list(fields or [])

    def context(self) -> dict[str, Any]:
        return {"fields": self.fields}


class MissingMandatoryFieldsError(ValidationError):
    """Incident cannot be signed until mandatory fields are filled."""

    code = "E-2002"

    def __init__(self, incident_id: str, missing: list[str]) -> None:
        super().__init__(
            f"Incident '{incident_id}' cannot be signed; missing required "
            f"field(s): {', '.join(missing)}",
            fields=missing,
        )
        self.incident_id = incident_id


class RedactionInputError(ValidationError):
    """Identifier list passed to the redactor is malformed. Maps to HTTP 400."""

    code = "E-2004"


class LockedError(DomainError):
    """Mutation attempted on a record that no longer accepts it. Maps to HTTP 423.

    Attributes:
        resource_type: 'Incident' or 'Conversation'.
        identifier: Record id.
        current_status: Status the record is in.
        attempted: Transition or operation the caller tried.
    """

    code = "E-3001"
    http_status = 423

    def __init__(
        self,
        resource_type: str,
        identifier: str,
        current_status: str,
        attempted: str,
    ) -> None:
        super().__init__(
            f"{resource_type} '{identifier}' is {current_status}; "
            f"cannot {attempted}"
        )
        self.resource_type = resource_type
        self.identifier = identifier
        self.current_status = current_status
        self.attempted = attempted

    def context(self) -> dict[str, Any]:
        return {
            "resource_type": self.resource_type,
            "identifier": self.identifier,
            "current_status": self.current_status,
            "attempted": self.attempted,
        }


class ConflictError(DomainError):
    """Resource conflict (lost concurrent-write race). Maps to HTTP 409."""

    code = "E-3003"
    http_status = 409

    def __init__(
        self,
        message: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        super().__init__(message)
        self.expected_version = expected_version
        self.actual_version = actual_version

    def context(self) -> dict[str, Any]:
        return {
            "expected_version": self.expected_version,
            "actual_version": self.actual_version,
        }


class AuditWriteError(DomainError):
    """A mutation was committed but its audit entry could not be written.

    Worse than an ordinary failure: the change exists but is unaudited.
    Carries the unpersisted diff so operators can reconcile. Maps to HTTP 500.
    """

    code = "E-4002"
    http_status = 500

    def __init__(
        self,
        incident_id: str,
        incident_version: int,
        kind: str,
        changes: dict[str, Any],
        acting_user: str,
    ) -> None:
        super().__init__(
            f"Incident '{incident_id}' version {incident_version} was saved "
            f"but its {kind} audit entry was not recorded"
        )
        self.incident_id = incident_id
        self.incident_version = incident_version
        self.kind = kind
        self.changes = changes
        self.acting_user = acting_user

    def context(self) -> dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "incident_version": self.incident_version,
            "kind": self.kind,
            "changed_fields": sorted(self.changes),
        }
