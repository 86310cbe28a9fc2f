"""Tests for the error code registry."""

import re

import pytest

from src.errors import (
    AuditWriteError,
    ConflictError,
    DomainError,
    LockedError,
    MissingMandatoryFieldsError,
    NotFoundError,
    RedactionInputError,
    ValidationError,
)
from src.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    get_error,
    get_errors_by_category,
)

_PREFIX_BY_CATEGORY = {
    ErrorCategory.LOOKUP: "E-1",
    ErrorCategory.VALIDATION: "E-2",
    ErrorCategory.RECORD_STATE: "E-3",
    ErrorCategory.SYSTEM: "E-4",
}


class TestRegistry:
    def test_codes_match_keys_and_format(self):
        for key, error in ERROR_REGISTRY.items():
            assert error.code == key
            assert re.fullmatch(r"E-\d{4}", key)

    def test_codes_sit_in_their_category_range(self):
        for error in ERROR_REGISTRY.values():
            assert error.code.startswith(_PREFIX_BY_CATEGORY[error.category])

    def test_every_error_has_remediation(self):
        for error in ERROR_REGISTRY.values():
            assert error.title
            assert error.remediation

    def test_get_error_unknown(self):
        assert get_error("E-9999") is None

    def test_get_errors_by_category(self):
        codes = {e.code for e in get_errors_by_category(ErrorCategory.RECORD_STATE)}
        assert codes == {"E-3001", "E-3003"}

    def test_conflict_is_retryable(self):
        assert get_error("E-3003").is_retryable
        assert not get_error("E-3001").is_retryable


@pytest.mark.parametrize(
    "exc,code,status",
    [
        (DomainError("boom"), "E-4001", 500),
        (NotFoundError("Incident", "i-1"), "E-1001", 404),
        (ValidationError("bad"), "E-2001", 400),
        (MissingMandatoryFieldsError("i-1", ["behavior"]), "E-2002", 400),
        (RedactionInputError("bad names"), "E-2004", 400),
        (LockedError("Incident", "i-1", "signed", "update"), "E-3001", 423),
        (ConflictError("stale", 1, 2), "E-3003", 409),
        (AuditWriteError("i-1", 2, "update", {"behavior": {}}, "t-1"), "E-4002", 500),
    ],
)
def test_domain_errors_map_to_registered_codes(exc, code, status):
    assert exc.code == code
    assert exc.http_status == status
    assert get_error(code) is not None
