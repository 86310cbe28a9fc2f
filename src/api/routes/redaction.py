"""API route for ad-hoc student-name redaction.

Stateless: the identifiers are supplied per call and never stored.
"""

from fastapi import APIRouter

from src.api.schemas import RedactRequest, RedactResponse
from src.utils.redaction import redact

router = APIRouter(prefix="/redact", tags=["redaction"])


@router.post("", response_model=RedactResponse)
def redact_text(body: RedactRequest) -> RedactResponse:
    """Replace whole-word student names in text with the placeholder.

    A malformed identifier list is rejected with 400 before any output
    is produced.
    """
    return RedactResponse(text=redact(body.text, body.identifiers))
