"""Student-name redaction for text sent to an LLM or shown to third parties.

Replaces whole-word, case-insensitive occurrences of known student names
with a fixed placeholder. A name only matches when it is not preceded or
followed by a word character, so "Emma" never matches inside "Emmaline"
and names containing punctuation ("O'Brien", "Mary-Kate") still work.

Redaction is idempotent: placeholders already present in the text are
consumed by the same pattern and written back unchanged, so running the
redactor twice never alters its first output, even when one of the
identifiers is the word "Student".
"""

import logging
import re
from collections.abc import Iterable, Mapping
from functools import lru_cache
from typing import Any

from src.errors.domain import RedactionInputError

logger = logging.getLogger(__name__)

STUDENT_PLACEHOLDER = "[Student]"


def normalize_identifiers(identifiers: Iterable[str] | None) -> tuple[str, ...]:
    """Validate and canonicalize a list of names to redact.

    Whitespace is stripped, blank entries are dropped and duplicates are
    collapsed case-insensitively, keeping the first spelling seen.

    Args:
        identifiers: Names to redact. None is treated as empty.

    Returns:
        Tuple of unique names, in input order.

    Raises:
        RedactionInputError: If identifiers is a bare string or a
            mapping, is not iterable, or contains a non-string member.
    """
    if identifiers is None:
        return ()
    if isinstance(identifiers, (str, bytes)):
        raise RedactionInputError(
            "Identifiers must be a list of names, not a single string",
            fields=["identifiers"],
        )
    if isinstance(identifiers, Mapping):
        raise RedactionInputError(
            "Identifiers must be a list of names, not a mapping",
            fields=["identifiers"],
        )
    try:
        items = list(identifiers)
    except TypeError as e:
        raise RedactionInputError(
            f"Identifiers must be a list of names, got {type(identifiers).__name__}",
            fields=["identifiers"],
        ) from e

    seen: set[str] = set()
    cleaned: list[str] = []
    for item in items:
        if not isinstance(item, str):
            raise RedactionInputError(
                f"Identifier entries must be strings, got {type(item).__name__}",
                fields=["identifiers"],
            )
        name = item.strip()
        key = name.casefold()
        if not name or key in seen:
            continue
        seen.add(key)
        cleaned.append(name)
    return tuple(cleaned)


@lru_cache(maxsize=256)
def _compile_pattern(identifiers: tuple[str, ...]) -> re.Pattern[str]:
    # Longest first so "Mary Kate" wins over "Mary" at the same position.
    ordered = sorted(identifiers, key=len, reverse=True)
    names = "|".join(re.escape(name) for name in ordered)
    return re.compile(
        rf"(?P<placeholder>{re.escape(STUDENT_PLACEHOLDER)})|(?<!\w)(?:{names})(?!\w)",
        re.IGNORECASE,
    )


def _replace(match: re.Match[str]) -> str:
    if match.group("placeholder") is not None:
        return match.group("placeholder")
    return STUDENT_PLACEHOLDER


def redact(text: str | None, identifiers: Iterable[str] | None) -> str | None:
    """Replace every whole-word occurrence of a student name with the placeholder.

    Args:
        text: Text to redact. None and empty strings pass through.
        identifiers: Names to redact (see normalize_identifiers).

    Returns:
        Redacted text. The input is returned unchanged when there are no
        names to redact.

    Raises:
        RedactionInputError: If identifiers is malformed.
    """
    names = normalize_identifiers(identifiers)
    if not text or not names:
        return text

    redacted, count = _compile_pattern(names).subn(_replace, text)
    replaced = count - text.count(STUDENT_PLACEHOLDER)
    if replaced > 0:
        logger.debug("Redacted %d name occurrence(s)", replaced)
    return redacted


def redact_fields(
    data: Mapping[str, Any],
    identifiers: Iterable[str] | None,
    skip: Iterable[str] = (),
) -> dict[str, Any]:
    """Redact every string value (and string list member) in a flat mapping.

    Args:
        data: Mapping to redact (not mutated, returns a copy).
        identifiers: Names to redact.
        skip: Keys whose values are copied through untouched.

    Returns:
        New dict with names replaced in string values.
    """
    names = normalize_identifiers(identifiers)
    skipped = set(skip)
    result: dict[str, Any] = {}
    for key, value in data.items():
        if key in skipped or not names:
            result[key] = value
        elif isinstance(value, str):
            result[key] = redact(value, names)
        elif isinstance(value, list):
            result[key] = [redact(v, names) if isinstance(v, str) else v for v in value]
        else:
            result[key] = value
    return result
