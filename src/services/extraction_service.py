"""Structured ABC field extraction from capture conversations.

An extractor reduces the ordered turns of a conversation to incident
content fields and merges them into the current draft. Merging is
monotonic: a field only ever changes to a new non-empty value, and
function_of_behavior only grows. Extractors never raise; any failure
is reported as an ``error`` outcome with the draft returned unchanged.

Two backends are provided:
- RuleBasedExtractor: deterministic keyword and pattern matching over the
  teacher's own turns. No network access.
- AnthropicExtractor: asks a Claude model for a JSON object, then funnels
  the parsed values through the same sanitizing merge.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from src.db.models import BEHAVIOR_FUNCTIONS, CONTENT_FIELDS, INCIDENT_TYPES, MessageRole
from src.utils.redaction import redact

if TYPE_CHECKING:
    from src.config import ExtractionConfig

logger = logging.getLogger(__name__)

# Fields an extractor may fill. The student reference comes from the
# conversation, never from free text.
EXTRACTABLE_FIELDS: tuple[str, ...] = tuple(f for f in CONTENT_FIELDS if f != "student_id")

DEFAULT_MODEL = "claude-haiku-4-5"


class ExtractionOutcome(str, Enum):
    """Result categories for an extraction run."""

    extracted = "extracted"
    no_change = "no_change"
    error = "error"


@dataclass
class ExtractionResult:
    """Merged draft fields plus what happened while producing them.

    Attributes:
        fields: Full content field mapping after the merge.
        outcome: extracted, no_change or error.
        diagnostic: Human-readable note, set on error.
    """

    fields: dict[str, Any]
    outcome: ExtractionOutcome
    diagnostic: str | None = None
    changed: list[str] = field(default_factory=list)


# =============================================================================
# Merge policy
# =============================================================================


def _empty_draft() -> dict[str, Any]:
    return {name: [] if name == "function_of_behavior" else None for name in CONTENT_FIELDS}


def merge_fields(draft: Mapping[str, Any], extracted: Mapping[str, Any]) -> dict[str, Any]:
    """Merge extracted values into a draft without ever discarding content.

    Args:
        draft: Current content field values (missing keys count as empty).
        extracted: Newly extracted values.

    Returns:
        New dict with every content field present.
    """
    merged = _empty_draft()
    for name in CONTENT_FIELDS:
        if name in draft:
            merged[name] = draft[name]
    merged["function_of_behavior"] = sorted(set(merged["function_of_behavior"] or []))

    for name, value in extracted.items():
        if name not in merged:
            continue
        if name == "function_of_behavior":
            if value:
                merged[name] = sorted(set(merged[name]) | set(value))
        elif isinstance(value, str) and value.strip():
            merged[name] = value.strip()
    return merged


# =============================================================================
# Normalization helpers
# =============================================================================

_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_US_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{2}|\d{4})\b")
_CLOCK_12H_RE = re.compile(
    r"\b(1[0-2]|0?[1-9])(?::([0-5]\d))?\s*(a\.?m\.?|p\.?m\.?)(?!\w)", re.IGNORECASE
)
_CLOCK_24H_RE = re.compile(r"\b([01]?\d|2[0-3]):([0-5]\d)\b")
_NOON_RE = re.compile(r"\bnoon\b", re.IGNORECASE)


def _safe_date(year: int, month: int, day: int) -> str | None:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def normalize_date(text: str | None, today: date) -> str | None:
    """Resolve a date mention to YYYY-MM-DD.

    Understands "today", "yesterday", ISO dates and M/D/YYYY (or M/D/YY).
    Returns None when nothing recognizable is found.
    """
    if not text:
        return None
    lowered = text.lower()
    candidates: list[tuple[int, str]] = []
    for word, offset in (("yesterday", 1), ("today", 0)):
        for m in re.finditer(rf"\b{word}\b", lowered):
            candidates.append((m.start(), (today - timedelta(days=offset)).isoformat()))
    for m in _ISO_DATE_RE.finditer(text):
        iso = _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        if iso:
            candidates.append((m.start(), iso))
    for m in _US_DATE_RE.finditer(text):
        year = int(m.group(3))
        if year < 100:
            year += 2000
        iso = _safe_date(year, int(m.group(1)), int(m.group(2)))
        if iso:
            candidates.append((m.start(), iso))
    if not candidates:
        return None
    # Last mention wins, so later corrections take effect.
    return max(candidates)[1]


def normalize_time(text: str | None) -> str | None:
    """Resolve a clock time mention to 24-hour HH:MM.

    Examples:
        "2:30 pm" -> "14:30", "10am" -> "10:00", "12 a.m." -> "00:00",
        "14:05" -> "14:05", "noon" -> "12:00".
    """
    if not text:
        return None
    candidates: list[tuple[int, str]] = []
    for m in _CLOCK_12H_RE.finditer(text):
        hour = int(m.group(1)) % 12
        if m.group(3).lower().startswith("p"):
            hour += 12
        minute = int(m.group(2) or 0)
        candidates.append((m.start(), f"{hour:02d}:{minute:02d}"))
    twelve_hour_spans = [m.span() for m in _CLOCK_12H_RE.finditer(text)]
    for m in _CLOCK_24H_RE.finditer(text):
        if any(start <= m.start() < end for start, end in twelve_hour_spans):
            continue
        candidates.append((m.start(), f"{int(m.group(1)):02d}:{m.group(2)}"))
    for m in _NOON_RE.finditer(text):
        candidates.append((m.start(), "12:00"))
    if not candidates:
        return None
    return max(candidates)[1]


def sanitize_extracted(raw: Mapping[str, Any], today: date) -> dict[str, Any]:
    """Coerce backend output to valid content field values.

    Unknown keys, out-of-vocabulary categories and unparseable dates or
    times are dropped rather than passed on.
    """
    cleaned: dict[str, Any] = {}
    for name in EXTRACTABLE_FIELDS:
        value = raw.get(name)
        if value is None:
            continue
        if name == "function_of_behavior":
            if isinstance(value, str):
                value = [value]
            if not isinstance(value, Iterable):
                continue
            functions = sorted({v.strip() for v in value if isinstance(v, str)} & set(BEHAVIOR_FUNCTIONS))
            if functions:
                cleaned[name] = functions
            continue
        if not isinstance(value, str) or not value.strip():
            continue
        text = value.strip()
        if name == "incident_type":
            matches = [t for t in INCIDENT_TYPES if t.lower() == text.lower()]
            if matches:
                cleaned[name] = matches[0]
        elif name == "incident_date":
            iso = normalize_date(text, today)
            if iso:
                cleaned[name] = iso
        elif name == "incident_time":
            hhmm = normalize_time(text)
            if hhmm:
                cleaned[name] = hhmm
        else:
            cleaned[name] = text
    return cleaned


def _turns(messages: Iterable[Any]) -> list[tuple[str, str]]:
    """Normalize ORM messages or plain dicts to (role, content), in sequence order."""
    items = []
    for index, message in enumerate(messages):
        if isinstance(message, Mapping):
            role = message.get("role")
            content = message.get("content")
            sequence = message.get("sequence")
        else:
            role = getattr(message, "role", None)
            content = getattr(message, "content", None)
            sequence = getattr(message, "sequence", None)
        if not isinstance(content, str):
            continue
        items.append((sequence if sequence is not None else index, index, str(role), content))
    items.sort(key=lambda item: (item[0], item[1]))
    return [(role, content) for _, _, role, content in items]


# =============================================================================
# Extractors
# =============================================================================


class IncidentExtractor(ABC):
    """Base class for extraction backends.

    Subclasses implement ``_extract_fields``. ``extract`` owns the merge
    policy and guarantees that no exception escapes.
    """

    name = "base"

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or datetime.now

    def today(self) -> date:
        return self._clock().date()

    @abstractmethod
    def _extract_fields(
        self,
        turns: Sequence[tuple[str, str]],
        identifiers: Sequence[str] | None,
    ) -> Mapping[str, Any]:
        """Return raw field values found in the turns."""

    def extract(
        self,
        messages: Iterable[Any],
        draft: Mapping[str, Any] | None = None,
        identifiers: Sequence[str] | None = None,
    ) -> ExtractionResult:
        """Reduce conversation turns to fields and merge them into the draft.

        Args:
            messages: Ordered turns (Message rows or dicts with role/content).
            draft: Current content fields; None means an empty draft.
            identifiers: Student names to redact before text leaves the process.

        Returns:
            ExtractionResult. Never raises.
        """
        current = merge_fields(draft or {}, {})
        try:
            turns = _turns(messages)
            raw = self._extract_fields(turns, identifiers)
            extracted = sanitize_extracted(raw, self.today())
        except Exception as e:
            logger.warning(
                "%s extraction failed: %s: %s", self.name, type(e).__name__, e
            )
            return ExtractionResult(
                fields=current,
                outcome=ExtractionOutcome.error,
                diagnostic=f"{type(e).__name__}: {e}",
            )

        merged = merge_fields(current, extracted)
        changed = [name for name in CONTENT_FIELDS if merged[name] != current[name]]
        if not changed:
            return ExtractionResult(fields=merged, outcome=ExtractionOutcome.no_change)
        logger.debug(
            "%s extraction filled %s", self.name, ", ".join(changed)
        )
        return ExtractionResult(
            fields=merged, outcome=ExtractionOutcome.extracted, changed=changed
        )


# Ordered by precedence: the first category with a matching pattern wins.
_TYPE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("Self-Injury", re.compile(
        r"\b(?:hit|hits|hitting|bit|bites|biting|scratch\w*|slapp?\w*|punch\w*)\s+"
        r"(?:himself|herself|themself|themselves)\b"
        r"|\bbang\w*\s+(?:his|her|their)\s+head\b|\bself[- ]injur\w*",
        re.IGNORECASE,
    )),
    ("Physical Aggression", re.compile(
        r"\b(?:hit|hits|hitting|kick\w*|punch\w*|bit|bite|bites|biting|push\w*|shov\w*"
        r"|slapp?\w*|scratch\w*|spit|spat|spitting|pinch\w*|chok\w*|tackl\w*"
        r"|pulled\s+\w+\s+hair|attack\w*)\b",
        re.IGNORECASE,
    )),
    ("Property Destruction", re.compile(
        r"\b(?:broke|break\w*|smash\w*|tore|torn|rip\w*|destroy\w*|damag\w*|threw|throw\w*"
        r"|flipp?\w*\s+(?:over\s+)?(?:the\s+|a\s+|his\s+|her\s+)?(?:desk|table|chair)\w*)\b",
        re.IGNORECASE,
    )),
    ("Elopement", re.compile(
        r"\b(?:ran|run|running|walked|bolted)\s+(?:out|away|off)\b"
        r"|\bleft\s+the\s+(?:room|classroom|class|building|school)\b|\belop\w*|\bbolted\b",
        re.IGNORECASE,
    )),
    ("Verbal Outburst", re.compile(
        r"\b(?:yell\w*|scream\w*|shout\w*|curs\w*|swore|swear\w*|insult\w*|threaten\w*"
        r"|called\s+\w+\s+names)\b",
        re.IGNORECASE,
    )),
    ("Noncompliance", re.compile(
        r"\b(?:refus\w*|would\s+not|wouldn't|won't|did\s+not\s+follow|didn't\s+follow"
        r"|ignored\s+(?:the\s+)?(?:direction|instruction)s?|noncomplian\w*|non-complian\w*)\b",
        re.IGNORECASE,
    )),
]

_FUNCTION_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("Escape/Avoidance", re.compile(
        r"\b(?:avoid\w*|escap\w*|get\s+out\s+of|didn't\s+want\s+to|did\s+not\s+want\s+to"
        r"|worksheet|assignment|classwork|homework)\b",
        re.IGNORECASE,
    )),
    ("Attention-Seeking", re.compile(
        r"\b(?:attention|laugh\w*|audience|show(?:ing)?\s+off|peers?\s+watch\w*)\b",
        re.IGNORECASE,
    )),
    ("Sensory", re.compile(
        r"\b(?:sensory|noise|noisy|loud|lights?|textures?|rocking|spinning|stimm\w*|overwhelm\w*)\b",
        re.IGNORECASE,
    )),
    ("Tangible/Access", re.compile(
        r"\b(?:toy|toys|ipad|tablet|computer|snack|took\s+away|taken\s+away|(?:his|her|their)\s+turn"
        r"|wanted\s+the)\b",
        re.IGNORECASE,
    )),
    ("Communication", re.compile(
        r"\b(?:communicat\w*|nonverbal|non-verbal|couldn't\s+tell|could\s+not\s+tell"
        r"|trying\s+to\s+tell|needed\s+help|frustrat\w*)\b",
        re.IGNORECASE,
    )),
]

_LOCATION_RE = re.compile(
    r"\b(?P<prep>during|in|at)\s+(?:the\s+|a\s+|an\s+)?"
    r"(?P<loc>[a-z][\w'-]*(?:\s+(?!when\b|after\b|because\b|and\b|while\b|today\b|yesterday\b"
    r"|at\b|for\b|so\b|but\b|then\b)[a-z][\w'-]*){0,3})",
    re.IGNORECASE,
)
_NOT_LOCATIONS = {
    "him", "her", "them", "me", "us", "it", "first", "least", "all", "once", "time",
    "morning", "afternoon", "evening", "minutes", "minute", "seconds", "hours", "front",
    "response", "order", "fact", "trouble", "tears",
}

_ANTECEDENT_RE = re.compile(r"\b(?:when|after)\s+(?P<a>[^.!?;\n]+)", re.IGNORECASE)
_CONSEQUENCE_RE = re.compile(
    r"\b(?:sent\s+to|office|time[- ]?out|lost|removed\s+from|called\s+(?:home|his|her|their|the)"
    r"|detention|recess|was\s+given|had\s+to|consequence)\b",
    re.IGNORECASE,
)
_INTERVENTION_RE = re.compile(
    r"\b(?:redirect\w*|prompt\w*|offered|de-?escalat\w*|calm(?:ing)?[- ]down|blocked"
    r"|planned\s+ignoring|break\s+card|gave\s+(?:him|her|them)\s+a\s+break|restrain\w*)\b",
    re.IGNORECASE,
)
_DURATION_RE = re.compile(
    r"\b(?:for|lasted)\s+(?:about\s+|around\s+|approximately\s+|roughly\s+)?"
    r"(?P<n>\d+|a\s+few|several|one|two|three|four|five|ten|fifteen|twenty|thirty)\s+"
    r"(?P<unit>seconds?|secs?|minutes?|mins?|hours?|hrs?)\b",
    re.IGNORECASE,
)
_CLAUSE_CUT_RE = re.compile(r"\s+(?:when|after|because|during|while)\s+", re.IGNORECASE)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")


def _sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]


def _strip_end(text: str) -> str:
    return text.strip().rstrip(".!?,;: ").strip()


class RuleBasedExtractor(IncidentExtractor):
    """Deterministic extractor driven by keyword and pattern matching.

    Only the teacher's (user) turns are read. Narrative fields take the
    first mention; date and time take the last, so corrections win.
    """

    name = "rules"

    def _extract_fields(
        self,
        turns: Sequence[tuple[str, str]],
        identifiers: Sequence[str] | None,
    ) -> Mapping[str, Any]:
        user_texts = [content for role, content in turns if role == MessageRole.user.value]
        sentences = [s for text in user_texts for s in _sentences(text)]
        fields: dict[str, Any] = {}

        behavior_sentence = None
        for sentence in sentences:
            if any(p.search(sentence) for _, p in _TYPE_PATTERNS):
                behavior_sentence = sentence
                break
        if behavior_sentence:
            clause = _CLAUSE_CUT_RE.split(behavior_sentence, maxsplit=1)[0]
            fields["behavior"] = _strip_end(clause) or _strip_end(behavior_sentence)
            fields["summary"] = _strip_end(behavior_sentence)

        combined = "\n".join(user_texts)
        for incident_type, pattern in _TYPE_PATTERNS:
            if pattern.search(combined):
                fields["incident_type"] = incident_type
                break
        else:
            if behavior_sentence:
                fields["incident_type"] = "Other"

        functions = [name for name, p in _FUNCTION_PATTERNS if p.search(combined)]
        if functions:
            fields["function_of_behavior"] = functions

        location = self._find_location(sentences)
        if location:
            fields["location"] = location

        for sentence in sentences:
            m = _ANTECEDENT_RE.search(sentence)
            if m and _strip_end(m.group("a")):
                fields["antecedent"] = _strip_end(m.group("a"))
                break

        for key, pattern in (("consequence", _CONSEQUENCE_RE), ("intervention", _INTERVENTION_RE)):
            for sentence in sentences:
                if pattern.search(sentence):
                    fields[key] = _strip_end(sentence)
                    break

        for sentence in sentences:
            m = _DURATION_RE.search(sentence)
            if m:
                amount = re.sub(r"\s+", " ", m.group("n").lower())
                fields["duration"] = f"{amount} {m.group('unit').lower()}"
                break

        incident_date = normalize_date(combined, self.today())
        if incident_date:
            fields["incident_date"] = incident_date
        incident_time = normalize_time(combined)
        if incident_time:
            fields["incident_time"] = incident_time

        return fields

    @staticmethod
    def _find_location(sentences: Sequence[str]) -> str | None:
        best: tuple[int, int, str] | None = None
        rank = {"during": 0, "in": 1, "at": 2}
        for index, sentence in enumerate(sentences):
            for m in _LOCATION_RE.finditer(sentence):
                location = _strip_end(m.group("loc"))
                if not location or location.split()[0].lower() in _NOT_LOCATIONS:
                    continue
                candidate = (rank[m.group("prep").lower()], index, location)
                if best is None or candidate[:2] < best[:2]:
                    best = candidate
        return best[2] if best else None


EXTRACTION_PROMPT = """You are an expert at extracting structured ABC (Antecedent-Behavior-Consequence) data from teacher conversations about student behavioral incidents.

Analyze the ENTIRE conversation. Information may be spread across several messages, including follow-up answers. Today's date is {today}.

Extract:
- summary: a brief 1-2 sentence overview of the incident
- antecedent: what was happening immediately before the behavior
- behavior: specific, observable description of what the student did
- consequence: what happened immediately after the behavior
- location: where, or during which activity, it happened
- duration: how long the behavior lasted
- intervention: what staff did in response
- date: the date the incident occurred as YYYY-MM-DD, resolving "today" and "yesterday"; null if not mentioned
- time: the time it occurred as HH:MM 24-hour; null if not mentioned
- incidentType: exactly one of {incident_types}
- functionOfBehavior: every function that applies, from {functions}

Never guess a date or time that was not mentioned. Use null for anything unknown.

Return ONLY a JSON object with these keys (no markdown, no extra text):
{{"summary": "...", "antecedent": "...", "behavior": "...", "consequence": "...", "location": "...", "duration": "...", "intervention": "...", "date": null, "time": null, "incidentType": "...", "functionOfBehavior": ["..."]}}"""

# Response key -> content field
_RESPONSE_KEYS = {
    "summary": "summary",
    "antecedent": "antecedent",
    "behavior": "behavior",
    "consequence": "consequence",
    "location": "location",
    "duration": "duration",
    "intervention": "intervention",
    "date": "incident_date",
    "time": "incident_time",
    "incidentType": "incident_type",
    "functionOfBehavior": "function_of_behavior",
}

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse the first JSON object in a model response.

    Tolerates markdown code fences and prose around the object.

    Raises:
        ValueError: If no JSON object can be parsed.
    """
    stripped = _FENCE_RE.sub("", text.strip())
    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("Response did not contain a JSON object")
    data = json.loads(stripped[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("Response JSON was not an object")
    return data


class AnthropicExtractor(IncidentExtractor):
    """Extractor backed by the Anthropic Messages API.

    Student names are redacted from the transcript before it is sent.
    The client is created lazily so the rule-based path never needs an
    API key.
    """

    name = "anthropic"

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 1024,
        client: Any = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(clock)
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            from anthropic import Anthropic

            self._client = Anthropic()
        return self._client

    def _extract_fields(
        self,
        turns: Sequence[tuple[str, str]],
        identifiers: Sequence[str] | None,
    ) -> Mapping[str, Any]:
        if not turns:
            return {}
        transcript = "\n\n".join(
            f"{role}: {redact(content, identifiers)}" for role, content in turns
        )
        system = EXTRACTION_PROMPT.format(
            today=self.today().isoformat(),
            incident_types=", ".join(INCIDENT_TYPES),
            functions=", ".join(BEHAVIOR_FUNCTIONS),
        )
        response = self._get_client().messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system,
            messages=[{
                "role": "user",
                "content": f"Extract ABC data from this conversation:\n\n{transcript}",
            }],
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        if not text.strip():
            raise ValueError("Empty response from model")
        data = parse_json_object(text)
        logger.debug("Model returned %d key(s)", len(data))
        return {
            field_name: data.get(key)
            for key, field_name in _RESPONSE_KEYS.items()
            if key in data
        }


def get_extractor(config: "ExtractionConfig | None" = None) -> IncidentExtractor:
    """Build the extractor selected by configuration (rule-based by default)."""
    if config is not None and config.backend == "anthropic":
        return AnthropicExtractor(model=config.model, max_tokens=config.max_tokens)
    return RuleBasedExtractor()
