"""PII Detection — Presidio pattern recognizers over word-level transcripts.

Recognizers run over the transcript text rebuilt from the words, and every
match is mapped back onto the words it covers, giving a time range in seconds.
That handles values the ASR splits across words ("555 123 4567") the same
way as single-token values ("555-123-4567").

Detected fields:
- email, url (case-insensitive)
- phone (US, requires separators so bare digit runs and timestamps don't match)
- ssn
- credit_card (known BIN prefixes 4, 5x, 37, 6)
- address ("123 Main Street", "Austin, TX 78701"; year-like house numbers excluded)
- person_name (two consecutive capitalised words, e.g. "John Smith")

No NLP engine is loaded: recognizers are used directly, so detection needs no
spaCy model download.
"""

import re
from loguru import logger

from presidio_analyzer import Pattern, PatternRecognizer

from config.schemas import PiiRange, Word


# ── RECOGNIZERS ──

_CASE_INSENSITIVE = re.DOTALL | re.MULTILINE | re.IGNORECASE
_CASE_SENSITIVE = re.DOTALL | re.MULTILINE


def _build_email_recognizer() -> PatternRecognizer:
    return PatternRecognizer(
        supported_entity="EMAIL",
        name="Email Recognizer",
        patterns=[Pattern(name="email", regex=r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", score=0.9)],
    )


def _build_phone_recognizer() -> PatternRecognizer:
    """(555) 123-4567, 555-123-4567, +1 555 123 4567."""
    return PatternRecognizer(
        supported_entity="PHONE",
        name="US Phone Recognizer",
        patterns=[
            Pattern(
                name="phone_structured",
                regex=r"(?<![\w-])(?:\+?1[\s.-]?)?(?:\(\d{3}\)\s?|\d{3}[\s.-])\d{3}[\s.-]\d{4}\b",
                score=0.8,
            ),
        ],
    )


def _build_ssn_recognizer() -> PatternRecognizer:
    return PatternRecognizer(
        supported_entity="SSN",
        name="US SSN Recognizer",
        patterns=[Pattern(name="ssn", regex=r"\b\d{3}[- ]\d{2}[- ]\d{4}\b", score=0.85)],
    )


def _build_credit_card_recognizer() -> PatternRecognizer:
    """Card numbers spoken or written in four groups of four."""
    return PatternRecognizer(
        supported_entity="CREDIT_CARD",
        name="Card Number Recognizer",
        patterns=[
            Pattern(
                name="card_grouped",
                regex=r"\b(?:4\d{3}|5[1-5]\d{2}|37\d{2}|6\d{3})[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b",
                score=0.8,
            ),
        ],
    )


def _build_url_recognizer() -> PatternRecognizer:
    return PatternRecognizer(
        supported_entity="URL",
        name="URL Recognizer",
        patterns=[Pattern(name="url", regex=r"\bhttps?://[^\s]+", score=0.9)],
    )


def _build_address_recognizer() -> PatternRecognizer:
    return PatternRecognizer(
        supported_entity="ADDRESS",
        name="US Address Recognizer",
        patterns=[
            Pattern(
                name="street_address",
                regex=(
                    r"\b(?!(?:19|20)\d{2}\b)\d{1,5}\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*"
                    r"(?:\s+(?:St|Street|Ave|Avenue|Blvd|Boulevard|Rd|Road|Dr|Drive|Ln|Lane|Ct|Court"
                    r"|Cir|Circle|Way|Pkwy|Parkway|Terrace|Ter|Pl|Place)\b\.?)?"
                ),
                score=0.6,
            ),
            Pattern(
                name="city_state",
                regex=r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*,\s*[A-Z]{2}(?:\s+\d{5}(?:-\d{4})?)?\b",
                score=0.6,
            ),
        ],
    )


def _build_person_name_recognizer() -> PatternRecognizer:
    return PatternRecognizer(
        supported_entity="PERSON_NAME",
        name="Capitalised Name Pair Recognizer",
        patterns=[Pattern(name="name_pair", regex=r"\b[A-Z][a-z]{2,}\s+[A-Z][a-z]{2,}\b", score=0.5)],
    )


# field → (recognizer factory, regex flags)
_RECOGNIZER_SPECS = {
    "email": (_build_email_recognizer, _CASE_INSENSITIVE),
    "phone": (_build_phone_recognizer, _CASE_SENSITIVE),
    "ssn": (_build_ssn_recognizer, _CASE_SENSITIVE),
    "credit_card": (_build_credit_card_recognizer, _CASE_SENSITIVE),
    "url": (_build_url_recognizer, _CASE_INSENSITIVE),
    "address": (_build_address_recognizer, _CASE_SENSITIVE),
    "person_name": (_build_person_name_recognizer, _CASE_SENSITIVE),
}

# Names the stored redaction config may use for each field
FIELD_ALIASES: dict[str, set[str]] = {
    "phone": {"phone", "phone_number", "phone-number", "phone number"},
    "credit_card": {"credit_card", "credit card", "credit_card_number", "credit card number"},
    "address": {"address", "location", "location_address", "location address"},
    "person_name": {"person_name", "name", "person name"},
    "email": {"email", "email_address", "email address"},
    "ssn": {"ssn", "social_security", "us_social_security_number"},
    "url": {"url", "link"},
}

_recognizers: dict[str, PatternRecognizer] = {}


def _get_recognizer(field: str) -> PatternRecognizer:
    if field not in _recognizers:
        factory, _ = _RECOGNIZER_SPECS[field]
        _recognizers[field] = factory()
    return _recognizers[field]


def selected_fields(pii_fields: str) -> list[str]:
    """Resolve a redaction config value ('all' or a comma list) to detector fields."""
    normalized = (pii_fields or "all").strip().lower()
    if normalized == "all":
        return list(_RECOGNIZER_SPECS)
    parts = {p.strip() for p in normalized.split(",") if p.strip()}
    return [
        field for field in _RECOGNIZER_SPECS
        if parts & FIELD_ALIASES.get(field, {field})
    ]


# ── PUBLIC API ──

def detect_pii_matches(words: list[Word], pii_fields: str = "all") -> list[PiiRange]:
    """Detect PII in a word-level transcript and return raw (unmerged) time ranges.

    Args:
        words: Transcript words with timestamps in seconds
        pii_fields: 'all' or a comma-separated list of fields / aliases

    Returns:
        One PiiRange per match, spanning from the first covered word's start
        to the last covered word's end. Unsorted; may overlap.
    """
    if not words:
        return []

    text, offsets = _join_words(words)
    matches: list[PiiRange] = []

    for field in selected_fields(pii_fields):
        recognizer = _get_recognizer(field)
        _, flags = _RECOGNIZER_SPECS[field]
        results = recognizer.analyze(
            text=text,
            entities=recognizer.supported_entities,
            regex_flags=flags,
        )
        for r in results:
            covered = [i for i, (s, e) in enumerate(offsets) if s < r.end and e > r.start]
            if not covered:
                continue
            matches.append(PiiRange(
                start=words[covered[0]].start,
                end=words[covered[-1]].end,
                label=field,
            ))

    logger.info(f"PII detection: {len(matches)} matches across {len(words)} words")
    return matches


class RegexPiiDetector:
    """Default PII detector collaborator."""

    def detect(self, words: list[Word], pii_fields: str) -> list[PiiRange]:
        return detect_pii_matches(words, pii_fields)


def redact_words(words: list[Word], ranges: list[PiiRange]) -> list[Word]:
    """Return copies of words with every word overlapping a PII range masked.

    The masked word keeps its timing and speaker; its text becomes the range
    label in brackets, e.g. '[PERSON_NAME]'.
    """
    if not ranges:
        return list(words)

    redacted = []
    for w in words:
        hit = next((r for r in ranges if w.start < r.end and w.end > r.start), None)
        if hit is None:
            redacted.append(w)
        else:
            redacted.append(w.model_copy(update={"text": _mask_label(hit.label), "redacted": True}))
    return redacted


def redacted_text(words: list[Word]) -> str:
    return " ".join(w.text for w in words)


def _mask_label(label: str) -> str:
    return f"[{label.upper()}]"


def _join_words(words: list[Word]) -> tuple[str, list[tuple[int, int]]]:
    """Join word texts with single spaces, keeping each word's character span."""
    parts = []
    offsets = []
    pos = 0
    for w in words:
        token = (w.text or "").strip()
        offsets.append((pos, pos + len(token)))
        parts.append(token)
        pos += len(token) + 1
    return " ".join(parts), offsets
