"""Conversation segmentation — split one long call into separate customer conversations.

Built for door-to-door recordings: the sales rep (one diarization label) talks
to a string of customers. A new customer voice after a pause, or any long
pause (walking to the next door), starts a new conversation. When speaker
labels are missing or only one conversation comes out, silence gaps alone
decide the boundaries.
"""

import re
import uuid

from config.schemas import Conversation, PiiRange, Word

MIN_CONVERSATION_DURATION_SEC = 20.0
TURN_GAP_SEC = 3.0
LARGE_GAP_SEC = 30.0
OBJECTION_LEAD_IN_SEC = 2.0

_PUNCT_RE = re.compile(r"[^\w\s]")


def segment_by_speaker(words: list[Word], sales_rep_speaker: str = "A") -> list[Conversation]:
    """Speaker-turn segmentation.

    A boundary falls before a word when the gap since the previous word exceeds
    LARGE_GAP_SEC, or exceeds TURN_GAP_SEC and the word comes from a customer
    not yet heard in the current conversation. Conversations shorter than
    MIN_CONVERSATION_DURATION_SEC or with fewer than two speakers are dropped,
    and the survivors are numbered from 1.
    """
    if not words:
        return []

    groups: list[tuple[list[Word], list[str]]] = []
    current: list[Word] = []
    customers: list[str] = []
    last_end = 0.0

    for word in words:
        speaker = word.speaker or sales_rep_speaker
        gap = word.start - last_end if current else 0.0

        new_conversation = bool(current) and (
            gap > LARGE_GAP_SEC
            or (gap > TURN_GAP_SEC and speaker != sales_rep_speaker and speaker not in customers)
        )
        if new_conversation:
            groups.append((current, customers))
            current, customers = [], []

        current.append(word)
        if speaker != sales_rep_speaker and speaker not in customers:
            customers.append(speaker)
        last_end = word.end

    if current:
        groups.append((current, customers))

    kept = []
    for group_words, group_customers in groups:
        speakers = _unique([sales_rep_speaker, *group_customers, *(w.speaker for w in group_words if w.speaker)])
        duration = round(group_words[-1].end - group_words[0].start, 2)
        if duration >= MIN_CONVERSATION_DURATION_SEC and len(speakers) >= 2:
            kept.append((group_words, speakers))

    return [
        _build_conversation(group_words, number, sales_rep_speaker, speakers)
        for number, (group_words, speakers) in enumerate(kept, start=1)
    ]


def segment_by_silence(
    words: list[Word],
    silence_threshold_sec: float = LARGE_GAP_SEC,
    sales_rep_speaker: str = "A",
) -> list[Conversation]:
    """Start a new conversation wherever the gap between words exceeds the threshold."""
    if not words:
        return []

    groups = [[words[0]]]
    for prev, word in zip(words, words[1:]):
        if word.start - prev.end > silence_threshold_sec:
            groups.append([word])
        else:
            groups[-1].append(word)

    return [
        _build_conversation(group, number, sales_rep_speaker, _unique(w.speaker for w in group if w.speaker))
        for number, group in enumerate(groups, start=1)
    ]


def segment_conversations(
    words: list[Word],
    sales_rep_speaker: str = "A",
    silence_threshold_sec: float = LARGE_GAP_SEC,
) -> list[Conversation]:
    """Hybrid segmentation: speaker turns first, silence gaps as the fallback."""
    if any(w.speaker is not None for w in words):
        by_speaker = segment_by_speaker(words, sales_rep_speaker)
        if len(by_speaker) > 1:
            return by_speaker
    return segment_by_silence(words, silence_threshold_sec, sales_rep_speaker)


def _build_conversation(words: list[Word], number: int, sales_rep_speaker: str, speakers: list[str]) -> Conversation:
    return Conversation(
        id=str(uuid.uuid4()),
        conversation_number=number,
        start_time=words[0].start,
        end_time=words[-1].end,
        speakers=speakers,
        sales_rep_speaker=sales_rep_speaker,
        words=words,
        word_count=len(words),
        duration_seconds=round(words[-1].end - words[0].start, 2),
    )


def _unique(items) -> list:
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


# ── HELPERS USED DURING ANALYSIS ──

def conversation_text(conversation: Conversation) -> str:
    return " ".join(w.text for w in conversation.words)


def count_pii_in_conversation(ranges: list[PiiRange], conversation: Conversation) -> int:
    """Number of PII ranges overlapping the conversation's time window."""
    return sum(
        1 for r in ranges
        if r.start < conversation.end_time and r.end > conversation.start_time
    )


def _normalize(token: str) -> str:
    return _PUNCT_RE.sub("", token.lower())


def find_text_timestamp(snippet: str, words: list[Word], lead_in: float = OBJECTION_LEAD_IN_SEC) -> float | None:
    """Seconds at which snippet is first spoken in words, minus a short lead-in.

    Tries a sliding window the length of the snippet first, then falls back to
    the snippet's first word. Returns None if neither is found.
    """
    if not snippet or not snippet.strip() or not words:
        return None

    snippet_words = [t for t in (_normalize(t) for t in snippet.split()) if t]
    if not snippet_words:
        return None
    snippet_text = " ".join(snippet_words)
    size = len(snippet_words)

    for i in range(len(words) - size + 1):
        window = words[i:i + size]
        window_text = " ".join(_normalize(w.text) for w in window)
        if window_text and (snippet_text in window_text or window_text in snippet_text):
            return max(0.0, window[0].start - lead_in)

    first = snippet_words[0]
    for w in words:
        token = _normalize(w.text)
        if token and (first in token or token in first):
            return max(0.0, w.start - lead_in)

    return None
