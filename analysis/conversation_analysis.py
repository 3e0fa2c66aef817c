"""Conversation analysis — sales category and customer objections per conversation.

Category is rule-based:
  interaction:  no price mentioned
  pitch:        price mentioned, fewer than 3 PII redactions
  sale:         price mentioned and 3+ PII redactions (card details were given)

Objections come from the LLM, which returns each objection with the verbatim
customer phrase so the UI can jump to it.
"""

from concurrent.futures import ThreadPoolExecutor
from pydantic import BaseModel, Field
from loguru import logger

from config.errors import AnalysisError
from config.settings import LLMSettings
from config.schemas import (
    Conversation,
    ConversationAnalysis,
    ConversationCategory,
    ObjectionTimestamp,
    ObjectionType,
    ObjectionWithText,
    PiiRange,
)
from analysis.conversation_segmentation import (
    conversation_text,
    count_pii_in_conversation,
    find_text_timestamp,
)
from services.llm.client import extract_structured

SALE_PII_THRESHOLD = 3

PRICE_INDICATORS = (
    "$", "dollar", "price", "cost", "fee", "payment", "per month", "monthly",
    "annual", "yearly", "subscription", "charge", "expensive", "cheap",
    "afford", "budget",
)


def detect_price_mention(text: str) -> bool:
    lower = text.lower()
    return any(indicator in lower for indicator in PRICE_INDICATORS)


def categorize_conversation(has_price_mention: bool, pii_redaction_count: int) -> ConversationCategory:
    if not has_price_mention:
        return ConversationCategory.INTERACTION
    if pii_redaction_count >= SALE_PII_THRESHOLD:
        return ConversationCategory.SALE
    return ConversationCategory.PITCH


def is_meaningful(analysis: ConversationAnalysis) -> bool:
    """Persist only conversations with an objection, or that closed a sale."""
    return len(analysis.objections) > 0 or analysis.category == ConversationCategory.SALE


# ── LLM OBJECTION DETECTION ──

class DetectedObjection(BaseModel):
    type: str = Field(description="One of: " + ", ".join(o.value for o in ObjectionType))
    text: str = Field(description="Exact verbatim quote from the customer, 3-10 words")


class ObjectionList(BaseModel):
    objections: list[DetectedObjection] = Field(default_factory=list)


OBJECTION_SYSTEM_PROMPT = (
    "You analyze door-to-door PEST CONTROL sales conversations. The salesperson sells "
    "ongoing pest treatment subscriptions. Identify objections raised by THE CUSTOMER "
    "(never the sales rep) and quote the exact phrase where each occurs."
)

OBJECTION_PROMPT = """CONVERSATION TEXT:
{text}

OBJECTION TYPES TO DETECT:
1. "diy" - does it themselves: "I spray myself", "I just use sprays from the store"
2. "spouse" - must consult spouse/partner: "I need to talk to my wife", "my husband handles this"
3. "price" - price objection: "too expensive", "can't afford it", "out of my budget"
4. "competitor" - already has a service: "I already have someone", "I use another company"
5. "delay" - wants to wait: "need to think about it", "not right now", "can I get a card"
6. "not_interested" - direct rejection: "not interested", "no thanks", "we're all set"
7. "no_problem" - claims no pests: "don't see any bugs", "haven't seen anything"
8. "no_soliciting" - immediate rejection: "no soliciting", "we have a sign", "get off my property"

INSTRUCTIONS:
- Only objections stated by the customer
- "text" must be a verbatim quote (3-10 words)
- List each objection type at most once
- If unsure, include it
- Return an empty list if there are no objections"""


def detect_objections(text: str, llm: LLMSettings | None = None) -> list[ObjectionWithText]:
    """Ask the LLM for objections; unknown types and repeats are dropped.

    Raises:
        AnalysisError: the LLM call failed or returned nothing usable.
    """
    try:
        result = extract_structured(
            prompt=OBJECTION_PROMPT.format(text=text),
            response_model=ObjectionList,
            llm=llm,
            system_prompt=OBJECTION_SYSTEM_PROMPT,
        )
    except Exception as e:
        raise AnalysisError(f"Objection detection failed: {e}") from e

    valid = {o.value for o in ObjectionType}
    seen = set()
    objections = []
    for obj in result.objections:
        kind = obj.type.strip().lower()
        if kind not in valid:
            logger.debug(f"Ignoring unknown objection type from LLM: {obj.type!r}")
            continue
        if kind in seen:
            continue
        seen.add(kind)
        objections.append(ObjectionWithText(type=ObjectionType(kind), text=obj.text))
    return objections


class LLMConversationAnalyzer:
    """Default text-analysis collaborator: rule-based category + LLM objections.

    An LLM failure does not raise: the result carries analysis_completed=False
    and the error message, with the rule-based fields still filled in.
    """

    def __init__(self, llm: LLMSettings | None = None, objection_detector=detect_objections):
        self.llm = llm
        self._detect = objection_detector

    def analyze(self, text: str, pii_count: int) -> ConversationAnalysis:
        has_price = detect_price_mention(text)
        category = categorize_conversation(has_price, pii_count)

        try:
            objections = self._detect(text, self.llm)
        except Exception as e:
            logger.warning(f"Conversation analysis incomplete: {e}")
            return ConversationAnalysis(
                category=category,
                has_price_mention=has_price,
                pii_redaction_count=pii_count,
                analysis_completed=False,
                analysis_error=str(e) or type(e).__name__,
            )

        return ConversationAnalysis(
            category=category,
            objections=[o.type for o in objections],
            objections_with_text=objections,
            has_price_mention=has_price,
            pii_redaction_count=pii_count,
        )


# ── APPLYING ANALYSIS TO CONVERSATIONS ──

def apply_analysis(conversation: Conversation, analysis: ConversationAnalysis) -> Conversation:
    """Return the conversation enriched with analysis results and objection timestamps."""
    timestamps = []
    for objection in analysis.objections_with_text:
        ts = find_text_timestamp(objection.text, conversation.words)
        timestamps.append(ObjectionTimestamp(
            type=objection.type,
            text=objection.text,
            timestamp=ts if ts is not None else conversation.start_time,
        ))

    return conversation.model_copy(update={
        "category": analysis.category,
        "objections": list(analysis.objections),
        "objections_with_text": list(analysis.objections_with_text),
        "objection_timestamps": timestamps,
        "has_price_mention": analysis.has_price_mention,
        "pii_redaction_count": analysis.pii_redaction_count,
        "analysis_completed": analysis.analysis_completed,
        "analysis_error": analysis.analysis_error,
    })


def failed_analysis(pii_count: int, error: Exception) -> ConversationAnalysis:
    return ConversationAnalysis(
        category=ConversationCategory.UNCATEGORIZED,
        pii_redaction_count=pii_count,
        analysis_completed=False,
        analysis_error=str(error) or type(error).__name__,
    )


def analyze_conversations(
    conversations: list[Conversation],
    pii_ranges: list[PiiRange],
    analyzer,
    max_workers: int = 4,
) -> list[tuple[Conversation, ConversationAnalysis]]:
    """Analyze every conversation in parallel; results keep conversation order.

    One conversation's failure is recorded on that conversation only.
    """
    if not conversations:
        return []

    def _run(conversation: Conversation) -> ConversationAnalysis:
        text = conversation_text(conversation)
        pii_count = count_pii_in_conversation(pii_ranges, conversation)
        try:
            return analyzer.analyze(text, pii_count)
        except Exception as e:
            logger.warning(f"Analysis of conversation {conversation.conversation_number} failed: {e}")
            return failed_analysis(pii_count, e)

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        futures = [pool.submit(_run, c) for c in conversations]
        analyses = [f.result() for f in futures]

    return [(apply_analysis(c, a), a) for c, a in zip(conversations, analyses)]
