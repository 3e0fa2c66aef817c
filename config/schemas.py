"""Pydantic schemas — structured records for every pipeline stage."""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from enum import Enum


# ── TRANSCRIPTION ──

class Word(BaseModel):
    """A single transcribed word. Timestamps are seconds."""
    model_config = ConfigDict(frozen=True)

    text: str
    start: float = Field(description="Start time in seconds")
    end: float = Field(description="End time in seconds")
    confidence: float = Field(default=1.0, ge=0, le=1)
    speaker: Optional[str] = Field(None, description="Diarization label, e.g. 'A'")
    redacted: bool = Field(default=False, description="True if the word overlapped a PII range")


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.TERMINATED)


class TranscriptionJob(BaseModel):
    id: str
    status: JobStatus
    text: str = ""
    words: list[Word] = Field(default_factory=list)
    error: Optional[str] = None


# ── PII ──

class PiiRange(BaseModel):
    """A time window containing PII, in seconds."""
    model_config = ConfigDict(frozen=True)

    start: float
    end: float
    label: str = Field(description="email, phone, ssn, credit_card, url, address, person_name or 'pii'")


# ── SPEECH TRIMMING ──

class SpeechSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: float
    end: float
    duration: float


class VadMetadata(BaseModel):
    """Speech trimming outcome attached to the transcript for observability."""
    used: bool = False
    original_duration: float = 0.0
    trimmed_duration: float = 0.0
    silence_removed: float = 0.0
    segment_count: int = 0
    cost_savings_percent: float = 0.0
    skipped_reason: Optional[str] = Field(
        None, description="Why trimming did not apply: disabled, below_size_threshold, low_savings, failed"
    )


# ── CONVERSATIONS ──

class ConversationCategory(str, Enum):
    INTERACTION = "interaction"
    PITCH = "pitch"
    SALE = "sale"
    UNCATEGORIZED = "uncategorized"


class ObjectionType(str, Enum):
    DIY = "diy"
    SPOUSE = "spouse"
    PRICE = "price"
    COMPETITOR = "competitor"
    DELAY = "delay"
    NOT_INTERESTED = "not_interested"
    NO_PROBLEM = "no_problem"
    NO_SOLICITING = "no_soliciting"


class ObjectionWithText(BaseModel):
    type: ObjectionType
    text: str = Field(description="Verbatim customer phrase that raised the objection")


class ObjectionTimestamp(BaseModel):
    type: ObjectionType
    text: str
    timestamp: float = Field(description="Seconds into the original recording")


class Conversation(BaseModel):
    """One customer interaction cut out of the full call."""
    id: str
    conversation_number: int
    start_time: float
    end_time: float
    speakers: list[str]
    sales_rep_speaker: str
    words: list[Word] = Field(default_factory=list, exclude=True)
    word_count: int
    duration_seconds: float

    # Filled in by analysis
    category: ConversationCategory = ConversationCategory.UNCATEGORIZED
    objections: list[ObjectionType] = Field(default_factory=list)
    objections_with_text: list[ObjectionWithText] = Field(default_factory=list)
    objection_timestamps: list[ObjectionTimestamp] = Field(default_factory=list)
    has_price_mention: bool = False
    pii_redaction_count: int = 0
    analysis_completed: bool = False
    analysis_error: Optional[str] = None


class ConversationAnalysis(BaseModel):
    """What the text-analysis collaborator returns for one conversation."""
    category: ConversationCategory
    objections: list[ObjectionType] = Field(default_factory=list)
    objections_with_text: list[ObjectionWithText] = Field(default_factory=list)
    has_price_mention: bool = False
    pii_redaction_count: int = 0
    analysis_completed: bool = True
    analysis_error: Optional[str] = None


# ── PERSISTED RECORDS ──

TRANSCRIPT_SCHEMA_VERSION = 1


class TranscriptRedacted(BaseModel):
    schema_version: int = TRANSCRIPT_SCHEMA_VERSION
    text: str
    words: list[Word]
    pii_matches: list[PiiRange]
    redacted_file_storage_path: str
    vad_metadata: VadMetadata


class TranscriptRecord(BaseModel):
    salesperson_id: str
    salesperson_name: str
    original_filename: str
    file_storage_path: str
    transcript_redacted: TranscriptRedacted
    redaction_config_used: str
    uploaded_by: Optional[str] = None


class ConversationRecord(BaseModel):
    """A conversation row as persisted. Only written for meaningful conversations."""
    transcript_id: str
    conversation: Conversation


# ── INVOCATION ──

class Caller(BaseModel):
    id: str
    is_admin: bool = False


class ProcessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    storage_path: str = Field(default="", alias="storagePath")
    original_filename: str = Field(default="", alias="originalFilename")
    salesperson_id: str = Field(default="", alias="salespersonId")


class ProcessResult(BaseModel):
    transcript_id: str
    redacted_file_storage_path: str
    pii_range_count: int
    vad_metadata: VadMetadata
    conversations_found: int
    conversations_saved: list[int] = Field(
        default_factory=list, description="conversation_number of each persisted conversation"
    )
    conversation_errors: dict[int, str] = Field(
        default_factory=dict, description="conversation_number → analysis_error"
    )
    conversation_processing_error: Optional[str] = Field(
        None, description="Set when segmentation or analysis failed as a whole after the transcript was saved"
    )
    pipeline_timings: dict[str, float] = Field(default_factory=dict)
