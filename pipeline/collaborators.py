"""Narrow interfaces the pipeline depends on.

The orchestrator only ever talks to these; concrete implementations live in
services/ (local filesystem, S3, JSON-file repository, AssemblyAI, regex PII
detection, LLM analysis) and tests substitute in-memory fakes.
"""

from typing import Optional, Protocol

from config.schemas import (
    Caller,
    ConversationAnalysis,
    ConversationRecord,
    PiiRange,
    TranscriptionJob,
    TranscriptRecord,
    Word,
)


class ObjectStorage(Protocol):
    def signed_url(self, path: str, ttl_sec: int) -> str:
        """Time-limited URL for reading the object at path. Raises UpstreamError if it cannot be issued."""
        ...

    def download(self, url: str, timeout: float) -> bytes: ...

    def upload(self, path: str, data: bytes, content_type: str = "audio/mpeg") -> None: ...

    def remove(self, path: str) -> None: ...


class TranscriptRepository(Protocol):
    def redaction_fields(self) -> str:
        """Configured PII selector, e.g. 'all' or 'email,phone'."""
        ...

    def salesperson_name(self, salesperson_id: str) -> Optional[str]: ...

    def insert_transcript(self, record: TranscriptRecord) -> str:
        """Persist the record and return its new transcript id."""
        ...

    def insert_conversation(self, record: ConversationRecord) -> None: ...


class TranscriptionService(Protocol):
    def transcribe(self, audio: bytes) -> TranscriptionJob: ...


class PiiDetector(Protocol):
    def detect(self, words: list[Word], pii_fields: str) -> list[PiiRange]: ...


class ConversationAnalyzer(Protocol):
    def analyze(self, text: str, pii_count: int) -> ConversationAnalysis: ...


class Authorizer(Protocol):
    def check(self, caller: Caller) -> None:
        """Raise AuthError (or RateLimitError) if the caller may not upload now."""
        ...
