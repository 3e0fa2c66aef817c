"""Pipeline Orchestrator — one uploaded sales call → redacted audio + transcript + conversations.

  Stage 0: Validate request, credentials, caller (auth + upload rate limit)
  Stage 1: Signed URL → redaction config → download
  Stage 2: Speech trimming (optional, non-fatal)
  Stage 3: Transcription (upload → job → poll)
  Stage 4: PII detection → clamp → merge
  Stage 5: Audio redaction → upload redacted audio
  Stage 6: Persist transcript record
  Stage 7: Segment conversations → analyze (parallel) → persist meaningful ones

Everything before Stage 6 is all-or-nothing: a failure there leaves no rows.
After the transcript is saved, each conversation's analysis is isolated.
"""

import os
import time
import uuid
import tempfile
from pathlib import Path
from typing import Optional
from loguru import logger

from config.errors import AuthError, ValidationError
from config.settings import PipelineSettings
from config.schemas import (
    Caller,
    ConversationRecord,
    ProcessRequest,
    ProcessResult,
    TranscriptRecord,
    TranscriptRedacted,
    VadMetadata,
)
from analysis.pii_ranges import clamp_pii_ranges, merge_pii_ranges
from analysis.pii_detection import redact_words, redacted_text
from analysis.conversation_segmentation import segment_conversations
from analysis.conversation_analysis import analyze_conversations, is_meaningful
from services.audio.speech_trim import should_attempt_trim, trim_speech, remap_words_to_original
from services.audio.redactor import redact_audio
from pipeline.collaborators import (
    Authorizer,
    ConversationAnalyzer,
    ObjectStorage,
    PiiDetector,
    TranscriptionService,
    TranscriptRepository,
)

UNKNOWN_SALESPERSON = "Unknown"


def redacted_storage_path(storage_path: str) -> str:
    return f"redacted/{storage_path}"


def validate_request(request: ProcessRequest) -> None:
    if not request.storage_path:
        raise ValidationError("File path is required")
    if not request.original_filename:
        raise ValidationError("Original filename is required")
    if not request.salesperson_id:
        raise ValidationError("Salesperson is required")


class CallPipeline:
    """Runs the full redaction pipeline against injected collaborators.

    Settings are passed in explicitly; nothing is read from the environment
    during a run.
    """

    def __init__(
        self,
        storage: ObjectStorage,
        repository: TranscriptRepository,
        transcription: TranscriptionService,
        pii_detector: PiiDetector,
        analyzer: ConversationAnalyzer,
        authorizer: Optional[Authorizer] = None,
        settings: Optional[PipelineSettings] = None,
    ):
        self.storage = storage
        self.repository = repository
        self.transcription = transcription
        self.pii_detector = pii_detector
        self.analyzer = analyzer
        self.authorizer = authorizer
        self.settings = settings or PipelineSettings()

    def process(self, request: ProcessRequest, caller: Optional[Caller], call_id: str | None = None) -> ProcessResult:
        """Process one uploaded call.

        Args:
            request: storage path, original filename, salesperson id
            caller: authenticated caller (None → AuthError)
            call_id: log correlation id (generated if not provided)

        Returns:
            ProcessResult with the new transcript id and conversation outcome

        Raises:
            PipelineError subclasses; nothing is persisted when one escapes.
        """
        call_id = call_id or str(uuid.uuid4())[:8]
        settings = self.settings
        stage_times: dict[str, float] = {}
        pipeline_start = time.perf_counter()

        def _stage_timer(stage_name: str):
            """Log and record time for current stage, start next."""
            now = time.perf_counter()
            if hasattr(_stage_timer, "_last"):
                elapsed = now - _stage_timer._last
                stage_times[_stage_timer._name] = round(elapsed, 2)
                logger.info(f"[{call_id}] ⏱ {_stage_timer._name}: {elapsed:.1f}s")
            _stage_timer._last = now
            _stage_timer._name = stage_name

        # ── STAGE 0: VALIDATION ──
        _stage_timer("Stage 0: Validate")
        validate_request(request)
        settings.require_transcription_key()
        if caller is None or not caller.id:
            raise AuthError("Unauthorized")
        if self.authorizer is not None:
            self.authorizer.check(caller)
        logger.info(f"[{call_id}] Starting pipeline for {request.storage_path} (caller={caller.id})")

        # ── STAGE 1: FETCH ──
        _stage_timer("Stage 1: Fetch")
        logger.info(f"[{call_id}] Stage 1: Fetching audio")
        signed_url = self.storage.signed_url(request.storage_path, settings.signed_url_ttl_sec)
        pii_fields = (self.repository.redaction_fields() or "all").lower()
        audio = self.storage.download(signed_url, settings.download_timeout_sec)
        logger.info(f"[{call_id}] Downloaded {len(audio) / 1024 / 1024:.1f}MB (redaction fields: {pii_fields})")

        with tempfile.TemporaryDirectory(prefix="call-redact-") as tmp_dir:
            suffix = Path(request.storage_path).suffix or ".mp3"
            input_path = os.path.join(tmp_dir, f"input{suffix}")
            with open(input_path, "wb") as f:
                f.write(audio)

            # ── STAGE 2: SPEECH TRIMMING ──
            _stage_timer("Stage 2: Speech trim")
            vad_metadata, transcription_audio, segments, temp_path = self._trim(
                call_id, input_path, len(audio), tmp_dir, request.storage_path
            )

            # ── STAGE 3: TRANSCRIPTION ──
            _stage_timer("Stage 3: Transcription")
            logger.info(f"[{call_id}] Stage 3: Transcribing")
            job = self._transcribe(call_id, transcription_audio, audio, temp_path)
            words = job.words
            if segments:
                words = remap_words_to_original(words, segments)
            logger.info(f"[{call_id}] Transcribed {len(words)} words")

            # ── STAGE 4: PII DETECTION ──
            _stage_timer("Stage 4: PII detection")
            logger.info(f"[{call_id}] Stage 4: Detecting PII ({pii_fields})")
            raw_ranges = self.pii_detector.detect(words, pii_fields)
            audio_duration = words[-1].end if words else 0.0
            ranges = merge_pii_ranges(clamp_pii_ranges(raw_ranges, audio_duration))
            logger.info(f"[{call_id}] {len(raw_ranges)} PII matches → {len(ranges)} ranges to mute")

            # ── STAGE 5: AUDIO REDACTION ──
            _stage_timer("Stage 5: Redaction")
            logger.info(f"[{call_id}] Stage 5: Muting PII in audio")
            output_path = os.path.join(tmp_dir, "redacted.mp3")
            redact_audio(input_path, output_path, ranges, ffmpeg_path=settings.ffmpeg_path)
            with open(output_path, "rb") as f:
                redacted_audio = f.read()
            redacted_path = redacted_storage_path(request.storage_path)
            self.storage.upload(redacted_path, redacted_audio, "audio/mpeg")

        # ── STAGE 6: PERSIST TRANSCRIPT ──
        _stage_timer("Stage 6: Save transcript")
        masked_words = redact_words(words, ranges)
        salesperson_name = self.repository.salesperson_name(request.salesperson_id) or UNKNOWN_SALESPERSON
        record = TranscriptRecord(
            salesperson_id=request.salesperson_id,
            salesperson_name=salesperson_name,
            original_filename=request.original_filename,
            file_storage_path=request.storage_path,
            transcript_redacted=TranscriptRedacted(
                text=redacted_text(masked_words),
                words=masked_words,
                pii_matches=ranges,
                redacted_file_storage_path=redacted_path,
                vad_metadata=vad_metadata,
            ),
            redaction_config_used=pii_fields,
            uploaded_by=caller.id,
        )
        transcript_id = self.repository.insert_transcript(record)
        logger.info(f"[{call_id}] Stage 6: Transcript saved as {transcript_id}")

        # ── STAGE 7: CONVERSATIONS ──
        _stage_timer("Stage 7: Conversations")
        saved, errors, found, conversation_error = self._process_conversations(
            call_id, transcript_id, masked_words, ranges
        )
        _stage_timer("done")

        total_elapsed = time.perf_counter() - pipeline_start
        timing_str = " | ".join(f"{k}: {v}s" for k, v in stage_times.items())
        logger.info(f"[{call_id}] Pipeline complete in {total_elapsed:.1f}s — {timing_str}")

        return ProcessResult(
            transcript_id=transcript_id,
            redacted_file_storage_path=redacted_path,
            pii_range_count=len(ranges),
            vad_metadata=vad_metadata,
            conversations_found=found,
            conversations_saved=saved,
            conversation_errors=errors,
            conversation_processing_error=conversation_error,
            pipeline_timings=stage_times,
        )

    # ── STAGE HELPERS ──

    def _trim(self, call_id: str, input_path: str, asset_size: int, tmp_dir: str, storage_path: str):
        """Returns (metadata, trimmed bytes or None, kept segments or [], temp storage path or None).

        Any failure here, including staging the trimmed audio in storage,
        falls back to the original recording.
        """
        trim_settings = self.settings.speech_trim
        skip_reason = should_attempt_trim(asset_size, trim_settings)
        if skip_reason:
            logger.debug(f"[{call_id}] Stage 2: Speech trim skipped ({skip_reason})")
            return VadMetadata(skipped_reason=skip_reason), None, [], None

        logger.info(f"[{call_id}] Stage 2: Trimming non-speech ({asset_size / 1024 / 1024:.0f}MB)")
        try:
            trimmed_path, metadata, segments = trim_speech(
                input_path, os.path.join(tmp_dir, "trim"), trim_settings, self.settings.ffmpeg_path
            )
            if trimmed_path is None:
                return metadata, None, [], None
            with open(trimmed_path, "rb") as f:
                trimmed = f.read()
            temp_path = f"vad-temp/{uuid.uuid4().hex}{Path(storage_path).suffix or '.mp3'}"
            self.storage.upload(temp_path, trimmed, "audio/mpeg")
            return metadata, trimmed, segments, temp_path
        except Exception as e:
            logger.warning(f"[{call_id}] Speech trim failed, using original audio: {e}")
            return VadMetadata(skipped_reason="failed"), None, [], None

    def _transcribe(self, call_id: str, trimmed: bytes | None, original: bytes, temp_path: str | None):
        if trimmed is None:
            return self.transcription.transcribe(original)
        try:
            return self.transcription.transcribe(trimmed)
        finally:
            try:
                self.storage.remove(temp_path)
            except Exception as e:
                logger.warning(f"[{call_id}] Could not remove temporary trimmed audio {temp_path}: {e}")

    def _process_conversations(self, call_id: str, transcript_id: str, words, ranges):
        """Returns (saved numbers, per-conversation errors, conversations found, stage error or None).

        The transcript is already saved, so nothing raised here reaches the caller.
        """
        try:
            conversations = segment_conversations(
                words,
                sales_rep_speaker=self.settings.sales_rep_speaker,
                silence_threshold_sec=self.settings.conversation_silence_gap_sec,
            )
            logger.info(f"[{call_id}] Stage 7: {len(conversations)} conversations found")
            results = analyze_conversations(
                conversations, ranges, self.analyzer, max_workers=self.settings.analysis_workers
            )
        except Exception as e:
            logger.error(f"[{call_id}] Conversation processing error (non-fatal): {e}")
            return [], {}, 0, str(e) or type(e).__name__

        saved: list[int] = []
        errors: dict[int, str] = {}
        for conversation, analysis in results:
            number = conversation.conversation_number
            if analysis.analysis_error:
                errors[number] = analysis.analysis_error
            if not is_meaningful(analysis):
                logger.debug(f"[{call_id}] Skipping conversation {number}: no objections and not a sale")
                continue
            try:
                self.repository.insert_conversation(
                    ConversationRecord(transcript_id=transcript_id, conversation=conversation)
                )
                saved.append(number)
            except Exception as e:
                logger.error(f"[{call_id}] Failed to save conversation {number}: {e}")
                errors[number] = f"save failed: {e}"

        logger.info(f"[{call_id}] Saved {len(saved)}/{len(conversations)} conversations")
        return saved, errors, len(conversations), None
