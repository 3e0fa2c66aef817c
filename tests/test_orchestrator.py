"""End-to-end pipeline tests with in-memory collaborators (no network, no ffmpeg)."""

from pathlib import Path
from unittest.mock import patch

import pytest
from config.errors import (
    AudioProcessingError,
    AuthError,
    ConfigError,
    RateLimitError,
    SpeechTrimError,
    TranscriptionFailure,
    UpstreamError,
    ValidationError,
)
from config.schemas import (
    Caller,
    ConversationAnalysis,
    ConversationCategory,
    JobStatus,
    ObjectionType,
    ObjectionWithText,
    ProcessRequest,
    SpeechSegment,
    TranscriptionJob,
    VadMetadata,
    Word,
)
from config.settings import PipelineSettings, SpeechTrimSettings
from analysis.pii_detection import RegexPiiDetector
from pipeline.orchestrator import CallPipeline
from services.auth.rate_limit import RateLimiter, UploadAuthorizer


# ── FAKES ──

class FakeStorage:
    def __init__(self, objects: dict[str, bytes] | None = None):
        self.objects = dict(objects or {})
        self.uploads: list[str] = []
        self.removed: list[str] = []

    def signed_url(self, path, ttl_sec):
        if path not in self.objects:
            raise UpstreamError("Failed to generate signed URL")
        return f"mem://{path}"

    def download(self, url, timeout):
        return self.objects[url.removeprefix("mem://")]

    def upload(self, path, data, content_type="audio/mpeg"):
        self.objects[path] = data
        self.uploads.append(path)

    def remove(self, path):
        self.objects.pop(path, None)
        self.removed.append(path)


class RejectingTempStorage(FakeStorage):
    """Storage that refuses staging uploads of trimmed audio."""

    def upload(self, path, data, content_type="audio/mpeg"):
        if path.startswith("vad-temp/"):
            raise UpstreamError("temp upload failed")
        super().upload(path, data, content_type)


class FakeRepository:
    def __init__(self, pii_fields="all", names=None):
        self.pii_fields = pii_fields
        self.names = names or {}
        self.transcripts = []
        self.conversations = []

    def redaction_fields(self):
        return self.pii_fields

    def salesperson_name(self, salesperson_id):
        return self.names.get(salesperson_id)

    def insert_transcript(self, record):
        self.transcripts.append(record)
        return f"t-{len(self.transcripts)}"

    def insert_conversation(self, record):
        self.conversations.append(record)


class FakeTranscription:
    def __init__(self, job=None, error=None):
        self.job = job
        self.error = error
        self.audio = []

    def transcribe(self, audio):
        self.audio.append(audio)
        if self.error:
            raise self.error
        return self.job


class FixedAnalyzer:
    def __init__(self, analysis=None, fail_on=None):
        self.analysis = analysis or ConversationAnalysis(category=ConversationCategory.SALE)
        self.fail_on = fail_on

    def analyze(self, text, pii_count):
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("analysis exploded")
        return self.analysis.model_copy(update={"pii_redaction_count": pii_count})


def _fake_redact(calls: list):
    def _redact(input_path, output_path, ranges, ffmpeg_path="ffmpeg"):
        calls.append(list(ranges))
        Path(output_path).write_bytes(b"REDACTED:" + Path(input_path).read_bytes())
        return output_path
    return _redact


def _completed(words: list[Word]) -> TranscriptionJob:
    return TranscriptionJob(id="job-1", status=JobStatus.COMPLETED, text=" ".join(w.text for w in words), words=words)


JOHN_SMITH = [
    Word(text="John", start=0.0, end=0.4, speaker="A"),
    Word(text="Smith", start=0.4, end=0.8, speaker="A"),
    Word(text="here", start=0.8, end=1.0, speaker="A"),
]

REQUEST = ProcessRequest(storagePath="uploads/rep-1/call.mp3", originalFilename="call.mp3", salespersonId="rep-1")
CALLER = Caller(id="user-1")
SETTINGS = PipelineSettings(assemblyai_api_key="test-key")


def _pipeline(words=None, storage=None, repository=None, transcription=None, analyzer=None,
              settings=SETTINGS, authorizer=None) -> CallPipeline:
    return CallPipeline(
        storage=storage or FakeStorage({REQUEST.storage_path: b"original-audio"}),
        repository=repository or FakeRepository(),
        transcription=transcription or FakeTranscription(_completed(words if words is not None else JOHN_SMITH)),
        pii_detector=RegexPiiDetector(),
        analyzer=analyzer or FixedAnalyzer(),
        authorizer=authorizer,
        settings=settings,
    )


# ── TESTS ──

class TestEndToEnd:
    def test_john_smith_muted_and_flagged(self):
        repository = FakeRepository(names={"rep-1": "Dana"})
        storage = FakeStorage({REQUEST.storage_path: b"original-audio"})
        calls = []
        with patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact(calls)):
            result = _pipeline(storage=storage, repository=repository).process(REQUEST, CALLER)

        assert [(r.start, r.end) for r in calls[0]] == [(0.0, 0.8)]
        assert result.pii_range_count == 1
        assert result.redacted_file_storage_path == "redacted/uploads/rep-1/call.mp3"
        assert storage.objects["redacted/uploads/rep-1/call.mp3"] == b"REDACTED:original-audio"

        record = repository.transcripts[0]
        words = record.transcript_redacted.words
        assert [w.redacted for w in words] == [True, True, False]
        assert "John" not in record.transcript_redacted.text
        assert record.salesperson_name == "Dana"
        assert record.uploaded_by == "user-1"
        assert record.redaction_config_used == "all"
        assert record.transcript_redacted.schema_version == 1

    def test_unknown_salesperson(self):
        repository = FakeRepository()
        with patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact([])):
            _pipeline(repository=repository).process(REQUEST, CALLER)
        assert repository.transcripts[0].salesperson_name == "Unknown"

    def test_redaction_fields_respected(self):
        calls = []
        with patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact(calls)):
            _pipeline(repository=FakeRepository(pii_fields="EMAIL")).process(REQUEST, CALLER)
        assert calls == [[]]

    def test_timings_recorded(self):
        with patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact([])):
            result = _pipeline().process(REQUEST, CALLER)
        assert "Stage 3: Transcription" in result.pipeline_timings


class TestFatalFailures:
    def test_transcription_error_writes_nothing(self):
        repository = FakeRepository()
        storage = FakeStorage({REQUEST.storage_path: b"audio"})
        pipeline = _pipeline(
            storage=storage, repository=repository,
            transcription=FakeTranscription(error=TranscriptionFailure("Transcription failed: Invalid audio")),
        )
        with pytest.raises(TranscriptionFailure, match="Invalid audio"):
            pipeline.process(REQUEST, CALLER)
        assert repository.transcripts == []
        assert repository.conversations == []
        assert storage.uploads == []

    def test_redaction_failure_writes_nothing(self):
        repository = FakeRepository()
        storage = FakeStorage({REQUEST.storage_path: b"audio"})
        with patch("pipeline.orchestrator.redact_audio", side_effect=AudioProcessingError("ffmpeg exited with code 1")):
            with pytest.raises(AudioProcessingError):
                _pipeline(storage=storage, repository=repository).process(REQUEST, CALLER)
        assert repository.transcripts == []
        assert storage.uploads == []

    def test_missing_object(self):
        with pytest.raises(UpstreamError):
            _pipeline(storage=FakeStorage()).process(REQUEST, CALLER)

    @pytest.mark.parametrize("field, message", [
        ("storagePath", "File path is required"),
        ("originalFilename", "Original filename is required"),
        ("salespersonId", "Salesperson is required"),
    ])
    def test_validation(self, field, message):
        body = {"storagePath": "a.mp3", "originalFilename": "a.mp3", "salespersonId": "rep", field: ""}
        with pytest.raises(ValidationError, match=message):
            _pipeline().process(ProcessRequest(**body), CALLER)

    def test_missing_key_before_any_work(self):
        transcription = FakeTranscription(_completed(JOHN_SMITH))
        with pytest.raises(ConfigError):
            _pipeline(transcription=transcription, settings=PipelineSettings()).process(REQUEST, CALLER)
        assert transcription.audio == []

    def test_anonymous_caller(self):
        with pytest.raises(AuthError):
            _pipeline().process(REQUEST, None)

    def test_rate_limited(self):
        authorizer = UploadAuthorizer(RateLimiter(limit=1))
        with patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact([])):
            _pipeline(authorizer=authorizer).process(REQUEST, CALLER)
            with pytest.raises(RateLimitError):
                _pipeline(authorizer=authorizer).process(REQUEST, CALLER)


class TestSpeechTrimming:
    TRIM_SETTINGS = PipelineSettings(
        assemblyai_api_key="test-key",
        speech_trim=SpeechTrimSettings(enabled=True, min_size_bytes=0),
    )

    def test_trim_failure_is_not_fatal(self):
        transcription = FakeTranscription(_completed(JOHN_SMITH))
        with patch("pipeline.orchestrator.trim_speech", side_effect=SpeechTrimError("silencedetect failed")), \
             patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact([])):
            result = _pipeline(transcription=transcription, settings=self.TRIM_SETTINGS).process(REQUEST, CALLER)
        assert result.vad_metadata.used is False
        assert result.vad_metadata.skipped_reason == "failed"
        assert transcription.audio == [b"original-audio"]

    def test_trimmed_audio_transcribed_and_remapped(self, tmp_path):
        trimmed = tmp_path / "trimmed.mp3"
        trimmed.write_bytes(b"trimmed-audio")
        segments = [SpeechSegment(start=30.0, end=31.0, duration=1.0)]
        meta = VadMetadata(used=True, original_duration=60, trimmed_duration=1, segment_count=1)
        storage = FakeStorage({REQUEST.storage_path: b"original-audio"})
        transcription = FakeTranscription(_completed(JOHN_SMITH))
        calls = []

        with patch("pipeline.orchestrator.trim_speech", return_value=(str(trimmed), meta, segments)), \
             patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact(calls)):
            result = _pipeline(storage=storage, transcription=transcription,
                               settings=self.TRIM_SETTINGS).process(REQUEST, CALLER)

        assert transcription.audio == [b"trimmed-audio"]
        assert result.vad_metadata.used
        assert [(r.start, r.end) for r in calls[0]] == [(30.0, 30.8)]
        temp_uploads = [p for p in storage.uploads if p.startswith("vad-temp/")]
        assert len(temp_uploads) == 1
        assert storage.removed == temp_uploads
        assert storage.objects["redacted/uploads/rep-1/call.mp3"] == b"REDACTED:original-audio"

    def test_temp_upload_failure_falls_back_to_original(self, tmp_path):
        trimmed = tmp_path / "trimmed.mp3"
        trimmed.write_bytes(b"trimmed-audio")
        segments = [SpeechSegment(start=30.0, end=31.0, duration=1.0)]
        meta = VadMetadata(used=True, original_duration=60, trimmed_duration=1, segment_count=1)
        storage = RejectingTempStorage({REQUEST.storage_path: b"original-audio"})
        transcription = FakeTranscription(_completed(JOHN_SMITH))
        calls = []

        with patch("pipeline.orchestrator.trim_speech", return_value=(str(trimmed), meta, segments)), \
             patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact(calls)):
            result = _pipeline(storage=storage, transcription=transcription,
                               settings=self.TRIM_SETTINGS).process(REQUEST, CALLER)

        assert result.vad_metadata.used is False
        assert result.vad_metadata.skipped_reason == "failed"
        assert transcription.audio == [b"original-audio"]
        assert [(r.start, r.end) for r in calls[0]] == [(0.0, 0.8)]
        assert storage.removed == []

    @pytest.mark.parametrize("error", [ValueError("could not convert string to float: 'nan?'"), KeyError("duration")])
    def test_unexpected_trim_error_is_not_fatal(self, error):
        transcription = FakeTranscription(_completed(JOHN_SMITH))
        with patch("pipeline.orchestrator.trim_speech", side_effect=error), \
             patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact([])):
            result = _pipeline(transcription=transcription, settings=self.TRIM_SETTINGS).process(REQUEST, CALLER)
        assert result.vad_metadata.skipped_reason == "failed"
        assert transcription.audio == [b"original-audio"]

    def test_disabled_by_default(self):
        with patch("pipeline.orchestrator.trim_speech") as trim, \
             patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact([])):
            result = _pipeline().process(REQUEST, CALLER)
        trim.assert_not_called()
        assert result.vad_metadata.skipped_reason == "disabled"


class TestConversations:
    WORDS = (
        [Word(text=f"a{i}", start=i * 1.5, end=i * 1.5 + 1, speaker="AB"[i % 2]) for i in range(20)]
        + [Word(text=f"b{i}", start=100 + i * 1.5, end=101 + i * 1.5, speaker="AC"[i % 2]) for i in range(20)]
    )

    def test_only_meaningful_conversations_persisted(self):
        repository = FakeRepository()
        analyzer = FixedAnalyzer(ConversationAnalysis(category=ConversationCategory.PITCH))
        with patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact([])):
            result = _pipeline(words=self.WORDS, repository=repository, analyzer=analyzer).process(REQUEST, CALLER)
        assert result.conversations_found == 2
        assert result.conversations_saved == []
        assert repository.conversations == []
        assert len(repository.transcripts) == 1

    def test_analysis_failure_isolated(self):
        repository = FakeRepository()
        analyzer = FixedAnalyzer(
            ConversationAnalysis(
                category=ConversationCategory.PITCH,
                objections=[ObjectionType.SPOUSE],
                objections_with_text=[ObjectionWithText(type=ObjectionType.SPOUSE, text="a3 a4")],
            ),
            fail_on="b0",
        )
        with patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact([])):
            result = _pipeline(words=self.WORDS, repository=repository, analyzer=analyzer).process(REQUEST, CALLER)

        assert result.conversations_saved == [1]
        assert result.conversation_errors == {2: "analysis exploded"}
        saved = repository.conversations[0]
        assert saved.transcript_id == "t-1"
        assert saved.conversation.objection_timestamps[0].timestamp == pytest.approx(2.5)

    def test_segmentation_crash_keeps_saved_transcript(self):
        repository = FakeRepository()
        with patch("pipeline.orchestrator.segment_conversations", side_effect=RuntimeError("bad speaker labels")), \
             patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact([])):
            result = _pipeline(words=self.WORDS, repository=repository).process(REQUEST, CALLER)

        assert result.transcript_id == "t-1"
        assert len(repository.transcripts) == 1
        assert result.conversations_found == 0
        assert result.conversations_saved == []
        assert result.conversation_processing_error == "bad speaker labels"

    def test_no_stage_error_on_success(self):
        with patch("pipeline.orchestrator.redact_audio", side_effect=_fake_redact([])):
            result = _pipeline(words=self.WORDS).process(REQUEST, CALLER)
        assert result.conversation_processing_error is None
