"""Tests for the transcription client state machine (httpx MockTransport, fake sleep)."""

import json

import httpx
import pytest
from config.errors import ConfigError, TranscriptionFailure, UpstreamError
from config.schemas import JobStatus
from config.settings import PipelineSettings
from services.asr.transcription_client import (
    GENERIC_FAILURE_MESSAGE,
    AssemblyAITranscriptionService,
    ClientState,
    TranscriptionClient,
    words_from_response,
)

BASE = "https://transcribe.test"


class FakeService:
    """Scripted AssemblyAI: upload, create, then one status body per poll."""

    def __init__(self, statuses: list[dict], upload_status: int = 200, create_status: int = 200):
        self.statuses = list(statuses)
        self.upload_status = upload_status
        self.create_status = create_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v2/upload":
            if self.upload_status != 200:
                return httpx.Response(self.upload_status, text="upload rejected")
            return httpx.Response(200, json={"upload_url": "https://cdn.test/audio-1"})
        if path == "/v2/transcript":
            if self.create_status != 200:
                return httpx.Response(self.create_status, text="bad request")
            return httpx.Response(200, json={"id": "job-1", "status": "queued"})
        if path == "/v2/transcript/job-1":
            body = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(200, json={"id": "job-1", **body})
        return httpx.Response(404)


def _client(service: FakeService, sleeps: list | None = None, **kwargs) -> TranscriptionClient:
    sleeps = sleeps if sleeps is not None else []
    return TranscriptionClient(
        api_key="test-key",
        base_url=BASE,
        http_client=httpx.Client(transport=httpx.MockTransport(service)),
        sleep=sleeps.append,
        **kwargs,
    )


COMPLETED = {
    "status": "completed",
    "text": "Hi there",
    "words": [
        {"text": "Hi", "start": 1500, "end": 2300, "confidence": 0.98, "speaker": "A"},
        {"text": "there", "start": 2300, "end": 2700, "confidence": 0.95, "speaker": "B"},
    ],
}


class TestWordsFromResponse:
    def test_milliseconds_to_seconds(self):
        words = words_from_response([{"text": "hi", "start": 1500, "end": 2300}])
        assert (words[0].start, words[0].end) == (1.5, 2.3)
        assert words[0].speaker is None


class TestHappyPath:
    def test_completes_and_converts_words(self):
        service = FakeService([{"status": "queued"}, {"status": "processing"}, COMPLETED])
        sleeps = []
        client = _client(service, sleeps)
        job = client.transcribe(b"audio-bytes")

        assert job.status == JobStatus.COMPLETED
        assert job.text == "Hi there"
        assert [(w.text, w.start, w.end, w.speaker) for w in job.words] == [
            ("Hi", 1.5, 2.3, "A"), ("there", 2.3, 2.7, "B"),
        ]
        assert client.state == ClientState.COMPLETED
        assert client.poll_count == 3
        assert sleeps == [3.0, 3.0]

    def test_wire_format(self):
        service = FakeService([COMPLETED])
        _client(service).transcribe(b"audio-bytes")

        upload, create, poll = service.requests
        assert upload.method == "POST" and upload.content == b"audio-bytes"
        assert upload.headers["authorization"] == "test-key"
        assert json.loads(create.content) == {"audio_url": "https://cdn.test/audio-1", "speaker_labels": True}
        assert poll.method == "GET"

    def test_many_polls_without_waiting(self):
        service = FakeService([{"status": "processing"}] * 500 + [COMPLETED])
        sleeps = []
        job = _client(service, sleeps).transcribe(b"x")
        assert job.status == JobStatus.COMPLETED
        assert len(sleeps) == 500


class TestFailures:
    def test_error_status_carries_service_message(self):
        service = FakeService([{"status": "processing"}, {"status": "error", "error": "Invalid audio"}])
        client = _client(service)
        with pytest.raises(TranscriptionFailure, match="Invalid audio"):
            client.transcribe(b"x")
        assert client.state == ClientState.ERROR

    def test_terminated_without_message_uses_generic(self):
        service = FakeService([{"status": "terminated"}])
        client = _client(service)
        with pytest.raises(TranscriptionFailure, match=GENERIC_FAILURE_MESSAGE):
            client.transcribe(b"x")
        assert client.state == ClientState.TERMINATED

    def test_upload_non_2xx(self):
        service = FakeService([COMPLETED], upload_status=401)
        with pytest.raises(UpstreamError) as exc:
            _client(service).transcribe(b"x")
        assert exc.value.status == 401
        assert len(service.requests) == 1

    def test_create_non_2xx(self):
        service = FakeService([COMPLETED], create_status=500)
        with pytest.raises(UpstreamError):
            _client(service).transcribe(b"x")

    def test_timeout_is_upstream_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)
        client = TranscriptionClient(
            api_key="k", base_url=BASE,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(UpstreamError, match="timed out"):
            client.transcribe(b"x")

    def test_unknown_status(self):
        with pytest.raises(UpstreamError, match="unknown status"):
            _client(FakeService([{"status": "mystery"}])).transcribe(b"x")

    def test_max_polls(self):
        service = FakeService([{"status": "processing"}])
        with pytest.raises(UpstreamError, match="after 4 polls"):
            _client(service, max_polls=4).transcribe(b"x")

    def test_client_is_single_use(self):
        service = FakeService([COMPLETED])
        client = _client(service)
        client.transcribe(b"x")
        with pytest.raises(RuntimeError):
            client.upload(b"x")


class TestService:
    def test_requires_key(self):
        service = AssemblyAITranscriptionService(PipelineSettings(assemblyai_api_key=""))
        with pytest.raises(ConfigError):
            service.transcribe(b"x")

    def test_uses_settings(self):
        fake = FakeService([COMPLETED])
        settings = PipelineSettings(assemblyai_api_key="k", assemblyai_base_url=BASE, poll_interval_sec=0.5)
        service = AssemblyAITranscriptionService(
            settings, http_client=httpx.Client(transport=httpx.MockTransport(fake)), sleep=lambda s: None
        )
        job = service.transcribe(b"x")
        assert len(job.words) == 2
        assert str(fake.requests[0].url).startswith(BASE)
