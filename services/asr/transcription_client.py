"""Transcription client — AssemblyAI v2 upload → job → poll state machine.

States: init → uploading → job_created → polling → completed | error | terminated

Each HTTP call carries its own timeout (upload 60s, create 30s, each poll 30s)
and none of them retry: a timeout or non-2xx response is an UpstreamError.
The poll loop sleeps through an injectable function so tests can drive any
number of polls without waiting.
"""

import time
from enum import Enum
from typing import Callable, Optional
from loguru import logger

import httpx

from config.errors import TranscriptionFailure, UpstreamError
from config.schemas import JobStatus, TranscriptionJob, Word

GENERIC_FAILURE_MESSAGE = "Transcription was terminated by the transcription service"


class ClientState(str, Enum):
    INIT = "init"
    UPLOADING = "uploading"
    JOB_CREATED = "job_created"
    POLLING = "polling"
    COMPLETED = "completed"
    ERROR = "error"
    TERMINATED = "terminated"


_TERMINAL_STATES = {ClientState.COMPLETED, ClientState.ERROR, ClientState.TERMINATED}


def words_from_response(raw_words: list[dict]) -> list[Word]:
    """Convert service words (milliseconds) into Words (seconds)."""
    return [
        Word(
            text=w.get("text", ""),
            start=w["start"] / 1000,
            end=w["end"] / 1000,
            confidence=w.get("confidence", 1.0),
            speaker=w.get("speaker"),
        )
        for w in raw_words
    ]


class TranscriptionClient:
    """Runs one transcription job to a terminal state.

    A client instance is single-use: it tracks the state of one job.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.assemblyai.com",
        http_client: Optional[httpx.Client] = None,
        upload_timeout: float = 60.0,
        create_timeout: float = 30.0,
        poll_timeout: float = 30.0,
        poll_interval: float = 3.0,
        max_polls: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._http = http_client or httpx.Client()
        self._owns_http = http_client is None
        self.upload_timeout = upload_timeout
        self.create_timeout = create_timeout
        self.poll_timeout = poll_timeout
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._sleep = sleep

        self.state = ClientState.INIT
        self.upload_url: str | None = None
        self.job_id: str | None = None
        self.poll_count = 0

    @classmethod
    def from_settings(cls, settings, http_client: Optional[httpx.Client] = None, **kwargs) -> "TranscriptionClient":
        return cls(
            api_key=settings.require_transcription_key(),
            base_url=settings.assemblyai_base_url,
            http_client=http_client,
            upload_timeout=settings.upload_timeout_sec,
            create_timeout=settings.create_timeout_sec,
            poll_timeout=settings.poll_timeout_sec,
            poll_interval=settings.poll_interval_sec,
            max_polls=settings.max_polls,
            **kwargs,
        )

    def _headers(self) -> dict:
        return {"authorization": self.api_key}

    def _transition(self, new_state: ClientState) -> None:
        if self.state in _TERMINAL_STATES:
            raise RuntimeError(f"Transcription client already finished ({self.state.value})")
        logger.debug(f"Transcription client: {self.state.value} → {new_state.value}")
        self.state = new_state

    def _request(self, method: str, path: str, step: str, timeout: float, **kwargs) -> dict:
        try:
            resp = self._http.request(
                method, f"{self.base_url}{path}", headers=self._headers(), timeout=timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Transcription {step} timed out after {timeout:.0f}s") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Transcription {step} failed: {e}") from e

        if resp.status_code >= 400:
            raise UpstreamError(f"Transcription {step} failed: {resp.text[:300]}", status=resp.status_code)
        return resp.json()

    # ── STEPS ──

    def upload(self, audio: bytes) -> str:
        self._transition(ClientState.UPLOADING)
        data = self._request("POST", "/v2/upload", "upload", self.upload_timeout, content=audio)
        self.upload_url = data["upload_url"]
        logger.info(f"Uploaded {len(audio)} bytes for transcription")
        return self.upload_url

    def create_job(self, upload_url: str) -> str:
        data = self._request(
            "POST", "/v2/transcript", "job creation", self.create_timeout,
            json={"audio_url": upload_url, "speaker_labels": True},
        )
        self.job_id = data["id"]
        self._transition(ClientState.JOB_CREATED)
        logger.info(f"Transcription job created: {self.job_id}")
        return self.job_id

    def check_status(self, job_id: str) -> TranscriptionJob:
        data = self._request("GET", f"/v2/transcript/{job_id}", "polling", self.poll_timeout)
        try:
            status = JobStatus(data.get("status"))
        except ValueError as e:
            raise UpstreamError(f"Transcription polling returned unknown status {data.get('status')!r}") from e
        words = words_from_response(data.get("words") or []) if status == JobStatus.COMPLETED else []
        return TranscriptionJob(
            id=data.get("id", job_id),
            status=status,
            text=data.get("text") or "",
            words=words,
            error=data.get("error"),
        )

    def poll(self, job_id: str) -> TranscriptionJob:
        """Check status every poll_interval seconds until the job is terminal."""
        self._transition(ClientState.POLLING)
        while True:
            self.poll_count += 1
            job = self.check_status(job_id)

            if job.status.is_terminal:
                self._transition(ClientState(job.status.value))
                if job.status == JobStatus.COMPLETED:
                    logger.info(f"Transcription {job_id} completed after {self.poll_count} polls ({len(job.words)} words)")
                    return job
                message = job.error or GENERIC_FAILURE_MESSAGE
                logger.error(f"Transcription {job_id} {job.status.value}: {message}")
                raise TranscriptionFailure(f"Transcription failed: {message}")

            if self.max_polls is not None and self.poll_count >= self.max_polls:
                raise UpstreamError(
                    f"Transcription {job_id} still {job.status.value} after {self.poll_count} polls"
                )

            self._sleep(self.poll_interval)

    def transcribe(self, audio: bytes) -> TranscriptionJob:
        """Upload, create the job, and poll it to completion."""
        try:
            upload_url = self.upload(audio)
            job_id = self.create_job(upload_url)
            return self.poll(job_id)
        finally:
            if self._owns_http:
                self._http.close()


class AssemblyAITranscriptionService:
    """Transcription service collaborator: builds a fresh client per job."""

    def __init__(self, settings, http_client: Optional[httpx.Client] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.http_client = http_client
        self.sleep = sleep

    def transcribe(self, audio: bytes) -> TranscriptionJob:
        client = TranscriptionClient.from_settings(self.settings, http_client=self.http_client, sleep=self.sleep)
        return client.transcribe(audio)
