"""Sales call redaction API — uploaded recording → redacted audio, transcript, conversations."""

import os
import shutil

from dotenv import load_dotenv
load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from config.errors import PipelineError, RateLimitError
from config.schemas import Caller, ProcessRequest
from config.settings import PipelineSettings
from analysis.pii_detection import RegexPiiDetector
from analysis.conversation_analysis import LLMConversationAnalyzer
from pipeline.orchestrator import CallPipeline
from services.asr.transcription_client import AssemblyAITranscriptionService
from services.auth.rate_limit import UPLOAD_RATE_LIMIT, UploadAuthorizer
from services.llm.client import check_llm_health
from services.storage.local import LocalObjectStorage
from services.storage.repository import JsonFileRepository

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local")
S3_BUCKET = os.getenv("S3_BUCKET", "call-recordings")

app = FastAPI(
    title="Call Redaction",
    description="Sales call pipeline: PII muted in audio and transcript, conversations categorized",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One limiter per process, shared across requests
_authorizer = UploadAuthorizer()
_repository = JsonFileRepository()


def _build_storage():
    if STORAGE_BACKEND == "s3":
        from services.storage.s3 import S3ObjectStorage
        return S3ObjectStorage(S3_BUCKET)
    return LocalObjectStorage()


def get_repository() -> JsonFileRepository:
    return _repository


def get_pipeline() -> CallPipeline:
    """A pipeline wired to the configured backends, with settings read fresh for this request."""
    settings = PipelineSettings.from_env()
    return CallPipeline(
        storage=_build_storage(),
        repository=_repository,
        transcription=AssemblyAITranscriptionService(settings),
        pii_detector=RegexPiiDetector(),
        analyzer=LLMConversationAnalyzer(settings.llm),
        authorizer=_authorizer,
        settings=settings,
    )


def get_caller(
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
) -> Caller | None:
    """Caller identity as forwarded by the authenticating proxy."""
    if not x_user_id:
        return None
    return Caller(id=x_user_id, is_admin=(x_user_role or "").lower() == "admin")


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    body = {"error": exc.message}
    headers = {}
    if isinstance(exc, RateLimitError):
        body["retryAfter"] = exc.retry_after
        headers = {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(UPLOAD_RATE_LIMIT),
            "X-RateLimit-Remaining": "0",
        }
    if exc.status_code >= 500:
        logger.error(f"{request.url.path} failed ({exc.status_code}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.get("/api/health")
def health():
    """Health check — ffmpeg, transcription credentials, LLM server."""
    settings = PipelineSettings.from_env()
    return {
        "status": "healthy",
        "ffmpeg": shutil.which(settings.ffmpeg_path) is not None,
        "transcription_configured": bool(settings.assemblyai_api_key),
        "llm": {"model": settings.llm.model, **check_llm_health(settings.llm)},
    }


@app.post("/api/process-audio")
def process_audio(
    body: ProcessRequest,
    caller: Caller | None = Depends(get_caller),
    pipeline: CallPipeline = Depends(get_pipeline),
):
    """Run the full pipeline on an already-uploaded recording.

    Body: {"storagePath": "...", "originalFilename": "...", "salespersonId": "..."}

    Blocks until the transcript and conversations are saved.
    """
    result = pipeline.process(body, caller)
    return {
        "success": True,
        "transcriptId": result.transcript_id,
        "message": "Audio processed and redacted successfully",
        "result": result.model_dump(mode="json"),
    }


@app.get("/api/transcripts/{transcript_id}")
def get_transcript(transcript_id: str, repository: JsonFileRepository = Depends(get_repository)):
    """Saved transcript record with its persisted conversations."""
    record = repository.get_transcript(transcript_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Transcript {transcript_id} not found")
    return {
        "transcript": record,
        "conversations": [row["conversation"] for row in repository.list_conversations(transcript_id)],
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
