"""Pipeline error taxonomy.

Fatal errors carry the HTTP status the API surface should answer with.
NonFatalDegradation subclasses are raised inside absorbing boundaries
(speech trimming, per-conversation analysis) and never escape the orchestrator.
"""


class PipelineError(Exception):
    """Base for every fatal pipeline failure."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PipelineError):
    """A required invocation field is missing or malformed."""

    status_code = 400


class AuthError(PipelineError):
    status_code = 401


class RateLimitError(AuthError):
    status_code = 429

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class ConfigError(PipelineError):
    """A required credential or setting is absent. Raised before any work begins."""

    status_code = 500


class UpstreamError(PipelineError):
    """Storage or transcription service unreachable, timed out, or non-2xx."""

    status_code = 502

    def __init__(self, message: str, status: int | None = None):
        if status is not None:
            message = f"{message} (status {status})"
        super().__init__(message)
        self.status = status


class TranscriptionFailure(PipelineError):
    """The transcription job reached a terminal 'error' or 'terminated' state."""

    status_code = 502


class AudioProcessingError(PipelineError):
    """ffmpeg failed while producing the redacted audio."""

    status_code = 500


class NonFatalDegradation(Exception):
    """A failure the pipeline logs and absorbs with a safe fallback."""


class SpeechTrimError(NonFatalDegradation):
    pass


class AnalysisError(NonFatalDegradation):
    pass
