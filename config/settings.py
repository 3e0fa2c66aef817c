"""Pipeline settings — one explicit value per invocation, read from the environment.

Every field can be overridden independently, either through its environment
variable or by passing keyword overrides to PipelineSettings.from_env().
"""

import os
from pydantic import BaseModel, Field
from typing import Optional

from config.errors import ConfigError


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


class SpeechTrimSettings(BaseModel):
    enabled: bool = False
    min_size_bytes: int = Field(default=100 * 1024 * 1024, description="Only trim assets larger than this")
    noise_db: float = Field(default=-30.0, description="silencedetect noise floor in dB")
    min_silence_sec: float = Field(default=2.0, description="Shortest gap treated as non-speech")
    min_segment_sec: float = 1.0
    min_savings_percent: float = 10.0


class LLMSettings(BaseModel):
    base_url: str = Field(default="http://localhost:11434", description="OpenAI-compatible server root, without /v1")
    api_key: str = "ollama"
    model: str = "qwen2.5:3b"
    timeout_sec: float = 60.0


class PipelineSettings(BaseModel):
    assemblyai_api_key: str = ""
    assemblyai_base_url: str = "https://api.assemblyai.com"
    ffmpeg_path: str = "ffmpeg"

    speech_trim: SpeechTrimSettings = Field(default_factory=SpeechTrimSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)

    upload_timeout_sec: float = 60.0
    create_timeout_sec: float = 30.0
    poll_timeout_sec: float = 30.0
    poll_interval_sec: float = 3.0
    max_polls: Optional[int] = Field(
        None, description="Give up after this many status checks. None leaves polling unbounded."
    )

    sales_rep_speaker: str = "A"
    conversation_silence_gap_sec: float = 30.0
    analysis_workers: int = 4

    signed_url_ttl_sec: int = 3600
    download_timeout_sec: float = 600.0

    @classmethod
    def from_env(cls, **overrides) -> "PipelineSettings":
        """Build settings from environment variables, then apply keyword overrides."""
        speech_trim = SpeechTrimSettings(
            enabled=_env_bool("SPEECH_TRIM_ENABLED", False),
            min_size_bytes=int(_env_float("SPEECH_TRIM_MIN_SIZE_MB", 100.0) * 1024 * 1024),
            noise_db=_env_float("SPEECH_TRIM_NOISE_DB", -30.0),
            min_silence_sec=_env_float("SPEECH_TRIM_MIN_SILENCE_SEC", 2.0),
        )
        llm = LLMSettings(
            base_url=os.getenv("LLM_BASE_URL") or "http://localhost:11434",
            api_key=os.getenv("LLM_API_KEY") or "ollama",
            model=os.getenv("LLM_MODEL") or "qwen2.5:3b",
            timeout_sec=_env_float("LLM_TIMEOUT_SEC", 60.0),
        )
        values = {
            "assemblyai_api_key": os.getenv("ASSEMBLYAI_API_KEY", ""),
            "assemblyai_base_url": os.getenv("ASSEMBLYAI_BASE_URL", "https://api.assemblyai.com"),
            "ffmpeg_path": os.getenv("FFMPEG_PATH") or "ffmpeg",
            "speech_trim": speech_trim,
            "llm": llm,
            "max_polls": _env_int("TRANSCRIPTION_MAX_POLLS", None),
            "sales_rep_speaker": os.getenv("SALES_REP_SPEAKER", "A"),
            "conversation_silence_gap_sec": _env_float("CONVERSATION_SILENCE_GAP_SEC", 30.0),
        }
        values.update(overrides)
        return cls(**values)

    def require_transcription_key(self) -> str:
        if not self.assemblyai_api_key:
            raise ConfigError("ASSEMBLYAI_API_KEY not configured")
        return self.assemblyai_api_key
