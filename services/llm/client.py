"""LLM Client — Instructor over an OpenAI-compatible endpoint (Ollama by default)."""

import requests
import instructor
from openai import OpenAI
from pydantic import BaseModel
from loguru import logger

from config.settings import LLMSettings


def get_instructor_client(
    llm: LLMSettings,
    mode: instructor.Mode = instructor.Mode.JSON,
) -> instructor.Instructor:
    """Create an Instructor client for the configured OpenAI-compatible server.

    Args:
        llm: Server root, API key (Ollama ignores it) and request timeout; '/v1' is appended to the root
        mode: Instructor output mode

    Returns:
        Instructor-wrapped OpenAI client
    """
    url = f"{llm.base_url.rstrip('/')}/v1"
    return instructor.from_openai(
        OpenAI(base_url=url, api_key=llm.api_key, timeout=llm.timeout_sec),
        mode=mode,
    )


def extract_structured(
    prompt: str,
    response_model: type[BaseModel],
    llm: LLMSettings | None = None,
    system_prompt: str | None = None,
    max_retries: int = 2,
) -> BaseModel:
    """Extract structured data from text via Instructor.

    Args:
        prompt: The user prompt (conversation text plus instructions)
        response_model: Pydantic model class for structured output
        llm: Server and model to use (defaults to a local Ollama)
        system_prompt: Optional system prompt for context
        max_retries: Instructor retry count on schema validation failure

    Returns:
        Instance of response_model
    """
    llm = llm or LLMSettings()
    client = get_instructor_client(llm)

    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})

    return client.chat.completions.create(
        model=llm.model,
        response_model=response_model,
        messages=messages,
        max_retries=max_retries,
    )


def check_llm_health(llm: LLMSettings | None = None) -> dict:
    """Check if the LLM server is running and which models are available."""
    base_url = (llm or LLMSettings()).base_url.rstrip("/")
    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=5)
        if resp.status_code == 200:
            models = [m["name"] for m in resp.json().get("models", [])]
            return {"status": "healthy", "models": models}
        return {"status": "error", "detail": f"HTTP {resp.status_code}"}
    except requests.ConnectionError:
        logger.debug(f"LLM server unreachable at {base_url}")
        return {"status": "unreachable", "detail": f"Cannot connect to {base_url}"}
