"""Narration service client — HTTP connection to a text-generation backend.

The turn engine injects an LLM callable matching the protocol:

    async def __call__(self, stage: str, prompt: str) -> str: ...

`stage` identifies which step is calling ("companion", "game_master",
"prologue"). Implementations may use it for logging; none route on it.
The service keeps no context between calls, so every prompt carries the
whole story so far.

Implementations:

    HttpLLM          — real HTTP client for Gemini, KoboldCpp and
                       OpenAI-compatible backends. Selected by provider_format.
    EchoLLM          — returns the prompt back unchanged. Useful for running
                       a session without a model.
    UnconfiguredLLM  — fails every call with ServiceError; used when no key
                       or backend is configured, so turns degrade instead of
                       hanging.

Tests use StubLLM (defined in the test helpers) instead.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal, Protocol

import httpx

if TYPE_CHECKING:
    from storysync.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol: every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


# ---------------------------------------------------------------------------
# HttpLLM: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["gemini", "koboldcpp", "openai"]

GEMINI_URL = "https://generativelanguage.googleapis.com"
GEMINI_TEMPERATURE = 0.6
GEMINI_MAX_OUTPUT_TOKENS = 400


class HttpLLM:
    """Async HTTP client for text-generation backends.

    Supported formats:
      "gemini"     — POST /v1beta/models/{model}:generateContent?key=...
                     Response: {"candidates": [{"content": {"parts": [{"text": "..."}]}}]}
      "koboldcpp"  — POST /api/v1/generate  {"prompt": ...}
                     Response: {"results": [{"text": "..."}]}
      "openai"     — POST /v1/completions   {"model": ..., "prompt": ...}
                     Response: {"choices": [{"text": "..."}]}

    One request per call, no retries.

    Args:
        provider_url:    Base URL of the backend.
        api_key:         Gemini key or bearer token; empty if not required.
        provider_format: Wire format to use. Defaults to "gemini".
        model:           Model identifier (gemini and openai formats).
        timeout:         HTTP timeout in seconds. Defaults to 60.
    """

    def __init__(
        self,
        provider_url: str = GEMINI_URL,
        api_key: str = "",
        provider_format: ProviderFormat = "gemini",
        model: str = "gemini-1.5-flash",
        timeout: float = 60.0,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key and self._format != "gemini":
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _params(self) -> dict[str, str]:
        if self._format == "gemini" and self._api_key:
            return {"key": self._api_key}
        return {}

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "gemini":
            url = f"{self._base_url}/v1beta/models/{self._model}:generateContent"
            body = {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {
                    "temperature": GEMINI_TEMPERATURE,
                    "maxOutputTokens": GEMINI_MAX_OUTPUT_TOKENS,
                },
            }
            return url, body

        if self._format == "openai":
            url = f"{self._base_url}/v1/completions"
            body: dict = {"prompt": prompt}
            if self._model:
                body["model"] = self._model
            return url, body

        # koboldcpp
        url = f"{self._base_url}/api/v1/generate"
        return url, {"prompt": prompt}

    def _parse_response(self, data: dict) -> str:
        """Extract the completion text from the response body."""
        if self._format == "gemini":
            try:
                return data["candidates"][0]["content"]["parts"][0]["text"]
            except (KeyError, IndexError, TypeError) as e:
                raise ServiceError("Unexpected response format from Gemini backend") from e

        if self._format == "openai":
            choices = data.get("choices")
            if not choices or "text" not in choices[0]:
                raise ServiceError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["text"]

        results = data.get("results")
        if not results or "text" not in results[0]:
            raise ServiceError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    async def __call__(self, stage: str, prompt: str) -> str:
        url, body = self._build_request(prompt)
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    url, json=body, headers=self._headers(), params=self._params(),
                )
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise ServiceError(f"Cannot connect to narration backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise ServiceError(
                f"Narration backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise ServiceError(f"Narration backend timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise ServiceError(f"Narration backend request failed: {e!r}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise ServiceError("Narration backend returned a non-JSON body") from e
        text = self._parse_response(data).strip()
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


# ---------------------------------------------------------------------------
# EchoLLM: returns the prompt unchanged
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the prompt text as-is. No network calls."""

    async def __call__(self, stage: str, prompt: str) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        return prompt


class UnconfiguredLLM:
    """Stand-in used when no narration backend is configured."""

    async def __call__(self, stage: str, prompt: str) -> str:
        raise ServiceError("AI not configured. Set STORYSYNC_API_KEY or GEMINI_API_KEY.")


def build_llm(settings: Settings) -> LLM:
    """Construct the narration client described by `settings`."""
    if settings.provider_format == "gemini" and not settings.api_key:
        logger.info("no Gemini API key configured, narration disabled")
        return UnconfiguredLLM()
    if not settings.provider_url:
        return UnconfiguredLLM()
    return HttpLLM(
        provider_url=settings.provider_url,
        api_key=settings.api_key,
        provider_format=settings.provider_format,
        model=settings.model,
        timeout=settings.call_timeout,
    )


# ---------------------------------------------------------------------------
# ServiceError: raised for all connection and protocol failures
# ---------------------------------------------------------------------------

class ServiceError(RuntimeError):
    """Raised when the narration backend cannot be reached or returns an error."""
