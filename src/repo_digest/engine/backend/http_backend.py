"""OpenAI-compatible chat completions backend over httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from repo_digest.engine.backend.base import BackendError
from repo_digest.engine.failure_classifier import classify_http_status
from repo_digest.engine.models import FailureKind

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_TEMPERATURE = 0.3
SYSTEM_PROMPT = "You are a meticulous senior engineer reviewing source code."
_ERROR_PREVIEW_CHARS = 300


class HttpChatBackend:
    """POST one chat completion per prompt to ``{base_url}/chat/completions``."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        temperature: float = DEFAULT_TEMPERATURE,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not base_url.strip():
            raise ValueError("HTTP backend requires a base URL.")
        if not api_key.strip():
            raise ValueError("HTTP backend requires an API key.")
        if not model.strip():
            raise ValueError("HTTP backend requires a model name.")
        self.model = model
        self.temperature = temperature
        self._endpoint = base_url.rstrip("/") + "/chat/completions"
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def analyze(self, prompt: str, max_output_tokens: int) -> str:
        payload = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": max_output_tokens,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        try:
            response = self._client.post(self._endpoint, json=payload)
        except httpx.TimeoutException as error:
            raise BackendError(
                f"Backend request timed out: {error}",
                kind=FailureKind.TIMEOUT,
            ) from error
        except httpx.TransportError as error:
            raise BackendError(
                f"Backend transport error: {error}",
                kind=FailureKind.NETWORK,
            ) from error

        if not response.is_success:
            kind = classify_http_status(response.status_code)
            raise BackendError(
                f"Backend returned HTTP {response.status_code}: "
                f"{response.text[:_ERROR_PREVIEW_CHARS]}",
                kind=kind,
            )

        return _extract_content(response)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpChatBackend:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _extract_content(response: httpx.Response) -> str:
    try:
        body: Any = response.json()
        content = body["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as error:
        raise BackendError(
            f"Backend response body is not a chat completion: {error}",
            kind=FailureKind.OTHER,
        ) from error
    if not isinstance(content, str):
        raise BackendError("Backend response content is not text.", kind=FailureKind.OTHER)

    usage = body.get("usage") if isinstance(body, dict) else None
    if isinstance(usage, dict):
        logger.debug(
            "Token usage: prompt=%s completion=%s total=%s",
            usage.get("prompt_tokens"),
            usage.get("completion_tokens"),
            usage.get("total_tokens"),
        )
    return content
