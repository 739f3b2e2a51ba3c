"""OpenAI-compatible chat completions backend (OpenRouter by default)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ifi_worker.orchestrator.backend.base import CodegenError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
SYSTEM_PROMPT = (
    "You are a code generation agent. Reply with a single unified diff that "
    "implements the instruction. Do not add commentary outside the diff."
)
_TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class OpenRouterCodegenBackend:
    """Generate a patch with one ``chat/completions`` request."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        api_key: str,
        model: str,
        max_tokens: int,
        timeout_seconds: float,
        base_url: str = DEFAULT_BASE_URL,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def generate(self, instruction: str) -> str:
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": instruction},
            ],
        }
        try:
            response = self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as error:
            raise CodegenError(f"Codegen request timed out: {error}", transient=True) from error
        except httpx.HTTPError as error:
            raise CodegenError(f"Codegen request failed: {error}", transient=True) from error

        if not response.is_success:
            raise CodegenError(
                f"Codegen request returned HTTP {response.status_code}: {_error_detail(response)}",
                transient=response.status_code in _TRANSIENT_STATUS_CODES,
            )
        content = _first_choice_content(response)
        if not content.strip():
            raise CodegenError("Codegen response contained no content", transient=False)
        return content

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpenRouterCodegenBackend:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _first_choice_content(response: httpx.Response) -> str:
    try:
        payload: Any = response.json()
        content = payload["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as error:
        raise CodegenError("Codegen response has an unexpected shape", transient=False) from error
    if not isinstance(content, str):
        raise CodegenError("Codegen response content is not text", transient=False)
    return content


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or "empty body"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    logger.debug("Unstructured codegen error body: %s", payload)
    return str(payload)[:200]
