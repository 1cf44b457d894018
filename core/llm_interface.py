# core/llm_interface.py
"""
Handles all direct interactions with the chat-completion API: one
request/response cycle per call, followed by extraction and schema
validation of the structured payload embedded in the model's text.

Retrying is deliberately left to the callers; this module raises typed
errors and never loops.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from config import settings
from parsing import parse_structured_response, validate_payload
from pydantic import BaseModel

from core.exceptions import ApiError, ParseError, TransportError
from core.usage import TokenUsage
from models import Credentials, SamplingParams

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from processing.prompt_builder import PromptRequest

logger = structlog.get_logger(__name__)


@dataclass
class CompletionResponse:
    """Parsed outcome of one completion call."""

    parsed: Any
    raw_text: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)


class CompletionClient:
    """Thin async client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        timeout: float = settings.HTTPX_TIMEOUT,
        api_base: str = settings.OPENAI_API_BASE,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        # A single async client reuses connections across a whole run
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self.api_base = api_base.rstrip("/")
        self.request_count = 0

    async def __aenter__(self) -> CompletionClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _log_llm_usage(self, model_name: str, usage: TokenUsage) -> None:
        if usage.used:
            logger.info(
                f"LLM ('{model_name}') Usage - Prompt: {usage.prompt_tokens} tk, "
                f"Comp: {usage.completion_tokens} tk, Total: {usage.total_tokens} tk"
            )
        else:
            logger.debug(f"LLM ('{model_name}') response missing 'usage' information.")

    async def _post(
        self, url: str, payload: dict[str, Any], headers: dict[str, str]
    ) -> dict[str, Any]:
        self.request_count += 1
        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportError(f"Request to {url} timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransportError(f"Request to {url} failed: {exc}") from exc

        if not response.is_success:
            raise ApiError(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as exc:
            raise ParseError(
                f"Completion endpoint returned a non-JSON body: {response.text[:200]!r}"
            ) from exc
        if not isinstance(data, dict):
            raise ParseError("Completion endpoint returned an unexpected body shape")
        return data

    @staticmethod
    def _message_content(data: dict[str, Any]) -> str:
        choices = data.get("choices")
        if not choices or not isinstance(choices, list):
            raise ParseError(f"Response has no choices: {str(data)[:200]}")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ParseError("Response choice carries no message content")
        return content

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        model_id: str | None,
        credentials: Credentials,
        sampling: SamplingParams,
        response_model: type[BaseModel] | None = None,
        validation_context: dict[str, Any] | None = None,
    ) -> CompletionResponse:
        """Run one completion and return its structured payload.

        Raises:
            ApiError: non-2xx HTTP status, with the raw error body.
            TransportError: timeout or connection failure.
            ParseError: no structured payload could be extracted.
            IncompleteResponse: payload does not satisfy ``response_model``.
        """
        model_name = model_id or credentials.model
        api_base = (credentials.api_base or self.api_base).rstrip("/")
        payload: dict[str, Any] = {
            "model": model_name,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": sampling.temperature,
            "max_tokens": sampling.max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {credentials.api_key}",
            "Content-Type": "application/json",
        }

        logger.debug(
            f"Calling LLM '{model_name}'. Prompt chars: {len(system_prompt) + len(user_prompt)}. "
            f"Max output tokens: {sampling.max_tokens}. Temp: {sampling.temperature}"
        )
        data = await self._post(f"{api_base}/chat/completions", payload, headers)

        usage = TokenUsage.from_response(data.get("usage"))
        self._log_llm_usage(model_name, usage)

        raw_text = self._message_content(data)
        parsed = parse_structured_response(raw_text)
        if response_model is not None:
            parsed = validate_payload(parsed, response_model, validation_context)

        return CompletionResponse(
            parsed=parsed, raw_text=raw_text, model=model_name, usage=usage
        )

    async def complete_request(
        self,
        request: PromptRequest,
        credentials: Credentials,
        model_id: str | None = None,
    ) -> CompletionResponse:
        """Execute a rendered ``PromptRequest``."""
        return await self.complete(
            request.system_prompt,
            request.user_prompt,
            model_id,
            credentials,
            request.sampling,
            response_model=request.response_model,
            validation_context=request.validation_context,
        )
