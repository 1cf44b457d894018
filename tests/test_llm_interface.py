import json

import httpx
import pytest
from core.exceptions import ApiError, IncompleteResponse, ParseError, TransportError
from core.llm_interface import CompletionClient
from processing.prompt_builder import PromptBuilder

from conftest import standard_payload
from models import Credentials, ReaderAnalysis, SamplingParams


def _completion_body(content: str, usage: dict | None = None) -> dict:
    body: dict = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    if usage is not None:
        body["usage"] = usage
    return body


def _client(handler) -> CompletionClient:
    return CompletionClient(
        api_base="https://llm.example/v1",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


CREDS = Credentials(api_key="sk-secret", model="gpt-test")


@pytest.mark.asyncio
async def test_complete_sends_chat_request_and_parses_payload():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        content = "Here you go:\n```json\n" + json.dumps(standard_payload()) + "\n```"
        return httpx.Response(
            200,
            json=_completion_body(content, {"prompt_tokens": 120, "completion_tokens": 80}),
        )

    async with _client(handler) as client:
        response = await client.complete(
            "system text",
            "user text",
            None,
            CREDS,
            SamplingParams(temperature=0.3, max_tokens=800),
            response_model=ReaderAnalysis,
        )

    assert seen["url"] == "https://llm.example/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-secret"
    assert seen["body"] == {
        "model": "gpt-test",
        "messages": [
            {"role": "system", "content": "system text"},
            {"role": "user", "content": "user text"},
        ],
        "temperature": 0.3,
        "max_tokens": 800,
    }
    assert isinstance(response.parsed, ReaderAnalysis)
    assert response.usage.prompt_tokens == 120
    assert response.usage.completion_tokens == 80
    assert response.usage.total_tokens == 200
    assert client.request_count == 1


@pytest.mark.asyncio
async def test_model_id_and_credential_api_base_override():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["model"] = json.loads(request.content)["model"]
        return httpx.Response(200, json=_completion_body('{"ok": true}'))

    creds = Credentials(api_key="k", model="default", api_base="https://proxy.example/api/")
    async with _client(handler) as client:
        response = await client.complete("s", "u", "override-model", creds, SamplingParams())

    assert seen["url"] == "https://proxy.example/api/chat/completions"
    assert seen["model"] == "override-model"
    assert response.parsed == {"ok": True}


@pytest.mark.asyncio
async def test_non_2xx_raises_api_error_with_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text='{"error": {"message": "Rate limit reached"}}')

    async with _client(handler) as client:
        with pytest.raises(ApiError) as excinfo:
            await client.complete("s", "u", None, CREDS, SamplingParams())

    assert excinfo.value.status_code == 429
    assert "Rate limit reached" in excinfo.value.body
    assert excinfo.value.is_transient


@pytest.mark.asyncio
async def test_client_error_is_not_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="invalid api key")

    async with _client(handler) as client:
        with pytest.raises(ApiError) as excinfo:
            await client.complete("s", "u", None, CREDS, SamplingParams())
    assert not excinfo.value.is_transient


@pytest.mark.asyncio
async def test_timeout_becomes_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async with _client(handler) as client:
        with pytest.raises(TransportError):
            await client.complete("s", "u", None, CREDS, SamplingParams())


@pytest.mark.asyncio
async def test_missing_message_content_is_parse_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": []})

    async with _client(handler) as client:
        with pytest.raises(ParseError):
            await client.complete("s", "u", None, CREDS, SamplingParams())


@pytest.mark.asyncio
async def test_prose_only_answer_is_parse_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion_body("I really enjoyed this chapter."))

    async with _client(handler) as client:
        with pytest.raises(ParseError):
            await client.complete("s", "u", None, CREDS, SamplingParams())


@pytest.mark.asyncio
async def test_schema_mismatch_is_incomplete_response():
    payload = standard_payload()
    del payload["feedback"]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion_body(json.dumps(payload)))

    async with _client(handler) as client:
        with pytest.raises(IncompleteResponse):
            await client.complete(
                "s", "u", None, CREDS, SamplingParams(), response_model=ReaderAnalysis
            )


@pytest.mark.asyncio
async def test_complete_request_uses_rendered_prompt(archetypes):
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion_body(json.dumps(standard_payload())))

    request = PromptBuilder().build(archetypes[0], "Chunk text", 0)
    async with _client(handler) as client:
        response = await client.complete_request(request, CREDS)

    assert seen["body"]["messages"][1]["content"] == request.user_prompt
    assert seen["body"]["max_tokens"] == request.sampling.max_tokens
    assert isinstance(response.parsed, ReaderAnalysis)
