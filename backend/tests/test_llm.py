import json

import httpx
import pytest

from research_engine.errors import LLMError, StructuredOutputError
from research_engine.llm import LLMClient, parse_json_object, restate_contract


def _client(handler, api_key="key") -> LLMClient:
    return LLMClient(
        base_url="https://llm.example/v1/",
        api_key=api_key,
        default_model="test-model",
        transport=httpx.MockTransport(handler),
    )


def _completion(content) -> dict:
    return {"choices": [{"message": {"content": content}}]}


def test_parse_json_object_handles_wrapped_output():
    assert parse_json_object('{"a": 1}') == {"a": 1}
    assert parse_json_object('Sure! ```json\n{"a": {"b": 2}}\n``` done') == {"a": {"b": 2}}
    assert parse_json_object("[1, 2]") is None
    assert parse_json_object("no json here") is None
    assert parse_json_object("   ") is None


def test_restate_contract_only_changes_retries():
    assert restate_contract("prompt", 1, 2, "bad") == "prompt"
    retry = restate_contract("prompt", 2, 2, "plan failed validation (1 errors)")
    assert retry.startswith("prompt\n\nAttempt 2/2. The previous answer was rejected: plan failed validation (1 errors).")
    assert "Return ONLY a JSON object" in retry


@pytest.mark.asyncio
async def test_complete_json_posts_contract_in_json_mode():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_completion('{"ok": true}'))

    result = await _client(handler).complete_json("Do the thing", {"ok": "boolean"}, max_tokens=50)

    assert result == {"ok": True}
    assert seen["url"] == "https://llm.example/v1/chat/completions"
    assert seen["auth"] == "Bearer key"
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["max_tokens"] == 50
    assert seen["body"]["response_format"] == {"type": "json_object"}
    assert '"ok": "boolean"' in seen["body"]["messages"][1]["content"]


@pytest.mark.asyncio
async def test_complete_json_joins_content_parts():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion([{"type": "text", "text": '{"a":'}, {"type": "text", "text": "1}"}]))

    assert await _client(handler).complete_json("p", {}) == {"a": 1}


@pytest.mark.asyncio
async def test_non_json_output_is_a_structured_output_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion("I cannot help with that."))

    with pytest.raises(StructuredOutputError):
        await _client(handler).complete_json("p", {})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [httpx.Response(500), httpx.Response(200, json={"choices": []}), httpx.Response(200, json=_completion(""))],
)
async def test_transport_failures_raise_llm_error(response):
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    with pytest.raises(LLMError):
        await _client(handler).complete_json("p", {})


@pytest.mark.asyncio
async def test_unconfigured_client_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(LLMError):
        await _client(handler, api_key="").complete_json("p", {})
