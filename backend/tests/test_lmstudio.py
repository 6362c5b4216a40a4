from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from lmchat.config import ChatConfig
from lmchat.lmstudio import InferenceClient, LMStudioError

CONFIG = ChatConfig(backend_url="http://lm.test", default_model="local-model", temperature=0.7, max_tokens=2000)


def _client(captured: list[dict[str, Any]], response: httpx.Response) -> InferenceClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "http://lm.test/v1/chat/completions"
        captured.append(json.loads(request.content))
        return response

    return InferenceClient(CONFIG, transport=httpx.MockTransport(handler))


def _ok(content: str = "Hi there") -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "model": "qwen2.5-7b",
            "choices": [{"index": 0, "message": {"role": "assistant", "content": content}}],
            "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
        },
    )


def test_payload_defaults() -> None:
    payload = InferenceClient(CONFIG).build_payload([{"role": "user", "content": "hi"}])
    assert payload == {
        "model": "local-model",
        "messages": [{"role": "user", "content": "hi"}],
        "temperature": 0.7,
        "max_tokens": 2000,
        "stream": False,
    }


def test_payload_overrides_and_blank_model() -> None:
    client = InferenceClient(CONFIG)
    payload = client.build_payload([], model="mistral", temperature=0, max_tokens=64)
    assert (payload["model"], payload["temperature"], payload["max_tokens"]) == ("mistral", 0.0, 64)
    assert client.build_payload([], model="  ")["model"] == "local-model"


@pytest.mark.asyncio
async def test_chat_completion_returns_content_model_and_usage() -> None:
    captured: list[dict[str, Any]] = []
    client = _client(captured, _ok())

    completion = await client.chat_completion([{"role": "user", "content": "hello"}])

    assert completion.content == "Hi there"
    assert completion.model == "qwen2.5-7b"
    assert completion.usage == {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}
    assert captured[0]["messages"] == [{"role": "user", "content": "hello"}]
    assert captured[0]["stream"] is False


@pytest.mark.asyncio
async def test_error_status_carries_backend_detail() -> None:
    client = _client([], httpx.Response(500, text="model not loaded"))

    with pytest.raises(LMStudioError) as exc:
        await client.chat_completion([{"role": "user", "content": "hello"}])

    assert exc.value.status_code == 500
    assert exc.value.detail == "model not loaded"
    assert str(exc.value) == "LM Studio API error: Internal Server Error - model not loaded"


@pytest.mark.asyncio
async def test_unreachable_backend() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = InferenceClient(CONFIG, transport=httpx.MockTransport(handler))
    with pytest.raises(LMStudioError, match="ConnectError"):
        await client.chat_completion([{"role": "user", "content": "hello"}])


@pytest.mark.asyncio
async def test_unexpected_shape_is_an_error() -> None:
    client = _client([], httpx.Response(200, json={"choices": []}))
    with pytest.raises(LMStudioError, match="Unexpected"):
        await client.chat_completion([{"role": "user", "content": "hello"}])


@pytest.mark.asyncio
async def test_forward_completion_fills_defaults_and_keeps_extra_fields() -> None:
    captured: list[dict[str, Any]] = []
    client = _client(captured, _ok("relayed"))

    data = await client.forward_completion(
        {"messages": [{"role": "user", "content": "q"}], "top_p": 0.9, "temperature": None}
    )

    assert data["choices"][0]["message"]["content"] == "relayed"
    sent = captured[0]
    assert sent["top_p"] == 0.9
    assert sent["model"] == "local-model"
    assert sent["temperature"] == 0.7
    assert sent["max_tokens"] == 2000


@pytest.mark.parametrize(
    ("field", "value"), [("temperature", "hot"), ("max_tokens", "x"), ("max_tokens", [1]), ("temperature", True)]
)
def test_payload_rejects_non_numeric_sampling_values(field: str, value: Any) -> None:
    with pytest.raises(ValueError, match=f"{field} must be a number"):
        InferenceClient(CONFIG).build_payload([], **{field: value})


def test_payload_accepts_numeric_strings() -> None:
    payload = InferenceClient(CONFIG).build_payload([], temperature="0.2", max_tokens="128")
    assert (payload["temperature"], payload["max_tokens"]) == (0.2, 128)
