from __future__ import annotations

import json
from pathlib import Path
import sys
from typing import Callable

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from adapters import (
    ANTHROPIC_MODELS,
    GOOGLE_FALLBACK_MODELS,
    ProviderHTTPError,
    RequestTimeouts,
    create_adapter,
)
from records import (
    AssembledResponse,
    ErrorOutcome,
    GenerationParameters,
    Provider,
    TerminalCategory,
)


Handler = Callable[[httpx.Request], httpx.Response]


def _adapter(provider: Provider, handler: Handler, **kwargs):  # noqa: ANN003
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return create_adapter(provider, client=client, **kwargs)


def _sse(*payloads: object) -> bytes:
    return "".join(
        f"data: {payload if isinstance(payload, str) else json.dumps(payload)}\n\n"
        for payload in payloads
    ).encode("utf-8")


def test_openai_streaming_prompt_end_to_end() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = _sse(
            {"choices": [{"delta": {"content": "O"}}]},
            {"choices": [{"delta": {"content": "K"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 9, "completion_tokens": 2}},
            "[DONE]",
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    deltas: list[str] = []
    adapter = _adapter(Provider.OPENAI, handler)
    response = adapter.send_prompt(
        "gpt-4o-mini",
        "Say OK",
        GenerationParameters(temperature=0.2, max_output_tokens=16),
        credential="sk-test",
        on_delta=deltas.append,
    )

    assert isinstance(response, AssembledResponse)
    assert response.text == "OK"
    assert deltas == ["O", "K"]
    assert response.input_tokens == 9
    assert response.output_tokens == 2
    assert response.terminal_category is TerminalCategory.COMPLETE
    assert response.streamed is True

    request = seen[0]
    assert request.url == "https://api.openai.com/v1/chat/completions"
    assert request.headers["authorization"] == "Bearer sk-test"
    payload = json.loads(request.content)
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["temperature"] == 0.2
    assert payload["max_tokens"] == 16
    assert payload["messages"] == [{"role": "user", "content": "Say OK"}]


def test_openai_one_shot_prompt() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": "4"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 8, "completion_tokens": 1},
            },
        )

    response = _adapter(Provider.OPENAI, handler).send_prompt(
        "gpt-4o", "2+2?", credential="sk-test"
    )
    assert isinstance(response, AssembledResponse)
    assert response.text == "4"
    assert response.output_tokens == 1
    assert response.streamed is False


def test_anthropic_streaming_prompt_uses_messages_api() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = (
            b"event: message_start\n"
            + _sse({"type": "message_start", "message": {"usage": {"input_tokens": 5}}})
            + _sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}})
            + _sse({"type": "message_delta", "delta": {"stop_reason": "max_tokens"}, "usage": {"output_tokens": 1}})
            + _sse({"type": "message_stop"})
        )
        return httpx.Response(200, content=body)

    response = _adapter(Provider.ANTHROPIC, handler).send_prompt(
        "claude-3-5-haiku-20241022", "Hello", credential="ak-test", on_delta=lambda _: None
    )
    assert isinstance(response, AssembledResponse)
    assert response.text == "Hi"
    assert response.terminal_reason == "max_tokens"
    assert response.terminal_category is TerminalCategory.LENGTH
    assert response.input_tokens == 5
    assert response.output_tokens == 1

    request = seen[0]
    assert request.url == "https://api.anthropic.com/v1/messages"
    assert request.headers["x-api-key"] == "ak-test"
    assert request.headers["anthropic-version"] == "2023-06-01"


def test_anthropic_one_shot_joins_text_blocks() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "content": [{"type": "text", "text": "Hello"}, {"type": "text", "text": " there"}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 3, "output_tokens": 2},
            },
        )

    response = _adapter(Provider.ANTHROPIC, handler).send_prompt(
        "claude-3-haiku-20240307", "Hi", credential="ak-test"
    )
    assert isinstance(response, AssembledResponse)
    assert response.text == "Hello there"
    assert response.terminal_category is TerminalCategory.COMPLETE


def test_google_streaming_prompt_requests_sse_and_parses_chunks() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = (
            b'data: {"candidates": [{"content": {"parts": [{"text": "Bon"}]}}]}\r\n\r\n'
            b'data: {"candidates": [{"content": {"parts": [{"text": "jour"}]}, "finishReason": "STOP"}],'
            b' "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2}}\r\n\r\n'
        )
        return httpx.Response(200, content=body)

    deltas: list[str] = []
    response = _adapter(Provider.GOOGLE, handler).send_prompt(
        "models/gemini-2.5-flash", "Hello", credential="g-test", on_delta=deltas.append
    )
    assert isinstance(response, AssembledResponse)
    assert response.text == "Bonjour"
    assert deltas == ["Bon", "jour"]
    assert response.output_tokens == 2

    request = seen[0]
    assert request.url.path == "/v1beta/models/gemini-2.5-flash:streamGenerateContent"
    assert request.url.params["alt"] == "sse"
    assert request.headers["x-goog-api-key"] == "g-test"
    payload = json.loads(request.content)
    assert payload["generationConfig"] == {"temperature": 0.7, "maxOutputTokens": 2048}


def test_google_one_shot_prompt() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith(":generateContent")
        return httpx.Response(
            200,
            json={
                "candidates": [{"content": {"parts": [{"text": "Yes"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 1},
            },
        )

    response = _adapter(Provider.GOOGLE, handler).send_prompt(
        "gemini-2.0-flash", "Ok?", credential="g-test"
    )
    assert isinstance(response, AssembledResponse)
    assert response.text == "Yes"
    assert response.streamed is False


def test_custom_api_base_is_used() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "x"}}]})

    _adapter(Provider.OPENAI, handler, api_base="http://proxy.local/openai/").send_prompt(
        "gpt-4o", "hi", credential="sk"
    )
    assert str(seen[0].url) == "http://proxy.local/openai/chat/completions"


@pytest.mark.parametrize(
    ("status_code", "body", "category"),
    [
        (401, {"error": {"message": "Incorrect API key provided", "type": "invalid_request_error"}}, "auth"),
        (429, {"error": {"message": "Rate limit reached"}}, "rate_limit"),
        (404, {"error": {"message": "The model does not exist"}}, "model_not_found"),
        (529, {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}, "overloaded"),
    ],
)
def test_http_errors_become_error_outcomes(
    status_code: int, body: dict[str, object], category: str
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body)

    for on_delta in (None, lambda _: None):
        outcome = _adapter(Provider.OPENAI, handler).send_prompt(
            "gpt-4o", "hi", credential="sk", on_delta=on_delta
        )
        assert isinstance(outcome, ErrorOutcome)
        assert outcome.category == category
        assert outcome.status_code == status_code
        assert outcome.message.startswith(f"HTTP {status_code}:")
        assert outcome.partial is None


def test_transport_error_becomes_network_outcome() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    outcome = _adapter(Provider.ANTHROPIC, handler).send_prompt(
        "claude-3-haiku-20240307", "hi", credential="ak"
    )
    assert isinstance(outcome, ErrorOutcome)
    assert outcome.category == "network"


def test_missing_credential_never_reaches_the_network() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    outcome = _adapter(Provider.GOOGLE, handler).send_prompt("gemini-2.5-pro", "hi")
    assert isinstance(outcome, ErrorOutcome)
    assert outcome.category == "auth"


def test_stream_error_after_text_returns_partial_response() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = _sse(
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Once upon"}},
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )
        return httpx.Response(200, content=body)

    outcome = _adapter(Provider.ANTHROPIC, handler).send_prompt(
        "claude-3-haiku-20240307", "story", credential="ak", on_delta=lambda _: None
    )
    assert isinstance(outcome, ErrorOutcome)
    assert outcome.category == "overloaded"
    assert outcome.partial is not None
    assert outcome.partial.text == "Once upon"


def test_streaming_deadline_is_a_timeout() -> None:
    ticks = iter([0.0, 0.0, 0.0, 100.0, 100.0, 100.0, 100.0])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, content=iter([_sse({"choices": [{"delta": {"content": "a"}}]}), b"data: [DONE]\n\n"])
        )

    adapter = _adapter(
        Provider.OPENAI,
        handler,
        timeouts=RequestTimeouts(one_shot_s=1, streaming_s=5, connect_s=1),
    )
    adapter.clock = lambda: next(ticks)
    outcome = adapter.send_prompt("gpt-4o", "hi", credential="sk", on_delta=lambda _: None)
    assert isinstance(outcome, ErrorOutcome)
    assert outcome.category == "timeout"


def test_openai_list_models_filters_and_sorts_chat_models() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/models"
        return httpx.Response(
            200,
            json={
                "data": [
                    {"id": "gpt-4o-mini"},
                    {"id": "text-embedding-3-small"},
                    {"id": "gpt-4o-realtime-preview"},
                    {"id": "o3-mini"},
                    {"id": "gpt-3.5-turbo-instruct"},
                    {"id": "gpt-4o"},
                    {"id": "dall-e-3"},
                ]
            },
        )

    models = _adapter(Provider.OPENAI, handler).list_models("sk")
    assert [model.model_id for model in models] == ["o3-mini", "gpt-4o-mini", "gpt-4o"]
    assert models[2].display_name == "Gpt 4o"
    assert all(model.context_window == 8192 for model in models)


def test_openai_list_models_without_credential_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(ProviderHTTPError):
        _adapter(Provider.OPENAI, handler).list_models(None)


def test_anthropic_list_models_is_static() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    models = _adapter(Provider.ANTHROPIC, handler).list_models()
    assert [model.model_id for model in models] == list(ANTHROPIC_MODELS)
    assert all(model.context_window == 200_000 for model in models)


def test_google_list_models_keeps_generate_content_models() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["pageSize"] == "1000"
        return httpx.Response(
            200,
            json={
                "models": [
                    {
                        "name": "models/gemini-2.5-flash",
                        "displayName": "Gemini 2.5 Flash",
                        "inputTokenLimit": 1048576,
                        "supportedGenerationMethods": ["generateContent", "countTokens"],
                    },
                    {
                        "name": "models/text-embedding-004",
                        "supportedGenerationMethods": ["embedContent"],
                    },
                ]
            },
        )

    models = _adapter(Provider.GOOGLE, handler).list_models("g-test")
    assert [model.model_id for model in models] == ["gemini-2.5-flash"]
    assert models[0].display_name == "Gemini 2.5 Flash"
    assert models[0].context_window == 1048576


def test_google_list_models_falls_back_on_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "internal"}})

    expected = [model_id for model_id, _ in GOOGLE_FALLBACK_MODELS]
    assert [m.model_id for m in _adapter(Provider.GOOGLE, handler).list_models("g")] == expected
    assert [m.model_id for m in _adapter(Provider.GOOGLE, handler).list_models(None)] == expected


def test_create_adapter_rejects_unknown_provider() -> None:
    with pytest.raises(ValueError, match="Unknown provider"):
        create_adapter("mistral")
