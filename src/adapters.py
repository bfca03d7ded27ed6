from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import time
from typing import Any, Callable, Iterable, Iterator, Protocol

import httpx

from classifier import categorize_failure, categorize_terminal_reason
from decoders import (
    AnthropicStreamDecoder,
    DeltaCallback,
    GeminiStreamDecoder,
    OpenAIStreamDecoder,
    StreamDecoder,
    StreamInterrupted,
    fold_events,
)
from metrics import LatencyTracker
from records import (
    AssembledResponse,
    ErrorOutcome,
    GenerationParameters,
    ModelDescriptor,
    Provider,
    display_name_for,
)


logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 8192


@dataclass(frozen=True, slots=True)
class RequestTimeouts:
    one_shot_s: float = 30.0
    streaming_s: float = 60.0
    connect_s: float = 10.0


@dataclass(frozen=True, slots=True)
class HttpRequest:
    method: str
    path: str
    json: dict[str, Any] | None = None
    params: dict[str, str] = field(default_factory=dict)


class ProviderHTTPError(Exception):
    def __init__(
        self, status_code: int, message: str, error_type: str | None = None
    ) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.error_type = error_type


class DeadlineExceeded(TimeoutError):
    pass


Fetch = Callable[[HttpRequest], dict[str, Any]]


class WireFormat(Protocol):
    provider: Provider
    default_api_base: str

    def auth_headers(self, credential: str) -> dict[str, str]:
        ...

    def generation_request(
        self, model_id: str, prompt: str, params: GenerationParameters, stream: bool
    ) -> HttpRequest:
        ...

    def parse_response(self, payload: dict[str, Any]) -> AssembledResponse:
        ...

    def new_decoder(self) -> StreamDecoder:
        ...

    def list_models(self, fetch: Fetch) -> list[ModelDescriptor]:
        ...


def _optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class OpenAIWire:
    provider = Provider.OPENAI
    default_api_base = "https://api.openai.com/v1"

    chat_prefixes = ("gpt-", "o1", "o3", "o4", "chatgpt-")
    excluded_markers = (
        "instruct",
        "audio",
        "realtime",
        "embedding",
        "tts",
        "transcribe",
        "image",
        "search",
        "moderation",
    )

    def auth_headers(self, credential: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential}"}

    def generation_request(
        self, model_id: str, prompt: str, params: GenerationParameters, stream: bool
    ) -> HttpRequest:
        body: dict[str, Any] = {
            "model": model_id,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": params.temperature,
            "max_tokens": params.max_output_tokens,
            "stream": stream,
        }
        if stream:
            # Usage only arrives in-band when explicitly requested.
            body["stream_options"] = {"include_usage": True}
        return HttpRequest(method="POST", path="/chat/completions", json=body)

    def parse_response(self, payload: dict[str, Any]) -> AssembledResponse:
        choices = payload.get("choices") or []
        text = ""
        finish_reason = None
        if choices and isinstance(choices[0], dict):
            message = choices[0].get("message") or {}
            text = str(message.get("content") or "")
            finish_reason = choices[0].get("finish_reason")
        usage = payload.get("usage") or {}
        return AssembledResponse(
            text=text,
            input_tokens=_optional_int(usage.get("prompt_tokens")),
            output_tokens=_optional_int(usage.get("completion_tokens")),
            terminal_reason=str(finish_reason) if finish_reason else None,
            streamed=False,
        )

    def new_decoder(self) -> StreamDecoder:
        return OpenAIStreamDecoder()

    def list_models(self, fetch: Fetch) -> list[ModelDescriptor]:
        payload = fetch(HttpRequest(method="GET", path="/models"))
        entries = [entry for entry in payload.get("data") or [] if isinstance(entry, dict)]
        models: list[ModelDescriptor] = []
        for entry in entries:
            model_id = str(entry.get("id") or "")
            if not self._is_chat_model(model_id):
                continue
            models.append(
                ModelDescriptor(
                    provider=self.provider,
                    model_id=model_id,
                    display_name=display_name_for(model_id),
                    context_window=_optional_int(entry.get("context_window"))
                    or DEFAULT_CONTEXT_WINDOW,
                    capabilities=("chat", "streaming"),
                )
            )
        return sorted(models, key=lambda model: model.model_id, reverse=True)

    def _is_chat_model(self, model_id: str) -> bool:
        if not model_id.startswith(self.chat_prefixes):
            return False
        return not any(marker in model_id for marker in self.excluded_markers)


ANTHROPIC_MODELS = (
    "claude-opus-4-20250514",
    "claude-sonnet-4-20250514",
    "claude-3-7-sonnet-20250219",
    "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku-20241022",
    "claude-3-opus-20240229",
    "claude-3-haiku-20240307",
)

# Checked in order; the first substring contained in the model id wins.
ANTHROPIC_CONTEXT_WINDOWS = (
    ("claude-opus-4", 200_000),
    ("claude-sonnet-4", 200_000),
    ("claude-3", 200_000),
    ("claude-2.1", 200_000),
    ("claude-2", 100_000),
    ("claude-instant", 100_000),
)


def anthropic_context_window(model_id: str) -> int:
    for marker, window in ANTHROPIC_CONTEXT_WINDOWS:
        if marker in model_id:
            return window
    return DEFAULT_CONTEXT_WINDOW


class AnthropicWire:
    provider = Provider.ANTHROPIC
    default_api_base = "https://api.anthropic.com/v1"
    api_version = "2023-06-01"

    def auth_headers(self, credential: str) -> dict[str, str]:
        return {"x-api-key": credential, "anthropic-version": self.api_version}

    def generation_request(
        self, model_id: str, prompt: str, params: GenerationParameters, stream: bool
    ) -> HttpRequest:
        return HttpRequest(
            method="POST",
            path="/messages",
            json={
                "model": model_id,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": params.temperature,
                "max_tokens": params.max_output_tokens,
                "stream": stream,
            },
        )

    def parse_response(self, payload: dict[str, Any]) -> AssembledResponse:
        blocks = payload.get("content") or []
        text = "".join(
            str(block.get("text") or "")
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = payload.get("usage") or {}
        stop_reason = payload.get("stop_reason")
        return AssembledResponse(
            text=text,
            input_tokens=_optional_int(usage.get("input_tokens")),
            output_tokens=_optional_int(usage.get("output_tokens")),
            terminal_reason=str(stop_reason) if stop_reason else None,
            streamed=False,
        )

    def new_decoder(self) -> StreamDecoder:
        return AnthropicStreamDecoder()

    def list_models(self, fetch: Fetch) -> list[ModelDescriptor]:
        return [
            ModelDescriptor(
                provider=self.provider,
                model_id=model_id,
                display_name=display_name_for(model_id),
                context_window=anthropic_context_window(model_id),
                capabilities=("chat", "streaming"),
            )
            for model_id in ANTHROPIC_MODELS
        ]


GOOGLE_FALLBACK_MODELS = (
    ("gemini-2.5-pro", 1_048_576),
    ("gemini-2.5-flash", 1_048_576),
    ("gemini-2.0-flash", 1_048_576),
    ("gemini-1.5-pro", 2_097_152),
    ("gemini-1.5-flash", 1_048_576),
)


class GoogleWire:
    provider = Provider.GOOGLE
    default_api_base = "https://generativelanguage.googleapis.com/v1beta"

    def auth_headers(self, credential: str) -> dict[str, str]:
        return {"x-goog-api-key": credential}

    def generation_request(
        self, model_id: str, prompt: str, params: GenerationParameters, stream: bool
    ) -> HttpRequest:
        model_name = model_id.removeprefix("models/")
        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": params.temperature,
                "maxOutputTokens": params.max_output_tokens,
            },
        }
        if stream:
            return HttpRequest(
                method="POST",
                path=f"/models/{model_name}:streamGenerateContent",
                json=body,
                params={"alt": "sse"},
            )
        return HttpRequest(
            method="POST", path=f"/models/{model_name}:generateContent", json=body
        )

    def parse_response(self, payload: dict[str, Any]) -> AssembledResponse:
        return fold_events(GeminiStreamDecoder().events_from(payload), streamed=False)

    def new_decoder(self) -> StreamDecoder:
        return GeminiStreamDecoder()

    def list_models(self, fetch: Fetch) -> list[ModelDescriptor]:
        try:
            payload = fetch(
                HttpRequest(method="GET", path="/models", params={"pageSize": "1000"})
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Google model listing failed, using fallback list: [%s] %s",
                type(exc).__name__, exc,
            )
            return self.fallback_models()

        models: list[ModelDescriptor] = []
        for entry in payload.get("models") or []:
            if not isinstance(entry, dict):
                continue
            methods = tuple(str(method) for method in entry.get("supportedGenerationMethods") or [])
            if "generateContent" not in methods:
                continue
            model_id = str(entry.get("name") or "").removeprefix("models/")
            if not model_id:
                continue
            models.append(
                ModelDescriptor(
                    provider=self.provider,
                    model_id=model_id,
                    display_name=str(entry.get("displayName") or display_name_for(model_id)),
                    context_window=_optional_int(entry.get("inputTokenLimit"))
                    or DEFAULT_CONTEXT_WINDOW,
                    capabilities=methods,
                )
            )
        return models

    def fallback_models(self) -> list[ModelDescriptor]:
        return [
            ModelDescriptor(
                provider=self.provider,
                model_id=model_id,
                display_name=display_name_for(model_id),
                context_window=window,
                capabilities=("generateContent", "streamGenerateContent"),
            )
            for model_id, window in GOOGLE_FALLBACK_MODELS
        ]


WIRE_FORMATS: dict[Provider, Callable[[], WireFormat]] = {
    Provider.OPENAI: OpenAIWire,
    Provider.ANTHROPIC: AnthropicWire,
    Provider.GOOGLE: GoogleWire,
}


def _error_details(response: httpx.Response) -> tuple[str, str | None]:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message") or response.reason_phrase
            error_type = error.get("type") or error.get("status")
            return str(message), (str(error_type) if error_type else None)
        if isinstance(error, str):
            return error, None

    text = response.text.strip()
    return (text or response.reason_phrase or "request failed"), None


class ProviderAdapter:
    """Sends prompts to one provider and lists its models.

    ``send_prompt`` never raises: every failure, including one in the middle
    of a stream, comes back as an ``ErrorOutcome``.
    """

    def __init__(
        self,
        wire: WireFormat,
        client: httpx.Client | None = None,
        api_base: str | None = None,
        timeouts: RequestTimeouts | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.wire = wire
        self.provider = wire.provider
        self.api_base = (api_base or wire.default_api_base).rstrip("/")
        self.timeouts = timeouts or RequestTimeouts()
        self.clock = clock
        self._owns_client = client is None
        self.client = client or httpx.Client()

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def list_models(self, credential: str | None = None) -> list[ModelDescriptor]:
        def fetch(request: HttpRequest) -> dict[str, Any]:
            if not credential:
                raise ProviderHTTPError(401, "API key not configured")
            response = self.client.request(
                request.method,
                self._url(request.path),
                params=request.params or None,
                headers=self.wire.auth_headers(credential),
                timeout=self._one_shot_timeout(),
            )
            self._raise_for_status(response)
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError("Model catalog response must be a JSON object")
            return payload

        models = self.wire.list_models(fetch)
        logger.debug("Listed %d %s model(s)", len(models), self.provider.value)
        return models

    def send_prompt(
        self,
        model_id: str,
        prompt: str,
        params: GenerationParameters | None = None,
        credential: str | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> AssembledResponse | ErrorOutcome:
        params = params or GenerationParameters()
        tracker = LatencyTracker(clock=self.clock)
        logger.debug(
            "Sending prompt to %s/%s (streaming=%s)",
            self.provider.value, model_id, on_delta is not None,
        )
        try:
            if not credential:
                raise ProviderHTTPError(401, "API key not configured")
            if on_delta is None:
                response = self._send_once(model_id, prompt, params, credential)
            else:
                response = self._send_streaming(model_id, prompt, params, credential, on_delta)
        except StreamInterrupted as exc:
            return self._error_outcome(exc.cause, tracker, partial=self._categorized(exc.partial))
        except Exception as exc:  # noqa: BLE001
            return self._error_outcome(exc, tracker)
        return self._categorized(response)

    def _send_once(
        self,
        model_id: str,
        prompt: str,
        params: GenerationParameters,
        credential: str,
    ) -> AssembledResponse:
        request = self.wire.generation_request(model_id, prompt, params, stream=False)
        response = self.client.request(
            request.method,
            self._url(request.path),
            params=request.params or None,
            json=request.json,
            headers=self.wire.auth_headers(credential),
            timeout=self._one_shot_timeout(),
        )
        self._raise_for_status(response)
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Response body must be a JSON object")
        return self.wire.parse_response(payload)

    def _send_streaming(
        self,
        model_id: str,
        prompt: str,
        params: GenerationParameters,
        credential: str,
        on_delta: DeltaCallback,
    ) -> AssembledResponse:
        request = self.wire.generation_request(model_id, prompt, params, stream=True)
        deadline = self.clock() + self.timeouts.streaming_s
        with self.client.stream(
            request.method,
            self._url(request.path),
            params=request.params or None,
            json=request.json,
            headers=self.wire.auth_headers(credential),
            timeout=httpx.Timeout(self.timeouts.streaming_s, connect=self.timeouts.connect_s),
        ) as response:
            if response.status_code >= 400:
                response.read()
                self._raise_for_status(response)
            decoder = self.wire.new_decoder()
            return decoder.decode(self._bounded(response.iter_bytes(), deadline), on_delta)

    def _bounded(self, chunks: Iterable[bytes], deadline: float) -> Iterator[bytes]:
        for chunk in chunks:
            if self.clock() > deadline:
                raise DeadlineExceeded(
                    f"Stream exceeded {self.timeouts.streaming_s:g}s time limit"
                )
            yield chunk

    def _categorized(self, response: AssembledResponse) -> AssembledResponse:
        return replace(
            response,
            terminal_category=categorize_terminal_reason(
                self.provider, response.terminal_reason
            ),
        )

    def _error_outcome(
        self,
        exc: BaseException,
        tracker: LatencyTracker,
        partial: AssembledResponse | None = None,
    ) -> ErrorOutcome:
        category = categorize_failure(exc)
        message = str(exc) or type(exc).__name__
        logger.debug(
            "%s request failed (%s): [%s] %s",
            self.provider.value, category.value, type(exc).__name__, message,
        )
        return ErrorOutcome(
            message=message,
            category=category.value,
            latency_ms=tracker.elapsed_ms(),
            status_code=getattr(exc, "status_code", None),
            partial=partial,
        )

    def _url(self, path: str) -> str:
        return f"{self.api_base}{path}"

    def _one_shot_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.timeouts.one_shot_s, connect=self.timeouts.connect_s)

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        message, error_type = _error_details(response)
        raise ProviderHTTPError(response.status_code, message, error_type=error_type)


def create_adapter(
    provider: Provider | str,
    client: httpx.Client | None = None,
    api_base: str | None = None,
    timeouts: RequestTimeouts | None = None,
) -> ProviderAdapter:
    try:
        wire_factory = WIRE_FORMATS[Provider(provider)]
    except ValueError:
        raise ValueError(f"Unknown provider: {provider}") from None
    return ProviderAdapter(
        wire=wire_factory(), client=client, api_base=api_base, timeouts=timeouts
    )
