from __future__ import annotations

import codecs
from dataclasses import dataclass, field
import json
import logging
from typing import Callable, Iterable, Iterator

from records import (
    AssembledResponse,
    ContentDelta,
    StreamEvent,
    TerminalReason,
    UsageUpdate,
)


logger = logging.getLogger(__name__)

DeltaCallback = Callable[[str], None]


class StreamProviderError(Exception):
    """Error reported by the provider inside an otherwise healthy stream."""

    def __init__(self, message: str, error_type: str | None = None) -> None:
        super().__init__(message)
        self.error_type = error_type


class StreamInterrupted(Exception):
    """The stream failed after it started; ``partial`` holds what arrived."""

    def __init__(self, partial: AssembledResponse, cause: BaseException) -> None:
        super().__init__(str(cause) or type(cause).__name__)
        self.partial = partial
        self.cause = cause


class LineBuffer:
    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decoder.decode(chunk)
        return self._drain()

    def flush(self) -> list[str]:
        self._pending += self._decoder.decode(b"", final=True)
        lines = self._drain()
        tail, self._pending = self._pending.rstrip("\r"), ""
        if tail.strip():
            lines.append(tail)
        return lines

    def _drain(self) -> list[str]:
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]


@dataclass(slots=True)
class ResponseAssembly:
    parts: list[str] = field(default_factory=list)
    input_tokens: int | None = None
    output_tokens: int | None = None
    terminal_reason: str | None = None

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, ContentDelta):
            self.parts.append(event.text)
        elif isinstance(event, UsageUpdate):
            if event.input_tokens is not None:
                self.input_tokens = event.input_tokens
            if event.output_tokens is not None:
                if event.cumulative:
                    self.output_tokens = event.output_tokens
                else:
                    self.output_tokens = (self.output_tokens or 0) + event.output_tokens
        elif isinstance(event, TerminalReason):
            if event.reason is not None:
                self.terminal_reason = event.reason

    def snapshot(self, streamed: bool) -> AssembledResponse:
        return AssembledResponse(
            text="".join(self.parts),
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            terminal_reason=self.terminal_reason,
            streamed=streamed,
        )


def fold_events(events: Iterable[StreamEvent], streamed: bool = False) -> AssembledResponse:
    assembly = ResponseAssembly()
    for event in events:
        assembly.apply(event)
    return assembly.snapshot(streamed=streamed)


def _optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _error_details(error: object) -> tuple[str, str | None]:
    if isinstance(error, dict):
        message = error.get("message") or error.get("type") or "stream error"
        error_type = error.get("type") or error.get("code") or error.get("status")
        return str(message), (str(error_type) if error_type is not None else None)
    return str(error), None


class StreamDecoder:
    name = "stream"

    def __init__(self) -> None:
        self.finished = False

    def decode(
        self,
        chunks: Iterable[bytes],
        on_delta: DeltaCallback | None = None,
    ) -> AssembledResponse:
        assembly = ResponseAssembly()
        try:
            for event in self.iter_events(chunks):
                assembly.apply(event)
                if on_delta is not None and isinstance(event, ContentDelta):
                    on_delta(event.text)
        except Exception as exc:  # noqa: BLE001
            partial = assembly.snapshot(streamed=True)
            logger.debug(
                "%s stream interrupted after %d chars: [%s] %s",
                self.name, len(partial.text), type(exc).__name__, exc,
            )
            raise StreamInterrupted(partial, exc) from exc
        return assembly.snapshot(streamed=True)

    def iter_events(self, chunks: Iterable[bytes]) -> Iterator[StreamEvent]:
        self.finished = False
        buffer = LineBuffer()
        for chunk in chunks:
            for line in buffer.feed(chunk):
                yield from self._line_events(line)
                if self.finished:
                    return
        for line in buffer.flush():
            yield from self._line_events(line)
            if self.finished:
                return

    def _line_events(self, line: str) -> Iterator[StreamEvent]:
        payload = self.extract_payload(line)
        if payload is None:
            return
        if self.is_end_marker(payload):
            self.finished = True
            return
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed %s line: %.200r", self.name, payload)
            return
        if not isinstance(data, dict):
            logger.debug("Skipping non-object %s line: %.200r", self.name, payload)
            return
        yield from self.events_from(data)

    def extract_payload(self, line: str) -> str | None:
        raise NotImplementedError

    def is_end_marker(self, payload: str) -> bool:
        return False

    def events_from(self, data: dict[str, object]) -> Iterator[StreamEvent]:
        raise NotImplementedError


class _EventStreamDecoder(StreamDecoder):
    def extract_payload(self, line: str) -> str | None:
        # Only `data:` fields matter; `event:`, `id:` and `:` comments are skipped.
        if not line.startswith("data:"):
            return None
        payload = line[5:]
        if payload.startswith(" "):
            payload = payload[1:]
        payload = payload.strip()
        return payload or None


class OpenAIStreamDecoder(_EventStreamDecoder):
    name = "openai"

    def is_end_marker(self, payload: str) -> bool:
        return payload == "[DONE]"

    def events_from(self, data: dict[str, object]) -> Iterator[StreamEvent]:
        error = data.get("error")
        if error:
            message, error_type = _error_details(error)
            raise StreamProviderError(message, error_type=error_type)

        choices = data.get("choices") or []
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            choice = choices[0]
            delta = choice.get("delta") or {}
            if isinstance(delta, dict):
                content = delta.get("content")
                if content:
                    yield ContentDelta(str(content))
            finish_reason = choice.get("finish_reason")
            if finish_reason:
                yield TerminalReason(str(finish_reason))

        usage = data.get("usage")
        if isinstance(usage, dict):
            yield UsageUpdate(
                input_tokens=_optional_int(usage.get("prompt_tokens")),
                output_tokens=_optional_int(usage.get("completion_tokens")),
            )


class AnthropicStreamDecoder(_EventStreamDecoder):
    name = "anthropic"

    def events_from(self, data: dict[str, object]) -> Iterator[StreamEvent]:
        event_type = data.get("type")
        if event_type == "message_start":
            message = data.get("message") or {}
            usage = message.get("usage") if isinstance(message, dict) else None
            if isinstance(usage, dict):
                yield UsageUpdate(input_tokens=_optional_int(usage.get("input_tokens")))
        elif event_type == "content_block_delta":
            delta = data.get("delta") or {}
            if isinstance(delta, dict) and delta.get("type") == "text_delta":
                text = delta.get("text")
                if text:
                    yield ContentDelta(str(text))
        elif event_type == "message_delta":
            usage = data.get("usage")
            if isinstance(usage, dict):
                output_tokens = _optional_int(usage.get("output_tokens"))
                if output_tokens is not None:
                    yield UsageUpdate(output_tokens=output_tokens, cumulative=False)
            delta = data.get("delta") or {}
            if isinstance(delta, dict) and delta.get("stop_reason"):
                yield TerminalReason(str(delta["stop_reason"]))
        elif event_type == "message_stop":
            self.finished = True
        elif event_type == "error":
            message, error_type = _error_details(data.get("error"))
            raise StreamProviderError(message, error_type=error_type)


class GeminiStreamDecoder(StreamDecoder):
    name = "google"

    def extract_payload(self, line: str) -> str | None:
        payload = line.strip()
        if payload.startswith("data:"):
            payload = payload[5:].strip()
        return payload or None

    def events_from(self, data: dict[str, object]) -> Iterator[StreamEvent]:
        error = data.get("error")
        if error:
            message, error_type = _error_details(error)
            raise StreamProviderError(message, error_type=error_type)

        candidates = data.get("candidates") or []
        if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
            candidate = candidates[0]
            content = candidate.get("content") or {}
            parts = content.get("parts") if isinstance(content, dict) else None
            for part in parts or []:
                if not isinstance(part, dict) or part.get("thought"):
                    continue
                text = part.get("text")
                if text:
                    yield ContentDelta(str(text))
            finish_reason = candidate.get("finishReason")
            if finish_reason:
                yield TerminalReason(str(finish_reason))
        else:
            feedback = data.get("promptFeedback") or {}
            if isinstance(feedback, dict) and feedback.get("blockReason"):
                yield TerminalReason(str(feedback["blockReason"]))

        usage = data.get("usageMetadata")
        if isinstance(usage, dict):
            yield UsageUpdate(
                input_tokens=_optional_int(usage.get("promptTokenCount")),
                output_tokens=_optional_int(usage.get("candidatesTokenCount")),
            )
