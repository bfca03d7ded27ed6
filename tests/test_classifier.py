from __future__ import annotations

from pathlib import Path
import sys

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from adapters import DeadlineExceeded, ProviderHTTPError
from classifier import (
    ErrorCategory,
    WarningKind,
    categorize_failure,
    categorize_message,
    categorize_terminal_reason,
    classify_response,
    diagnose_failure,
    missing_credential_diagnostic,
)
from decoders import StreamInterrupted, StreamProviderError
from records import AssembledResponse, Provider, ResultStatus, TerminalCategory


def _response(
    text: str,
    reason: str | None,
    provider: Provider = Provider.ANTHROPIC,
    input_tokens: int | None = 10,
    output_tokens: int | None = 0,
) -> AssembledResponse:
    return AssembledResponse(
        text=text,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        terminal_reason=reason,
        streamed=True,
        terminal_category=categorize_terminal_reason(provider, reason),
    )


def test_single_character_answer_is_success() -> None:
    status, diagnostic = classify_response(_response("4", "end_turn", output_tokens=1))
    assert status is ResultStatus.SUCCESS
    assert diagnostic is None


def test_text_is_success_whatever_the_stop_reason() -> None:
    status, diagnostic = classify_response(_response("partial answer", "max_tokens"))
    assert status is ResultStatus.SUCCESS
    assert diagnostic is None


def test_empty_text_without_stop_reason_points_at_the_connection() -> None:
    status, diagnostic = classify_response(_response("", None))
    assert status is ResultStatus.WARNING
    assert diagnostic is not None
    assert diagnostic.category == WarningKind.STREAM_INTERRUPTED.value
    assert "proxy or network timeout" in diagnostic.suggestion
    assert diagnostic.is_retryable is True


def test_empty_text_after_length_limit_suggests_more_tokens() -> None:
    status, diagnostic = classify_response(_response("", "max_tokens"))
    assert status is ResultStatus.WARNING
    assert diagnostic is not None
    assert diagnostic.category == WarningKind.TRUNCATED.value
    assert "Increase max tokens" in diagnostic.suggestion
    assert diagnostic.stop_reason == "max_tokens"
    assert diagnostic.is_retryable is False


def test_empty_text_after_normal_stop_is_retryable_empty_completion() -> None:
    status, diagnostic = classify_response(_response("   \n", "end_turn"))
    assert status is ResultStatus.WARNING
    assert diagnostic is not None
    assert diagnostic.category == WarningKind.EMPTY_COMPLETION.value
    assert diagnostic.is_retryable is True
    assert "input_tokens=10" in diagnostic.suggestion


def test_empty_text_after_safety_stop_is_content_filtered() -> None:
    status, diagnostic = classify_response(
        _response("", "SAFETY", provider=Provider.GOOGLE, output_tokens=None)
    )
    assert status is ResultStatus.WARNING
    assert diagnostic is not None
    assert diagnostic.category == WarningKind.CONTENT_FILTERED.value
    assert diagnostic.is_retryable is False


def test_empty_text_with_unmapped_reason_is_generic_empty_response() -> None:
    status, diagnostic = classify_response(
        _response("", "tool_calls", provider=Provider.OPENAI)
    )
    assert status is ResultStatus.WARNING
    assert diagnostic is not None
    assert diagnostic.category == WarningKind.EMPTY_RESPONSE.value
    assert diagnostic.stop_reason == "tool_calls"


@pytest.mark.parametrize(
    ("provider", "reason", "expected"),
    [
        (Provider.OPENAI, "stop", TerminalCategory.COMPLETE),
        (Provider.OPENAI, "length", TerminalCategory.LENGTH),
        (Provider.OPENAI, "content_filter", TerminalCategory.SAFETY),
        (Provider.ANTHROPIC, "stop_sequence", TerminalCategory.COMPLETE),
        (Provider.ANTHROPIC, "max_tokens", TerminalCategory.LENGTH),
        (Provider.GOOGLE, "STOP", TerminalCategory.COMPLETE),
        (Provider.GOOGLE, "RECITATION", TerminalCategory.SAFETY),
        (Provider.GOOGLE, "OTHER", TerminalCategory.OTHER),
        (Provider.GOOGLE, None, None),
    ],
)
def test_categorize_terminal_reason(
    provider: Provider, reason: str | None, expected: TerminalCategory | None
) -> None:
    assert categorize_terminal_reason(provider, reason) is expected


@pytest.mark.parametrize(
    ("message", "status_code", "expected"),
    [
        ("Incorrect API key provided", 401, ErrorCategory.AUTH),
        ("API key not valid. Please pass a valid API key.", 400, ErrorCategory.AUTH),
        ("Rate limit reached for requests", 429, ErrorCategory.RATE_LIMIT),
        ("You exceeded your current quota, please check your plan", 429, ErrorCategory.QUOTA),
        ("Overloaded", 529, ErrorCategory.OVERLOADED),
        ("The model `gpt-9` does not exist", 404, ErrorCategory.MODEL_NOT_FOUND),
        ("Gateway Timeout", 504, ErrorCategory.TIMEOUT),
        ("Output blocked by content_filter", 400, ErrorCategory.SAFETY),
        ("Failed to fetch", None, ErrorCategory.NETWORK),
        ("something odd happened", 500, ErrorCategory.UNKNOWN),
    ],
)
def test_categorize_message(
    message: str, status_code: int | None, expected: ErrorCategory
) -> None:
    assert categorize_message(message, status_code=status_code) is expected


def test_categorize_failure_uses_exception_types() -> None:
    request = httpx.Request("POST", "https://example.test/v1/chat/completions")
    assert categorize_failure(httpx.ReadTimeout("slow", request=request)) is ErrorCategory.TIMEOUT
    assert categorize_failure(httpx.ConnectError("refused", request=request)) is ErrorCategory.NETWORK
    assert categorize_failure(DeadlineExceeded("too long")) is ErrorCategory.TIMEOUT
    assert (
        categorize_failure(ProviderHTTPError(401, "bad key")) is ErrorCategory.AUTH
    )
    assert (
        categorize_failure(StreamProviderError("busy", error_type="overloaded_error"))
        is ErrorCategory.OVERLOADED
    )


def test_categorize_failure_unwraps_interrupted_stream() -> None:
    partial = AssembledResponse(
        text="abc", input_tokens=None, output_tokens=None, terminal_reason=None, streamed=True
    )
    interrupted = StreamInterrupted(partial, ConnectionResetError("reset"))
    assert categorize_failure(interrupted) is ErrorCategory.UNKNOWN
    request = httpx.Request("GET", "https://example.test")
    interrupted = StreamInterrupted(partial, httpx.RemoteProtocolError("eof", request=request))
    assert categorize_failure(interrupted) is ErrorCategory.NETWORK


@pytest.mark.parametrize(
    ("category", "retryable"),
    [
        (ErrorCategory.NETWORK, True),
        (ErrorCategory.RATE_LIMIT, True),
        (ErrorCategory.TIMEOUT, True),
        (ErrorCategory.OVERLOADED, True),
        (ErrorCategory.UNKNOWN, True),
        (ErrorCategory.AUTH, False),
        (ErrorCategory.QUOTA, False),
        (ErrorCategory.MODEL_NOT_FOUND, False),
        (ErrorCategory.SAFETY, False),
    ],
)
def test_diagnose_failure_retryability(category: ErrorCategory, retryable: bool) -> None:
    diagnostic = diagnose_failure(category, "raw", provider=Provider.OPENAI)
    assert diagnostic.category == category.value
    assert diagnostic.is_retryable is retryable
    assert "Raw error: raw" in diagnostic.suggestion


def test_diagnose_failure_marks_partial_text() -> None:
    diagnostic = diagnose_failure("network", "reset", provider=Provider.GOOGLE, partial=True)
    assert diagnostic.title.startswith("Stream interrupted")
    assert diagnostic.suggestion.startswith("The text shown is partial.")


def test_missing_credential_diagnostic_is_auth_and_not_retryable() -> None:
    diagnostic = missing_credential_diagnostic(Provider.ANTHROPIC)
    assert diagnostic.category == "auth"
    assert diagnostic.is_retryable is False
    assert "anthropic" in diagnostic.suggestion
