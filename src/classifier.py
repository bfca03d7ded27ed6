from __future__ import annotations

from enum import Enum
import logging

import httpx

from decoders import StreamInterrupted
from records import (
    AssembledResponse,
    Diagnostic,
    Provider,
    ResultStatus,
    TerminalCategory,
)


logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    OVERLOADED = "overloaded"
    MODEL_NOT_FOUND = "model_not_found"
    TIMEOUT = "timeout"
    NETWORK = "network"
    SAFETY = "safety"
    UNKNOWN = "unknown"


class WarningKind(str, Enum):
    EMPTY_COMPLETION = "empty_completion"
    TRUNCATED = "truncated"
    CONTENT_FILTERED = "content_filtered"
    STREAM_INTERRUPTED = "stream_interrupted"
    EMPTY_RESPONSE = "empty_response"


RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.NETWORK,
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.TIMEOUT,
        ErrorCategory.OVERLOADED,
        ErrorCategory.UNKNOWN,
    }
)

_TERMINAL_REASONS: dict[Provider, dict[str, TerminalCategory]] = {
    Provider.OPENAI: {
        "stop": TerminalCategory.COMPLETE,
        "length": TerminalCategory.LENGTH,
        "content_filter": TerminalCategory.SAFETY,
    },
    Provider.ANTHROPIC: {
        "end_turn": TerminalCategory.COMPLETE,
        "stop_sequence": TerminalCategory.COMPLETE,
        "max_tokens": TerminalCategory.LENGTH,
        "refusal": TerminalCategory.SAFETY,
    },
    Provider.GOOGLE: {
        "STOP": TerminalCategory.COMPLETE,
        "MAX_TOKENS": TerminalCategory.LENGTH,
        "SAFETY": TerminalCategory.SAFETY,
        "RECITATION": TerminalCategory.SAFETY,
        "BLOCKLIST": TerminalCategory.SAFETY,
        "PROHIBITED_CONTENT": TerminalCategory.SAFETY,
        "SPII": TerminalCategory.SAFETY,
        "IMAGE_SAFETY": TerminalCategory.SAFETY,
    },
}

_ERROR_MESSAGES: dict[ErrorCategory, tuple[str, str]] = {
    ErrorCategory.AUTH: (
        "Invalid API key",
        "Check the {provider} API key in your settings and make sure it is correct.",
    ),
    ErrorCategory.RATE_LIMIT: (
        "Rate limit exceeded",
        "Too many requests were sent to {provider}. Wait a few moments and try again.",
    ),
    ErrorCategory.QUOTA: (
        "Quota exceeded",
        "The {provider} account has exhausted its usage quota. Check billing and limits.",
    ),
    ErrorCategory.OVERLOADED: (
        "Service overloaded",
        "{provider} servers are currently busy. Try again in a moment.",
    ),
    ErrorCategory.MODEL_NOT_FOUND: (
        "Model not available",
        "This model may be deprecated, restricted to another tier or unavailable in "
        "your region. Refresh the model list or pick a different model.",
    ),
    ErrorCategory.TIMEOUT: (
        "Request timed out",
        "The request took too long. Try again or use a different model.",
    ),
    ErrorCategory.NETWORK: (
        "Network error",
        "Could not reach {provider}. Check your connection or proxy and try again.",
    ),
    ErrorCategory.SAFETY: (
        "Content filtered by safety settings",
        "The request was blocked by the provider's safety policy. Try rephrasing the prompt.",
    ),
    ErrorCategory.UNKNOWN: (
        "Unexpected error",
        "An unexpected error occurred. Try again; if it keeps happening, inspect the raw error.",
    ),
}


def categorize_terminal_reason(
    provider: Provider, reason: str | None
) -> TerminalCategory | None:
    if reason is None:
        return None
    return _TERMINAL_REASONS.get(provider, {}).get(reason, TerminalCategory.OTHER)


def _usage_note(response: AssembledResponse) -> str:
    input_tokens = "?" if response.input_tokens is None else response.input_tokens
    output_tokens = "?" if response.output_tokens is None else response.output_tokens
    return f"(input_tokens={input_tokens}, output_tokens={output_tokens})"


def classify_response(
    response: AssembledResponse,
) -> tuple[ResultStatus, Diagnostic | None]:
    """Decide the status of a completed response.

    Any non-blank text is a success, however short: a one-token answer such
    as ``"4"`` is a valid result. Blank text is always a warning whose
    diagnostic depends on the terminal reason.
    """
    if response.text.strip():
        return ResultStatus.SUCCESS, None

    reason = response.terminal_reason
    category = response.terminal_category
    if category is None and reason is not None:
        category = TerminalCategory.OTHER
    usage = _usage_note(response)

    if category is TerminalCategory.COMPLETE:
        diagnostic = Diagnostic(
            title="Empty response",
            suggestion=(
                f"The model finished its turn (stop reason: {reason}) without producing "
                f"any text {usage}. This is known provider-side behavior, not a client "
                "problem; retry the request or rephrase the prompt."
            ),
            category=WarningKind.EMPTY_COMPLETION.value,
            is_retryable=True,
            stop_reason=reason,
        )
    elif category is TerminalCategory.LENGTH:
        diagnostic = Diagnostic(
            title="Response truncated",
            suggestion=(
                f"Generation hit the output token limit (stop reason: {reason}) before any "
                f"text was produced {usage}. Increase max tokens and try again."
            ),
            category=WarningKind.TRUNCATED.value,
            is_retryable=False,
            stop_reason=reason,
        )
    elif category is TerminalCategory.SAFETY:
        diagnostic = Diagnostic(
            title="Blocked by safety filter",
            suggestion=(
                f"The provider's safety policy blocked this request (stop reason: {reason}). "
                "Try rephrasing the prompt."
            ),
            category=WarningKind.CONTENT_FILTERED.value,
            is_retryable=False,
            stop_reason=reason,
        )
    elif category is None:
        diagnostic = Diagnostic(
            title="Connection interrupted",
            suggestion=(
                "The response ended before the provider sent a stop signal and no text "
                f"arrived {usage}. The connection was likely cut by a proxy or network "
                "timeout; retry the request."
            ),
            category=WarningKind.STREAM_INTERRUPTED.value,
            is_retryable=True,
        )
    else:
        diagnostic = Diagnostic(
            title="Unexpected empty response",
            suggestion=(
                f"The model returned no text (stop reason: {reason}) {usage}. "
                "Retry the request or switch to a different model."
            ),
            category=WarningKind.EMPTY_RESPONSE.value,
            is_retryable=True,
            stop_reason=reason,
        )
    return ResultStatus.WARNING, diagnostic


def categorize_message(
    message: str,
    status_code: int | None = None,
    error_type: str | None = None,
) -> ErrorCategory:
    text = f"{error_type or ''} {message}".lower()

    if (
        "insufficient_quota" in text
        or "billing" in text
        or "exceeded your current quota" in text
    ):
        return ErrorCategory.QUOTA
    if status_code in (401, 403) or any(
        marker in text
        for marker in (
            "invalid api key",
            "incorrect api key",
            "api key not valid",
            "authentication",
            "permission_denied",
            "unauthorized",
        )
    ):
        return ErrorCategory.AUTH
    if status_code == 429 or any(
        marker in text
        for marker in ("rate limit", "rate_limit", "too many requests", "resource_exhausted")
    ):
        return ErrorCategory.RATE_LIMIT
    if status_code in (503, 529) or "overloaded" in text:
        return ErrorCategory.OVERLOADED
    if status_code == 404 or "model_not_found" in text or (
        "model" in text and ("does not exist" in text or "not found" in text)
    ):
        return ErrorCategory.MODEL_NOT_FOUND
    if status_code in (408, 504) or any(
        marker in text for marker in ("timeout", "timed out", "deadline")
    ):
        return ErrorCategory.TIMEOUT
    if any(marker in text for marker in ("safety", "content_filter", "content management")):
        return ErrorCategory.SAFETY
    if any(
        marker in text
        for marker in ("failed to fetch", "networkerror", "connection", "econnreset")
    ):
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN


def categorize_failure(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, StreamInterrupted):
        exc = exc.cause
    if isinstance(exc, (httpx.TimeoutException, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, httpx.TransportError):
        return ErrorCategory.NETWORK
    return categorize_message(
        str(exc),
        status_code=getattr(exc, "status_code", None),
        error_type=getattr(exc, "error_type", None),
    )


def diagnose_failure(
    category: ErrorCategory | str,
    message: str,
    provider: Provider | None = None,
    partial: bool = False,
) -> Diagnostic:
    resolved = ErrorCategory(category)
    title, suggestion = _ERROR_MESSAGES[resolved]
    provider_label = provider.value if provider is not None else "the provider"
    suggestion = suggestion.format(provider=provider_label)
    if partial:
        title = f"Stream interrupted: {title.lower()}"
        suggestion = f"The text shown is partial. {suggestion}"
    if message:
        suggestion = f"{suggestion} Raw error: {message}"
    if resolved is ErrorCategory.UNKNOWN:
        logger.info("Unclassified %s failure: %s", provider_label, message)
    return Diagnostic(
        title=title,
        suggestion=suggestion,
        category=resolved.value,
        is_retryable=resolved in RETRYABLE_CATEGORIES,
    )


def missing_credential_diagnostic(provider: Provider) -> Diagnostic:
    return Diagnostic(
        title="API key not configured",
        suggestion=(
            f"No credential is configured for {provider.value}. Add an API key in your "
            "settings and try again."
        ),
        category=ErrorCategory.AUTH.value,
        is_retryable=False,
    )
