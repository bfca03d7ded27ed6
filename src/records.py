from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import re
from typing import Union


class Provider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class ResultStatus(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class TerminalCategory(str, Enum):
    COMPLETE = "complete"
    LENGTH = "length"
    SAFETY = "safety"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class RequestTarget:
    provider: Provider
    model_id: str
    display_name: str
    context_window: int
    credential: str | None = None


@dataclass(frozen=True, slots=True)
class GenerationParameters:
    temperature: float = 0.7
    max_output_tokens: int = 2048

    def __post_init__(self) -> None:
        if not 0.0 <= self.temperature <= 1.0:
            raise ValueError("temperature must be within [0, 1]")
        if self.max_output_tokens <= 0:
            raise ValueError("max_output_tokens must be > 0")


@dataclass(frozen=True, slots=True)
class ContentDelta:
    text: str


@dataclass(frozen=True, slots=True)
class UsageUpdate:
    input_tokens: int | None = None
    output_tokens: int | None = None
    # False means output_tokens is added to the running count.
    cumulative: bool = True


@dataclass(frozen=True, slots=True)
class TerminalReason:
    reason: str | None


StreamEvent = Union[ContentDelta, UsageUpdate, TerminalReason]


@dataclass(frozen=True, slots=True)
class AssembledResponse:
    text: str
    input_tokens: int | None
    output_tokens: int | None
    terminal_reason: str | None
    streamed: bool
    terminal_category: TerminalCategory | None = None


@dataclass(frozen=True, slots=True)
class Diagnostic:
    title: str
    suggestion: str
    category: str
    is_retryable: bool
    stop_reason: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "title": self.title,
            "suggestion": self.suggestion,
            "category": self.category,
            "is_retryable": self.is_retryable,
            "stop_reason": self.stop_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "Diagnostic":
        stop_reason = data.get("stop_reason")
        return cls(
            title=str(data.get("title", "")),
            suggestion=str(data.get("suggestion", "")),
            category=str(data.get("category", "unknown")),
            is_retryable=bool(data.get("is_retryable", False)),
            stop_reason=str(stop_reason) if stop_reason is not None else None,
        )


@dataclass(frozen=True, slots=True)
class ErrorOutcome:
    message: str
    category: str
    latency_ms: float
    status_code: int | None = None
    partial: AssembledResponse | None = None


@dataclass(frozen=True, slots=True)
class ModelDescriptor:
    provider: Provider
    model_id: str
    display_name: str
    context_window: int
    capabilities: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class ResultRecord:
    model: str
    model_id: str
    provider: Provider
    context_window: int
    timestamp: str
    latency_ms: float
    status: ResultStatus
    text: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    estimated_cost_usd: float | None = None
    diagnostic: Diagnostic | None = None
    partial: bool = False
    streamed: bool = False
    error_message: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "model": self.model,
            "model_id": self.model_id,
            "provider": self.provider.value,
            "context_window": self.context_window,
            "timestamp": self.timestamp,
            "latency_ms": self.latency_ms,
            "status": self.status.value,
            "text": self.text,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost_usd": self.estimated_cost_usd,
            "diagnostic": self.diagnostic.to_dict() if self.diagnostic else None,
            "partial": self.partial,
            "streamed": self.streamed,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "ResultRecord":
        diagnostic_raw = data.get("diagnostic")
        if diagnostic_raw is not None and not isinstance(diagnostic_raw, dict):
            raise ValueError("diagnostic must be a mapping")

        return cls(
            model=str(data["model"]),
            model_id=str(data["model_id"]),
            provider=Provider(str(data["provider"])),
            context_window=int(data.get("context_window") or 0),
            timestamp=str(data.get("timestamp", "")),
            latency_ms=float(data.get("latency_ms") or 0.0),
            status=ResultStatus(str(data["status"])),
            text=_optional_str(data.get("text")),
            input_tokens=_optional_int(data.get("input_tokens")),
            output_tokens=_optional_int(data.get("output_tokens")),
            total_tokens=_optional_int(data.get("total_tokens")),
            estimated_cost_usd=(
                float(data["estimated_cost_usd"])
                if data.get("estimated_cost_usd") is not None
                else None
            ),
            diagnostic=(
                Diagnostic.from_dict(diagnostic_raw) if diagnostic_raw else None
            ),
            partial=bool(data.get("partial", False)),
            streamed=bool(data.get("streamed", False)),
            error_message=_optional_str(data.get("error_message")),
        )


def _optional_int(value: object) -> int | None:
    if value is None:
        return None
    return int(value)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def display_name_for(model_id: str) -> str:
    name = re.sub(r"-\d{8}$", "", model_id)
    name = re.sub(r"-\d{4}-\d{2}-\d{2}$", "", name)
    name = re.sub(r"-(latest|preview)$", "", name)
    return " ".join(word[:1].upper() + word[1:] for word in name.split("-"))
