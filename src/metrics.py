from __future__ import annotations

from dataclasses import dataclass, field
from math import ceil
import time
from typing import Callable, Protocol


FAST_LATENCY_MS = 2_000.0
MODERATE_LATENCY_MS = 10_000.0


class PricingLike(Protocol):
    input: float
    output: float


def estimate_token_count(text: str | None) -> int:
    if not text:
        return 0
    # Roughly four characters per token.
    return ceil(len(text) / 4)


def calculate_cost(
    pricing: PricingLike | None, input_tokens: int, output_tokens: int
) -> float | None:
    """Cost in USD; pricing is expressed per 1,000 tokens.

    ``None`` pricing means the cost is unknown, which is different from a
    zero-priced model.
    """
    if pricing is None:
        return None
    input_cost = (input_tokens / 1000) * pricing.input
    output_cost = (output_tokens / 1000) * pricing.output
    return input_cost + output_cost


def format_latency(milliseconds: float) -> str:
    if milliseconds < 1000:
        return f"{round(milliseconds)}ms"
    return f"{milliseconds / 1000:.2f}s"


def format_token_count(count: int | None) -> str:
    if count is None:
        return "-"
    if count >= 1000:
        return f"{count / 1000:.1f}K"
    return str(count)


def format_cost(cost: float | None) -> str:
    if cost is None:
        return "N/A"
    if cost == 0:
        return "$0.00"
    if cost < 0.01:
        return f"${cost:.6f}"
    return f"${cost:.4f}"


def latency_bucket(milliseconds: float) -> str:
    if milliseconds < FAST_LATENCY_MS:
        return "fast"
    if milliseconds < MODERATE_LATENCY_MS:
        return "moderate"
    return "slow"


@dataclass(slots=True)
class LatencyTracker:
    clock: Callable[[], float] = time.perf_counter
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    def elapsed_ms(self) -> float:
        return (self.clock() - self.started_at) * 1000.0
