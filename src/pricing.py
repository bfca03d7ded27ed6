from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Event, Lock
import time
from typing import Any, Callable, Mapping

from records import Provider


logger = logging.getLogger(__name__)

DEFAULT_TTL_S = 24 * 60 * 60
DEFAULT_FAILURE_BACKOFF_S = 5 * 60


@dataclass(frozen=True, slots=True)
class Pricing:
    input: float
    output: float
    source: str = "fallback"


PRICING_FALLBACKS: dict[str, Pricing] = {
    # OpenAI
    "gpt-4o-mini": Pricing(0.00015, 0.0006),
    "gpt-4o": Pricing(0.0025, 0.01),
    "gpt-4-turbo": Pricing(0.01, 0.03),
    "gpt-4-turbo-preview": Pricing(0.01, 0.03),
    "gpt-4-0125-preview": Pricing(0.01, 0.03),
    "gpt-4-1106-preview": Pricing(0.01, 0.03),
    "gpt-4": Pricing(0.03, 0.06),
    "gpt-4-0613": Pricing(0.03, 0.06),
    "gpt-3.5-turbo": Pricing(0.0005, 0.0015),
    "gpt-3.5-turbo-0125": Pricing(0.0005, 0.0015),
    "gpt-3.5-turbo-1106": Pricing(0.001, 0.002),
    # Anthropic
    "claude-3-5-sonnet-20241022": Pricing(0.003, 0.015),
    "claude-3-5-sonnet-20240620": Pricing(0.003, 0.015),
    "claude-3-opus-20240229": Pricing(0.015, 0.075),
    "claude-3-sonnet-20240229": Pricing(0.003, 0.015),
    "claude-3-haiku-20240307": Pricing(0.00025, 0.00125),
    # Google
    "gemini-2.5-pro": Pricing(0.00125, 0.005),
    "gemini-2.5-flash": Pricing(0.000075, 0.0003),
    "gemini-2.0-flash": Pricing(0.0001, 0.0001),
    "gemini-flash-latest": Pricing(0.000075, 0.0003),
    "gemini-pro-latest": Pricing(0.0005, 0.0015),
}

# Prefixes the remote catalog uses for provider-scoped entries.
CATALOG_PREFIXES: dict[Provider, tuple[str, ...]] = {
    Provider.OPENAI: ("openai/",),
    Provider.ANTHROPIC: ("anthropic/",),
    Provider.GOOGLE: ("gemini/", "google/", "vertex_ai/"),
}

CatalogLoader = Callable[[], Mapping[str, Pricing]]


def fallback_pricing(model_id: str) -> Pricing | None:
    if model_id in PRICING_FALLBACKS:
        return PRICING_FALLBACKS[model_id]
    # Longest prefix first so "gpt-4o-mini-2024" does not match "gpt-4".
    for key in sorted(PRICING_FALLBACKS, key=len, reverse=True):
        if model_id.startswith(key):
            return PRICING_FALLBACKS[key]
    return None


def parse_cost_map(cost_map: Mapping[str, Any]) -> dict[str, Pricing]:
    """Convert a per-token cost map into per-1K ``Pricing`` entries."""
    entries: dict[str, Pricing] = {}
    for model_id, info in cost_map.items():
        if not isinstance(info, dict):
            continue
        input_cost = info.get("input_cost_per_token")
        output_cost = info.get("output_cost_per_token")
        if input_cost is None or output_cost is None:
            continue
        try:
            entries[str(model_id)] = Pricing(
                input=float(input_cost) * 1000,
                output=float(output_cost) * 1000,
                source="catalog",
            )
        except (TypeError, ValueError):
            logger.debug("Skipping catalog entry with bad pricing: %s", model_id)
    return entries


def load_litellm_cost_map() -> dict[str, Pricing]:
    import litellm

    litellm.suppress_debug_info = True
    cost_map = litellm.get_model_cost_map(url=litellm.model_cost_map_url)
    return parse_cost_map(cost_map)


class PricingCatalog:
    """Pricing lookup shared by every in-flight request.

    At most one refresh runs at a time; concurrent callers wait for it and
    reuse its result. Cached entries are served without refreshing until
    ``ttl_s`` has elapsed.
    """

    def __init__(
        self,
        loader: CatalogLoader | None = load_litellm_cost_map,
        ttl_s: float = DEFAULT_TTL_S,
        failure_backoff_s: float = DEFAULT_FAILURE_BACKOFF_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.loader = loader
        self.ttl_s = ttl_s
        self.failure_backoff_s = failure_backoff_s
        self.clock = clock
        self._entries: dict[str, Pricing] = {}
        self._fetched_at: float | None = None
        self._failed_at: float | None = None
        self._refreshing: Event | None = None
        self._lock = Lock()
        self.refresh_count = 0

    def get_pricing(self, provider: Provider | str, model_id: str) -> Pricing | None:
        provider = Provider(provider)
        entries = self._current_entries()

        for candidate in self._candidate_ids(provider, model_id):
            if candidate in entries:
                return entries[candidate]
        return fallback_pricing(model_id)

    def refresh(self) -> None:
        with self._lock:
            self._fetched_at = None
            self._failed_at = None
        self._current_entries()

    def cache_status(self) -> dict[str, object]:
        with self._lock:
            fetched_at = self._fetched_at
            return {
                "is_fresh": self._is_fresh(),
                "model_count": len(self._entries),
                "fetched_at": fetched_at,
                "expires_at": (fetched_at + self.ttl_s) if fetched_at is not None else None,
            }

    @staticmethod
    def _candidate_ids(provider: Provider, model_id: str) -> list[str]:
        candidates = [model_id]
        candidates.extend(f"{prefix}{model_id}" for prefix in CATALOG_PREFIXES[provider])
        return candidates

    def _is_fresh(self) -> bool:
        if self._fetched_at is None:
            return False
        return self.clock() - self._fetched_at < self.ttl_s

    def _in_backoff(self) -> bool:
        if self._failed_at is None:
            return False
        return self.clock() - self._failed_at < self.failure_backoff_s

    def _current_entries(self) -> dict[str, Pricing]:
        if self.loader is None:
            return self._entries

        with self._lock:
            if self._is_fresh() or self._in_backoff():
                return self._entries
            if self._refreshing is not None:
                waiter = self._refreshing
                leader = False
            else:
                waiter = self._refreshing = Event()
                leader = True

        if not leader:
            waiter.wait()
            with self._lock:
                return self._entries

        entries: dict[str, Pricing] | None = None
        try:
            entries = dict(self.loader())
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Pricing catalog refresh failed, keeping %d cached entries: [%s] %s",
                len(self._entries), type(exc).__name__, exc,
            )
        finally:
            with self._lock:
                if entries is not None:
                    self._entries = entries
                    self._fetched_at = self.clock()
                    self._failed_at = None
                    logger.debug("Cached pricing for %d models", len(entries))
                else:
                    self._failed_at = self.clock()
                self.refresh_count += 1
                self._refreshing = None
            waiter.set()
        return self._entries
