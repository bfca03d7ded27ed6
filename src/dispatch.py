from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from threading import Lock
import time
from typing import Callable, Protocol

from adapters import create_adapter
from classifier import (
    ErrorCategory,
    classify_response,
    diagnose_failure,
    missing_credential_diagnostic,
)
from decoders import DeltaCallback
from metrics import calculate_cost, estimate_token_count
from pricing import Pricing
from records import (
    AssembledResponse,
    ErrorOutcome,
    GenerationParameters,
    Provider,
    RequestTarget,
    ResultRecord,
    ResultStatus,
)


logger = logging.getLogger(__name__)


class SupportsSendPrompt(Protocol):
    def send_prompt(
        self,
        model_id: str,
        prompt: str,
        params: GenerationParameters | None = None,
        credential: str | None = None,
        on_delta: DeltaCallback | None = None,
    ) -> AssembledResponse | ErrorOutcome:
        ...


class PricingLookup(Protocol):
    def get_pricing(self, provider: Provider, model_id: str) -> Pricing | None:
        ...


TargetDeltaCallback = Callable[[RequestTarget, str], None]
ResultCallback = Callable[[ResultRecord], None]
AdapterFactory = Callable[[Provider], SupportsSendPrompt]


@dataclass(slots=True)
class ComparisonRun:
    prompt: str
    params: GenerationParameters
    targets: list[RequestTarget]
    streaming: bool = True
    results: list[ResultRecord] = field(default_factory=list)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class ComparisonDispatcher:
    """Fans one prompt out to many targets and collects one record per target.

    Targets run concurrently and resolve independently: a failing target
    becomes an ``error`` record and never delays or cancels the others.
    """

    def __init__(
        self,
        pricing: PricingLookup | None = None,
        adapter_factory: AdapterFactory = create_adapter,
        clock: Callable[[], float] = time.perf_counter,
        timestamp_fn: Callable[[], str] = _utc_timestamp,
    ) -> None:
        self.pricing = pricing
        self.adapter_factory = adapter_factory
        self.clock = clock
        self.timestamp_fn = timestamp_fn
        self._adapters: dict[Provider, SupportsSendPrompt] = {}
        self._adapters_lock = Lock()

    def close(self) -> None:
        with self._adapters_lock:
            adapters = list(self._adapters.values())
            self._adapters.clear()
        for adapter in adapters:
            close = getattr(adapter, "close", None)
            if close is not None:
                close()

    def __enter__(self) -> ComparisonDispatcher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def run(
        self,
        prompt: str,
        targets: list[RequestTarget],
        params: GenerationParameters | None = None,
        streaming: bool = True,
        on_delta: TargetDeltaCallback | None = None,
        on_result: ResultCallback | None = None,
    ) -> ComparisonRun:
        params = params or GenerationParameters()
        results = self.dispatch(
            prompt=prompt,
            targets=targets,
            params=params,
            streaming=streaming,
            on_delta=on_delta,
            on_result=on_result,
        )
        return ComparisonRun(
            prompt=prompt,
            params=params,
            targets=list(targets),
            streaming=streaming,
            results=results,
        )

    def retry(
        self,
        run: ComparisonRun,
        index: int,
        on_delta: TargetDeltaCallback | None = None,
    ) -> ResultRecord:
        if not 0 <= index < len(run.targets):
            raise IndexError(f"No target at index {index}")
        record = self.retry_one(
            target=run.targets[index],
            prompt=run.prompt,
            params=run.params,
            streaming=run.streaming,
            on_delta=on_delta,
        )
        run.results[index] = record
        return record

    def dispatch(
        self,
        prompt: str,
        targets: list[RequestTarget],
        params: GenerationParameters | None = None,
        streaming: bool = True,
        on_delta: TargetDeltaCallback | None = None,
        on_result: ResultCallback | None = None,
    ) -> list[ResultRecord]:
        params = params or GenerationParameters()
        results: list[ResultRecord | None] = [None] * len(targets)
        pending: list[int] = []

        for index, target in enumerate(targets):
            if not target.credential:
                results[index] = self._missing_credential_record(target)
                self._notify_result(on_result, results[index])
            else:
                pending.append(index)

        logger.info(
            "Dispatching prompt to %d target(s) (%d without credential, streaming=%s)",
            len(targets), len(targets) - len(pending), streaming,
        )
        if pending:
            # One worker per target: no target waits behind another.
            with ThreadPoolExecutor(max_workers=len(pending)) as executor:
                futures = {
                    executor.submit(
                        self._resolve_target,
                        target=targets[index],
                        prompt=prompt,
                        params=params,
                        streaming=streaming,
                        on_delta=on_delta,
                    ): index
                    for index in pending
                }
                for future in as_completed(futures):
                    index = futures[future]
                    results[index] = future.result()
                    self._notify_result(on_result, results[index])

        return [record for record in results if record is not None]

    def retry_one(
        self,
        target: RequestTarget,
        prompt: str,
        params: GenerationParameters | None = None,
        streaming: bool = True,
        on_delta: TargetDeltaCallback | None = None,
    ) -> ResultRecord:
        params = params or GenerationParameters()
        logger.info("Retrying %s/%s", target.provider.value, target.model_id)
        if not target.credential:
            return self._missing_credential_record(target)
        return self._resolve_target(
            target=target,
            prompt=prompt,
            params=params,
            streaming=streaming,
            on_delta=on_delta,
        )

    def _adapter_for(self, provider: Provider) -> SupportsSendPrompt:
        with self._adapters_lock:
            adapter = self._adapters.get(provider)
            if adapter is None:
                adapter = self.adapter_factory(provider)
                self._adapters[provider] = adapter
            return adapter

    def _resolve_target(
        self,
        target: RequestTarget,
        prompt: str,
        params: GenerationParameters,
        streaming: bool,
        on_delta: TargetDeltaCallback | None,
    ) -> ResultRecord:
        started_at = self.clock()
        try:
            adapter = self._adapter_for(target.provider)
            outcome = adapter.send_prompt(
                target.model_id,
                prompt,
                params,
                target.credential,
                self._bind_delta(target, on_delta) if streaming else None,
            )
            latency_ms = (self.clock() - started_at) * 1000.0
            if isinstance(outcome, ErrorOutcome):
                return self._error_record(target, prompt, outcome, latency_ms)
            return self._response_record(target, prompt, outcome, latency_ms)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Unexpected failure resolving %s/%s: [%s] %s",
                target.provider.value, target.model_id, type(exc).__name__, exc,
                exc_info=True,
            )
            latency_ms = (self.clock() - started_at) * 1000.0
            outcome = ErrorOutcome(
                message=f"{type(exc).__name__}: {exc}",
                category=ErrorCategory.UNKNOWN.value,
                latency_ms=latency_ms,
            )
            return self._error_record(target, prompt, outcome, latency_ms)

    @staticmethod
    def _bind_delta(
        target: RequestTarget, on_delta: TargetDeltaCallback | None
    ) -> DeltaCallback:
        def deliver(text: str) -> None:
            if on_delta is None:
                return
            try:
                on_delta(target, text)
            except Exception:  # noqa: BLE001
                logger.debug("Delta callback failed for %s", target.model_id, exc_info=True)

        return deliver

    def _response_record(
        self,
        target: RequestTarget,
        prompt: str,
        response: AssembledResponse,
        latency_ms: float,
    ) -> ResultRecord:
        status, diagnostic = classify_response(response)
        input_tokens = (
            response.input_tokens
            if response.input_tokens is not None
            else estimate_token_count(prompt)
        )
        output_tokens = (
            response.output_tokens
            if response.output_tokens is not None
            else estimate_token_count(response.text)
        )
        logger.debug(
            "%s/%s resolved %s in %.1fms (reason=%s)",
            target.provider.value, target.model_id, status.value, latency_ms,
            response.terminal_reason,
        )
        return ResultRecord(
            model=target.display_name,
            model_id=target.model_id,
            provider=target.provider,
            context_window=target.context_window,
            timestamp=self.timestamp_fn(),
            latency_ms=latency_ms,
            status=status,
            text=response.text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            estimated_cost_usd=self._estimate_cost(target, input_tokens, output_tokens),
            diagnostic=diagnostic,
            streamed=response.streamed,
        )

    def _error_record(
        self,
        target: RequestTarget,
        prompt: str,
        outcome: ErrorOutcome,
        latency_ms: float,
    ) -> ResultRecord:
        partial = outcome.partial
        has_partial_text = partial is not None and bool(partial.text.strip())
        input_tokens = partial.input_tokens if partial is not None else None
        output_tokens = partial.output_tokens if partial is not None else None
        if has_partial_text and output_tokens is None:
            output_tokens = estimate_token_count(partial.text)
        total_tokens = (
            input_tokens + output_tokens
            if input_tokens is not None and output_tokens is not None
            else None
        )
        logger.debug(
            "%s/%s failed (%s) after %.1fms: %s",
            target.provider.value, target.model_id, outcome.category, latency_ms,
            outcome.message,
        )
        return ResultRecord(
            model=target.display_name,
            model_id=target.model_id,
            provider=target.provider,
            context_window=target.context_window,
            timestamp=self.timestamp_fn(),
            latency_ms=outcome.latency_ms if outcome.latency_ms else latency_ms,
            status=ResultStatus.ERROR,
            text=partial.text if has_partial_text else None,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            estimated_cost_usd=None,
            diagnostic=diagnose_failure(
                outcome.category,
                outcome.message,
                provider=target.provider,
                partial=has_partial_text,
            ),
            partial=has_partial_text,
            streamed=partial is not None,
            error_message=outcome.message,
        )

    def _missing_credential_record(self, target: RequestTarget) -> ResultRecord:
        logger.debug("No credential for %s/%s", target.provider.value, target.model_id)
        return ResultRecord(
            model=target.display_name,
            model_id=target.model_id,
            provider=target.provider,
            context_window=target.context_window,
            timestamp=self.timestamp_fn(),
            latency_ms=0.0,
            status=ResultStatus.ERROR,
            diagnostic=missing_credential_diagnostic(target.provider),
            error_message="API key not configured",
        )

    def _estimate_cost(
        self, target: RequestTarget, input_tokens: int, output_tokens: int
    ) -> float | None:
        if self.pricing is None:
            return None
        try:
            pricing = self.pricing.get_pricing(target.provider, target.model_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Pricing lookup failed for %s/%s: [%s] %s",
                target.provider.value, target.model_id, type(exc).__name__, exc,
            )
            return None
        return calculate_cost(pricing, input_tokens, output_tokens)

    @staticmethod
    def _notify_result(callback: ResultCallback | None, record: ResultRecord | None) -> None:
        if callback is None or record is None:
            return
        try:
            callback(record)
        except Exception:  # noqa: BLE001
            logger.debug("Result callback failed for %s", record.model_id, exc_info=True)
