from __future__ import annotations

from datetime import datetime
import json
import logging
import os
from pathlib import Path
import sys
from threading import Lock
import time
import uuid

import httpx
import typer

from adapters import ProviderHTTPError, create_adapter
from config import DEFAULT_API_KEY_ENVS, ComparisonConfig, TargetConfig
from dispatch import ComparisonDispatcher
from exporter import build_export, summarize, write_export
from metrics import format_cost, format_latency, format_token_count, latency_bucket
from pricing import PricingCatalog
from records import (
    GenerationParameters,
    Provider,
    RequestTarget,
    ResultRecord,
    ResultStatus,
)
from storage import ComparisonStorage


logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure root logger from LLM_COMPARE_LOG_LEVEL env var (default: WARNING)."""
    level_name = os.environ.get("LLM_COMPARE_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


app = typer.Typer(no_args_is_help=True, help="Compare one prompt across LLM providers")
target_app = typer.Typer(no_args_is_help=True, help="Target management commands")
models_app = typer.Typer(no_args_is_help=True, help="Provider model catalog commands")
settings_app = typer.Typer(no_args_is_help=True, help="Settings commands")
report_app = typer.Typer(no_args_is_help=True, help="Report commands")
pricing_app = typer.Typer(no_args_is_help=True, help="Pricing commands")
app.add_typer(target_app, name="target")
app.add_typer(models_app, name="models")
app.add_typer(settings_app, name="settings")
app.add_typer(report_app, name="report")
app.add_typer(pricing_app, name="pricing")


DEFAULT_CONFIG = Path("compare.toml")
DEFAULT_DB = Path("compare.duckdb")
QUANTILE_KEYS = ("p50", "p90", "p95", "p99")
STATUS_LABELS = {
    ResultStatus.SUCCESS: "OK",
    ResultStatus.WARNING: "WARN",
    ResultStatus.ERROR: "FAIL",
}


class _DeltaPrinter:
    """Writes streamed fragments to stderr, labelling each change of target."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._current: str | None = None

    def __call__(self, target: RequestTarget, text: str) -> None:
        with self._lock:
            if target.model_id != self._current:
                prefix = "" if self._current is None else "\n"
                typer.echo(f"{prefix}[{target.display_name}] ", err=True, nl=False)
                self._current = target.model_id
            typer.echo(text, err=True, nl=False)

    def finish(self) -> None:
        with self._lock:
            if self._current is not None:
                typer.echo("", err=True)
                self._current = None


def _build_pricing() -> PricingCatalog:
    return PricingCatalog()


def _build_dispatcher(config: ComparisonConfig) -> ComparisonDispatcher:
    endpoints = config.endpoints()

    def adapter_factory(provider: Provider):
        return create_adapter(provider, api_base=endpoints.get(provider))

    return ComparisonDispatcher(pricing=_build_pricing(), adapter_factory=adapter_factory)


def _parse_setting_value(raw: str) -> str | int | float | bool:
    lowered = raw.strip().lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


def _streaming_setting(value: object) -> bool:
    if isinstance(value, str):
        value = _parse_setting_value(value)
    if not isinstance(value, bool):
        raise ValueError(f"streaming must be true or false, got {value!r}")
    return value


def _parse_provider(value: str) -> Provider:
    try:
        return Provider(value.strip().lower())
    except ValueError:
        typer.echo(
            f"Unknown provider: {value}. Use one of: "
            + ", ".join(provider.value for provider in Provider)
        )
        raise typer.Exit(1)


def _select_targets(registry: ComparisonConfig, names: str | None) -> list[TargetConfig]:
    if not names:
        selected = registry.list_targets()
        if not selected:
            typer.echo("No targets configured. Add one with `llm-compare target add`.")
            raise typer.Exit(1)
        return selected

    target_names = [name.strip() for name in names.split(",") if name.strip()]
    if not target_names:
        typer.echo("No targets specified.")
        raise typer.Exit(1)

    seen: set[str] = set()
    duplicates: list[str] = []
    for name in target_names:
        if name in seen and name not in duplicates:
            duplicates.append(name)
        seen.add(name)
    if duplicates:
        typer.echo("Duplicate target names are not allowed: " + ", ".join(duplicates))
        raise typer.Exit(1)

    selected: list[TargetConfig] = []
    for name in target_names:
        try:
            selected.append(registry.get_target(name))
        except KeyError:
            typer.echo(f"Target not found: {name}")
            raise typer.Exit(1)
    return selected


def _resolve_parameters(
    registry: ComparisonConfig, temperature: float | None, max_tokens: int | None
) -> GenerationParameters:
    try:
        defaults = registry.generation_parameters()
        return GenerationParameters(
            temperature=defaults.temperature if temperature is None else temperature,
            max_output_tokens=(
                defaults.max_output_tokens if max_tokens is None else max_tokens
            ),
        )
    except (TypeError, ValueError) as exc:
        typer.echo(f"Invalid generation parameters: {exc}")
        raise typer.Exit(1)


def _parse_config_json(config_json: object) -> dict[str, object]:
    if not isinstance(config_json, str) or not config_json.strip():
        return {}
    try:
        payload = json.loads(config_json)
    except json.JSONDecodeError:
        return {}
    if isinstance(payload, dict):
        return payload
    return {}


def _format_timestamp(value: object) -> str:
    if value is None:
        return "-"
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return "-"
    return datetime.fromtimestamp(numeric).astimezone().isoformat(timespec="seconds")


def _format_duration(value: object) -> str:
    if value is None:
        return "-"
    try:
        return f"{float(value):.3f}s"
    except (TypeError, ValueError):
        return "-"


def _format_quantile(value: object) -> str:
    if value is None:
        return "-"
    return format_latency(float(value))


def _render_record(index: int, record: ResultRecord) -> list[str]:
    status = STATUS_LABELS[record.status]
    lines = [
        "",
        (
            f"[{index}] {record.model} ({record.provider.value}/{record.model_id}) "
            f"{status} {format_latency(record.latency_ms)} ({latency_bucket(record.latency_ms)})"
        ),
        (
            f"    tokens in={format_token_count(record.input_tokens)} "
            f"out={format_token_count(record.output_tokens)} "
            f"total={format_token_count(record.total_tokens)} "
            f"cost={format_cost(record.estimated_cost_usd)}"
        ),
    ]
    if record.diagnostic is not None:
        lines.append(f"    {record.diagnostic.title}: {record.diagnostic.suggestion}")
    if record.error_message:
        lines.append(f"    error: {record.error_message}")
    if record.text:
        label = "partial response" if record.partial else "response"
        lines.append(f"    {label}:")
        lines.extend(f"      {line}" for line in record.text.splitlines())
    return lines


def _render_comparison(
    run_id: str, prompt: str, records: list[ResultRecord], db: Path
) -> str:
    summary = summarize(records)
    average = summary["average_latency_ms"]
    lines = [
        "Comparison summary",
        f"Run ID : {run_id}",
        f"Prompt : {prompt}",
        f"Targets: {summary['total_models']}",
        (
            f"Status : ok={summary['successful']} warn={summary['warnings']} "
            f"fail={summary['failed']}"
        ),
        f"Latency: avg={format_latency(average) if average is not None else '-'}",
        (
            f"Cost   : {format_cost(summary['total_cost'])}"
            + (
                f" ({summary['unknown_cost_models']} model(s) without pricing)"
                if summary["unknown_cost_models"]
                else ""
            )
        ),
        f"DB     : {db}",
    ]
    for index, record in enumerate(records):
        lines.extend(_render_record(index, record))
    return "\n".join(lines)


def _render_report_list(runs: list[dict[str, object]], db: Path) -> str:
    lines = [
        "Comparison runs",
        f"Total : {len(runs)}",
        f"DB    : {db}",
        "",
        "Runs:",
    ]
    for run in runs:
        prompt = str(run.get("prompt") or "")
        if len(prompt) > 40:
            prompt = prompt[:37] + "..."
        lines.append(
            (
                f"- {run.get('run_id', '-')} started={_format_timestamp(run.get('started_at'))} "
                f"duration={_format_duration(run.get('duration_s'))} "
                f"targets={int(run.get('target_count') or 0)} "
                f"ok={int(run.get('success_count') or 0)} "
                f"warn={int(run.get('warning_count') or 0)} "
                f"fail={int(run.get('error_count') or 0)} "
                f"cost={format_cost(run.get('total_cost'))} "  # type: ignore[arg-type]
                f"prompt={json.dumps(prompt, ensure_ascii=False)}"
            )
        )
    return "\n".join(lines)


def _run_target_entries(targets: list[TargetConfig]) -> list[dict[str, object]]:
    return [{"name": target.name, **target.to_dict()} for target in targets]


def _latest_run_id(storage: ComparisonStorage) -> str:
    runs = storage.list_runs_with_stats()
    if not runs:
        typer.echo("No runs found.")
        raise typer.Exit(1)
    return str(runs[0]["run_id"])


@app.command("compare")
def compare(
    prompt: str = typer.Argument(..., help="Prompt text. Use '-' to read it from stdin."),
    targets: str | None = typer.Option(
        None,
        "--targets",
        "-t",
        help="Comma-separated target names. Defaults to all configured targets.",
    ),
    stream: bool | None = typer.Option(
        None, "--stream/--no-stream", help="Stream responses (defaults to the 'streaming' setting)"
    ),
    temperature: float | None = typer.Option(
        None, "--temperature", help="Sampling temperature in [0, 1]"
    ),
    max_tokens: int | None = typer.Option(
        None, "--max-tokens", help="Maximum output tokens per response"
    ),
    show_deltas: bool = typer.Option(
        False, "--show-deltas", help="Echo streamed text to stderr as it arrives"
    ),
    export: Path | None = typer.Option(None, "--export", help="Write a JSON export file"),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB history file"),
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Comparison config file", hidden=True
    ),
    run_id: str | None = typer.Option(
        None, "--run-id", help="Optional run id", hidden=True
    ),
) -> None:
    if prompt == "-":
        prompt = sys.stdin.read()
    prompt = prompt.strip()
    if not prompt:
        typer.echo("Prompt cannot be empty.")
        raise typer.Exit(1)

    registry = ComparisonConfig(config)
    try:
        selected = _select_targets(registry, targets)
        params = _resolve_parameters(registry, temperature, max_tokens)
        streaming = (
            _streaming_setting(registry.get_setting("streaming", True)) if stream is None else stream
        )
        dispatcher = _build_dispatcher(registry)
    except ValueError as exc:
        typer.echo(f"Invalid config: {exc}")
        raise typer.Exit(1)

    request_targets = [target.to_request_target() for target in selected]
    actual_run_id = run_id or f"run-{uuid.uuid4().hex[:8]}"
    printer = _DeltaPrinter() if show_deltas and streaming else None
    storage = ComparisonStorage(db)
    logger.info(
        "Starting comparison %s: targets=%d streaming=%s temperature=%s max_tokens=%d",
        actual_run_id, len(request_targets), streaming,
        params.temperature, params.max_output_tokens,
    )
    try:
        storage.create_run(
            run_id=actual_run_id,
            prompt=prompt,
            started_at=time.time(),
            config_json=json.dumps(
                {
                    "targets": _run_target_entries(selected),
                    "streaming": streaming,
                    "temperature": params.temperature,
                    "max_tokens": params.max_output_tokens,
                },
                ensure_ascii=True,
            ),
        )
        try:
            records = dispatcher.dispatch(
                prompt=prompt,
                targets=request_targets,
                params=params,
                streaming=streaming,
                on_delta=printer,
            )
        finally:
            if printer is not None:
                printer.finish()
        storage.upsert_results(actual_run_id, records)
        storage.finish_run(run_id=actual_run_id, finished_at=time.time())
        logger.info("Comparison %s finished", actual_run_id)
    finally:
        dispatcher.close()
        storage.close()

    if export is not None:
        write_export(export, prompt, records)

    if json_output:
        payload = {"run_id": actual_run_id, "db": str(db), **build_export(prompt, records)}
        if export is not None:
            payload["export"] = str(export)
        typer.echo(json.dumps(payload, ensure_ascii=False))
        return

    typer.echo(_render_comparison(actual_run_id, prompt, records, db=db))
    if export is not None:
        typer.echo(f"Exported to {export}")


@app.command("retry")
def retry(
    index: int | None = typer.Option(
        None, "--index", "-i", min=0, help="Result slot to retry (0-based)"
    ),
    target: str | None = typer.Option(
        None, "--target", "-t", help="Target name to retry"
    ),
    run_id: str | None = typer.Option(
        None, "--run-id", help="Run identifier. Defaults to latest run."
    ),
    stream: bool | None = typer.Option(
        None, "--stream/--no-stream", help="Override the run's streaming mode"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB history file"),
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Comparison config file", hidden=True
    ),
) -> None:
    if (index is None) == (target is None):
        typer.echo("Specify exactly one of --index or --target.")
        raise typer.Exit(1)

    storage = ComparisonStorage(db)
    try:
        actual_run_id = run_id or _latest_run_id(storage)
        try:
            run = storage.get_run(actual_run_id)
        except KeyError:
            typer.echo(f"Run not found: {actual_run_id}")
            raise typer.Exit(1)

        run_config = _parse_config_json(run.get("config_json"))
        entries = run_config.get("targets")
        if not isinstance(entries, list) or not entries:
            typer.echo(f"Run has no recorded targets: {actual_run_id}")
            raise typer.Exit(1)
        try:
            run_targets = [
                TargetConfig.from_dict(str(entry.get("name")), entry) for entry in entries
            ]
        except (AttributeError, ValueError) as exc:
            typer.echo(f"Run targets are invalid: {exc}")
            raise typer.Exit(1)

        if target is not None:
            names = [entry.name for entry in run_targets]
            if target not in names:
                typer.echo(f"Target not found in run: {target}")
                raise typer.Exit(1)
            slot = names.index(target)
        else:
            slot = int(index or 0)
            if slot >= len(run_targets):
                typer.echo(f"No result slot {slot} in run {actual_run_id}")
                raise typer.Exit(1)

        try:
            params = GenerationParameters(
                temperature=float(run_config.get("temperature", 0.7)),
                max_output_tokens=int(run_config.get("max_tokens", 2048)),
            )
            streaming = (
                _streaming_setting(run_config.get("streaming", True)) if stream is None else stream
            )
            dispatcher = _build_dispatcher(ComparisonConfig(config))
        except ValueError as exc:
            typer.echo(f"Invalid config: {exc}")
            raise typer.Exit(1)

        try:
            record = dispatcher.retry_one(
                target=run_targets[slot].to_request_target(),
                prompt=str(run["prompt"]),
                params=params,
                streaming=streaming,
            )
        finally:
            dispatcher.close()
        attempt = storage.upsert_result(actual_run_id, slot, record)
    finally:
        storage.close()

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "run_id": actual_run_id,
                    "index": slot,
                    "attempt": attempt,
                    "result": record.to_dict(),
                },
                ensure_ascii=False,
            )
        )
        return

    lines = [f"Retry of run {actual_run_id} slot {slot} (attempt {attempt})"]
    lines.extend(_render_record(slot, record))
    typer.echo("\n".join(lines))


@models_app.command("list")
def models_list(
    provider: str = typer.Option(..., "--provider", "-p", help="Provider name"),
    api_key_env: str | None = typer.Option(
        None, "--api-key-env", help="Environment variable storing the API key"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Comparison config file", hidden=True
    ),
) -> None:
    selected = _parse_provider(provider)
    try:
        api_base = ComparisonConfig(config).endpoints().get(selected)
    except ValueError as exc:
        typer.echo(f"Invalid config: {exc}")
        raise typer.Exit(1)

    credential = os.environ.get(api_key_env or DEFAULT_API_KEY_ENVS[selected])
    adapter = create_adapter(selected, api_base=api_base)
    try:
        models = adapter.list_models(credential)
    except (ProviderHTTPError, httpx.HTTPError, ValueError) as exc:
        logger.warning("Model listing failed: [%s] %s", type(exc).__name__, exc)
        typer.echo(f"Model listing failed: {exc}")
        raise typer.Exit(1)
    finally:
        adapter.close()

    if json_output:
        typer.echo(
            json.dumps(
                [
                    {
                        "provider": model.provider.value,
                        "model_id": model.model_id,
                        "display_name": model.display_name,
                        "context_window": model.context_window,
                        "capabilities": list(model.capabilities),
                    }
                    for model in models
                ],
                ensure_ascii=False,
            )
        )
        return

    if not models:
        typer.echo("No models available.")
        return
    for model in models:
        typer.echo(f"{model.model_id}\t{model.display_name}\t{model.context_window}")


@target_app.command("add")
def target_add(
    name: str = typer.Option(..., "--name", help="Target name"),
    provider: str = typer.Option(..., "--provider", help="Provider: openai, anthropic or google"),
    model: str = typer.Option(..., "--model", help="Model identifier"),
    display_name: str | None = typer.Option(
        None, "--display-name", help="Human readable model name"
    ),
    context_window: int | None = typer.Option(
        None, "--context-window", min=1, help="Context window in tokens"
    ),
    api_key_env: str | None = typer.Option(
        None, "--api-key-env", help="Environment variable storing API key"
    ),
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Comparison config file", hidden=True
    ),
) -> None:
    entry = TargetConfig(
        name=name,
        provider=_parse_provider(provider),
        model=model,
        display_name=display_name,
        context_window=context_window,
        api_key_env=api_key_env,
    )
    try:
        ComparisonConfig(config).save_target(entry)
    except ValueError as exc:
        typer.echo(f"Invalid target: {exc}")
        raise typer.Exit(1)
    logger.debug("Target %r added to %s", name, config)
    typer.echo(f"Target added: {name}")


@target_app.command("list")
def target_list(
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Comparison config file", hidden=True
    ),
) -> None:
    try:
        targets = ComparisonConfig(config).list_targets()
    except ValueError as exc:
        typer.echo(f"Invalid config: {exc}")
        raise typer.Exit(1)
    if not targets:
        typer.echo("No targets configured.")
        return

    for entry in targets:
        typer.echo(
            f"{entry.name}\t{entry.provider.value}\t{entry.model}\t{entry.resolved_api_key_env()}"
        )


@target_app.command("remove")
def target_remove(
    name: str = typer.Option(..., "--name", help="Target name"),
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Comparison config file", hidden=True
    ),
) -> None:
    try:
        ComparisonConfig(config).remove_target(name)
    except KeyError:
        typer.echo(f"Target not found: {name}")
        raise typer.Exit(1)
    typer.echo(f"Target removed: {name}")


@settings_app.command("get")
def settings_get(
    key: str = typer.Argument(..., help="Setting key"),
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Comparison config file", hidden=True
    ),
) -> None:
    value = ComparisonConfig(config).get_setting(key)
    if value is None:
        typer.echo(f"Setting not found: {key}")
        raise typer.Exit(1)
    typer.echo(json.dumps(value))


@settings_app.command("set")
def settings_set(
    key: str = typer.Argument(..., help="Setting key"),
    value: str = typer.Argument(..., help="Setting value"),
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Comparison config file", hidden=True
    ),
) -> None:
    try:
        ComparisonConfig(config).set_setting(key, _parse_setting_value(value))
    except ValueError as exc:
        typer.echo(f"Invalid setting: {exc}")
        raise typer.Exit(1)
    typer.echo(f"Setting saved: {key}")


@settings_app.command("endpoint")
def settings_endpoint(
    provider: str = typer.Option(..., "--provider", help="Provider name"),
    url: str | None = typer.Option(
        None, "--url", help="Base URL override. Omit to restore the default."
    ),
    config: Path = typer.Option(
        DEFAULT_CONFIG, "--config", help="Comparison config file", hidden=True
    ),
) -> None:
    selected = _parse_provider(provider)
    ComparisonConfig(config).set_endpoint(selected, url)
    if url:
        typer.echo(f"Endpoint for {selected.value}: {url}")
    else:
        typer.echo(f"Endpoint for {selected.value} reset to default")


@report_app.command("list")
def report_list(
    limit: int | None = typer.Option(
        None, "--limit", "-n", min=1, help="Maximum number of runs to show"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB history file"),
) -> None:
    storage = ComparisonStorage(db)
    try:
        runs = storage.list_runs_with_stats()
        if not runs:
            typer.echo("No runs found.")
            raise typer.Exit(1)

        if limit is not None:
            runs = runs[:limit]

        output_runs: list[dict[str, object]] = []
        for run in runs:
            run_config = _parse_config_json(run.get("config_json"))
            output_runs.append(
                {
                    "run_id": run.get("run_id"),
                    "prompt": run.get("prompt"),
                    "started_at": run.get("started_at"),
                    "finished_at": run.get("finished_at"),
                    "duration_s": run.get("duration_s"),
                    "started_at_iso": _format_timestamp(run.get("started_at")),
                    "target_count": run.get("target_count"),
                    "success_count": run.get("success_count"),
                    "warning_count": run.get("warning_count"),
                    "error_count": run.get("error_count"),
                    "total_cost": run.get("total_cost"),
                    "streaming": run_config.get("streaming"),
                }
            )

        if json_output:
            typer.echo(
                json.dumps(
                    {"db": str(db), "total": len(output_runs), "runs": output_runs},
                    ensure_ascii=False,
                )
            )
            return

        typer.echo(_render_report_list(output_runs, db=db))
    finally:
        storage.close()


@report_app.command("summary")
def report_summary(
    run_id: str | None = typer.Option(
        None, "--run-id", help="Run identifier. Defaults to latest run."
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB history file"),
) -> None:
    storage = ComparisonStorage(db)
    try:
        actual_run_id = run_id or _latest_run_id(storage)
        try:
            run = storage.get_run(actual_run_id)
        except KeyError:
            typer.echo(f"Run not found: {actual_run_id}")
            raise typer.Exit(1)
        records = storage.get_results(actual_run_id)
        attempts = storage.get_attempts(actual_run_id)
        history = storage.model_latency_summary()
    finally:
        storage.close()

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "run_id": actual_run_id,
                    "prompt": run["prompt"],
                    "summary": summarize(records),
                    "results": [
                        {**record.to_dict(), "attempt": attempts.get(index, 1)}
                        for index, record in enumerate(records)
                    ],
                    "latency_history": {
                        record.model_id: history.get(record.model_id)
                        for record in records
                    },
                },
                ensure_ascii=False,
            )
        )
        return

    lines = [_render_comparison(actual_run_id, str(run["prompt"]), records, db=db)]
    if history:
        lines.extend(["", "Latency history (success and warning results):"])
        for model_id in sorted({record.model_id for record in records}):
            quantiles = history.get(model_id)
            if not quantiles:
                continue
            values = " ".join(
                f"{key}={_format_quantile(quantiles.get(key))}" for key in QUANTILE_KEYS
            )
            lines.append(f"- {model_id:<28} count={quantiles['count']:<5} {values}")
    typer.echo("\n".join(lines))


@report_app.command("remove")
def report_remove(
    run_id: str = typer.Option(..., "--run-id", help="Run identifier to remove"),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB history file"),
) -> None:
    storage = ComparisonStorage(db)
    try:
        deleted = storage.delete_run(run_id=run_id)
        if not deleted:
            typer.echo(f"Run not found: {run_id}")
            raise typer.Exit(1)
        typer.echo(f"Run removed: {run_id}")
    finally:
        storage.close()


@app.command("export")
def export_run(
    output: Path = typer.Option(..., "--output", "-o", help="Export file path (.json)"),
    run_id: str | None = typer.Option(
        None, "--run-id", help="Run identifier. Defaults to latest run."
    ),
    force: bool = typer.Option(
        False, "--force", help="Overwrite if output file already exists"
    ),
    db: Path = typer.Option(DEFAULT_DB, "--db", "-d", help="DuckDB history file"),
) -> None:
    if output.exists() and not force:
        typer.echo(f"Output file already exists: {output}. Use --force to overwrite.")
        raise typer.Exit(1)

    storage = ComparisonStorage(db)
    try:
        actual_run_id = run_id or _latest_run_id(storage)
        try:
            run = storage.get_run(actual_run_id)
        except KeyError:
            typer.echo(f"Run not found: {actual_run_id}")
            raise typer.Exit(1)
        records = storage.get_results(actual_run_id)
    finally:
        storage.close()

    document = write_export(output, str(run["prompt"]), records)
    typer.echo(
        json.dumps(
            {
                "run_id": actual_run_id,
                "output": str(output),
                "responses": len(document["responses"]),
            },
            ensure_ascii=False,
        )
    )


@pricing_app.command("show")
def pricing_show(
    provider: str = typer.Option(..., "--provider", "-p", help="Provider name"),
    model: str = typer.Option(..., "--model", "-m", help="Model identifier"),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
) -> None:
    selected = _parse_provider(provider)
    pricing = _build_pricing().get_pricing(selected, model)
    if json_output:
        typer.echo(
            json.dumps(
                {
                    "provider": selected.value,
                    "model": model,
                    "input_per_1k": pricing.input if pricing else None,
                    "output_per_1k": pricing.output if pricing else None,
                    "source": pricing.source if pricing else None,
                },
                ensure_ascii=False,
            )
        )
        return

    if pricing is None:
        typer.echo(f"No pricing known for {selected.value}/{model}")
        raise typer.Exit(1)
    typer.echo(
        f"{selected.value}/{model}\tinput={pricing.input:g}/1K\t"
        f"output={pricing.output:g}/1K\tsource={pricing.source}"
    )


def main() -> None:
    _setup_logging()
    app()


if __name__ == "__main__":
    main()
