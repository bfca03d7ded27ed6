from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
from typing import Any

from records import Diagnostic, Provider, ResultRecord, ResultStatus


logger = logging.getLogger(__name__)


def _response_entry(record: ResultRecord) -> dict[str, Any]:
    return {
        "model": record.model,
        "model_id": record.model_id,
        "provider": record.provider.value,
        "response": record.text,
        "metrics": {
            "latency_ms": record.latency_ms,
            "input_tokens": record.input_tokens,
            "output_tokens": record.output_tokens,
            "total_tokens": record.total_tokens,
            "estimated_cost_usd": record.estimated_cost_usd,
        },
        "metadata": {
            "context_window": record.context_window,
            "timestamp": record.timestamp,
            "streamed": record.streamed,
        },
        "status": record.status.value,
        "partial": record.partial,
        "error_message": record.error_message,
        "diagnostic": record.diagnostic.to_dict() if record.diagnostic else None,
    }


def summarize(records: list[ResultRecord]) -> dict[str, Any]:
    known_costs = [
        record.estimated_cost_usd
        for record in records
        if record.estimated_cost_usd is not None
    ]
    answered = [
        record.latency_ms
        for record in records
        if record.status in (ResultStatus.SUCCESS, ResultStatus.WARNING)
    ]
    return {
        "total_models": len(records),
        "successful": sum(1 for r in records if r.status is ResultStatus.SUCCESS),
        "warnings": sum(1 for r in records if r.status is ResultStatus.WARNING),
        "failed": sum(1 for r in records if r.status is ResultStatus.ERROR),
        "total_cost": sum(known_costs) if known_costs else None,
        "unknown_cost_models": len(records) - len(known_costs),
        "average_latency_ms": (sum(answered) / len(answered)) if answered else None,
    }


def build_export(
    prompt: str,
    records: list[ResultRecord],
    exported_at: str | None = None,
) -> dict[str, Any]:
    return {
        "exported_at": exported_at
        or datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
        "prompt": prompt,
        "responses": [_response_entry(record) for record in records],
        "summary": summarize(records),
    }


def write_export(
    path: Path,
    prompt: str,
    records: list[ResultRecord],
    exported_at: str | None = None,
) -> dict[str, Any]:
    document = build_export(prompt, records, exported_at=exported_at)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(document, ensure_ascii=False, indent=2) + "\n", encoding="utf-8"
    )
    logger.debug("Exported %d response(s) to %s", len(records), path)
    return document


def _record_from_entry(entry: dict[str, Any]) -> ResultRecord:
    metrics = entry.get("metrics") or {}
    metadata = entry.get("metadata") or {}
    diagnostic = entry.get("diagnostic")
    cost = metrics.get("estimated_cost_usd")
    return ResultRecord(
        model=str(entry["model"]),
        model_id=str(entry["model_id"]),
        provider=Provider(str(entry["provider"])),
        context_window=int(metadata.get("context_window") or 0),
        timestamp=str(metadata.get("timestamp", "")),
        latency_ms=float(metrics.get("latency_ms") or 0.0),
        status=ResultStatus(str(entry["status"])),
        text=entry.get("response"),
        input_tokens=metrics.get("input_tokens"),
        output_tokens=metrics.get("output_tokens"),
        total_tokens=metrics.get("total_tokens"),
        estimated_cost_usd=float(cost) if cost is not None else None,
        diagnostic=Diagnostic.from_dict(diagnostic) if diagnostic else None,
        partial=bool(entry.get("partial", False)),
        streamed=bool(metadata.get("streamed", False)),
        error_message=entry.get("error_message"),
    )


def load_export(path: Path) -> tuple[str, list[ResultRecord]]:
    document = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(document, dict) or "responses" not in document:
        raise ValueError(f"Not an export document: {path}")
    responses = document["responses"]
    if not isinstance(responses, list):
        raise ValueError("'responses' must be a list")
    return str(document.get("prompt", "")), [
        _record_from_entry(entry) for entry in responses
    ]
