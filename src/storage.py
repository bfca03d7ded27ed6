from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import duckdb

from records import Diagnostic, Provider, ResultRecord, ResultStatus

logger = logging.getLogger(__name__)

_RESULT_COLUMNS = (
    "run_id",
    "target_index",
    "attempt",
    "model",
    "model_id",
    "provider",
    "context_window",
    "recorded_at",
    "latency_ms",
    "status",
    "response_text",
    "input_tokens",
    "output_tokens",
    "total_tokens",
    "estimated_cost_usd",
    "diagnostic_json",
    "is_partial",
    "is_streamed",
    "error_message",
)


class ComparisonStorage:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        logger.debug("Opening database: %s", db_path)
        self.connection = duckdb.connect(str(db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        logger.debug("Initializing schema")
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id VARCHAR PRIMARY KEY,
                prompt VARCHAR NOT NULL,
                started_at DOUBLE NOT NULL,
                finished_at DOUBLE,
                duration_s DOUBLE,
                config_json VARCHAR NOT NULL
            );

            CREATE TABLE IF NOT EXISTS results (
                run_id VARCHAR NOT NULL,
                target_index BIGINT NOT NULL,
                attempt BIGINT NOT NULL,
                model VARCHAR NOT NULL,
                model_id VARCHAR NOT NULL,
                provider VARCHAR NOT NULL,
                context_window BIGINT NOT NULL,
                recorded_at VARCHAR NOT NULL,
                latency_ms DOUBLE NOT NULL,
                status VARCHAR NOT NULL,
                response_text VARCHAR,
                input_tokens BIGINT,
                output_tokens BIGINT,
                total_tokens BIGINT,
                estimated_cost_usd DOUBLE,
                diagnostic_json VARCHAR,
                is_partial BOOLEAN NOT NULL,
                is_streamed BOOLEAN NOT NULL,
                error_message VARCHAR,
                PRIMARY KEY (run_id, target_index)
            );
            """
        )

    def create_run(
        self, run_id: str, prompt: str, started_at: float, config_json: str
    ) -> None:
        logger.debug("Creating run: %s", run_id)
        self.connection.execute(
            """
            INSERT INTO runs (run_id, prompt, started_at, config_json)
            VALUES (?, ?, ?, ?)
            """,
            [run_id, prompt, started_at, config_json],
        )

    def finish_run(self, run_id: str, finished_at: float) -> None:
        logger.debug("Finishing run: %s", run_id)
        self.connection.execute(
            """
            UPDATE runs
            SET finished_at = ?, duration_s = ? - started_at
            WHERE run_id = ?
            """,
            [finished_at, finished_at, run_id],
        )

    def get_run(self, run_id: str) -> dict[str, Any]:
        row = self.connection.execute(
            """
            SELECT run_id, prompt, started_at, finished_at, duration_s, config_json
            FROM runs
            WHERE run_id = ?
            """,
            [run_id],
        ).fetchone()
        if row is None:
            raise KeyError(run_id)
        return {
            "run_id": row[0],
            "prompt": row[1],
            "started_at": row[2],
            "finished_at": row[3],
            "duration_s": row[4],
            "config_json": row[5],
        }

    def delete_run(self, run_id: str) -> bool:
        existing = self.connection.execute(
            """
            SELECT 1
            FROM runs
            WHERE run_id = ?
            LIMIT 1
            """,
            [run_id],
        ).fetchone()
        if existing is None:
            return False

        logger.debug("Deleting run: %s", run_id)
        self.connection.execute("BEGIN TRANSACTION")
        try:
            self.connection.execute("DELETE FROM results WHERE run_id = ?", [run_id])
            self.connection.execute("DELETE FROM runs WHERE run_id = ?", [run_id])
            self.connection.execute("COMMIT")
        except Exception:  # noqa: BLE001
            logger.warning("Error during deletion of run %s, rolling back transaction", run_id, exc_info=True)
            self.connection.execute("ROLLBACK")
            raise
        return True

    def list_runs_with_stats(self) -> list[dict[str, Any]]:
        rows = self.connection.execute(
            """
            WITH result_counts AS (
                SELECT
                    run_id,
                    COUNT(*) AS target_count,
                    SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END) AS success_count,
                    SUM(CASE WHEN status = 'warning' THEN 1 ELSE 0 END) AS warning_count,
                    SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END) AS error_count,
                    SUM(estimated_cost_usd) AS total_cost
                FROM results
                GROUP BY run_id
            )
            SELECT
                runs.run_id,
                runs.prompt,
                runs.started_at,
                runs.finished_at,
                runs.duration_s,
                runs.config_json,
                COALESCE(result_counts.target_count, 0) AS target_count,
                COALESCE(result_counts.success_count, 0) AS success_count,
                COALESCE(result_counts.warning_count, 0) AS warning_count,
                COALESCE(result_counts.error_count, 0) AS error_count,
                result_counts.total_cost
            FROM runs
            LEFT JOIN result_counts USING (run_id)
            ORDER BY runs.started_at DESC
            """
        ).fetchall()
        return [
            {
                "run_id": row[0],
                "prompt": row[1],
                "started_at": row[2],
                "finished_at": row[3],
                "duration_s": row[4],
                "config_json": row[5],
                "target_count": int(row[6] or 0),
                "success_count": int(row[7] or 0),
                "warning_count": int(row[8] or 0),
                "error_count": int(row[9] or 0),
                "total_cost": (float(row[10]) if row[10] is not None else None),
            }
            for row in rows
        ]

    def upsert_results(self, run_id: str, records: list[ResultRecord]) -> None:
        self.connection.execute("BEGIN TRANSACTION")
        try:
            for target_index, record in enumerate(records):
                self._write_result(run_id=run_id, target_index=target_index, record=record)
            self.connection.execute("COMMIT")
        except Exception:  # noqa: BLE001
            logger.warning("Error storing results of run %s, rolling back transaction", run_id, exc_info=True)
            self.connection.execute("ROLLBACK")
            raise

    def upsert_result(self, run_id: str, target_index: int, record: ResultRecord) -> int:
        """Store ``record`` in its slot and return the slot's attempt number."""
        self.connection.execute("BEGIN TRANSACTION")
        try:
            attempt = self._write_result(run_id=run_id, target_index=target_index, record=record)
            self.connection.execute("COMMIT")
        except Exception:  # noqa: BLE001
            logger.warning(
                "Error storing result %d of run %s, rolling back transaction",
                target_index, run_id, exc_info=True,
            )
            self.connection.execute("ROLLBACK")
            raise
        return attempt

    def _write_result(self, run_id: str, target_index: int, record: ResultRecord) -> int:
        row = self.connection.execute(
            "SELECT attempt FROM results WHERE run_id = ? AND target_index = ?",
            [run_id, target_index],
        ).fetchone()
        attempt = 1 if row is None else int(row[0]) + 1
        if row is not None:
            self.connection.execute(
                "DELETE FROM results WHERE run_id = ? AND target_index = ?",
                [run_id, target_index],
            )

        logger.debug(
            "Storing result: run=%s index=%d attempt=%d status=%s",
            run_id, target_index, attempt, record.status.value,
        )
        placeholders = ", ".join("?" for _ in _RESULT_COLUMNS)
        self.connection.execute(
            f"INSERT INTO results ({', '.join(_RESULT_COLUMNS)}) VALUES ({placeholders})",
            [
                run_id,
                target_index,
                attempt,
                record.model,
                record.model_id,
                record.provider.value,
                record.context_window,
                record.timestamp,
                record.latency_ms,
                record.status.value,
                record.text,
                record.input_tokens,
                record.output_tokens,
                record.total_tokens,
                record.estimated_cost_usd,
                (
                    json.dumps(record.diagnostic.to_dict(), ensure_ascii=True)
                    if record.diagnostic is not None
                    else None
                ),
                record.partial,
                record.streamed,
                record.error_message,
            ],
        )
        return attempt

    def get_results(self, run_id: str) -> list[ResultRecord]:
        rows = self.connection.execute(
            f"""
            SELECT {', '.join(_RESULT_COLUMNS)}
            FROM results
            WHERE run_id = ?
            ORDER BY target_index ASC
            """,
            [run_id],
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_attempts(self, run_id: str) -> dict[int, int]:
        rows = self.connection.execute(
            "SELECT target_index, attempt FROM results WHERE run_id = ?",
            [run_id],
        ).fetchall()
        return {int(row[0]): int(row[1]) for row in rows}

    def model_latency_summary(
        self, model_id: str | None = None
    ) -> dict[str, dict[str, float | int | None]]:
        """Latency quantiles per model over stored success and warning results."""
        filters = ["status IN ('success', 'warning')"]
        params: list[object] = []
        if model_id:
            filters.append("model_id = ?")
            params.append(model_id)
        rows = self.connection.execute(
            f"""
            SELECT
                model_id,
                COUNT(latency_ms) AS count_value,
                quantile_cont(latency_ms, 0.5) AS p50,
                quantile_cont(latency_ms, 0.9) AS p90,
                quantile_cont(latency_ms, 0.95) AS p95,
                quantile_cont(latency_ms, 0.99) AS p99
            FROM results
            WHERE {' AND '.join(filters)}
            GROUP BY model_id
            ORDER BY model_id ASC
            """,
            params,
        ).fetchall()
        return {str(row[0]): self._row_to_quantile_dict(row[1:]) for row in rows}

    def close(self) -> None:
        self.connection.close()

    @staticmethod
    def _row_to_record(row: Any) -> ResultRecord:
        values = dict(zip(_RESULT_COLUMNS, row))
        diagnostic_json = values["diagnostic_json"]
        return ResultRecord(
            model=values["model"],
            model_id=values["model_id"],
            provider=Provider(values["provider"]),
            context_window=int(values["context_window"]),
            timestamp=values["recorded_at"],
            latency_ms=float(values["latency_ms"]),
            status=ResultStatus(values["status"]),
            text=values["response_text"],
            input_tokens=values["input_tokens"],
            output_tokens=values["output_tokens"],
            total_tokens=values["total_tokens"],
            estimated_cost_usd=values["estimated_cost_usd"],
            diagnostic=(
                Diagnostic.from_dict(json.loads(diagnostic_json))
                if diagnostic_json
                else None
            ),
            partial=bool(values["is_partial"]),
            streamed=bool(values["is_streamed"]),
            error_message=values["error_message"],
        )

    @staticmethod
    def _row_to_quantile_dict(row: Any) -> dict[str, float | int | None]:
        if row is None:
            return {"count": 0, "p50": None, "p90": None, "p95": None, "p99": None}
        return {
            "count": int(row[0] or 0),
            "p50": (float(row[1]) if row[1] is not None else None),
            "p90": (float(row[2]) if row[2] is not None else None),
            "p95": (float(row[3]) if row[3] is not None else None),
            "p99": (float(row[4]) if row[4] is not None else None),
        }
