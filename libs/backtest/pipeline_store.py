"""
Persisted pipeline state (``backtest_pipelines``) and summary reports
(``backtest_pipeline_reports``).

Postgres status is the source of truth for every pipeline. All transitions
are single conditional ``UPDATE`` statements so that a stale worker can never
move a pipeline out of a terminal state: each method returns False when the
guard rejected the write instead of raising.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol

from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from libs.backtest.models import (
    PIPELINE_STAGE_ORDER,
    TERMINAL_STATUSES,
    Pipeline,
    PipelineConfig,
    PipelineStage,
    PipelineStatus,
    row_to_pipeline,
)

DEFAULT_LIST_LIMIT = 50
_TERMINAL_VALUES = sorted(status.value for status in TERMINAL_STATUSES)
_CANCELLABLE_VALUES = [PipelineStatus.PENDING.value, PipelineStatus.RUNNING.value]


class PipelineStore(Protocol):
    """Persistence used by the orchestrator and stage handlers."""

    def create(self, config: PipelineConfig) -> Pipeline: ...

    def get(self, pipeline_id: str) -> Pipeline | None: ...

    def list_pipelines(
        self, status: PipelineStatus | None = None, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Pipeline]: ...

    def mark_running(self, pipeline_id: str, stage: PipelineStage) -> bool: ...

    def advance_stage(self, pipeline_id: str, stage: PipelineStage) -> bool: ...

    def save_stage_result(
        self, pipeline_id: str, stage: PipelineStage, result: dict[str, Any]
    ) -> None: ...

    def fail(self, pipeline_id: str, reason: str) -> bool: ...

    def cancel(self, pipeline_id: str, reason: str) -> bool: ...

    def complete(self, pipeline_id: str) -> bool: ...

    def write_report(self, pipeline_id: str, report: dict[str, Any]) -> bool: ...

    def get_report(self, pipeline_id: str) -> dict[str, Any] | None: ...


class PostgresPipelineStore:
    """psycopg3 implementation of :class:`PipelineStore`."""

    def __init__(self, db_pool: ConnectionPool):
        self.db_pool = db_pool

    def _execute_update(self, sql: str, params: tuple[Any, ...]) -> bool:
        with self.db_pool.connection() as conn, conn.cursor() as cur:
            cur.execute(sql, params)
            updated = cur.rowcount > 0
            conn.commit()
        return updated

    def create(self, config: PipelineConfig) -> Pipeline:
        pipeline_id = str(uuid.uuid4())
        now = datetime.now(UTC)
        sql = """
            INSERT INTO backtest_pipelines (
                id, status, current_stage, config, stage_results, created_at, updated_at
            ) VALUES (%s, %s, %s, %s::jsonb, '{}'::jsonb, %s, %s)
            RETURNING *
        """
        with self.db_pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                sql,
                (
                    pipeline_id,
                    PipelineStatus.PENDING.value,
                    PIPELINE_STAGE_ORDER[0].value,
                    json.dumps(config.to_dict()),
                    now,
                    now,
                ),
            )
            row = cur.fetchone()
            conn.commit()
        if row is None:
            raise RuntimeError(f"Pipeline {pipeline_id} insert returned no row")
        return row_to_pipeline(row)

    def get(self, pipeline_id: str) -> Pipeline | None:
        with self.db_pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute("SELECT * FROM backtest_pipelines WHERE id = %s", (pipeline_id,))
            row = cur.fetchone()
        return row_to_pipeline(row) if row else None

    def list_pipelines(
        self, status: PipelineStatus | None = None, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Pipeline]:
        sql = "SELECT * FROM backtest_pipelines"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status = %s"
            params.append(PipelineStatus(status).value)
        sql += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)

        with self.db_pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [row_to_pipeline(row) for row in rows]

    def mark_running(self, pipeline_id: str, stage: PipelineStage) -> bool:
        """PENDING -> RUNNING at ``stage``."""
        now = datetime.now(UTC)
        return self._execute_update(
            """
            UPDATE backtest_pipelines
            SET status = %s,
                current_stage = %s,
                started_at = COALESCE(started_at, %s),
                updated_at = %s
            WHERE id = %s AND status = %s
            """,
            (
                PipelineStatus.RUNNING.value,
                stage.value,
                now,
                now,
                pipeline_id,
                PipelineStatus.PENDING.value,
            ),
        )

    def advance_stage(self, pipeline_id: str, stage: PipelineStage) -> bool:
        """Move ``current_stage`` forward; only a RUNNING pipeline advances."""
        return self._execute_update(
            """
            UPDATE backtest_pipelines
            SET current_stage = %s, updated_at = %s
            WHERE id = %s AND status = %s
            """,
            (stage.value, datetime.now(UTC), pipeline_id, PipelineStatus.RUNNING.value),
        )

    def save_stage_result(
        self, pipeline_id: str, stage: PipelineStage, result: dict[str, Any]
    ) -> None:
        """Merge one stage's JSON result into ``stage_results`` under the stage name."""
        with self.db_pool.connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                UPDATE backtest_pipelines
                SET stage_results = COALESCE(stage_results, '{}'::jsonb)
                                    || jsonb_build_object(%s::text, %s::jsonb),
                    updated_at = %s
                WHERE id = %s
                """,
                (stage.value, json.dumps(result, default=str), datetime.now(UTC), pipeline_id),
            )
            conn.commit()

    def fail(self, pipeline_id: str, reason: str) -> bool:
        """Any non-terminal status -> FAILED, recording the reason."""
        now = datetime.now(UTC)
        return self._execute_update(
            """
            UPDATE backtest_pipelines
            SET status = %s, failure_reason = %s, completed_at = %s, updated_at = %s
            WHERE id = %s AND status <> ALL(%s)
            """,
            (PipelineStatus.FAILED.value, reason, now, now, pipeline_id, _TERMINAL_VALUES),
        )

    def cancel(self, pipeline_id: str, reason: str) -> bool:
        """PENDING or RUNNING -> CANCELLED."""
        now = datetime.now(UTC)
        return self._execute_update(
            """
            UPDATE backtest_pipelines
            SET status = %s, failure_reason = %s, completed_at = %s, updated_at = %s
            WHERE id = %s AND status = ANY(%s)
            """,
            (PipelineStatus.CANCELLED.value, reason, now, now, pipeline_id, _CANCELLABLE_VALUES),
        )

    def complete(self, pipeline_id: str) -> bool:
        """RUNNING -> COMPLETED."""
        now = datetime.now(UTC)
        return self._execute_update(
            """
            UPDATE backtest_pipelines
            SET status = %s, completed_at = %s, updated_at = %s
            WHERE id = %s AND status = %s
            """,
            (
                PipelineStatus.COMPLETED.value,
                now,
                now,
                pipeline_id,
                PipelineStatus.RUNNING.value,
            ),
        )

    def write_report(self, pipeline_id: str, report: dict[str, Any]) -> bool:
        """Insert the summary report; a second write for the same pipeline is a no-op."""
        return self._execute_update(
            """
            INSERT INTO backtest_pipeline_reports (pipeline_id, report, created_at)
            VALUES (%s, %s::jsonb, %s)
            ON CONFLICT (pipeline_id) DO NOTHING
            """,
            (pipeline_id, json.dumps(report, default=str), datetime.now(UTC)),
        )

    def get_report(self, pipeline_id: str) -> dict[str, Any] | None:
        with self.db_pool.connection() as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                "SELECT report FROM backtest_pipeline_reports WHERE pipeline_id = %s",
                (pipeline_id,),
            )
            row = cur.fetchone()
        if row is None:
            return None
        report = row["report"]
        if isinstance(report, str):
            report = json.loads(report)
        return dict(report)
