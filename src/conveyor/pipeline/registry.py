"""Run registry — SQLite persistence for pipeline runs and stage results.

Key exports:
    RunRegistry — CRUD for pipeline_runs and pipeline_stage_results.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import aiosqlite

from conveyor.pipeline.models import (
    PipelineRun,
    PipelineRunStatus,
    StageResult,
    TriggerMetadata,
)

logger = logging.getLogger("conveyor.pipeline.registry")


class RunRegistry:
    """SQLite-backed persistence for pipeline runs.

    Takes an already-open aiosqlite connection. Call ``initialize()`` to
    create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all run tables if they don't exist."""
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Run registry tables initialized")

    # ── Pipeline Run CRUD ────────────────────────────────────────────────────

    async def create_run(self, run: PipelineRun, *, definition_snapshot: str = "{}") -> None:
        """Insert a new pipeline run."""
        await self._db.execute(
            """
            INSERT INTO pipeline_runs (
                run_id, pipeline_name, definition_snapshot,
                revision, trigger_source, trigger,
                status, current_stage_index,
                created_at, started_at, completed_at,
                failure_kind, error_message, error_stage
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id,
                run.pipeline_name,
                definition_snapshot,
                run.trigger.revision,
                run.trigger.source,
                run.trigger.model_dump_json(),
                run.status.value,
                run.current_stage_index,
                _dt_to_str(run.created_at),
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.failure_kind,
                run.error_message,
                run.error_stage,
            ),
        )
        await self._db.commit()

    async def update_run(self, run: PipelineRun) -> None:
        """Update a pipeline run's mutable fields."""
        await self._db.execute(
            """
            UPDATE pipeline_runs SET
                status = ?, current_stage_index = ?,
                started_at = ?, completed_at = ?,
                failure_kind = ?, error_message = ?, error_stage = ?
            WHERE run_id = ?
            """,
            (
                run.status.value,
                run.current_stage_index,
                _dt_to_str(run.started_at),
                _dt_to_str(run.completed_at),
                run.failure_kind,
                run.error_message,
                run.error_stage,
                run.run_id,
            ),
        )
        await self._db.commit()

    async def append_result(self, run_id: str, seq: int, result: StageResult) -> None:
        """Append one stage result; results are never updated once written."""
        await self._db.execute(
            """
            INSERT INTO pipeline_stage_results (run_id, seq, stage, outcome, payload)
            VALUES (?, ?, ?, ?, ?)
            """,
            (run_id, seq, result.stage, result.outcome.value, result.model_dump_json()),
        )
        await self._db.commit()

    async def get_run(self, run_id: str) -> PipelineRun | None:
        """Fetch a pipeline run, with its stage results, by ID."""
        cursor = await self._db.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        run = _row_to_pipeline_run(row)
        run.results = await self.get_results(run_id)
        return run

    async def get_results(self, run_id: str) -> list[StageResult]:
        cursor = await self._db.execute(
            "SELECT payload FROM pipeline_stage_results WHERE run_id = ? ORDER BY seq",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [StageResult.model_validate_json(r["payload"]) for r in rows]

    async def list_runs(
        self,
        *,
        status: PipelineRunStatus | None = None,
        pipeline_name: str | None = None,
        limit: int = 50,
    ) -> list[PipelineRun]:
        """List runs newest first, optionally filtered. Stage results are not loaded."""
        clauses: list[str] = []
        params: list[object] = []
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if pipeline_name:
            clauses.append("pipeline_name = ?")
            params.append(pipeline_name)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._db.execute(
            f"SELECT * FROM pipeline_runs {where} ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_pipeline_run(r) for r in rows]

    async def mark_interrupted(self) -> int:
        """Fail runs left pending/running by a previous process. Returns count."""
        now = _dt_to_str(datetime.now(timezone.utc))
        cursor = await self._db.execute(
            """
            UPDATE pipeline_runs SET
                status = ?, completed_at = ?, failure_kind = ?, error_message = ?
            WHERE status IN (?, ?)
            """,
            (
                PipelineRunStatus.FAILED.value,
                now,
                "internal_error",
                "Run interrupted by engine restart",
                PipelineRunStatus.PENDING.value,
                PipelineRunStatus.RUNNING.value,
            ),
        )
        await self._db.commit()
        count = cursor.rowcount or 0
        if count:
            logger.warning("Marked %d interrupted run(s) as failed", count)
        return count


# ── Schema ───────────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    pipeline_name TEXT NOT NULL,
    definition_snapshot TEXT NOT NULL DEFAULT '{}',

    revision TEXT NOT NULL,
    trigger_source TEXT,
    trigger TEXT NOT NULL DEFAULT '{}',

    status TEXT DEFAULT 'pending',
    current_stage_index INTEGER DEFAULT 0,

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    started_at TEXT,
    completed_at TEXT,

    failure_kind TEXT,
    error_message TEXT,
    error_stage TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_status
    ON pipeline_runs(status, created_at);

CREATE TABLE IF NOT EXISTS pipeline_stage_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id),
    seq INTEGER NOT NULL,
    stage TEXT NOT NULL,
    outcome TEXT NOT NULL,
    payload TEXT NOT NULL,
    UNIQUE (run_id, seq)
);
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_pipeline_run(row: aiosqlite.Row) -> PipelineRun:
    """Convert a database row to a PipelineRun model (without results)."""
    trigger = TriggerMetadata.model_validate_json(row["trigger"])
    return PipelineRun(
        run_id=row["run_id"],
        pipeline_name=row["pipeline_name"],
        trigger=trigger,
        status=PipelineRunStatus(row["status"]),
        current_stage_index=row["current_stage_index"] or 0,
        created_at=_str_to_dt(row["created_at"]) or datetime.now(timezone.utc),
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
        failure_kind=row["failure_kind"],
        error_message=row["error_message"],
        error_stage=row["error_stage"],
    )
