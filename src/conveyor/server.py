"""Conveyor Server — FastAPI trigger API in front of the pipeline engine.

Startup sequence:
1. Load .conveyor/ config and pipeline files
2. Initialize the run database (fail runs interrupted by a previous process)
3. Build the pipeline engine and validate every pipeline
4. Attach the ring-buffer log handler (secret-masked)

Shutdown:
1. Request cancellation of active runs and wait for them to stop
2. Close database

Endpoints:
    - POST /runs                 Trigger a run in the background (202)
    - GET  /runs                 List runs (filter by status / pipeline)
    - GET  /runs/{run_id}        Run report with stage results
    - POST /runs/{run_id}/cancel Request cancellation at the next stage boundary
    - GET  /pipelines            Pipeline definitions
    - GET  /health               Liveness and counts
    - GET  /logs                 In-memory log buffer

Security:
    When CONVEYOR_API_TOKEN is set, the POST endpoints require
    ``Authorization: Bearer <token>``.
"""

from __future__ import annotations

import logging
import os
import secrets
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Optional

import aiosqlite
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from conveyor.config import ConfigError, ConveyorConfig, build_engine, load_config, validate_config
from conveyor.log_buffer import LogBuffer, RingBufferHandler
from conveyor.pipeline.credentials import SecretMasker, SecretMaskingFilter
from conveyor.pipeline.engine import PipelineEngine, describe_pipelines
from conveyor.pipeline.models import PipelineRun, PipelineRunStatus, TriggerMetadata
from conveyor.pipeline.registry import RunRegistry
from conveyor.pipeline.report import RunReport

logger = logging.getLogger(__name__)

API_TOKEN_ENV = "CONVEYOR_API_TOKEN"

_bearer_scheme = HTTPBearer(auto_error=False)

EngineFactory = Callable[..., PipelineEngine]


class TriggerRequest(BaseModel):
    pipeline: str
    revision: str = Field(min_length=1)
    source: str = "api"
    context: dict[str, Any] = Field(default_factory=dict)


class ConveyorServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(
        self,
        conveyor_dir: Path | None = None,
        *,
        config: ConveyorConfig | None = None,
        engine_factory: EngineFactory = build_engine,
        masker: SecretMasker | None = None,
    ):
        self.conveyor_dir = conveyor_dir or Path.cwd() / ".conveyor"
        self.config = config
        self._engine_factory = engine_factory

        # Components (initialized in start())
        self.db: aiosqlite.Connection | None = None
        self.registry: RunRegistry | None = None
        self.engine: PipelineEngine | None = None
        # Shared with the console log handlers when run from the CLI
        self.masker = masker if masker is not None else SecretMasker()
        self.log_buffer = LogBuffer(maxlen=5_000)
        self._ring_handler: RingBufferHandler | None = None

    async def start(self) -> None:
        """Initialize all components."""
        # 1. Load config
        if self.config is None:
            self.config = load_config(self.conveyor_dir)
        errors = validate_config(self.config)
        if errors:
            for err in errors:
                logger.error("Config validation error: %s", err)
            raise ConfigError(f"Config validation failed with {len(errors)} error(s)")

        # 2. Initialize database
        data_dir = Path(self.config.runtime.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        db_path = str(data_dir / "runs.db")
        logger.info("Run DB path: %s", db_path)
        self.db = await aiosqlite.connect(db_path)
        self.registry = RunRegistry(self.db)
        await self.registry.initialize()
        await self.registry.mark_interrupted()

        # 3. Build engine
        self.engine = self._engine_factory(self.config, registry=self.registry, masker=self.masker)

        # 4. Ring-buffer log capture, masked
        self._ring_handler = RingBufferHandler(self.log_buffer)
        self._ring_handler.addFilter(SecretMaskingFilter(self.masker))
        logging.getLogger().addHandler(self._ring_handler)

        logger.info(
            "Conveyor server started (project=%s, %d pipeline(s))",
            self.config.project.name,
            len(self.engine.list_pipelines()),
        )

    async def stop(self) -> None:
        """Graceful shutdown."""
        logger.info("Conveyor server shutting down")
        if self.engine:
            await self.engine.shutdown()
        if self.db:
            await self.db.close()
        if self._ring_handler:
            logging.getLogger().removeHandler(self._ring_handler)
        logger.info("Conveyor server stopped")

    async def find_run(self, run_id: str) -> PipelineRun | None:
        """Registry first; a just-submitted run may only be in memory."""
        run = await self.registry.get_run(run_id) if self.registry else None
        if run is None and self.engine:
            run = self.engine.get_active_run(run_id)
        return run


async def require_api_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> bool:
    """FastAPI dependency that validates the API token if configured."""
    expected = os.environ.get(API_TOKEN_ENV)
    if expected is None:
        return True
    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        logger.warning(
            "Rejected API request from %s",
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Provide Authorization: Bearer <token> header.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return True


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(
    conveyor_dir: Path | None = None,
    *,
    server: ConveyorServer | None = None,
    masker: SecretMasker | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    ``masker`` lets the caller share one secret registry between the server's
    log buffer and its own log handlers.
    """
    _server = server or ConveyorServer(conveyor_dir, masker=masker)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await _server.start()
        yield
        await _server.stop()

    app = FastAPI(
        title="Conveyor",
        version="0.1.0",
        description="Build, test and deploy pipeline orchestration",
        lifespan=lifespan,
    )
    app.state.server = _server

    def _engine() -> PipelineEngine:
        if _server.engine is None:
            raise HTTPException(status_code=503, detail="Engine not started")
        return _server.engine

    @app.get("/health")
    async def health():
        """Health check endpoint with operational counts."""
        engine = _server.engine
        return {
            "status": "ok",
            "project": _server.config.project.name if _server.config else None,
            "pipelines": len(engine.list_pipelines()) if engine else 0,
            "active_runs": len(engine.active_runs()) if engine else 0,
        }

    @app.get("/pipelines")
    async def list_pipelines():
        return {"pipelines": describe_pipelines(_engine().list_pipelines())}

    @app.post("/runs", status_code=status.HTTP_202_ACCEPTED)
    async def trigger_run(body: TriggerRequest, _: bool = Depends(require_api_token)):
        engine = _engine()
        if engine.get_pipeline(body.pipeline) is None:
            raise HTTPException(status_code=404, detail=f"Unknown pipeline: {body.pipeline}")
        trigger = TriggerMetadata(
            revision=body.revision,
            source=body.source,
            pipeline=body.pipeline,
            context=body.context,
        )
        run = engine.submit(trigger)
        logger.info("Accepted run %s for pipeline '%s'", run.run_id, body.pipeline)
        return {"run_id": run.run_id, "pipeline": run.pipeline_name, "status": run.status.value}

    @app.get("/runs")
    async def list_runs(
        status_filter: str | None = Query(default=None, alias="status"),
        pipeline: str | None = Query(default=None),
        limit: int = Query(default=50, ge=1, le=500),
    ):
        run_status = None
        if status_filter:
            try:
                run_status = PipelineRunStatus(status_filter)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Invalid status: {status_filter}")
        if _server.registry is None:
            raise HTTPException(status_code=503, detail="Registry not available")
        runs = await _server.registry.list_runs(
            status=run_status, pipeline_name=pipeline, limit=limit
        )
        return {
            "runs": [
                {
                    "run_id": r.run_id,
                    "pipeline": r.pipeline_name,
                    "revision": r.trigger.revision,
                    "status": r.status.value,
                    "failure_kind": r.failure_kind,
                    "created_at": r.created_at.isoformat(),
                }
                for r in runs
            ]
        }

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str):
        run = await _server.find_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
        return {
            "report": RunReport.from_run(run).to_dict(),
            "run": run.model_dump(mode="json"),
        }

    @app.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str, _: bool = Depends(require_api_token)):
        if _engine().cancel(run_id):
            return {"run_id": run_id, "cancel_requested": True}
        run = await _server.find_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
        if not run.is_terminal:
            raise HTTPException(
                status_code=409,
                detail=f"Run {run_id} is on its last stage and cannot be cancelled",
            )
        raise HTTPException(
            status_code=409, detail=f"Run {run_id} is already {run.status.value}"
        )

    @app.get("/logs")
    async def get_logs(
        level: str | None = Query(default=None, description="Minimum log level, e.g. WARNING"),
        name: str | None = Query(default=None, description="Logger name prefix"),
        run_id: str | None = Query(default=None),
        limit: int = Query(default=500, ge=1, le=5000),
    ):
        entries = _server.log_buffer.query(level=level, name=name, run_id=run_id, limit=limit)
        return {
            "count": len(entries),
            "buffer_size": _server.log_buffer.size,
            "buffer_capacity": _server.log_buffer.maxlen,
            "entries": entries,
        }

    return app
