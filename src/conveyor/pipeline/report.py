"""Run report — the final, human- and machine-readable account of a run.

The report is built from a terminal :class:`PipelineRun` alone; it never
re-executes anything. ``exit_code_for`` maps the run to a process exit code
for the CLI.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from conveyor.pipeline.errors import DeploymentTimedOut
from conveyor.pipeline.models import PipelineRun, PipelineRunStatus, StageResult

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2
EXIT_DEPLOYMENT_TIMED_OUT = 3
EXIT_CONFIG_ERROR = 4


class StageLine(BaseModel):
    stage: str
    outcome: str
    duration_seconds: float | None = None
    exit_code: int | None = None
    tolerated: bool = False
    detail: str = ""


class RunReport(BaseModel):
    run_id: str
    pipeline: str
    revision: str
    source: str
    status: str
    failure_kind: str | None = None
    error_stage: str | None = None
    error_message: str | None = None
    duration_seconds: float | None = None
    stages: list[StageLine] = []

    @classmethod
    def from_run(cls, run: PipelineRun) -> RunReport:
        duration = None
        if run.started_at and run.completed_at:
            duration = (run.completed_at - run.started_at).total_seconds()
        return cls(
            run_id=run.run_id,
            pipeline=run.pipeline_name,
            revision=run.trigger.revision,
            source=run.trigger.source,
            status=run.status.value,
            failure_kind=run.failure_kind,
            error_stage=run.error_stage,
            error_message=run.error_message,
            duration_seconds=duration,
            stages=[_stage_line(r) for r in run.results],
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def render_text(self) -> str:
        lines = [
            f"Run {self.run_id} ({self.pipeline} @ {self.revision}): {self.status.upper()}",
        ]
        for s in self.stages:
            duration = f"{s.duration_seconds:.1f}s" if s.duration_seconds is not None else "-"
            flag = " (tolerated)" if s.tolerated else ""
            line = f"  {s.stage:<20} {s.outcome:<10} {duration:>8}{flag}"
            if s.detail:
                line += f"  {s.detail}"
            lines.append(line)
        if self.failure_kind:
            where = f" at stage '{self.error_stage}'" if self.error_stage else ""
            lines.append(f"Failure: {self.failure_kind}{where}: {self.error_message or ''}".rstrip())
        return "\n".join(lines)


def _stage_line(result: StageResult) -> StageLine:
    detail = ""
    if result.error_message:
        detail = result.error_message
    elif result.gate is not None:
        detail = f"gate '{result.gate.gate}' {result.gate.summary}"
    elif result.verification is not None:
        detail = f"verified {result.verification.state.value} after {result.verification.polls} poll(s)"
    return StageLine(
        stage=result.stage,
        outcome=result.outcome.value,
        duration_seconds=result.duration_seconds,
        exit_code=result.exit_code,
        tolerated=result.tolerated,
        detail=detail,
    )


def exit_code_for(run: PipelineRun) -> int:
    """Process exit code for a terminal run."""
    match run.status:
        case PipelineRunStatus.SUCCEEDED:
            return EXIT_SUCCEEDED
        case PipelineRunStatus.ABORTED:
            return EXIT_ABORTED
        case PipelineRunStatus.FAILED if run.failure_kind == DeploymentTimedOut.kind:
            return EXIT_DEPLOYMENT_TIMED_OUT
        case _:
            return EXIT_FAILED
