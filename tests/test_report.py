"""Tests for run reports and CLI exit codes."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conveyor.pipeline.models import (
    GateVerdict,
    GateViolation,
    PipelineRun,
    PipelineRunStatus,
    StageOutcome,
    StageResult,
    TriggerMetadata,
    VerificationResult,
    VerificationState,
)
from conveyor.pipeline.report import RunReport, exit_code_for

T0 = datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc)


def make_run(status: PipelineRunStatus, failure_kind: str | None = None, **kwargs) -> PipelineRun:
    return PipelineRun(
        pipeline_name="release",
        trigger=TriggerMetadata(revision="abc123", pipeline="release"),
        status=status,
        failure_kind=failure_kind,
        started_at=T0,
        completed_at=T0 + timedelta(seconds=90),
        **kwargs,
    )


class TestExitCodes:
    def test_mapping(self):
        assert exit_code_for(make_run(PipelineRunStatus.SUCCEEDED)) == 0
        assert exit_code_for(make_run(PipelineRunStatus.FAILED, "stage_execution_failure")) == 1
        assert exit_code_for(make_run(PipelineRunStatus.FAILED, "deployment_unhealthy")) == 1
        assert exit_code_for(make_run(PipelineRunStatus.ABORTED, "gate_rejected")) == 2
        assert exit_code_for(make_run(PipelineRunStatus.FAILED, "deployment_timed_out")) == 3


class TestRunReport:
    def test_rejected_run(self):
        verdict = GateVerdict(
            gate="release",
            passed=False,
            violations=[
                GateViolation(
                    metric="coverage", operator=">=", threshold=80, observed=75,
                    message="coverage: 75 < 80",
                )
            ],
        )
        run = make_run(
            PipelineRunStatus.ABORTED,
            "gate_rejected",
            error_stage="gate",
            error_message="Quality gate 'release' rejected: coverage: 75 < 80",
            results=[
                StageResult(
                    stage="build", outcome=StageOutcome.SUCCEEDED, started_at=T0,
                    completed_at=T0 + timedelta(seconds=30), exit_code=0,
                ),
                StageResult(stage="gate", outcome=StageOutcome.REJECTED, started_at=T0, gate=verdict),
            ],
        )
        report = RunReport.from_run(run)

        assert report.duration_seconds == 90
        assert [s.stage for s in report.stages] == ["build", "gate"]
        assert report.stages[0].duration_seconds == 30
        assert report.stages[1].detail == "gate 'release' coverage: 75 < 80"

        text = report.render_text()
        assert text.splitlines()[0] == f"Run {run.run_id} (release @ abc123): ABORTED"
        assert "Failure: gate_rejected at stage 'gate'" in text

    def test_verified_deploy_detail(self):
        run = make_run(
            PipelineRunStatus.SUCCEEDED,
            results=[
                StageResult(
                    stage="deploy",
                    outcome=StageOutcome.SUCCEEDED,
                    started_at=T0,
                    verification=VerificationResult(state=VerificationState.HEALTHY, polls=3),
                )
            ],
        )
        report = RunReport.from_run(run)
        assert report.stages[0].detail == "verified healthy after 3 poll(s)"
        assert "Failure" not in report.render_text()

    def test_to_dict_is_json_safe(self):
        data = RunReport.from_run(make_run(PipelineRunStatus.SUCCEEDED)).to_dict()
        assert data["status"] == "succeeded"
        assert data["revision"] == "abc123"
        assert data["stages"] == []
