"""Tests for RunRegistry persistence."""

from __future__ import annotations

from datetime import datetime, timezone

from conveyor.pipeline.models import (
    GateVerdict,
    GateViolation,
    PipelineRun,
    PipelineRunStatus,
    StageOutcome,
    StageResult,
    TriggerMetadata,
)


def make_run(pipeline: str = "release", revision: str = "abc123") -> PipelineRun:
    return PipelineRun(
        pipeline_name=pipeline,
        trigger=TriggerMetadata(revision=revision, pipeline=pipeline, source="webhook"),
    )


class TestRunCrud:
    async def test_create_and_get(self, run_registry):
        run = make_run()
        await run_registry.create_run(run, definition_snapshot='{"stages": []}')

        stored = await run_registry.get_run(run.run_id)
        assert stored.run_id == run.run_id
        assert stored.pipeline_name == "release"
        assert stored.trigger.revision == "abc123"
        assert stored.trigger.source == "webhook"
        assert stored.status == PipelineRunStatus.PENDING
        assert stored.results == []

    async def test_get_missing(self, run_registry):
        assert await run_registry.get_run("run-doesnotexist") is None

    async def test_update(self, run_registry):
        run = make_run()
        await run_registry.create_run(run)
        run.status = PipelineRunStatus.FAILED
        run.current_stage_index = 2
        run.started_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        run.completed_at = datetime(2026, 1, 1, 0, 5, tzinfo=timezone.utc)
        run.failure_kind = "stage_timeout"
        run.error_message = "Stage 'build' exceeded timeout of 5s"
        run.error_stage = "build"
        await run_registry.update_run(run)

        stored = await run_registry.get_run(run.run_id)
        assert stored.status == PipelineRunStatus.FAILED
        assert stored.current_stage_index == 2
        assert stored.started_at == run.started_at
        assert stored.completed_at == run.completed_at
        assert stored.failure_kind == "stage_timeout"
        assert stored.error_stage == "build"

    async def test_results_kept_in_order(self, run_registry):
        run = make_run()
        await run_registry.create_run(run)
        now = datetime.now(timezone.utc)
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
        await run_registry.append_result(
            run.run_id, 0,
            StageResult(stage="build", outcome=StageOutcome.SUCCEEDED, started_at=now, exit_code=0),
        )
        await run_registry.append_result(
            run.run_id, 1,
            StageResult(stage="gate", outcome=StageOutcome.REJECTED, started_at=now, gate=verdict),
        )

        results = await run_registry.get_results(run.run_id)
        assert [r.stage for r in results] == ["build", "gate"]
        assert results[0].exit_code == 0
        assert results[1].gate.violations[0].observed == 75


class TestListRuns:
    async def test_filters_and_order(self, run_registry):
        first = make_run("release")
        second = make_run("nightly")
        third = make_run("release")
        third.status = PipelineRunStatus.SUCCEEDED
        for minute, run in enumerate((first, second, third)):
            run.created_at = datetime(2026, 3, 1, 12, minute, tzinfo=timezone.utc)
            await run_registry.create_run(run)

        all_runs = await run_registry.list_runs()
        assert [r.run_id for r in all_runs] == [third.run_id, second.run_id, first.run_id]

        release = await run_registry.list_runs(pipeline_name="release")
        assert {r.run_id for r in release} == {first.run_id, third.run_id}

        succeeded = await run_registry.list_runs(status=PipelineRunStatus.SUCCEEDED)
        assert [r.run_id for r in succeeded] == [third.run_id]

        assert len(await run_registry.list_runs(limit=1)) == 1


class TestMarkInterrupted:
    async def test_fails_unfinished_runs(self, run_registry):
        pending = make_run()
        running = make_run()
        running.status = PipelineRunStatus.RUNNING
        done = make_run()
        done.status = PipelineRunStatus.SUCCEEDED
        for run in (pending, running, done):
            await run_registry.create_run(run)

        assert await run_registry.mark_interrupted() == 2

        for run in (pending, running):
            stored = await run_registry.get_run(run.run_id)
            assert stored.status == PipelineRunStatus.FAILED
            assert stored.failure_kind == "internal_error"
            assert stored.completed_at is not None
        assert (await run_registry.get_run(done.run_id)).status == PipelineRunStatus.SUCCEEDED
