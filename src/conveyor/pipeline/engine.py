"""Pipeline engine — drives one run through its stages to a terminal status.

Key exports:
    PipelineEngine — start(), submit(), cancel(), wait(); holds pipeline
        definitions and named quality gates.
    RunReporter — Protocol for post-run reporting hooks.

A run walks its stages strictly in definition order:

    for each stage:
        honor a pending cancellation (→ aborted)
        resolve credentials just in time (revoked after the invocation)
        invoke the executor
        evaluate the stage's gate, if any         (reject → aborted, never tolerated)
        verify the deployment, if a deploy stage  (unhealthy/timeout → failed)
        append the StageResult
        stop on a failure unless continue_on_failure

Reporting hooks fire for every terminal run, whatever the outcome.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from conveyor.pipeline.credentials import CredentialBroker, MappingSecretStore
from conveyor.pipeline.errors import (
    CredentialResolutionFailure,
    DeploymentTimedOut,
    DeploymentUnhealthy,
    GateRejected,
    PipelineError,
    RunAborted,
    StageExecutionFailure,
    StageTimeout,
)
from conveyor.pipeline.executor import ExecutionOutcome, StageExecutor, StageInvocation
from conveyor.pipeline.gates import QualityGateEvaluator
from conveyor.pipeline.models import (
    GateVerdict,
    MetricValue,
    PipelineDefinition,
    PipelineRun,
    PipelineRunStatus,
    QualityGateSpec,
    StageOutcome,
    StageResult,
    StageSpec,
    TriggerMetadata,
    VerificationState,
)
from conveyor.pipeline.registry import RunRegistry
from conveyor.pipeline.templates import TemplateResolver
from conveyor.pipeline.verifier import DeploymentVerifier

logger = logging.getLogger("conveyor.pipeline.engine")

# Stage-local failures that continue_on_failure may tolerate.
_TOLERABLE = (StageExecutionFailure, StageTimeout, CredentialResolutionFailure)


# ── Callback Protocols ───────────────────────────────────────────────────────


class RunReporter(Protocol):
    """Called once with the terminal run (success, failure or abort)."""

    async def __call__(self, run: PipelineRun) -> None:
        ...


# ── Pipeline Engine ──────────────────────────────────────────────────────────


class PipelineEngine:
    """Core pipeline execution engine.

    Responsibilities:
        - Hold pipeline definitions and named quality gates
        - Execute stages in sequence, one run at a time per task
        - Run independent runs concurrently (bounded by ``max_concurrent_runs``)
        - Honor operator cancellation at stage boundaries
        - Persist runs and fire reporting hooks

    Usage:
        engine = PipelineEngine(executor=SubprocessExecutor(), broker=broker,
                                verifier=verifier, gates=gates)
        engine.add_pipeline("release", definition)
        run = await engine.trigger(TriggerMetadata(revision="abc123", pipeline="release"))
    """

    def __init__(
        self,
        *,
        executor: StageExecutor,
        broker: CredentialBroker | None = None,
        verifier: DeploymentVerifier | None = None,
        gates: dict[str, QualityGateSpec] | None = None,
        evaluator: QualityGateEvaluator | None = None,
        registry: RunRegistry | None = None,
        workspace_root: Path | None = None,
        default_stage_timeout: int | None = None,
        max_concurrent_runs: int = 4,
    ):
        self._executor = executor
        self._broker = broker or CredentialBroker(MappingSecretStore())
        self._verifier = verifier
        self._gates: dict[str, QualityGateSpec] = dict(gates or {})
        self._evaluator = evaluator or QualityGateEvaluator()
        self._registry = registry
        self._workspace_root = workspace_root
        self._default_stage_timeout = default_stage_timeout
        self._run_slots = asyncio.Semaphore(max_concurrent_runs)

        # Pipeline definitions (name → definition), read-only once added
        self._pipelines: dict[str, PipelineDefinition] = {}
        self._reporters: list[RunReporter] = []

        # Runs in flight and their background tasks
        self._active: dict[str, PipelineRun] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_requested: set[str] = set()
        # Stage boundaries still ahead of each running run
        self._boundaries_left: dict[str, int] = {}

    # ── Configuration ────────────────────────────────────────────────────────

    def add_pipeline(self, name: str, definition: PipelineDefinition) -> None:
        self._pipelines[name] = definition

    def get_pipeline(self, name: str) -> PipelineDefinition | None:
        return self._pipelines.get(name)

    def list_pipelines(self) -> dict[str, PipelineDefinition]:
        return dict(self._pipelines)

    def add_gate(self, name: str, spec: QualityGateSpec) -> None:
        self._gates[name] = spec

    def add_reporter(self, reporter: RunReporter) -> None:
        self._reporters.append(reporter)

    def validate_all_pipelines(self) -> list[str]:
        """Validate all registered pipelines. Returns list of error messages."""
        errors: list[str] = []
        for name, defn in self._pipelines.items():
            for gate in sorted(defn.gate_refs()):
                if gate not in self._gates:
                    errors.append(f"Pipeline '{name}' references unknown quality gate '{gate}'")
            for stage in defn.stages:
                if stage.is_gate_only and stage is defn.stages[0]:
                    errors.append(
                        f"Pipeline '{name}', stage '{stage.name}': gate stage has no earlier "
                        "stage to take metrics from"
                    )
        for gate_name, spec in self._gates.items():
            for metric, threshold in spec.thresholds.items():
                if not self._evaluator.operators.has(threshold.operator):
                    errors.append(
                        f"Quality gate '{gate_name}', metric '{metric}': "
                        f"unknown operator '{threshold.operator}'"
                    )
        return errors

    # ── Run Lifecycle ────────────────────────────────────────────────────────

    async def trigger(self, trigger: TriggerMetadata) -> PipelineRun:
        """Run the pipeline named by ``trigger.pipeline`` to completion."""
        definition = self._require_pipeline(trigger.pipeline)
        return await self.start(definition, trigger, pipeline_name=trigger.pipeline)

    def submit(self, trigger: TriggerMetadata) -> PipelineRun:
        """Start a run in the background and return it immediately (status pending).

        Raises:
            KeyError: if the pipeline is unknown.
        """
        definition = self._require_pipeline(trigger.pipeline)
        run = PipelineRun(pipeline_name=trigger.pipeline, trigger=trigger)
        self._active[run.run_id] = run
        task = asyncio.create_task(
            self.start(definition, trigger, pipeline_name=trigger.pipeline, run=run),
            name=f"pipeline-{run.run_id}",
        )
        self._tasks[run.run_id] = task
        task.add_done_callback(lambda _t, rid=run.run_id: self._tasks.pop(rid, None))
        return run

    async def start(
        self,
        definition: PipelineDefinition,
        trigger: TriggerMetadata,
        *,
        pipeline_name: str | None = None,
        run: PipelineRun | None = None,
    ) -> PipelineRun:
        """Drive a new run of ``definition`` to a terminal status and return it.

        A new run id is minted for every call; runs are never re-executed.
        """
        name = pipeline_name or trigger.pipeline or "adhoc"
        if run is None:
            run = PipelineRun(pipeline_name=name, trigger=trigger)
        self._active[run.run_id] = run
        await self._persist_create(run, definition)

        async with self._run_slots:
            run.status = PipelineRunStatus.RUNNING
            run.started_at = datetime.now(timezone.utc)
            await self._persist_update(run)
            logger.info(
                "Started pipeline '%s' run %s (revision %s, source %s)",
                name,
                run.run_id,
                trigger.revision,
                trigger.source,
            )
            try:
                workspace = self._prepare_workspace(run)
                await self._drive(run, definition, workspace)
                run.status = PipelineRunStatus.SUCCEEDED
            except (RunAborted, GateRejected) as exc:
                self._terminate(run, PipelineRunStatus.ABORTED, exc)
            except PipelineError as exc:
                self._terminate(run, PipelineRunStatus.FAILED, exc)
            except Exception as exc:
                logger.exception("Pipeline '%s' run %s crashed", name, run.run_id)
                run.status = PipelineRunStatus.FAILED
                run.failure_kind = "internal_error"
                run.error_message = f"{exc.__class__.__name__}: {exc}"
            finally:
                run.completed_at = datetime.now(timezone.utc)
                self._cancel_requested.discard(run.run_id)
                self._boundaries_left.pop(run.run_id, None)
                self._active.pop(run.run_id, None)

        await self._finish(run)
        return run

    def cancel(self, run_id: str) -> bool:
        """Request cancellation; honored at the next stage boundary.

        The in-flight stage is allowed to finish or time out on its own.
        Returns True if the run is active and will be aborted; False once the
        last stage has started, since no boundary is left to honor it.
        """
        run = self._active.get(run_id)
        if run is None or run.is_terminal:
            return False
        if self._boundaries_left.get(run_id) == 0:
            logger.info("Run %s is on its last stage; cancellation not possible", run_id)
            return False
        self._cancel_requested.add(run_id)
        logger.info("Cancellation requested for run %s", run_id)
        return True

    def get_active_run(self, run_id: str) -> PipelineRun | None:
        return self._active.get(run_id)

    def active_runs(self) -> list[PipelineRun]:
        return list(self._active.values())

    async def wait(self, run_id: str) -> PipelineRun | None:
        """Wait for a submitted run to finish; returns the terminal run."""
        task = self._tasks.get(run_id)
        if task is None:
            return None
        return await task

    async def shutdown(self) -> None:
        """Request cancellation of every active run and wait for them to stop."""
        for run_id in list(self._active):
            self.cancel(run_id)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Stage Sequencing ─────────────────────────────────────────────────────

    async def _drive(
        self, run: PipelineRun, definition: PipelineDefinition, workspace: Path | None
    ) -> None:
        for index, stage in enumerate(definition.stages):
            if run.run_id in self._cancel_requested:
                raise RunAborted(
                    f"Run aborted by operator before stage '{stage.name}'", stage=stage.name
                )
            run.current_stage_index = index
            self._boundaries_left[run.run_id] = len(definition.stages) - index - 1
            await self._persist_update(run)

            if stage.is_gate_only:
                await self._execute_gate_stage(run, stage)
            else:
                await self._execute_command_stage(run, definition, stage, workspace)

    async def _execute_gate_stage(self, run: PipelineRun, stage: StageSpec) -> None:
        """Evaluate a gate against metrics collected from earlier stages."""
        started = datetime.now(timezone.utc)
        verdict = self._evaluate_gate(stage, run.collected_metrics())
        result = StageResult(
            stage=stage.name,
            outcome=StageOutcome.SUCCEEDED if verdict.passed else StageOutcome.REJECTED,
            started_at=started,
            completed_at=datetime.now(timezone.utc),
            gate=verdict,
        )
        if not verdict.passed:
            result.error_kind = GateRejected.kind
            result.error_message = verdict.summary
        await self._append_result(run, result)
        if not verdict.passed:
            raise GateRejected(verdict.gate, verdict.violations, stage=stage.name)

    async def _execute_command_stage(
        self,
        run: PipelineRun,
        definition: PipelineDefinition,
        stage: StageSpec,
        workspace: Path | None,
    ) -> None:
        started = datetime.now(timezone.utc)
        resolver = self._build_resolver(run, definition)

        outcome: ExecutionOutcome | None = None
        error: PipelineError | None = None
        try:
            async with self._broker.scoped(stage.credentials, stage=stage.name) as scope:
                invocation = StageInvocation(
                    stage=stage.name,
                    command=shlex.join(resolver.render_argv(stage.command or "")),
                    timeout_seconds=stage.timeout_seconds(self._default_stage_timeout),
                    cwd=_stage_cwd(workspace, stage),
                    stage_env=resolver.render_mapping(stage.env),
                    credential_env=dict(scope.env),
                    secrets=scope.secret_strings(),
                )
                logger.info("Run %s: executing stage '%s'", run.run_id, stage.name)
                outcome = await self._executor.execute(invocation)
        except _TOLERABLE as exc:
            error = exc

        if outcome is not None and not outcome.succeeded:
            error = StageExecutionFailure(
                f"Stage '{stage.name}' exited with status {outcome.exit_code}",
                stage=stage.name,
                exit_code=outcome.exit_code,
            )

        result = StageResult(
            stage=stage.name,
            outcome=StageOutcome.SUCCEEDED,
            started_at=started,
            exit_code=outcome.exit_code if outcome else None,
            metrics=dict(outcome.metrics) if outcome else {},
            stdout_tail=outcome.stdout_tail if outcome else "",
            stderr_tail=outcome.stderr_tail if outcome else "",
        )

        if error is not None:
            result.outcome = (
                StageOutcome.TIMED_OUT if isinstance(error, StageTimeout) else StageOutcome.FAILED
            )
            result.error_kind = error.kind
            result.error_message = str(error)
            result.tolerated = stage.continue_on_failure
            if not stage.continue_on_failure:
                result.completed_at = datetime.now(timezone.utc)
                await self._append_result(run, result)
                raise error
            logger.warning(
                "Run %s: stage '%s' failed but continue_on_failure is set: %s",
                run.run_id,
                stage.name,
                error,
            )

        # Gate rejection is never tolerated, even after a tolerated failure.
        if stage.gate:
            verdict = self._evaluate_gate(stage, result.metrics)
            result.gate = verdict
            if not verdict.passed:
                if result.outcome == StageOutcome.SUCCEEDED:
                    result.outcome = StageOutcome.REJECTED
                result.error_kind = GateRejected.kind
                result.error_message = verdict.summary
                result.completed_at = datetime.now(timezone.utc)
                await self._append_result(run, result)
                raise GateRejected(verdict.gate, verdict.violations, stage=stage.name)

        if stage.deployment_target is not None and error is None:
            await self._verify_deployment(run, stage, result, resolver)

        result.completed_at = datetime.now(timezone.utc)
        await self._append_result(run, result)

    async def _verify_deployment(
        self,
        run: PipelineRun,
        stage: StageSpec,
        result: StageResult,
        resolver: TemplateResolver,
    ) -> None:
        """Fold the verifier's outcome into the deploy stage's result."""
        assert stage.deployment_target is not None
        target = stage.deployment_target.model_copy(
            update={"revision_tag": resolver.render(stage.deployment_target.revision_tag)}
        )
        verification = await self._get_verifier().verify(target)
        result.verification = verification
        if verification.healthy:
            return

        if verification.state == VerificationState.UNHEALTHY:
            error: PipelineError = DeploymentUnhealthy(
                f"Deployment {target.display_name} unhealthy: {verification.reason}",
                verification,
                stage=stage.name,
            )
        else:
            error = DeploymentTimedOut(
                f"Deployment {target.display_name} timed out: {verification.reason}",
                verification,
                stage=stage.name,
            )
        result.outcome = StageOutcome.FAILED
        result.error_kind = error.kind
        result.error_message = str(error)
        result.completed_at = datetime.now(timezone.utc)
        await self._append_result(run, result)
        raise error

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _evaluate_gate(self, stage: StageSpec, metrics: dict[str, MetricValue]) -> GateVerdict:
        gate_name = stage.gate or ""
        spec = self._gates.get(gate_name)
        if spec is None:
            # Fail closed: an undefined gate can never pass.
            logger.error("Stage '%s' references undefined quality gate '%s'", stage.name, gate_name)
            return GateVerdict(gate=gate_name, passed=False)
        return self._evaluator.evaluate(metrics, spec, gate_name=gate_name)

    def _get_verifier(self) -> DeploymentVerifier:
        if self._verifier is None:
            from conveyor.pipeline.verifier import HttpHealthProbe, KubectlWorkloadProbe

            self._verifier = DeploymentVerifier(KubectlWorkloadProbe(), HttpHealthProbe())
        return self._verifier

    def _build_resolver(self, run: PipelineRun, definition: PipelineDefinition) -> TemplateResolver:
        return TemplateResolver(
            {
                "trigger": run.trigger.model_dump(mode="json"),
                "context": {**definition.context, **run.trigger.context},
                "run": {"run_id": run.run_id, "pipeline": run.pipeline_name},
                "stages": {
                    r.stage: {"metrics": r.metrics, "outcome": r.outcome.value}
                    for r in run.results
                },
            }
        )

    def _require_pipeline(self, name: str) -> PipelineDefinition:
        definition = self._pipelines.get(name)
        if definition is None:
            raise KeyError(f"Unknown pipeline: '{name}'")
        return definition

    def _prepare_workspace(self, run: PipelineRun) -> Path | None:
        if self._workspace_root is None:
            return None
        workspace = self._workspace_root / run.run_id
        workspace.mkdir(parents=True, exist_ok=True)
        return workspace

    def _terminate(self, run: PipelineRun, status: PipelineRunStatus, exc: PipelineError) -> None:
        run.status = status
        run.failure_kind = exc.kind
        run.error_message = str(exc)
        run.error_stage = exc.stage
        log = logger.warning if status == PipelineRunStatus.ABORTED else logger.error
        log(
            "Pipeline '%s' run %s %s at stage '%s': %s",
            run.pipeline_name,
            run.run_id,
            status.value,
            exc.stage,
            exc,
        )

    async def _append_result(self, run: PipelineRun, result: StageResult) -> None:
        run.results.append(result)
        if self._registry is not None:
            await self._registry.append_result(run.run_id, len(run.results) - 1, result)

    async def _persist_create(self, run: PipelineRun, definition: PipelineDefinition) -> None:
        if self._registry is not None:
            await self._registry.create_run(
                run, definition_snapshot=definition.model_dump_json()
            )

    async def _persist_update(self, run: PipelineRun) -> None:
        if self._registry is not None:
            await self._registry.update_run(run)

    async def _finish(self, run: PipelineRun) -> None:
        """Persist the terminal state and fire reporting hooks."""
        if run.status == PipelineRunStatus.SUCCEEDED:
            logger.info(
                "Pipeline '%s' run %s succeeded (%d stages)",
                run.pipeline_name,
                run.run_id,
                len(run.results),
            )
        try:
            await self._persist_update(run)
        except Exception:
            logger.exception("Failed to persist terminal state of run %s", run.run_id)

        for reporter in self._reporters:
            try:
                await reporter(run)
            except Exception:
                logger.exception("Run reporter failed for run %s", run.run_id)


def _stage_cwd(workspace: Path | None, stage: StageSpec) -> Path | None:
    if stage.workdir:
        path = Path(stage.workdir)
        if not path.is_absolute() and workspace is not None:
            path = workspace / path
        return path
    return workspace


def describe_pipelines(pipelines: dict[str, PipelineDefinition]) -> list[dict[str, Any]]:
    """Summaries for CLI and API listings."""
    return [
        {
            "name": name,
            "description": defn.description,
            "stage_count": len(defn.stages),
            "stages": [
                {
                    "name": s.name,
                    "kind": "gate" if s.is_gate_only else ("deploy" if s.is_deploy else "command"),
                    "gate": s.gate,
                    "continue_on_failure": s.continue_on_failure,
                }
                for s in defn.stages
            ],
        }
        for name, defn in sorted(pipelines.items())
    ]
