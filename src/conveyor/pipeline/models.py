"""Pipeline Pydantic models — definitions and runtime state.

Key exports:
    Definition models: PipelineDefinition, StageSpec, QualityGateSpec, Threshold,
        CredentialRef, CredentialBinding, DeploymentTarget
    Runtime state models: TriggerMetadata, PipelineRun, PipelineRunStatus,
        StageResult, StageOutcome, GateVerdict, GateViolation,
        HealthCheckResult, VerificationResult, VerificationState
"""

from __future__ import annotations

import re
import shlex
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


MetricValue = float | int | str


# ── Enums ────────────────────────────────────────────────────────────────────


class PipelineRunStatus(str, Enum):
    """Pipeline run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self not in (PipelineRunStatus.PENDING, PipelineRunStatus.RUNNING)


class StageOutcome(str, Enum):
    """Outcome of a single executed stage."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class CredentialKind(str, Enum):
    """Expected shape of a resolved credential."""

    USERNAME_PASSWORD = "username_password"
    TOKEN = "token"
    CONFIG = "config"


class ComparisonOperator(str, Enum):
    """Built-in gate operators. Plugins may register more symbols."""

    GE = ">="
    GT = ">"
    LE = "<="
    LT = "<"
    EQ = "=="
    NE = "!="


class VerificationState(str, Enum):
    """Deployment verifier states."""

    POLLING = "polling"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"


# ── Name validation ──────────────────────────────────────────────────────────

STAGE_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")


# ── Definition Models (parsed from YAML config) ─────────────────────────────


class Threshold(BaseModel):
    """One metric threshold: ``{operator: ">=", threshold: 80}``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    operator: str
    value: MetricValue = Field(alias="threshold")

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, v: Any) -> str:
        symbol = str(v.value if isinstance(v, ComparisonOperator) else v).strip()
        if not symbol:
            raise ValueError("operator must not be empty")
        return symbol


class QualityGateSpec(BaseModel):
    """Mapping of metric name → threshold. Every threshold is checked independently."""

    model_config = ConfigDict(frozen=True)

    thresholds: dict[str, Threshold] = Field(min_length=1)

    @classmethod
    def from_config(cls, raw: dict[str, Any]) -> QualityGateSpec:
        """Build a spec from the flat config form ``{metric: {operator, threshold}}``."""
        if "thresholds" in raw:
            return cls(**raw)
        return cls(thresholds=raw)


class CredentialRef(BaseModel):
    """Logical reference to a secret plus the shape it must resolve to."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: CredentialKind = CredentialKind.TOKEN


class CredentialBinding(CredentialRef):
    """A credential reference plus the env var name (or prefix) it is exposed as."""

    env: str

    @field_validator("env")
    @classmethod
    def _validate_env(cls, v: str) -> str:
        if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", v):
            raise ValueError(f"Invalid environment variable name: {v!r}")
        return v

    @property
    def ref(self) -> CredentialRef:
        return CredentialRef(id=self.id, kind=self.kind)


class DeploymentTarget(BaseModel):
    """Where a deploy stage rolls out to, and how readiness is judged."""

    model_config = ConfigDict(frozen=True)

    cluster: str = ""
    namespace: str = "default"
    workload: str
    revision_tag: str = ""

    # Readiness policy
    min_ready_replicas: int = Field(default=1, ge=0)
    health_endpoint: str | None = None
    poll_interval_seconds: float = Field(default=10, gt=0)
    max_wait_seconds: float = Field(default=300, gt=0)
    probe_timeout_seconds: float = Field(default=5, gt=0)

    @property
    def max_polls(self) -> int:
        """Bounded poll count derived from the wait budget."""
        return max(1, int(self.max_wait_seconds // self.poll_interval_seconds))

    @property
    def display_name(self) -> str:
        prefix = f"{self.cluster}/" if self.cluster else ""
        return f"{prefix}{self.namespace}/{self.workload}"


class StageSpec(BaseModel):
    """A single stage in a pipeline definition.

    A stage with a ``command`` runs an external tool. A stage with only a
    ``gate`` evaluates the metrics emitted by earlier stages. A stage with a
    ``deployment_target`` is a deploy stage and is verified after success.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    command: str | None = None
    timeout: int | str | None = None
    continue_on_failure: bool = False
    gate: str | None = None
    deployment_target: DeploymentTarget | None = None
    credentials: tuple[CredentialBinding, ...] = ()
    env: dict[str, str] = {}
    workdir: str | None = None

    @model_validator(mode="after")
    def validate_stage(self) -> StageSpec:
        if not STAGE_NAME_PATTERN.match(self.name):
            msg = f"Stage name '{self.name}' must match pattern {STAGE_NAME_PATTERN.pattern}"
            raise ValueError(msg)
        if not self.command and not self.gate:
            msg = f"Stage '{self.name}': requires 'command' or 'gate'"
            raise ValueError(msg)
        if self.deployment_target is not None and not self.command:
            msg = f"Stage '{self.name}': deploy stages require 'command'"
            raise ValueError(msg)
        if self.command:
            try:
                shlex.split(self.command)
            except ValueError as exc:
                msg = f"Stage '{self.name}': cannot parse command: {exc}"
                raise ValueError(msg) from None
        if self.timeout is not None:
            self.timeout_seconds()
        return self

    @property
    def is_gate_only(self) -> bool:
        return self.command is None and self.gate is not None

    @property
    def is_deploy(self) -> bool:
        return self.deployment_target is not None

    def timeout_seconds(self, default: int | None = None) -> int | None:
        """Return the timeout in seconds (int or duration string like '5m')."""
        if self.timeout is None:
            return default
        if isinstance(self.timeout, int):
            return self.timeout
        return parse_duration_seconds(self.timeout)


class PipelineDefinition(BaseModel):
    """Complete pipeline definition parsed from YAML config. Frozen once loaded."""

    model_config = ConfigDict(frozen=True)

    description: str = ""
    context: dict[str, Any] = {}
    stages: tuple[StageSpec, ...] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_unique_stage_names(self) -> PipelineDefinition:
        names = [s.name for s in self.stages]
        dupes = [n for n in names if names.count(n) > 1]
        if dupes:
            msg = f"Duplicate stage names: {sorted(set(dupes))}"
            raise ValueError(msg)
        return self

    def get_stage(self, name: str) -> StageSpec | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def gate_refs(self) -> set[str]:
        """Return the set of gate names referenced by stages."""
        return {s.gate for s in self.stages if s.gate}


# ── Runtime State Models ─────────────────────────────────────────────────────


class TriggerMetadata(BaseModel):
    """What caused a run: revision, source, requested pipeline."""

    revision: str
    source: str = "manual"
    pipeline: str = ""
    triggered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    context: dict[str, Any] = {}


class GateViolation(BaseModel):
    """A single failed threshold."""

    metric: str
    operator: str
    threshold: MetricValue
    observed: MetricValue | None = None
    message: str


class GateVerdict(BaseModel):
    """Result of evaluating a quality gate: pass, or reject with every violation."""

    gate: str = ""
    passed: bool
    violations: list[GateViolation] = []
    evaluated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def summary(self) -> str:
        if self.passed:
            return "passed"
        return "; ".join(v.message for v in self.violations) or "gate is not defined"


class HealthCheckResult(BaseModel):
    """One poll's observation of a deployment target."""

    target: str
    ready_replicas: int = 0
    probe_ok: bool = False
    detail: str = ""
    terminal_failure: str | None = None
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class VerificationResult(BaseModel):
    """Final verifier state plus diagnostics."""

    state: VerificationState
    reason: str = ""
    polls: int = 0
    elapsed_seconds: float = 0.0
    last_observation: HealthCheckResult | None = None

    @property
    def healthy(self) -> bool:
        return self.state == VerificationState.HEALTHY


class StageResult(BaseModel):
    """Outcome of one executed stage. Appended once per stage, in order."""

    stage: str
    outcome: StageOutcome
    started_at: datetime
    completed_at: datetime | None = None
    exit_code: int | None = None
    metrics: dict[str, MetricValue] = {}
    tolerated: bool = False

    error_kind: str | None = None
    error_message: str | None = None

    gate: GateVerdict | None = None
    verification: VerificationResult | None = None

    stdout_tail: str = ""
    stderr_tail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == StageOutcome.SUCCEEDED

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class PipelineRun(BaseModel):
    """Runtime state of a pipeline execution."""

    run_id: str = Field(default_factory=lambda: new_run_id())
    pipeline_name: str
    trigger: TriggerMetadata

    status: PipelineRunStatus = PipelineRunStatus.PENDING
    current_stage_index: int = 0
    results: list[StageResult] = []

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    failure_kind: str | None = None
    error_message: str | None = None
    error_stage: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def collected_metrics(self) -> dict[str, MetricValue]:
        """Merge metrics from all results so far; later stages override earlier ones."""
        merged: dict[str, MetricValue] = {}
        for result in self.results:
            merged.update(result.metrics)
        return merged


# ── Helpers ──────────────────────────────────────────────────────────────────


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:12]}"


def parse_duration_seconds(duration: str) -> int:
    """Parse a duration string like '30s', '5m', '2h', '1d' to seconds.

    Raises ValueError on invalid format.
    """
    match = re.match(r"^(\d+)\s*(s|m|h|d)?$", duration.strip())
    if not match:
        msg = f"Invalid duration format: '{duration}'. Expected <number>[s|m|h|d]"
        raise ValueError(msg)
    value = int(match.group(1))
    unit = match.group(2) or "s"
    multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    return value * multipliers[unit]
