"""Pipeline orchestration core.

Key exports:
    PipelineEngine — Runs stages in order to a terminal status
    RunRegistry — SQLite persistence
    QualityGateEvaluator, OperatorRegistry — Threshold checks over metrics
    CredentialBroker — Just-in-time secret resolution with revocation
    DeploymentVerifier — Post-deploy health polling
    SubprocessExecutor — External tool invocation
    PipelineDefinition, PipelineRun, StageResult — Config and runtime models
"""

from conveyor.pipeline.credentials import (
    CredentialBroker,
    CredentialScope,
    EnvSecretStore,
    FileSecretStore,
    MappingSecretStore,
    ResolvedCredential,
    SecretMasker,
    SecretMaskingFilter,
    SecretStore,
)
from conveyor.pipeline.engine import PipelineEngine, RunReporter
from conveyor.pipeline.errors import (
    CredentialResolutionFailure,
    DeploymentTimedOut,
    DeploymentUnhealthy,
    DeploymentVerificationFailed,
    GateRejected,
    PipelineError,
    RunAborted,
    StageExecutionFailure,
    StageTimeout,
)
from conveyor.pipeline.executor import (
    ExecutionOutcome,
    StageExecutor,
    StageInvocation,
    SubprocessExecutor,
)
from conveyor.pipeline.gates import OperatorRegistry, QualityGateEvaluator, parse_gate_specs
from conveyor.pipeline.models import (
    CredentialBinding,
    CredentialKind,
    CredentialRef,
    DeploymentTarget,
    GateVerdict,
    GateViolation,
    HealthCheckResult,
    PipelineDefinition,
    PipelineRun,
    PipelineRunStatus,
    QualityGateSpec,
    StageOutcome,
    StageResult,
    StageSpec,
    Threshold,
    TriggerMetadata,
    VerificationResult,
    VerificationState,
)
from conveyor.pipeline.registry import RunRegistry
from conveyor.pipeline.report import RunReport, exit_code_for
from conveyor.pipeline.verifier import (
    DeploymentVerifier,
    HttpHealthProbe,
    KubectlWorkloadProbe,
    ProbeOutcome,
    WorkloadStatus,
)

__all__ = [
    # Engine
    "PipelineEngine",
    "RunReporter",
    # Registry
    "RunRegistry",
    # Gates
    "OperatorRegistry",
    "QualityGateEvaluator",
    "parse_gate_specs",
    # Credentials
    "CredentialBroker",
    "CredentialScope",
    "EnvSecretStore",
    "FileSecretStore",
    "MappingSecretStore",
    "ResolvedCredential",
    "SecretMasker",
    "SecretMaskingFilter",
    "SecretStore",
    # Executor
    "ExecutionOutcome",
    "StageExecutor",
    "StageInvocation",
    "SubprocessExecutor",
    # Verifier
    "DeploymentVerifier",
    "HttpHealthProbe",
    "KubectlWorkloadProbe",
    "ProbeOutcome",
    "WorkloadStatus",
    # Report
    "RunReport",
    "exit_code_for",
    # Errors
    "CredentialResolutionFailure",
    "DeploymentTimedOut",
    "DeploymentUnhealthy",
    "DeploymentVerificationFailed",
    "GateRejected",
    "PipelineError",
    "RunAborted",
    "StageExecutionFailure",
    "StageTimeout",
    # Models
    "CredentialBinding",
    "CredentialKind",
    "CredentialRef",
    "DeploymentTarget",
    "GateVerdict",
    "GateViolation",
    "HealthCheckResult",
    "PipelineDefinition",
    "PipelineRun",
    "PipelineRunStatus",
    "QualityGateSpec",
    "StageOutcome",
    "StageResult",
    "StageSpec",
    "Threshold",
    "TriggerMetadata",
    "VerificationResult",
    "VerificationState",
]
