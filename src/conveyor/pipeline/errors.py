"""Exceptions for the pipeline engine.

Every error carries a ``kind`` string. The runner records it on the
``StageResult`` and on the ``PipelineRun`` so the run report names the
failure without re-running anything.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from conveyor.pipeline.models import GateViolation, VerificationResult


class PipelineError(Exception):
    """Base class for pipeline failures."""

    kind = "pipeline_error"

    def __init__(self, message: str, *, stage: str | None = None):
        self.stage = stage
        super().__init__(message)


class StageExecutionFailure(PipelineError):
    """Raised when a stage's tool exits non-zero or cannot be started."""

    kind = "stage_execution_failure"

    def __init__(self, message: str, *, stage: str | None = None, exit_code: int | None = None):
        self.exit_code = exit_code
        super().__init__(message, stage=stage)


class StageTimeout(PipelineError):
    """Raised when a stage exceeds its timeout."""

    kind = "stage_timeout"

    def __init__(self, stage: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Stage '{stage}' exceeded timeout of {timeout_seconds}s", stage=stage)


class GateRejected(PipelineError):
    """Raised when a quality gate rejects the metrics of a stage."""

    kind = "gate_rejected"

    def __init__(self, gate: str, violations: list[GateViolation], *, stage: str | None = None):
        self.gate = gate
        self.violations = violations
        detail = "; ".join(v.message for v in violations) or "gate is not defined"
        super().__init__(f"Quality gate '{gate}' rejected: {detail}", stage=stage)


class CredentialResolutionFailure(PipelineError):
    """Raised when a credential reference cannot be resolved.

    The message never contains the secret value, only the reference id.
    """

    kind = "credential_resolution_failure"

    def __init__(self, credential_id: str, reason: str, *, stage: str | None = None):
        self.credential_id = credential_id
        self.reason = reason
        super().__init__(f"Cannot resolve credential '{credential_id}': {reason}", stage=stage)


class DeploymentVerificationFailed(PipelineError):
    """Raised when a deployment does not become healthy."""

    kind = "deployment_verification_failed"

    def __init__(self, message: str, result: VerificationResult, *, stage: str | None = None):
        self.result = result
        super().__init__(message, stage=stage)


class DeploymentUnhealthy(DeploymentVerificationFailed):
    """The target reported a terminal failure condition."""

    kind = "deployment_unhealthy"


class DeploymentTimedOut(DeploymentVerificationFailed):
    """The target did not become healthy within ``max_wait_seconds``."""

    kind = "deployment_timed_out"


class RunAborted(PipelineError):
    """Raised when an operator cancels a run; honored at the next stage boundary."""

    kind = "run_aborted"
