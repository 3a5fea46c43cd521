"""Stage executor — runs one external tool invocation with a bounded timeout.

The executor is the only place a stage's command touches the operating
system. It starts the tool without a shell, in the run's workspace, with a
scrubbed environment plus the stage's resolved credentials, and captures:

    - the exit status,
    - structured metrics, from ``::metric name=value`` lines on stdout and/or
      a JSON object written to the file named by ``CONVEYOR_METRICS_FILE``,
    - the tail of stdout/stderr with credential values masked.

A non-zero exit is returned, not raised; the runner decides what it means.
Timeouts raise :class:`StageTimeout` after the process has been killed and
reaped. A command that cannot be started raises :class:`StageExecutionFailure`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from conveyor.pipeline.credentials import mask_text
from conveyor.pipeline.environment import build_stage_env
from conveyor.pipeline.errors import StageExecutionFailure, StageTimeout
from conveyor.pipeline.models import MetricValue

logger = logging.getLogger(__name__)

METRICS_FILE_ENV = "CONVEYOR_METRICS_FILE"

_METRIC_LINE_RE = re.compile(r"^::metric\s+([A-Za-z_][A-Za-z0-9_.\-]*)\s*=\s*(.*?)\s*$")
_INT_RE = re.compile(r"^[+-]?\d+$")

TAIL_LINES = 50


@dataclass
class StageInvocation:
    """Everything the executor needs to run one stage."""

    stage: str
    command: str
    timeout_seconds: float | None = None
    cwd: Path | None = None
    stage_env: dict[str, str] = field(default_factory=dict)
    credential_env: dict[str, str] = field(default_factory=dict)
    secrets: list[str] = field(default_factory=list)

    def __repr__(self) -> str:
        # credential_env holds live secrets
        return (
            f"StageInvocation(stage={self.stage!r}, command={self.command!r}, "
            f"timeout_seconds={self.timeout_seconds!r}, credentials={sorted(self.credential_env)})"
        )


@dataclass
class ExecutionOutcome:
    """What came back from the external tool."""

    exit_code: int
    metrics: dict[str, MetricValue] = field(default_factory=dict)
    stdout_tail: str = ""
    stderr_tail: str = ""
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class StageExecutor(Protocol):
    """Runs a stage invocation to completion or timeout."""

    async def execute(self, invocation: StageInvocation) -> ExecutionOutcome:
        ...


class SubprocessExecutor:
    """Runs stage commands as local subprocesses via ``asyncio``."""

    def __init__(self, *, secret_prefix: str = "CONVEYOR_SECRET_", tail_lines: int = TAIL_LINES):
        self._secret_prefix = secret_prefix
        self._tail_lines = tail_lines

    async def execute(self, invocation: StageInvocation) -> ExecutionOutcome:
        try:
            argv = shlex.split(invocation.command)
        except ValueError as exc:
            raise StageExecutionFailure(
                f"Cannot parse command for stage '{invocation.stage}': {exc}",
                stage=invocation.stage,
            ) from exc
        if not argv:
            raise StageExecutionFailure(
                f"Stage '{invocation.stage}' has an empty command", stage=invocation.stage
            )

        with tempfile.TemporaryDirectory(prefix="conveyor-metrics-") as tmp:
            metrics_file = Path(tmp) / "metrics.json"
            env = build_stage_env(
                credential_env=invocation.credential_env,
                stage_env=invocation.stage_env,
                extra={METRICS_FILE_ENV: str(metrics_file)},
                secret_prefix=self._secret_prefix,
            )

            started = time.monotonic()
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(invocation.cwd) if invocation.cwd else None,
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                raise StageExecutionFailure(
                    f"Cannot start stage '{invocation.stage}': {exc.strerror or exc}",
                    stage=invocation.stage,
                ) from exc

            try:
                stdout_bytes, stderr_bytes = await asyncio.wait_for(
                    proc.communicate(), timeout=invocation.timeout_seconds
                )
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                logger.warning(
                    "Stage '%s' killed after %ss timeout", invocation.stage, invocation.timeout_seconds
                )
                raise StageTimeout(invocation.stage, invocation.timeout_seconds or 0) from None

            duration = time.monotonic() - started
            stdout = (stdout_bytes or b"").decode(errors="replace")
            stderr = (stderr_bytes or b"").decode(errors="replace")

            metrics = parse_metric_lines(stdout)
            metrics.update(read_metrics_file(metrics_file))

        exit_code = proc.returncode if proc.returncode is not None else -1
        logger.info(
            "Stage '%s' exited %d in %.1fs (%d metrics)",
            invocation.stage,
            exit_code,
            duration,
            len(metrics),
        )
        return ExecutionOutcome(
            exit_code=exit_code,
            metrics=metrics,
            stdout_tail=mask_text(_tail(stdout, self._tail_lines), invocation.secrets),
            stderr_tail=mask_text(_tail(stderr, self._tail_lines), invocation.secrets),
            duration_seconds=duration,
        )


# ── Metric parsing ───────────────────────────────────────────────────────────


def parse_metric_lines(output: str) -> dict[str, MetricValue]:
    """Extract ``::metric name=value`` lines from tool output."""
    metrics: dict[str, MetricValue] = {}
    for line in output.splitlines():
        match = _METRIC_LINE_RE.match(line.strip())
        if match:
            metrics[match.group(1)] = coerce_metric(match.group(2))
    return metrics


def read_metrics_file(path: Path) -> dict[str, MetricValue]:
    """Read a JSON object of metrics written by the tool, if present."""
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text() or "{}")
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed metrics file: %s", path)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring metrics file that is not a JSON object: %s", path)
        return {}
    metrics: dict[str, MetricValue] = {}
    for key, value in data.items():
        if isinstance(value, bool):
            metrics[str(key)] = int(value)
        elif isinstance(value, (int, float)):
            metrics[str(key)] = value
        elif isinstance(value, str):
            metrics[str(key)] = coerce_metric(value)
    return metrics


def coerce_metric(raw: str) -> MetricValue:
    """Parse a metric string to int, float, or leave it as text."""
    text = raw.strip().rstrip("%").strip() if raw.strip().endswith("%") else raw.strip()
    if _INT_RE.match(text):
        return int(text)
    try:
        return float(text)
    except ValueError:
        return raw.strip()


def _tail(text: str, lines: int) -> str:
    parts = text.splitlines()
    return "\n".join(parts[-lines:])
