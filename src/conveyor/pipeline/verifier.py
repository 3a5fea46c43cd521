"""Deployment verifier — polls a rolled-out workload until healthy or out of budget.

State machine::

    polling ──► healthy     ready replicas >= minimum AND health probe ok (same poll)
       │
       ├──────► unhealthy   target reports a terminal condition (no waiting)
       │
       └──────► timed_out   poll budget (max_wait // poll_interval) exhausted

Each poll is independent. Only the elapsed clock and the last observation are
carried between polls; the last observation is returned for diagnostics.
Every probe call is bounded by ``probe_timeout_seconds`` so one unresponsive
probe cannot stall the cycle.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

import httpx

from conveyor.pipeline.models import (
    DeploymentTarget,
    HealthCheckResult,
    VerificationResult,
    VerificationState,
)

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]
ClockFunc = Callable[[], float]


# ── Probe Protocols ──────────────────────────────────────────────────────────


@dataclass
class WorkloadStatus:
    """What the orchestrator reports about a workload at one instant."""

    ready_replicas: int = 0
    revision_matches: bool = True
    terminal_failure: str | None = None
    detail: str = ""


@dataclass
class ProbeOutcome:
    ok: bool
    detail: str = ""


class WorkloadProbe(Protocol):
    async def observe(self, target: DeploymentTarget) -> WorkloadStatus:
        ...


class HealthProbe(Protocol):
    async def check(self, target: DeploymentTarget) -> ProbeOutcome:
        ...


# ── Verifier ─────────────────────────────────────────────────────────────────


class DeploymentVerifier:
    """Stateless-per-call verifier; ``verify`` owns its own poll loop."""

    def __init__(
        self,
        workload_probe: WorkloadProbe,
        health_probe: HealthProbe | None = None,
        *,
        sleep: SleepFunc = asyncio.sleep,
        clock: ClockFunc = time.monotonic,
    ) -> None:
        self._workload_probe = workload_probe
        self._health_probe = health_probe
        self._sleep = sleep
        self._clock = clock

    async def verify(self, target: DeploymentTarget) -> VerificationResult:
        """Poll ``target`` until healthy, unhealthy, or timed out."""
        started = self._clock()
        max_polls = target.max_polls
        polls = 0
        last: HealthCheckResult | None = None

        logger.info(
            "Verifying %s (min_ready=%d, interval=%ss, max_wait=%ss, max_polls=%d)",
            target.display_name,
            target.min_ready_replicas,
            target.poll_interval_seconds,
            target.max_wait_seconds,
            max_polls,
        )

        while polls < max_polls:
            if self._clock() - started >= target.max_wait_seconds:
                break

            polls += 1
            last = await self._poll(target)
            elapsed = self._clock() - started

            if last.terminal_failure:
                logger.warning(
                    "Deployment %s unhealthy after %d poll(s): %s",
                    target.display_name,
                    polls,
                    last.terminal_failure,
                )
                return VerificationResult(
                    state=VerificationState.UNHEALTHY,
                    reason=last.terminal_failure,
                    polls=polls,
                    elapsed_seconds=elapsed,
                    last_observation=last,
                )

            if last.ready_replicas >= target.min_ready_replicas and last.probe_ok:
                logger.info(
                    "Deployment %s healthy after %d poll(s) (%d ready)",
                    target.display_name,
                    polls,
                    last.ready_replicas,
                )
                return VerificationResult(
                    state=VerificationState.HEALTHY,
                    reason="",
                    polls=polls,
                    elapsed_seconds=elapsed,
                    last_observation=last,
                )

            logger.debug(
                "Poll %d/%d for %s: %d ready, probe_ok=%s (%s)",
                polls,
                max_polls,
                target.display_name,
                last.ready_replicas,
                last.probe_ok,
                last.detail,
            )
            if polls < max_polls:
                await self._sleep(target.poll_interval_seconds)

        elapsed = self._clock() - started
        detail = f": {last.detail}" if last and last.detail else ""
        reason = (
            f"not healthy within {target.max_wait_seconds:g}s after {polls} poll(s){detail}"
        )
        logger.warning("Deployment %s timed out: %s", target.display_name, reason)
        return VerificationResult(
            state=VerificationState.TIMED_OUT,
            reason=reason,
            polls=polls,
            elapsed_seconds=elapsed,
            last_observation=last,
        )

    async def _poll(self, target: DeploymentTarget) -> HealthCheckResult:
        """One independent observation of the target."""
        name = target.display_name
        try:
            status = await asyncio.wait_for(
                self._workload_probe.observe(target), timeout=target.probe_timeout_seconds
            )
        except asyncio.TimeoutError:
            return HealthCheckResult(target=name, detail="workload probe timed out")
        except Exception as exc:
            logger.exception("Workload probe for %s raised", name)
            return HealthCheckResult(target=name, detail=f"workload probe error: {exc}")

        if status.terminal_failure:
            return HealthCheckResult(
                target=name,
                ready_replicas=status.ready_replicas,
                detail=status.detail,
                terminal_failure=status.terminal_failure,
            )

        if not status.revision_matches:
            detail = status.detail or f"revision '{target.revision_tag}' not rolled out yet"
            return HealthCheckResult(target=name, ready_replicas=0, detail=detail)

        ready = status.ready_replicas
        if ready < target.min_ready_replicas:
            return HealthCheckResult(
                target=name,
                ready_replicas=ready,
                detail=status.detail or f"{ready}/{target.min_ready_replicas} replicas ready",
            )

        if self._health_probe is None or not target.health_endpoint:
            return HealthCheckResult(target=name, ready_replicas=ready, probe_ok=True, detail="ready")

        try:
            outcome = await asyncio.wait_for(
                self._health_probe.check(target), timeout=target.probe_timeout_seconds
            )
        except asyncio.TimeoutError:
            return HealthCheckResult(
                target=name, ready_replicas=ready, detail="health probe timed out"
            )
        except Exception as exc:
            logger.exception("Health probe for %s raised", name)
            return HealthCheckResult(
                target=name, ready_replicas=ready, detail=f"health probe error: {exc}"
            )

        return HealthCheckResult(
            target=name, ready_replicas=ready, probe_ok=outcome.ok, detail=outcome.detail
        )


# ── Built-in Probes ──────────────────────────────────────────────────────────


class HttpHealthProbe:
    """GETs ``target.health_endpoint``; any 2xx response is a success signal."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def check(self, target: DeploymentTarget) -> ProbeOutcome:
        if not target.health_endpoint:
            return ProbeOutcome(ok=True, detail="no health endpoint")
        try:
            if self._client is not None:
                resp = await self._client.get(
                    target.health_endpoint, timeout=target.probe_timeout_seconds
                )
            else:
                async with httpx.AsyncClient(timeout=target.probe_timeout_seconds) as client:
                    resp = await client.get(target.health_endpoint)
        except httpx.HTTPError as exc:
            return ProbeOutcome(ok=False, detail=f"health probe failed: {exc.__class__.__name__}")

        ok = 200 <= resp.status_code < 300
        return ProbeOutcome(ok=ok, detail=f"health endpoint returned {resp.status_code}")


class KubectlWorkloadProbe:
    """Reads Deployment status through ``kubectl ... -o json``."""

    def __init__(self, kubectl: str = "kubectl") -> None:
        self._kubectl = kubectl

    async def observe(self, target: DeploymentTarget) -> WorkloadStatus:
        code, stdout, stderr = await self._run(
            target, "get", "deployment", target.workload, "-o", "json"
        )
        if code != 0:
            # Not found yet is not terminal: the rollout may still be creating it.
            return WorkloadStatus(detail=f"kubectl exited {code}: {stderr.strip()[:200]}")

        status = parse_deployment_status(json.loads(stdout), target.revision_tag)
        if status.terminal_failure:
            return status

        selector = _match_labels(json.loads(stdout))
        if selector and status.ready_replicas < target.min_ready_replicas:
            code, pods_out, _ = await self._run(target, "get", "pods", "-l", selector, "-o", "json")
            if code == 0:
                unschedulable = find_unschedulable(json.loads(pods_out))
                if unschedulable:
                    status.terminal_failure = unschedulable
        return status

    async def _run(self, target: DeploymentTarget, *args: str) -> tuple[int, str, str]:
        argv = [self._kubectl]
        if target.cluster:
            argv += ["--context", target.cluster]
        argv += ["-n", target.namespace, *args]
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
        return (
            proc.returncode or 0,
            (stdout_bytes or b"").decode(),
            (stderr_bytes or b"").decode(),
        )


def parse_deployment_status(doc: dict[str, Any], revision_tag: str = "") -> WorkloadStatus:
    """Translate a Deployment JSON document into a :class:`WorkloadStatus`."""
    status = doc.get("status") or {}
    ready = int(status.get("readyReplicas") or 0)

    for cond in status.get("conditions") or []:
        ctype, cstatus, reason = cond.get("type"), cond.get("status"), cond.get("reason", "")
        if ctype == "Progressing" and cstatus == "False" and reason == "ProgressDeadlineExceeded":
            return WorkloadStatus(
                ready_replicas=ready,
                terminal_failure=f"ProgressDeadlineExceeded: {cond.get('message', '')}".strip(),
            )
        if ctype == "ReplicaFailure" and cstatus == "True":
            return WorkloadStatus(
                ready_replicas=ready,
                terminal_failure=f"ReplicaFailure: {cond.get('message', reason)}".strip(),
            )

    if revision_tag:
        containers = (((doc.get("spec") or {}).get("template") or {}).get("spec") or {}).get(
            "containers"
        ) or []
        images = [c.get("image", "") for c in containers]
        if not any(img.endswith(f":{revision_tag}") for img in images):
            return WorkloadStatus(
                ready_replicas=ready,
                revision_matches=False,
                detail=f"revision '{revision_tag}' not in images {images}",
            )

    generation = (doc.get("metadata") or {}).get("generation")
    observed = status.get("observedGeneration")
    updated = int(status.get("updatedReplicas") or 0)
    if generation is not None and observed is not None and observed < generation:
        return WorkloadStatus(ready_replicas=0, detail="rollout not observed yet")
    return WorkloadStatus(
        ready_replicas=min(ready, updated) if "updatedReplicas" in status else ready,
        detail=f"{ready} ready, {updated} updated",
    )


def find_unschedulable(pods_doc: dict[str, Any]) -> str | None:
    """Return a reason if any pod reports it cannot be scheduled."""
    for pod in pods_doc.get("items") or []:
        for cond in (pod.get("status") or {}).get("conditions") or []:
            if (
                cond.get("type") == "PodScheduled"
                and cond.get("status") == "False"
                and cond.get("reason") == "Unschedulable"
            ):
                name = (pod.get("metadata") or {}).get("name", "?")
                return f"Unschedulable: pod {name}: {cond.get('message', '')}".strip()
    return None


def _match_labels(doc: dict[str, Any]) -> str:
    labels = (((doc.get("spec") or {}).get("selector")) or {}).get("matchLabels") or {}
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
