"""Tests for the deployment verifier state machine and built-in probes."""

from __future__ import annotations

import asyncio

import httpx
import pytest
import respx

from conftest import ScriptedHealthProbe, ScriptedWorkloadProbe
from conveyor.pipeline.models import DeploymentTarget, VerificationState
from conveyor.pipeline.verifier import (
    DeploymentVerifier,
    HttpHealthProbe,
    WorkloadStatus,
    find_unschedulable,
    parse_deployment_status,
)


def make_target(**overrides) -> DeploymentTarget:
    values = {
        "cluster": "prod",
        "namespace": "web",
        "workload": "api",
        "revision_tag": "abc123",
        "min_ready_replicas": 2,
        "health_endpoint": "http://api.internal/healthz",
        "poll_interval_seconds": 10,
        "max_wait_seconds": 60,
    }
    values.update(overrides)
    return DeploymentTarget(**values)


def make_verifier(workload, health=None, clock=None) -> DeploymentVerifier:
    kwargs = {}
    if clock is not None:
        kwargs = {"sleep": clock.sleep, "clock": clock}
    return DeploymentVerifier(workload, health, **kwargs)


class TestVerify:
    async def test_healthy_after_three_polls(self, clock):
        workload = ScriptedWorkloadProbe(
            [WorkloadStatus(ready_replicas=0), WorkloadStatus(ready_replicas=1), WorkloadStatus(ready_replicas=2)]
        )
        health = ScriptedHealthProbe([True])
        result = await make_verifier(workload, health, clock).verify(make_target())

        assert result.state == VerificationState.HEALTHY
        assert result.healthy
        assert result.polls == 3
        assert clock.sleeps == [10, 10]
        # Health is only probed once replicas are sufficient
        assert health.calls == 1

    async def test_healthy_requires_probe_in_same_poll(self, clock):
        workload = ScriptedWorkloadProbe([WorkloadStatus(ready_replicas=2)])
        health = ScriptedHealthProbe([False, False, True])
        result = await make_verifier(workload, health, clock).verify(make_target())

        assert result.state == VerificationState.HEALTHY
        assert result.polls == 3

    async def test_replicas_and_probe_never_coincide(self, clock):
        # Probe is only ok when replicas drop; they never line up in one poll.
        workload = ScriptedWorkloadProbe(
            [WorkloadStatus(ready_replicas=2), WorkloadStatus(ready_replicas=1)] * 3
        )
        health = ScriptedHealthProbe([False])
        result = await make_verifier(workload, health, clock).verify(make_target())
        assert result.state == VerificationState.TIMED_OUT

    async def test_timeout_polls_exactly_budget(self, clock):
        workload = ScriptedWorkloadProbe([WorkloadStatus(ready_replicas=0)])
        result = await make_verifier(workload, ScriptedHealthProbe([True]), clock).verify(
            make_target(max_wait_seconds=60, poll_interval_seconds=10)
        )

        assert result.state == VerificationState.TIMED_OUT
        assert result.polls == 6
        assert workload.calls == 6
        assert clock.now <= 60
        assert "not healthy within 60s after 6 poll(s)" in result.reason

    async def test_no_poll_past_wall_clock_bound(self, clock):
        class SlowWorkload:
            calls = 0

            async def observe(self, target):
                SlowWorkload.calls += 1
                clock.now += 25  # each observation eats wall-clock time
                return WorkloadStatus(ready_replicas=0)

        result = await make_verifier(SlowWorkload(), None, clock).verify(make_target())
        assert result.state == VerificationState.TIMED_OUT
        # 25 + 10 + 25 = 60 → bound reached, no third poll
        assert SlowWorkload.calls == 2

    async def test_terminal_condition_is_unhealthy_immediately(self, clock):
        workload = ScriptedWorkloadProbe(
            [
                WorkloadStatus(ready_replicas=0),
                WorkloadStatus(terminal_failure="ProgressDeadlineExceeded: rollout stuck"),
            ]
        )
        result = await make_verifier(workload, None, clock).verify(make_target())
        assert result.state == VerificationState.UNHEALTHY
        assert result.polls == 2
        assert "ProgressDeadlineExceeded" in result.reason

    async def test_revision_mismatch_not_ready(self, clock):
        workload = ScriptedWorkloadProbe([WorkloadStatus(ready_replicas=3, revision_matches=False)])
        result = await make_verifier(workload, None, clock).verify(make_target())
        assert result.state == VerificationState.TIMED_OUT
        assert result.last_observation.ready_replicas == 0

    async def test_no_health_endpoint_uses_replicas_only(self, clock):
        workload = ScriptedWorkloadProbe([WorkloadStatus(ready_replicas=2)])
        health = ScriptedHealthProbe([False])
        result = await make_verifier(workload, health, clock).verify(
            make_target(health_endpoint=None)
        )
        assert result.healthy
        assert health.calls == 0

    async def test_probe_timeout_is_unsuccessful_poll(self, clock):
        class HangingProbe:
            async def check(self, target):
                await asyncio.sleep(5)

        workload = ScriptedWorkloadProbe([WorkloadStatus(ready_replicas=2)])
        result = await make_verifier(workload, HangingProbe(), clock).verify(
            make_target(probe_timeout_seconds=0.05, max_wait_seconds=20)
        )
        assert result.state == VerificationState.TIMED_OUT
        assert result.polls == 2
        assert result.last_observation.detail == "health probe timed out"

    async def test_probe_exception_is_unsuccessful_poll(self, clock):
        class BrokenWorkload:
            async def observe(self, target):
                raise RuntimeError("api server gone")

        result = await make_verifier(BrokenWorkload(), None, clock).verify(
            make_target(max_wait_seconds=10)
        )
        assert result.state == VerificationState.TIMED_OUT
        assert result.polls == 1
        assert "api server gone" in result.last_observation.detail


class TestHttpHealthProbe:
    @respx.mock
    async def test_2xx_is_ok(self):
        respx.get("http://api.internal/healthz").mock(return_value=httpx.Response(204))
        outcome = await HttpHealthProbe().check(make_target())
        assert outcome.ok

    @respx.mock
    async def test_5xx_is_not_ok(self):
        respx.get("http://api.internal/healthz").mock(return_value=httpx.Response(503))
        outcome = await HttpHealthProbe().check(make_target())
        assert not outcome.ok
        assert "503" in outcome.detail

    @respx.mock
    async def test_connection_error_is_not_ok(self):
        respx.get("http://api.internal/healthz").mock(side_effect=httpx.ConnectError("refused"))
        outcome = await HttpHealthProbe().check(make_target())
        assert not outcome.ok

    @respx.mock
    async def test_shared_client(self):
        route = respx.get("http://api.internal/healthz").mock(return_value=httpx.Response(200))
        async with httpx.AsyncClient() as client:
            outcome = await HttpHealthProbe(client).check(make_target())
        assert outcome.ok
        assert route.called


def deployment_doc(*, ready=2, updated=2, image="registry/api:abc123", conditions=None,
                   generation=3, observed=3):
    return {
        "metadata": {"generation": generation},
        "spec": {
            "selector": {"matchLabels": {"app": "api"}},
            "template": {"spec": {"containers": [{"name": "api", "image": image}]}},
        },
        "status": {
            "readyReplicas": ready,
            "updatedReplicas": updated,
            "observedGeneration": observed,
            "conditions": conditions or [],
        },
    }


class TestParseDeploymentStatus:
    def test_ready(self):
        status = parse_deployment_status(deployment_doc(), "abc123")
        assert status.ready_replicas == 2
        assert status.revision_matches
        assert status.terminal_failure is None

    def test_revision_mismatch(self):
        status = parse_deployment_status(deployment_doc(image="registry/api:old"), "abc123")
        assert not status.revision_matches

    def test_progress_deadline_exceeded(self):
        doc = deployment_doc(
            conditions=[
                {"type": "Progressing", "status": "False", "reason": "ProgressDeadlineExceeded",
                 "message": "ReplicaSet has timed out progressing."}
            ]
        )
        status = parse_deployment_status(doc, "abc123")
        assert status.terminal_failure.startswith("ProgressDeadlineExceeded")

    def test_replica_failure(self):
        doc = deployment_doc(
            conditions=[{"type": "ReplicaFailure", "status": "True", "message": "quota exceeded"}]
        )
        assert "quota exceeded" in parse_deployment_status(doc).terminal_failure

    def test_generation_not_observed(self):
        status = parse_deployment_status(deployment_doc(generation=4, observed=3), "abc123")
        assert status.ready_replicas == 0

    def test_only_updated_replicas_count(self):
        status = parse_deployment_status(deployment_doc(ready=3, updated=1), "abc123")
        assert status.ready_replicas == 1

    def test_find_unschedulable(self):
        pods = {
            "items": [
                {
                    "metadata": {"name": "api-1"},
                    "status": {
                        "conditions": [
                            {"type": "PodScheduled", "status": "False", "reason": "Unschedulable",
                             "message": "0/3 nodes available"}
                        ]
                    },
                }
            ]
        }
        assert find_unschedulable(pods) == "Unschedulable: pod api-1: 0/3 nodes available"
        assert find_unschedulable({"items": []}) is None
