"""Shared fakes for pipeline tests: scripted executor, fake clock, scripted probes."""

from __future__ import annotations

from typing import Any

import aiosqlite
import pytest
import pytest_asyncio

from conveyor.pipeline.executor import ExecutionOutcome, StageInvocation
from conveyor.pipeline.models import DeploymentTarget
from conveyor.pipeline.registry import RunRegistry
from conveyor.pipeline.verifier import ProbeOutcome, WorkloadStatus


class ScriptedExecutor:
    """Returns canned outcomes per stage name; records every invocation.

    A script entry may be an ExecutionOutcome, an exception to raise, or an
    async callable taking the invocation.
    """

    def __init__(self, script: dict[str, Any] | None = None):
        self.script = script or {}
        self.invocations: list[StageInvocation] = []

    @property
    def stages_run(self) -> list[str]:
        return [i.stage for i in self.invocations]

    async def execute(self, invocation: StageInvocation) -> ExecutionOutcome:
        self.invocations.append(invocation)
        step = self.script.get(invocation.stage, ExecutionOutcome(exit_code=0))
        if callable(step) and not isinstance(step, ExecutionOutcome):
            step = await step(invocation)
        if isinstance(step, BaseException):
            raise step
        return step


class FakeClock:
    """Monotonic clock advanced only by its own sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedWorkloadProbe:
    """Yields statuses in order, repeating the last one forever."""

    def __init__(self, statuses: list[WorkloadStatus]):
        self._statuses = list(statuses)
        self.calls = 0

    async def observe(self, target: DeploymentTarget) -> WorkloadStatus:
        self.calls += 1
        idx = min(self.calls - 1, len(self._statuses) - 1)
        return self._statuses[idx]


class ScriptedHealthProbe:
    def __init__(self, results: list[bool]):
        self._results = list(results)
        self.calls = 0

    async def check(self, target: DeploymentTarget) -> ProbeOutcome:
        self.calls += 1
        idx = min(self.calls - 1, len(self._results) - 1)
        ok = self._results[idx]
        return ProbeOutcome(ok=ok, detail="200" if ok else "503")


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def db(tmp_path):
    async with aiosqlite.connect(str(tmp_path / "test.db")) as conn:
        conn.row_factory = aiosqlite.Row
        yield conn


@pytest_asyncio.fixture
async def run_registry(db):
    reg = RunRegistry(db)
    await reg.initialize()
    return reg
