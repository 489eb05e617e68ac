"""
Shared test doubles.

FakeInvoker stands in for the model invocation boundary. A test passes a
handler `(request) -> str | InvocationResult | None` (sync or async); plain
strings become SUCCESS results. Calls are recorded so tests can assert on the
exact prompts each phase sent.
"""
from __future__ import annotations

import asyncio
import inspect
import json
from typing import Callable, Optional

import pytest

from commander.config import CommanderConfig
from commander.failover import FailoverRegistry
from commander.invoker import (
    CancelScope,
    InvocationRequest,
    InvocationResult,
    wait_for_settlement,
)
from commander.models import Outcome
from commander.prompts import (
    COMMANDER_BUILD_PLANNING_PROMPT,
    COMMANDER_PLANNING_PROMPT,
    COMMANDER_SYNTHESIS_PROMPT,
    RESEARCH_GAP_PROMPT,
    RESEARCH_SYNTHESIS_PROMPT,
)
from commander.quality_gate import QUALITY_CHECK_PROMPT


def kind_of(request: InvocationRequest) -> str:
    """Which phase sent this request: plan, worker, gap, synthesis or quality."""
    sp = request.system_prompt or ""
    if sp == QUALITY_CHECK_PROMPT:
        return "quality"
    if sp in (COMMANDER_SYNTHESIS_PROMPT, RESEARCH_SYNTHESIS_PROMPT):
        return "synthesis"
    if sp == RESEARCH_GAP_PROMPT:
        return "gap"
    if sp in (COMMANDER_PLANNING_PROMPT, COMMANDER_BUILD_PLANNING_PROMPT) or "planning agent" in sp:
        return "plan"
    return "worker"


def ok(text: str, cost: float = 0.01) -> InvocationResult:
    return InvocationResult(text, Outcome.SUCCESS, cost=cost)


def err(stderr: str) -> InvocationResult:
    return InvocationResult("", Outcome.ERROR, stderr=stderr)


def partial(text: str) -> InvocationResult:
    return InvocationResult(text, Outcome.PARTIAL, stderr="timed out")


def plan_json(*tasks: dict, reasoning: str = "split it", hint: str = "Merge") -> str:
    return json.dumps({"reasoning": reasoning, "tasks": list(tasks), "synthesisHint": hint})


def task(id: str, prompt: str, model: str = "claude-sonnet-4-6",
         priority: str = "critical", deps: tuple = ()) -> dict:
    return {
        "id": id, "description": f"desc {id}", "prompt": prompt,
        "model": model, "priority": priority, "dependsOn": list(deps),
    }


class FakeInvoker:

    def __init__(self, handler: Optional[Callable] = None) -> None:
        self.handler = handler or (lambda request: "ok")
        self.calls: list[InvocationRequest] = []
        self.terminated: list[str] = []

    def calls_of(self, kind: str) -> list[InvocationRequest]:
        return [c for c in self.calls if kind_of(c) == kind]

    async def _respond(self, request: InvocationRequest):
        result = self.handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def invoke(self, request: InvocationRequest, scope: CancelScope):
        if scope.aborted:
            return None
        self.calls.append(request)
        invocation_id = f"inv-{len(self.calls)}"
        scope.track(invocation_id, self)
        work = asyncio.ensure_future(self._respond(request))
        try:
            settled = await wait_for_settlement(work, scope, request.timeout)
        finally:
            scope.untrack(invocation_id)
        if settled != "done":
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
            if settled == "aborted":
                return None
            return InvocationResult("", Outcome.ERROR, stderr="Timed out with no output")

        result = work.result()
        if isinstance(result, str):
            result = ok(result)
        if result is not None and result.content and request.on_streaming_text:
            request.on_streaming_text(result.content)
        return result

    async def terminate(self, invocation_id: str) -> None:
        self.terminated.append(invocation_id)


@pytest.fixture()
def fast_config() -> CommanderConfig:
    """No launch stagger, no streaming throttle, review gate on."""
    return CommanderConfig(stagger_seconds=0.0, stream_throttle=0.0)


@pytest.fixture()
def registry() -> FailoverRegistry:
    return FailoverRegistry()


class FakeClock:

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
