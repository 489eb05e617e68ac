"""
Model invocation boundary.

Everything above this module talks to language models through one primitive:
ModelInvoker.invoke(request, scope), which runs a single call to completion
or timeout, streams the text produced so far through
request.on_streaming_text, and settles with an InvocationResult, or None when
the run was cancelled before anything could be reported.

Expected conditions (timeout, rate limit, non-zero exit) are reported as
structured outcomes. Only unexpected transport faults raise InvocationError.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

from .failover import FailoverRegistry
from .models import Model, Outcome, TokenUsage

logger = logging.getLogger("commander.invoker")


class InvocationError(Exception):
    """The spawn/transport layer itself failed."""

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass
class InvocationRequest:
    prompt: str
    model: Model
    system_prompt: Optional[str] = None
    tools_enabled: bool = True
    max_turns: Optional[int] = None
    permission_mode: Optional[str] = None
    timeout: float = 300.0
    on_streaming_text: Optional[Callable[[str], None]] = None
    cwd: Optional[str] = None
    mcp_config: Optional[str] = None


@dataclass
class InvocationResult:
    content: str
    outcome: Outcome
    cost: Optional[float] = None
    tokens: Optional[TokenUsage] = None
    duration: Optional[float] = None
    stderr: Optional[str] = None


@runtime_checkable
class ModelInvoker(Protocol):

    async def invoke(
        self, request: InvocationRequest, scope: "CancelScope",
    ) -> Optional[InvocationResult]:
        ...

    async def terminate(self, invocation_id: str) -> None:
        ...


class CancelScope:
    """
    Cancellation signal shared by every invocation of one run.

    Invokers register each live invocation id here so cancellation can send
    an explicit terminate for whatever is still running.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._tracked: dict[str, ModelInvoker] = {}

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def track(self, invocation_id: str, invoker: ModelInvoker) -> None:
        self._tracked[invocation_id] = invoker

    def untrack(self, invocation_id: str) -> None:
        self._tracked.pop(invocation_id, None)

    @property
    def tracked_ids(self) -> list[str]:
        return list(self._tracked)

    def abort(self) -> list[tuple[str, ModelInvoker]]:
        """
        Set the signal and hand back the invocations still tracked, each
        exactly once. Calling again returns an empty list.
        """
        self._event.set()
        tracked = list(self._tracked.items())
        self._tracked.clear()
        return tracked


async def wait_for_settlement(
    work: "asyncio.Future", scope: CancelScope, timeout: float,
) -> str:
    """
    Wait for `work` to finish, the deadline to pass or the scope to abort.
    Returns "done", "timeout" or "aborted". `work` is left running on
    timeout/abort; the caller decides how to tear it down.
    """
    if scope.aborted:
        return "aborted"
    abort_waiter = asyncio.ensure_future(scope.wait())
    try:
        done, _ = await asyncio.wait(
            {work, abort_waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        abort_waiter.cancel()
    if work in done:
        return "done"
    if abort_waiter in done or scope.aborted:
        return "aborted"
    return "timeout"


async def invoke_reported(
    invoker: ModelInvoker,
    registry: FailoverRegistry,
    request: InvocationRequest,
    scope: CancelScope,
) -> Optional[InvocationResult]:
    """
    Invoke and feed the outcome back to the failover registry: rate-limit
    stderr starts or escalates a cooldown, any content clears it.
    """
    if scope.aborted:
        return None
    result = await invoker.invoke(request, scope)
    if result is not None:
        registry.record_outcome(request.model, result.content, result.stderr)
        if result.outcome == Outcome.ERROR:
            logger.debug(f"{request.model.value} errored: {(result.stderr or '')[:200]}")
    return result
