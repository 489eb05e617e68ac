"""
Worker Execution Engine
=======================
Runs the tasks of a plan wave by wave:

  - each task's model is FailoverRegistry.resolve(task.assigned_model)
  - prompts are prefixed with the outputs of their dependsOn predecessors
  - the n-th task of a wave waits n × stagger_seconds before invoking,
    inside the concurrency limiter
  - every completion lands in OrchestrationState and triggers a snapshot
  - after a wave, critical tasks that ended in ERROR (not PARTIAL) are
    retried once as a mini-wave before the next wave starts

Wave n+1 never starts before every invocation of wave n has settled.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional, Sequence

from .concurrency import ConcurrencyLimiter
from .failover import FailoverRegistry, select_retry_model, was_no_output
from .hooks import EventType, HookRegistry
from .invoker import (
    CancelScope,
    InvocationError,
    InvocationRequest,
    InvocationResult,
    ModelInvoker,
    invoke_reported,
)
from .models import (
    FOLLOW_UP_FALLBACK_MODEL,
    Model,
    Outcome,
    Task,
    WorkerResult,
    WorkerStatus,
)
from .scheduler import resolve_waves
from .state import OrchestrationState
from .tracing import traced_worker

logger = logging.getLogger("commander.worker")

STAGGER_SECONDS = 0.8
OUTPUT_DIVIDER = "\n\n---\n\n"


# ─────────────────────────────────────────────────────────────────────────────
# Pure helpers
# ─────────────────────────────────────────────────────────────────────────────

def classify_worker_result(
    result: Optional[InvocationResult],
    task_id: str,
    model: Model,
    aborted: bool,
) -> WorkerResult:
    """Map an invocation outcome (or its absence) onto a WorkerResult."""
    if result is not None and result.outcome == Outcome.SUCCESS:
        return WorkerResult(task_id, model, WorkerStatus.SUCCESS, result.content,
                            result.cost, result.tokens, result.duration)
    if result is not None and result.outcome == Outcome.PARTIAL:
        return WorkerResult(
            task_id, model, WorkerStatus.PARTIAL, result.content,
            result.cost, result.tokens, result.duration,
            error=f"Timed out but {len(result.content)} chars preserved",
        )
    if result is not None:
        stderr = (result.stderr or "").strip()
        first_line = stderr.splitlines()[0] if stderr else "Unknown error"
        return WorkerResult(task_id, model, WorkerStatus.ERROR,
                            duration=result.duration, error=f"{model.value}: {first_line}")
    if aborted:
        return WorkerResult(task_id, model, WorkerStatus.ERROR, error="Cancelled")
    return WorkerResult(task_id, model, WorkerStatus.ERROR,
                        error=f"{model.value}: no output (timeout or spawn crash)")


def build_worker_prompt_with_deps(
    prompt: str,
    depends_on: Sequence[str],
    completed_outputs: Mapping[str, str],
) -> str:
    """Prefix the prompt with labeled predecessor outputs; unchanged if there are none."""
    blocks = [
        f"[Output from {dep}]\n{completed_outputs[dep]}"
        for dep in depends_on
        if completed_outputs.get(dep)
    ]
    if not blocks:
        return prompt
    return (
        "The following tasks have already been completed. Use their outputs as context:\n\n"
        + OUTPUT_DIVIDER.join(blocks)
        + f"{OUTPUT_DIVIDER}Now complete your task:\n{prompt}"
    )


def check_critical_failures(
    tasks: Iterable[Task],
    results: Mapping[str, WorkerResult],
    partial_counts_as_success: bool = True,
    timeout: Optional[float] = None,
) -> Optional[str]:
    """
    Failure report when every critical task ended without usable content,
    else None. Plans with no critical task never fail here.
    """
    critical = [t for t in tasks if t.is_critical]
    if not critical:
        return None

    def _succeeded(r: Optional[WorkerResult]) -> bool:
        if r is None:
            return False
        if partial_counts_as_success:
            return r.has_usable_content
        return r.status == WorkerStatus.SUCCESS

    if any(_succeeded(results.get(t.id)) for t in critical):
        return None

    lines = []
    for t in critical:
        r = results.get(t.id)
        model = r.model.value if r else t.assigned_model.value
        status = r.status.value if r else "no result"
        error = (r.error if r else None) or "unknown"
        lines.append(f"  - {t.id} [{t.description}] ({model}): {status}: {error}")
    suffix = f" (worker timeout {timeout:.0f}s)" if timeout else ""
    return (
        f"All {len(critical)} critical workers failed (including retries){suffix}:\n"
        + "\n".join(lines)
    )


def build_fallback_content(
    results: Iterable[WorkerResult],
    clean: Optional[Callable[[str], str]] = None,
) -> str:
    """Concatenation of usable worker outputs, used when synthesis fails."""
    contents = [r.content for r in results if r.has_usable_content]
    if clean is not None:
        contents = [clean(c) for c in contents]
    return OUTPUT_DIVIDER.join(contents)


def identify_timed_out_models(results: Iterable[WorkerResult]) -> set[Model]:
    return {r.model for r in results if r.status == WorkerStatus.ERROR and was_no_output(r)}


def prepare_follow_ups(
    follow_ups: Iterable[Task],
    timed_out: set[Model],
    registry: FailoverRegistry,
    fallback: Model = FOLLOW_UP_FALLBACK_MODEL,
) -> list[Task]:
    """Steer follow-ups away from models that just timed out or are cooling down."""
    prepared = []
    for task in follow_ups:
        model = task.assigned_model
        if model in timed_out:
            model = fallback
        if not registry.is_available(model):
            model = registry.resolve(model)
        if model != task.assigned_model:
            logger.info(f"Follow-up {task.id}: {task.assigned_model.value} → {model.value}")
            task = dataclasses.replace(task, assigned_model=model)
        prepared.append(task)
    return prepared


# ─────────────────────────────────────────────────────────────────────────────
# Execution
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class WaveContext:
    """Per-run wiring the engine needs from the state machine."""
    state: OrchestrationState
    scope: CancelScope
    notify: Callable[[], None]
    notify_streaming: Callable[[], None]
    is_current: Callable[[], bool]
    timeout: float = 300.0
    system_prompt: Optional[str] = None
    permission_mode: Optional[str] = None
    cwd: Optional[str] = None
    mcp_config: Optional[str] = None

    @property
    def live(self) -> bool:
        return self.is_current() and not self.scope.aborted


class WorkerEngine:

    def __init__(
        self,
        invoker: ModelInvoker,
        registry: FailoverRegistry,
        limiter: ConcurrencyLimiter,
        hooks: Optional[HookRegistry] = None,
        stagger_seconds: float = STAGGER_SECONDS,
    ) -> None:
        self.invoker = invoker
        self.registry = registry
        self.limiter = limiter
        self.hooks = hooks or HookRegistry()
        self.stagger_seconds = stagger_seconds

    async def _invoke_task(
        self,
        task: Task,
        index: int,
        preferred: Model,
        prior_outputs: Mapping[str, str],
        ctx: WaveContext,
    ) -> WorkerResult:
        if index and self.stagger_seconds:
            try:
                await asyncio.wait_for(ctx.scope.wait(), timeout=index * self.stagger_seconds)
            except asyncio.TimeoutError:
                pass
        if not ctx.live:
            return classify_worker_result(None, task.id, preferred, aborted=True)

        model = self.registry.resolve(preferred)
        if model != preferred:
            self.hooks.fire(EventType.MODEL_FAILOVER, task_id=task.id,
                            preferred=preferred, resolved=model)

        ctx.state.start_task(task.id)
        self.hooks.fire(EventType.WORKER_STARTED, task_id=task.id, model=model)
        ctx.notify()

        def _on_text(text: str) -> None:
            if ctx.is_current():
                ctx.state.streaming_text[task.id] = text
                ctx.notify_streaming()

        request = InvocationRequest(
            prompt=build_worker_prompt_with_deps(task.prompt, task.depends_on, prior_outputs),
            model=model,
            system_prompt=ctx.system_prompt,
            permission_mode=ctx.permission_mode,
            timeout=ctx.timeout,
            on_streaming_text=_on_text,
            cwd=ctx.cwd,
            mcp_config=ctx.mcp_config,
        )
        with traced_worker(task.id, model.value, task.priority.value) as span:
            try:
                result = await invoke_reported(self.invoker, self.registry, request, ctx.scope)
            except InvocationError as exc:
                logger.error(f"{task.id}: {model.value} could not be invoked: {exc}")
                worker_result = WorkerResult(task.id, model, WorkerStatus.ERROR,
                                             error=f"{model.value}: {exc}")
            else:
                worker_result = classify_worker_result(result, task.id, model, ctx.scope.aborted)
            span.set_attribute("commander.status", worker_result.status.value)
        return worker_result

    def _record(self, result: WorkerResult, ctx: WaveContext) -> None:
        if not ctx.is_current():
            return
        ctx.state.record_result(result)
        self.hooks.fire(EventType.WORKER_COMPLETED, task_id=result.task_id, result=result)
        ctx.notify()

    async def run_wave(
        self,
        tasks: Sequence[Task],
        prior_outputs: Mapping[str, str],
        ctx: WaveContext,
        models: Optional[Mapping[str, Model]] = None,
    ) -> list[WorkerResult]:
        """Run tasks concurrently; one WorkerResult per task, in task order."""
        models = models or {}

        async def _one(index: int, task: Task) -> WorkerResult:
            preferred = models.get(task.id, task.assigned_model)
            result = await self.limiter.limit(
                lambda: self._invoke_task(task, index, preferred, prior_outputs, ctx)
            )
            self._record(result, ctx)
            return result

        settled = await asyncio.gather(
            *(_one(i, t) for i, t in enumerate(tasks)), return_exceptions=True,
        )
        results = []
        for task, outcome in zip(tasks, settled):
            if isinstance(outcome, BaseException):
                logger.error(f"{task.id}: worker crashed: {outcome!r}")
                outcome = WorkerResult(
                    task.id, models.get(task.id, task.assigned_model), WorkerStatus.ERROR,
                    error=f"Worker crashed: {outcome}",
                )
                self._record(outcome, ctx)
            results.append(outcome)
        return results

    async def run_wave_with_retry(
        self,
        tasks: Sequence[Task],
        prior_outputs: Mapping[str, str],
        ctx: WaveContext,
    ) -> list[WorkerResult]:
        results = await self.run_wave(tasks, prior_outputs, ctx)
        if not ctx.live:
            return results

        failed = [
            (task, result) for task, result in zip(tasks, results)
            if task.is_critical and result.status == WorkerStatus.ERROR
        ]
        if not failed:
            return results

        retry_models = {}
        for task, previous in failed:
            model = select_retry_model(previous.model, previous)
            retry_models[task.id] = model
            logger.info(f"Retrying critical {task.id}: {previous.model.value} → {model.value}")
            self.hooks.fire(EventType.WORKER_RETRY, task_id=task.id,
                            previous=previous, model=model)

        retried = await self.run_wave(
            [task for task, _ in failed], prior_outputs, ctx, models=retry_models,
        )
        by_id = {r.task_id: r for r in retried}
        return [by_id.get(r.task_id, r) for r in results]

    async def run_tasks(
        self,
        tasks: Sequence[Task],
        ctx: WaveContext,
    ) -> dict[str, WorkerResult]:
        """Schedule tasks into waves and run them in order, feeding outputs forward."""
        outputs: dict[str, str] = {}
        collected: dict[str, WorkerResult] = {}
        waves = resolve_waves(tasks)
        for n, wave in enumerate(waves, start=1):
            if not ctx.live:
                break
            logger.info(
                f"Wave {n}/{len(waves)}: {[t.id for t in wave]}"
            )
            for result in await self.run_wave_with_retry(wave, outputs, ctx):
                collected[result.task_id] = result
                if result.has_usable_content:
                    outputs[result.task_id] = result.content
        return collected
