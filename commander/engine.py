"""
Orchestrator Engine — Orchestration State Machine
=================================================
Drives one request end to end:

    planning → [reviewing] → executing → [gap-check] → [follow-up]
             → synthesizing → [revision] → done | error

Bracketed phases are conditional: reviewing only for multi-task plans in
modes with a review gate, gap-check/follow-up only in research-deep,
revision only when the quality gate fails.

Every transition and every (throttled) streaming update hands an immutable
StateSnapshot to the observer. Phase-fatal problems (no plan, all critical
workers failed, cancellation, unexpected exceptions) end in the ERROR phase
with a "<phase> failed: <cause>" string; a failed synthesis degrades to a
concatenation of worker outputs instead.

Cancellation aborts the run's shared CancelScope, terminates every tracked
invocation and rejects a pending review. Each run gets a generation number;
callbacks from an older generation are ignored.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterable, Optional

from .concurrency import ConcurrencyLimiter
from .config import CommanderConfig
from .failover import FailoverRegistry
from .hooks import EventType, HookRegistry
from .invoker import (
    CancelScope,
    InvocationError,
    InvocationRequest,
    ModelInvoker,
    invoke_reported,
)
from .models import (
    COMMANDER_WORKER_MODELS,
    PLANNING_MODEL,
    RESEARCH_WORKER_MODELS,
    ChatMessage,
    Model,
    Phase,
    Plan,
    WorkerResult,
    WorkerStatus,
)
from .plan_parser import parse_gap_analysis, parse_plan
from .prompts import (
    COMMANDER_BUILD_PLANNING_PROMPT,
    COMMANDER_PLANNING_PROMPT,
    COMMANDER_SYNTHESIS_PROMPT,
    RESEARCH_GAP_PROMPT,
    RESEARCH_SYNTHESIS_PROMPT,
    RESEARCH_WORKER_PROMPT,
    build_gap_analysis_message,
    build_planning_message,
    build_research_planning_prompt,
    build_synthesis_message,
    format_results_for_log,
    is_build_intent,
    truncate_context_messages,
)
from .quality_gate import build_revision_context, check_quality
from .sources import clean_worker_content, collect_sources
from .state import OrchestrationState, StateSnapshot
from .streaming import SnapshotBus
from .tracing import traced_phase
from .worker import (
    WaveContext,
    WorkerEngine,
    build_fallback_content,
    check_critical_failures,
    identify_timed_out_models,
    prepare_follow_ups,
)

logger = logging.getLogger("commander.engine")

ALL_FAILED_MESSAGE = "All workers and synthesis failed. Please try again."


# ─────────────────────────────────────────────────────────────────────────────
# Run modes
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ModeProfile:
    name: str
    max_tasks: int
    review: bool
    gap_check: bool
    research: bool
    planning_timeout: float
    worker_timeout: float
    synthesis_timeout: float
    gap_timeout: float = 45.0
    planning_model: Model = PLANNING_MODEL
    synthesis_model: Model = Model.CLAUDE_OPUS
    valid_models: tuple = COMMANDER_WORKER_MODELS
    question_range: Optional[str] = None

    def planning_prompt(self, user_message: str) -> str:
        if self.research:
            return build_research_planning_prompt(self.question_range, self.max_tasks)
        if is_build_intent(user_message):
            return COMMANDER_BUILD_PLANNING_PROMPT
        return COMMANDER_PLANNING_PROMPT

    @property
    def synthesis_prompt(self) -> str:
        return RESEARCH_SYNTHESIS_PROMPT if self.research else COMMANDER_SYNTHESIS_PROMPT

    @property
    def worker_system_prompt(self) -> Optional[str]:
        return RESEARCH_WORKER_PROMPT if self.research else None


MODES: dict[str, ModeProfile] = {
    "commander": ModeProfile(
        name="commander", max_tasks=7, review=True, gap_check=False, research=False,
        planning_timeout=120.0, worker_timeout=300.0, synthesis_timeout=90.0,
    ),
    "research-quick": ModeProfile(
        name="research-quick", max_tasks=4, review=False, gap_check=False, research=True,
        planning_timeout=60.0, worker_timeout=180.0, synthesis_timeout=180.0,
        synthesis_model=Model.CLAUDE_SONNET, valid_models=RESEARCH_WORKER_MODELS,
        question_range="2-3",
    ),
    "research-deep": ModeProfile(
        name="research-deep", max_tasks=15, review=True, gap_check=True, research=True,
        planning_timeout=60.0, worker_timeout=180.0, synthesis_timeout=180.0,
        synthesis_model=Model.CLAUDE_SONNET, valid_models=RESEARCH_WORKER_MODELS,
    ),
}


# ─────────────────────────────────────────────────────────────────────────────
# Results and errors
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class RunOutcome:
    phase: Phase
    content: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False
    total_cost: float = 0.0
    duration: float = 0.0
    plan: Optional[Plan] = None
    results: dict[str, WorkerResult] = field(default_factory=dict)
    sources: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.phase == Phase.DONE


class PhaseError(Exception):
    """A phase-fatal condition; the run ends in the ERROR phase."""

    def __init__(self, phase: Phase, cause: str, cancelled: bool = False) -> None:
        self.phase = phase
        self.cause = cause
        self.cancelled = cancelled
        super().__init__(self.message)

    @property
    def message(self) -> str:
        if self.cancelled:
            return f"{self.cause} during {self.phase.value}"
        return f"{self.phase.value} failed: {self.cause}"


class _Run:
    """Everything that belongs to one run; replaced wholesale by the next run."""

    def __init__(
        self,
        generation: int,
        user_message: str,
        context: str,
        on_state: Optional[Callable[[StateSnapshot], None]],
        on_streaming: Optional[Callable[[Phase, str], None]],
    ) -> None:
        self.generation = generation
        self.user_message = user_message
        self.context = context
        self.on_state = on_state
        self.on_streaming = on_streaming
        self.state = OrchestrationState()
        self.scope = CancelScope()
        self.loop = asyncio.get_running_loop()
        self.review: Optional[asyncio.Future] = None
        self.last_stream_emit = 0.0


def _first_line(text: Optional[str]) -> str:
    text = (text or "").strip()
    return text.splitlines()[0][:300] if text else ""


# ─────────────────────────────────────────────────────────────────────────────
# Orchestrator
# ─────────────────────────────────────────────────────────────────────────────

class Orchestrator:
    """
    Main orchestration engine.

    Invariants maintained:
    1. Wave n+1 starts only after every invocation of wave n settled
    2. Observers only ever receive copies of the run state
    3. Every model call reports back to the shared FailoverRegistry
    4. Every terminal ERROR carries a phase name and a cause
    5. At most one revision pass per run

    The FailoverRegistry is shared across runs and orchestrators; pass the
    same instance to every Orchestrator in the process.
    """

    def __init__(
        self,
        invoker: ModelInvoker,
        registry: Optional[FailoverRegistry] = None,
        config: Optional[CommanderConfig] = None,
        mode: str | ModeProfile = "commander",
        hooks: Optional[HookRegistry] = None,
    ) -> None:
        self.invoker = invoker
        self.registry = registry if registry is not None else FailoverRegistry()
        self.config = config or CommanderConfig()
        if isinstance(mode, ModeProfile):
            self.profile = mode
        else:
            try:
                self.profile = MODES[mode]
            except KeyError:
                raise ValueError(f"Unknown mode {mode!r}; expected one of {sorted(MODES)}") from None
        self.hooks = hooks or HookRegistry()
        self._generation = 0
        self._run: Optional[_Run] = None
        self.last_outcome: Optional[RunOutcome] = None
        self._terminations: set[asyncio.Task] = set()

    # ─────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def phase(self) -> Optional[Phase]:
        return self._run.state.phase if self._run else None

    def add_hook(self, event: str | EventType, callback: Callable) -> None:
        self.hooks.add(event, callback)

    async def run(
        self,
        user_message: str,
        history: Iterable[ChatMessage] = (),
        on_state: Optional[Callable[[StateSnapshot], None]] = None,
        on_streaming: Optional[Callable[[Phase, str], None]] = None,
    ) -> RunOutcome:
        """Run one request to DONE or ERROR. Never raises for run failures."""
        self.cancel()
        self._generation += 1
        run = _Run(self._generation, user_message,
                   truncate_context_messages(history), on_state, on_streaming)
        self._run = run
        logger.info(f"Run #{run.generation} started ({self.profile.name})")

        try:
            content = await self._drive(run)
        except PhaseError as exc:
            outcome = self._fail(run, exc.message, cancelled=exc.cancelled)
        except Exception as exc:
            logger.exception(f"Run #{run.generation}: unexpected failure")
            outcome = self._fail(
                run, f"{run.state.phase.value} failed: {type(exc).__name__}: {exc}",
            )
        else:
            outcome = self._finish(run, content)
        if self._is_current(run):
            self.last_outcome = outcome
        return outcome

    async def run_streaming(
        self,
        user_message: str,
        history: Iterable[ChatMessage] = (),
    ) -> AsyncIterator[StateSnapshot]:
        """Like run(), but yields every snapshot; the last one is DONE or ERROR."""
        bus = SnapshotBus()
        stream = bus.subscribe()

        async def _drive() -> RunOutcome:
            try:
                return await self.run(user_message, history, on_state=bus.publish)
            finally:
                bus.close()

        task = asyncio.ensure_future(_drive())
        try:
            async for snapshot in stream:
                yield snapshot
        finally:
            if not task.done():
                self.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def approve(self) -> None:
        if self._run is not None:
            self._settle_review(self._run, True)

    def reject(self) -> None:
        if self._run is not None:
            self._settle_review(self._run, False)

    def cancel(self) -> None:
        """
        Abort the current run. Idempotent; a no-op once the run is terminal.
        Must be called from the event loop thread.
        """
        if self._run is not None:
            self._cancel_run(self._run)

    def _settle_review(self, run: _Run, approved: bool) -> None:
        if not self._is_current(run) or run.review is None or run.review.done():
            return
        logger.info("Plan approved" if approved else "Plan rejected")
        run.review.set_result(approved)

    def _cancel_run(self, run: _Run) -> None:
        if not self._is_current(run) or run.state.phase.is_terminal or run.scope.aborted:
            return
        logger.info(f"Cancelling run #{run.generation} during {run.state.phase.value}")
        for invocation_id, invoker in run.scope.abort():
            task = run.loop.create_task(invoker.terminate(invocation_id))
            self._terminations.add(task)
            task.add_done_callback(self._terminations.discard)
        if run.review is not None and not run.review.done():
            run.review.set_result(False)

    # ─────────────────────────────────────────
    # Snapshot emission
    # ─────────────────────────────────────────

    def _is_current(self, run: _Run) -> bool:
        return run.generation == self._generation

    def _emit(self, run: _Run) -> None:
        if run.on_state is None or not self._is_current(run):
            return
        snapshot = run.state.snapshot(
            cancel=lambda: self._cancel_run(run),
            approve=lambda: self._settle_review(run, True),
            reject=lambda: self._settle_review(run, False),
        )
        try:
            run.on_state(snapshot)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"State observer raised: {exc}")

    def _emit_streaming(self, run: _Run) -> None:
        now = run.loop.time()
        if now - run.last_stream_emit < self.config.stream_throttle:
            return
        run.last_stream_emit = now
        self._emit(run)

    def _stream_text(self, run: _Run, phase: Phase, text: str) -> None:
        if not self._is_current(run):
            return
        if phase == Phase.PLANNING:
            run.state.planning_text = text
        else:
            run.state.synthesis_text = text
        if run.on_streaming is not None:
            try:
                run.on_streaming(phase, text)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Streaming observer raised: {exc}")
        self._emit_streaming(run)

    def _set_phase(self, run: _Run, phase: Phase) -> None:
        previous = run.state.phase
        run.state.phase = phase
        logger.info(f"Run #{run.generation}: {previous.value} → {phase.value}")
        if self._is_current(run):
            self.hooks.fire(EventType.PHASE_CHANGED, phase=phase, previous=previous)
        self._emit(run)

    def _check_live(self, run: _Run) -> None:
        if run.scope.aborted or not self._is_current(run):
            raise PhaseError(run.state.phase, "Cancelled", cancelled=True)

    # ─────────────────────────────────────────
    # Terminal transitions
    # ─────────────────────────────────────────

    def _outcome(self, run: _Run, **kwargs) -> RunOutcome:
        state = run.state
        return RunOutcome(
            phase=state.phase,
            total_cost=state.total_cost,
            duration=state.duration,
            plan=state.plan,
            results=dict(state.results),
            sources=list(state.sources),
            **kwargs,
        )

    def _fail(self, run: _Run, message: str, cancelled: bool = False) -> RunOutcome:
        if cancelled:
            logger.warning(f"Run #{run.generation}: {message}")
        else:
            logger.error(f"Run #{run.generation}: {message}")
        run.state.error = message
        run.state.end_time = time.time()
        run.state.active_task_ids.clear()
        run.state.streaming_text.clear()
        self._set_phase(run, Phase.ERROR)
        return self._outcome(run, error=message, cancelled=cancelled)

    def _finish(self, run: _Run, content: str) -> RunOutcome:
        run.state.final_content = content
        run.state.end_time = time.time()
        self._set_phase(run, Phase.DONE)
        logger.info(
            f"Run #{run.generation} done: {len(content)} chars, "
            f"${run.state.total_cost:.4f}, {run.state.duration:.1f}s"
        )
        return self._outcome(run, content=content)

    # ─────────────────────────────────────────
    # Phases
    # ─────────────────────────────────────────

    async def _drive(self, run: _Run) -> str:
        state = run.state
        self._emit(run)

        with traced_phase(Phase.PLANNING.value, self.profile.name):
            plan = await self._plan(run)
        state.plan = plan
        logger.info(
            f"Plan: {len(plan.tasks)} task(s) "
            + ", ".join(f"{t.id}={t.assigned_model.value}" for t in plan.tasks)
        )

        if self.profile.review and plan.is_multi_task and not self.config.auto_approve:
            with traced_phase(Phase.REVIEWING.value, self.profile.name):
                await self._review_gate(run)

        self._set_phase(run, Phase.EXECUTING)
        engine = WorkerEngine(
            self.invoker, self.registry,
            ConcurrencyLimiter(self.config.max_concurrency),
            hooks=self.hooks, stagger_seconds=self.config.stagger_seconds,
        )
        ctx = self._wave_context(run)
        with traced_phase(Phase.EXECUTING.value, self.profile.name):
            await engine.run_tasks(plan.tasks, ctx)
        self._check_live(run)

        report = check_critical_failures(
            plan.tasks, state.results,
            partial_counts_as_success=self.config.partial_counts_as_success,
            timeout=self.profile.worker_timeout,
        )
        if report:
            raise PhaseError(Phase.EXECUTING, report)
        logger.info(f"Workers settled: {format_results_for_log(state.results)}")

        if self.profile.gap_check and plan.is_multi_task:
            with traced_phase(Phase.GAP_CHECK.value, self.profile.name):
                await self._gap_check(run, plan, engine, ctx)

        if len(plan.tasks) == 1 and not state.follow_up_tasks:
            only = state.results.get(plan.tasks[0].id)
            if only is not None and only.status == WorkerStatus.SUCCESS:
                logger.info("Single-task plan succeeded; skipping synthesis")
                return self._post_process(run, only.content)

        with traced_phase(Phase.SYNTHESIZING.value, self.profile.name):
            content = await self._synthesize(run, plan)
        return self._post_process(run, content)

    async def _invoke(self, run: _Run, request: InvocationRequest):
        result = await invoke_reported(self.invoker, self.registry, request, run.scope)
        self._check_live(run)
        if result is not None:
            run.state.add_cost(result.cost)
        return result

    async def _plan(self, run: _Run) -> Plan:
        profile = self.profile
        model = self.registry.resolve(profile.planning_model)
        label = "Research query" if profile.research else "User's current message"
        request = InvocationRequest(
            prompt=build_planning_message(run.user_message, run.context, label),
            model=model,
            system_prompt=profile.planning_prompt(run.user_message),
            tools_enabled=False,
            max_turns=1,
            timeout=profile.planning_timeout,
            on_streaming_text=lambda text: self._stream_text(run, Phase.PLANNING, text),
            cwd=self.config.cwd,
        )

        result = await self._invoke(run, request)
        if result is None or not result.content.strip():
            # cold-start CLIs sometimes return nothing on the first call
            logger.warning(f"Planning with {model.value} returned nothing, retrying once")
            run.state.planning_text = ""
            result = await self._invoke(run, request)

        if result is None or not result.content.strip():
            detail = _first_line(result.stderr if result else None) or "no output"
            raise PhaseError(
                Phase.PLANNING,
                f"{model.value} returned no plan after 2 attempts "
                f"(timeout {profile.planning_timeout:.0f}s): {detail}",
            )

        plan = parse_plan(
            result.content, profile.max_tasks, profile.valid_models,
            self.config.default_worker_model,
        )
        if plan is None:
            raise PhaseError(
                Phase.PLANNING,
                f"could not parse a plan from {model.value} output: {result.content[:200]!r}",
            )
        return plan

    async def _review_gate(self, run: _Run) -> None:
        run.review = run.loop.create_future()
        self._set_phase(run, Phase.REVIEWING)
        approved = await run.review
        run.review = None
        self._check_live(run)
        if not approved:
            raise PhaseError(Phase.REVIEWING, "Plan rejected", cancelled=True)

    def _wave_context(self, run: _Run) -> WaveContext:
        return WaveContext(
            state=run.state,
            scope=run.scope,
            notify=lambda: self._emit(run),
            notify_streaming=lambda: self._emit_streaming(run),
            is_current=lambda: self._is_current(run),
            timeout=self.profile.worker_timeout,
            system_prompt=self.profile.worker_system_prompt,
            permission_mode=self.config.permission_mode,
            cwd=self.config.cwd,
            mcp_config=self.config.mcp_config,
        )

    async def _gap_check(self, run: _Run, plan: Plan, engine: WorkerEngine, ctx: WaveContext) -> None:
        """Reflection pass; any failure here just skips the follow-ups."""
        state = run.state
        self._set_phase(run, Phase.GAP_CHECK)
        results = [state.results[t.id] for t in plan.tasks if t.id in state.results]
        model = self.registry.resolve(self.profile.planning_model)
        request = InvocationRequest(
            prompt=build_gap_analysis_message(run.user_message, plan, results, clean_worker_content),
            model=model,
            system_prompt=RESEARCH_GAP_PROMPT,
            tools_enabled=False,
            max_turns=1,
            timeout=self.profile.gap_timeout,
            cwd=self.config.cwd,
        )
        try:
            result = await self._invoke(run, request)
        except InvocationError as exc:
            logger.warning(f"Gap check could not run: {exc}")
            return
        if result is None or not result.content.strip():
            logger.warning(f"Gap check with {model.value} returned nothing; skipping follow-ups")
            return

        analysis = parse_gap_analysis(
            result.content, existing_ids=state.results.keys(),
            valid_models=self.profile.valid_models,
            default_model=self.config.default_worker_model,
        )
        if analysis is None or analysis.complete:
            logger.info("Gap check: findings complete")
            return

        follow_ups = prepare_follow_ups(
            analysis.follow_ups, identify_timed_out_models(results), self.registry,
        )
        state.follow_up_tasks = follow_ups
        logger.info(f"Gap check: {len(follow_ups)} follow-up(s): {analysis.reasoning}")
        self._set_phase(run, Phase.FOLLOW_UP)
        with traced_phase(Phase.FOLLOW_UP.value, self.profile.name):
            await engine.run_tasks(follow_ups, ctx)
        self._check_live(run)

    async def _synthesis_call(self, run: _Run, message: str) -> Optional[str]:
        model = self.registry.resolve(self.profile.synthesis_model)
        run.state.synthesis_text = ""
        request = InvocationRequest(
            prompt=message,
            model=model,
            system_prompt=self.profile.synthesis_prompt,
            tools_enabled=False,
            max_turns=1,
            timeout=self.profile.synthesis_timeout,
            on_streaming_text=lambda text: self._stream_text(run, run.state.phase, text),
            cwd=self.config.cwd,
        )
        try:
            result = await self._invoke(run, request)
        except InvocationError as exc:
            logger.warning(f"Synthesis with {model.value} could not run: {exc}")
            return None
        if result is None or not result.content.strip():
            detail = _first_line(result.stderr if result else None) or "no output"
            logger.warning(f"Synthesis with {model.value} failed: {detail}")
            return None
        return result.content

    async def _synthesize(self, run: _Run, plan: Plan) -> str:
        state = run.state
        self._set_phase(run, Phase.SYNTHESIZING)
        full_plan = dataclasses.replace(plan, tasks=plan.tasks + tuple(state.follow_up_tasks))
        results = [state.results[t.id] for t in full_plan.tasks if t.id in state.results]
        clean = clean_worker_content if self.profile.research else None
        message = build_synthesis_message(run.user_message, full_plan, results, clean)

        content = await self._synthesis_call(run, message)
        if content is None:
            logger.warning("Falling back to concatenated worker outputs")
            return build_fallback_content(results, clean) or ALL_FAILED_MESSAGE

        try:
            verdict = await check_quality(
                run.user_message, content, self.invoker, self.registry, run.scope,
            )
        except InvocationError as exc:
            logger.warning(f"Quality check could not run: {exc}")
            verdict = None
        self._check_live(run)
        if verdict is None:
            return content
        state.quality = verdict
        state.add_cost(verdict.cost)
        self.hooks.fire(EventType.QUALITY_CHECKED, verdict=verdict)
        logger.info(f"Quality gate: {verdict.score}/10 ({'pass' if verdict.passed else 'fail'})")
        if verdict.passed:
            return content

        self._set_phase(run, Phase.REVISION)
        revised = await self._synthesis_call(
            run, build_revision_context(message, content, verdict.feedback),
        )
        return revised or content

    def _post_process(self, run: _Run, content: str) -> str:
        if self.profile.research:
            run.state.sources = collect_sources(
                r.content for r in run.state.results.values() if r.has_usable_content
            )
            return clean_worker_content(content)
        return content
