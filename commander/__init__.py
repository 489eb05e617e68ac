"""
Multi-Model Commander
=====================
Multi-model task orchestration over Claude and Gemini.

One request is decomposed by a planning model into a dependency graph of
sub-tasks, each sub-task runs on the worker model best suited for it (with
bounded concurrency, rate-limit failover and critical-task retries), and the
results are merged into a single quality-checked answer.

Basic usage:
    from commander import Orchestrator, CLIInvoker, FailoverRegistry

    registry = FailoverRegistry()          # share across orchestrators
    orch = Orchestrator(CLIInvoker(), registry, mode="commander")
    outcome = asyncio.run(orch.run("Compare three approaches to rate limiting"))
    print(outcome.content)

Streaming snapshots:
    async for snapshot in orch.run_streaming("..."):
        if snapshot.approve:
            snapshot.approve()
"""

from .models import (
    Model, Phase, Plan, Priority, Task, WorkerResult, WorkerStatus, ChatMessage,
)
from .engine import MODES, ModeProfile, Orchestrator, PhaseError, RunOutcome
from .config import CommanderConfig
from .failover import FailoverRegistry
from .concurrency import ConcurrencyLimiter
from .invoker import (
    CancelScope, InvocationError, InvocationRequest, InvocationResult, ModelInvoker,
)
from .cli_invoker import CLIInvoker
from .api_clients import SDKInvoker
from .plan_parser import parse_plan, validate_plan
from .scheduler import resolve_waves
from .quality_gate import QualityVerdict, check_quality
from .state import StateSnapshot
from .hooks import EventType, HookRegistry
from .tracing import TracingConfig, configure_tracing

__all__ = [
    # ── Orchestration ────────────────────────────────────────────────────────
    "Orchestrator", "RunOutcome", "PhaseError", "ModeProfile", "MODES",
    "CommanderConfig", "StateSnapshot",
    # ── Domain types ─────────────────────────────────────────────────────────
    "Model", "Phase", "Plan", "Priority", "Task", "WorkerResult",
    "WorkerStatus", "ChatMessage", "QualityVerdict",
    # ── Model invocation ─────────────────────────────────────────────────────
    "ModelInvoker", "InvocationRequest", "InvocationResult", "InvocationError",
    "CancelScope", "CLIInvoker", "SDKInvoker",
    # ── Building blocks ──────────────────────────────────────────────────────
    "FailoverRegistry", "ConcurrencyLimiter", "parse_plan", "validate_plan",
    "resolve_waves", "check_quality",
    # ── Observability ────────────────────────────────────────────────────────
    "EventType", "HookRegistry", "TracingConfig", "configure_tracing",
]
