"""
Orchestration state and the immutable snapshots handed to observers.

OrchestrationState is the single mutable record of a run and is owned by the
Orchestrator. Observers only ever see StateSnapshot: every collection is
copied at emit time and wrapped read-only, and WorkerResult/Task/Plan are
frozen, so nothing an observer does can reach the live run.

Control entry points travel on the snapshot only in the phases where they
are valid: approve/reject while REVIEWING, cancel in any non-terminal phase.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from .models import Phase, Plan, Task, WorkerResult
from .quality_gate import QualityVerdict


@dataclass
class OrchestrationState:
    phase: Phase = Phase.PLANNING
    plan: Optional[Plan] = None
    results: dict[str, WorkerResult] = field(default_factory=dict)
    active_task_ids: set[str] = field(default_factory=set)
    streaming_text: dict[str, str] = field(default_factory=dict)
    total_cost: float = 0.0
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    planning_text: str = ""
    synthesis_text: str = ""
    follow_up_tasks: list[Task] = field(default_factory=list)
    quality: Optional[QualityVerdict] = None
    sources: list[str] = field(default_factory=list)
    final_content: Optional[str] = None
    error: Optional[str] = None

    def start_task(self, task_id: str) -> None:
        self.active_task_ids.add(task_id)
        self.streaming_text[task_id] = ""

    def record_result(self, result: WorkerResult) -> None:
        """Store (or supersede) a task's result and clear its in-flight traces."""
        self.results[result.task_id] = result
        self.active_task_ids.discard(result.task_id)
        self.streaming_text.pop(result.task_id, None)
        self.add_cost(result.cost)

    def add_cost(self, cost: Optional[float]) -> None:
        if cost:
            self.total_cost += cost

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return end - self.start_time

    def snapshot(
        self,
        cancel: Optional[Callable[[], None]] = None,
        approve: Optional[Callable[[], None]] = None,
        reject: Optional[Callable[[], None]] = None,
    ) -> "StateSnapshot":
        reviewing = self.phase == Phase.REVIEWING
        return StateSnapshot(
            phase=self.phase,
            plan=self.plan,
            results=MappingProxyType(dict(self.results)),
            active_task_ids=frozenset(self.active_task_ids),
            streaming_text=MappingProxyType(dict(self.streaming_text)),
            total_cost=self.total_cost,
            start_time=self.start_time,
            duration=self.duration,
            planning_text=self.planning_text,
            synthesis_text=self.synthesis_text,
            follow_up_tasks=tuple(self.follow_up_tasks),
            quality=self.quality,
            sources=tuple(self.sources),
            final_content=self.final_content,
            error=self.error,
            cancel=None if self.phase.is_terminal else cancel,
            approve=approve if reviewing else None,
            reject=reject if reviewing else None,
        )


@dataclass(frozen=True)
class StateSnapshot:
    phase: Phase
    plan: Optional[Plan]
    results: Mapping[str, WorkerResult]
    active_task_ids: frozenset
    streaming_text: Mapping[str, str]
    total_cost: float
    start_time: float
    duration: float
    planning_text: str = ""
    synthesis_text: str = ""
    follow_up_tasks: tuple = ()
    quality: Optional[QualityVerdict] = None
    sources: tuple = ()
    final_content: Optional[str] = None
    error: Optional[str] = None
    cancel: Optional[Callable[[], None]] = field(default=None, compare=False)
    approve: Optional[Callable[[], None]] = field(default=None, compare=False)
    reject: Optional[Callable[[], None]] = field(default=None, compare=False)
