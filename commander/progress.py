"""
Terminal progress renderer for Orchestrator snapshots.

Prints compact phase and worker progress to stderr, leaving stdout clean for
piped output. Snapshots arrive far more often than anything changes, so the
renderer diffs each one against what it already printed. Use quiet=True in
tests or when the CLI runs without --verbose.
"""
from __future__ import annotations

import sys
from typing import Optional, TextIO

from .models import Phase, WorkerStatus
from .state import StateSnapshot

_STATUS_ICONS: dict[WorkerStatus, str] = {
    WorkerStatus.SUCCESS: "✓",
    WorkerStatus.PARTIAL: "~",
    WorkerStatus.ERROR:   "✗",
}


class ProgressRenderer:
    """
    Stateful snapshot handler that prints live progress.
    Maintains counters so callers can inspect final state.
    """

    def __init__(self, quiet: bool = False, stream: Optional[TextIO] = None) -> None:
        self.quiet = quiet
        self.stream = stream or sys.stderr
        self.total: int = 0
        self.completed: int = 0
        self.failed: int = 0
        self._phase: Optional[Phase] = None
        self._started: set[str] = set()
        self._finished: dict[str, WorkerStatus] = {}

    def _print(self, text: str) -> None:
        if not self.quiet:
            print(text, file=self.stream)

    def handle(self, snapshot: StateSnapshot) -> None:
        if snapshot.phase != self._phase:
            self._phase = snapshot.phase
            self._on_phase(snapshot)

        for task_id in sorted(snapshot.active_task_ids - self._started):
            self._started.add(task_id)
            task = snapshot.plan.task(task_id) if snapshot.plan else None
            label = f"  {task.description}" if task and task.description else ""
            self._print(f"   → {task_id}{label}")

        for task_id, result in snapshot.results.items():
            if self._finished.get(task_id) == result.status:
                continue
            retried = task_id in self._finished
            self._finished[task_id] = result.status
            if not retried:
                self.completed += 1
            if result.status == WorkerStatus.ERROR:
                self.failed += 1
            elif retried and self.failed:
                self.failed -= 1
            icon = _STATUS_ICONS.get(result.status, "?")
            detail = f"  {result.error}" if result.error else ""
            cost = f"  ${result.cost:.4f}" if result.cost else ""
            self._print(
                f"   {icon} {task_id}  ({result.model.value}){cost}"
                f"  [{self.completed}/{self.total}]{detail}"
            )

    def _on_phase(self, snapshot: StateSnapshot) -> None:
        phase = snapshot.phase
        if phase == Phase.PLANNING:
            self._print("\n▶  Planning…")
        elif phase == Phase.REVIEWING and snapshot.plan:
            self._print(f"\n?  Plan awaiting review: {snapshot.plan.reasoning}")
            for task in snapshot.plan.tasks:
                deps = f"  after {', '.join(task.depends_on)}" if task.depends_on else ""
                self._print(
                    f"   • {task.id}  [{task.priority.value}]  "
                    f"{task.assigned_model.value}{deps}  {task.description}"
                )
        elif phase == Phase.EXECUTING and snapshot.plan:
            self.total = len(snapshot.plan.tasks)
            self._print(f"\n▶  Executing {self.total} task(s)")
        elif phase == Phase.FOLLOW_UP:
            self.total += len(snapshot.follow_up_tasks)
            self._print(f"\n▶  Running {len(snapshot.follow_up_tasks)} follow-up(s)")
        elif phase == Phase.REVISION and snapshot.quality:
            self._print(f"\n~  Quality {snapshot.quality.score}/10, revising")
        elif phase == Phase.DONE:
            self._print(
                f"\n✓ Done  ${snapshot.total_cost:.4f}  {snapshot.duration:.0f}s  "
                f"{self.summary()}"
            )
        elif phase == Phase.ERROR:
            self._print(f"\n✗ {snapshot.error}")
        else:
            self._print(f"\n▶  {phase.value.capitalize()}…")

    def summary(self) -> str:
        return (
            f"{self.completed} completed / {self.total} total, "
            f"{self.failed} failed"
        )
