"""
Lifecycle hooks for a commander run.

Observers register plain callables per EventType; the engine fires them
synchronously at each transition. Hooks never influence the run: one that
raises is logged and the remaining hooks still fire.

  PHASE_CHANGED     phase: Phase, previous: Optional[Phase]
  WORKER_STARTED    task_id: str, model: Model
  WORKER_COMPLETED  task_id: str, result: WorkerResult
  WORKER_RETRY      task_id: str, previous: WorkerResult, model: Model
  MODEL_FAILOVER    task_id: str, preferred: Model, resolved: Model
  QUALITY_CHECKED   verdict: QualityVerdict
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional, Union

logger = logging.getLogger("commander.hooks")


class EventType(str, Enum):
    PHASE_CHANGED    = "phase_changed"
    WORKER_STARTED   = "worker_started"
    WORKER_COMPLETED = "worker_completed"
    WORKER_RETRY     = "worker_retry"
    MODEL_FAILOVER   = "model_failover"
    QUALITY_CHECKED  = "quality_checked"


EventLike = Union[EventType, str]


class HookRegistry:
    """
    Usage:
        hooks = HookRegistry()
        hooks.add(EventType.WORKER_COMPLETED, lambda task_id, result: print(task_id))
        Orchestrator(invoker, hooks=hooks)

    Event names may be given as strings; an unknown name raises ValueError
    at registration so a typo cannot silently register a dead hook.
    """

    def __init__(self) -> None:
        self._callbacks: dict[EventType, list[Callable[..., None]]] = {}

    def add(self, event: EventLike, callback: Callable[..., None]) -> None:
        self._callbacks.setdefault(EventType(event), []).append(callback)

    def fire(self, event: EventType, **payload) -> None:
        for callback in tuple(self._callbacks.get(event, ())):
            try:
                callback(**payload)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"{event.value} hook {callback!r} raised: {exc}")

    def clear(self, event: Optional[EventLike] = None) -> None:
        if event is None:
            self._callbacks.clear()
        else:
            self._callbacks.pop(EventType(event), None)

    def registered_events(self) -> list[EventType]:
        return [event for event, callbacks in self._callbacks.items() if callbacks]

    def __len__(self) -> int:
        return sum(map(len, self._callbacks.values()))
