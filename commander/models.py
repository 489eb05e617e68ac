"""
Multi-Model Commander — Core Models & Types
===========================================
All data structures, enums and model routing tables shared by the planner,
the worker engine and the orchestration state machine.

Tasks, plans and worker results are frozen: once the plan parser has built a
task it is never mutated, and a retried task produces a new WorkerResult that
replaces the old one in the results map.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Model(str, Enum):
    CLAUDE_OPUS = "claude-opus-4-6"
    CLAUDE_SONNET = "claude-sonnet-4-6"
    CLAUDE_SONNET_45 = "claude-sonnet-4-5-20250929"
    CLAUDE_HAIKU = "claude-haiku-4-5-20251001"
    GEMINI_31_PRO = "gemini-3.1-pro-preview"
    GEMINI_3_PRO = "gemini-3-pro-preview"
    GEMINI_3_FLASH = "gemini-3-flash-preview"
    GEMINI_PRO = "gemini-2.5-pro"
    GEMINI_FLASH = "gemini-2.5-flash"


class Priority(str, Enum):
    CRITICAL = "critical"
    STANDARD = "standard"


class WorkerStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class Outcome(str, Enum):
    """Terminal outcome of a single model invocation."""
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class Phase(str, Enum):
    PLANNING = "planning"
    REVIEWING = "reviewing"
    EXECUTING = "executing"
    GAP_CHECK = "gap-check"
    FOLLOW_UP = "follow-up"
    SYNTHESIZING = "synthesizing"
    REVISION = "revision"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.DONE, Phase.ERROR)


# ─────────────────────────────────────────────
# Provider detection
# ─────────────────────────────────────────────

ModelLike = Union[Model, str]


def _value(model: ModelLike) -> str:
    return model.value if isinstance(model, Model) else str(model)


def get_provider(model: ModelLike) -> str:
    val = _value(model)
    if val.startswith("claude"):
        return "anthropic"
    elif val.startswith("gemini"):
        return "google"
    return "unknown"


def get_engine(model: ModelLike) -> str:
    """CLI engine that serves the model: 'gemini' for gemini-*, else 'claude'."""
    return "gemini" if _value(model).startswith("gemini-") else "claude"


# ─────────────────────────────────────────────
# Model tables
# ─────────────────────────────────────────────

DEFAULT_WORKER_MODEL = Model.CLAUDE_SONNET
PLANNING_MODEL = Model.CLAUDE_OPUS
QUALITY_MODEL = Model.CLAUDE_HAIKU
FOLLOW_UP_FALLBACK_MODEL = Model.GEMINI_FLASH

# Models the commander planner may assign. gemini-3.1-pro is not served by
# the CLI yet and sonnet-4-5 is legacy; both are fuzzy-mapped elsewhere.
COMMANDER_WORKER_MODELS: tuple[Model, ...] = (
    Model.CLAUDE_OPUS,
    Model.CLAUDE_SONNET,
    Model.CLAUDE_HAIKU,
    Model.GEMINI_3_PRO,
    Model.GEMINI_3_FLASH,
    Model.GEMINI_PRO,
    Model.GEMINI_FLASH,
)

RESEARCH_WORKER_MODELS: tuple[Model, ...] = tuple(Model)


# ─────────────────────────────────────────────
# Failover chains (cross-provider first)
# ─────────────────────────────────────────────

FAILOVER_CHAINS: dict[Model, list[Model]] = {
    Model.CLAUDE_OPUS:      [Model.GEMINI_31_PRO, Model.GEMINI_3_PRO,
                             Model.GEMINI_PRO, Model.CLAUDE_SONNET],
    Model.CLAUDE_SONNET:    [Model.GEMINI_3_FLASH, Model.GEMINI_PRO,
                             Model.CLAUDE_SONNET_45],
    Model.CLAUDE_SONNET_45: [Model.GEMINI_FLASH, Model.GEMINI_3_FLASH],
    Model.CLAUDE_HAIKU:     [Model.GEMINI_FLASH, Model.GEMINI_3_FLASH],
    Model.GEMINI_31_PRO:    [Model.GEMINI_3_PRO, Model.CLAUDE_OPUS,
                             Model.CLAUDE_SONNET],
    Model.GEMINI_3_PRO:     [Model.GEMINI_31_PRO, Model.CLAUDE_OPUS,
                             Model.CLAUDE_SONNET, Model.GEMINI_PRO],
    Model.GEMINI_3_FLASH:   [Model.CLAUDE_SONNET, Model.GEMINI_PRO,
                             Model.GEMINI_FLASH],
    Model.GEMINI_PRO:       [Model.CLAUDE_SONNET, Model.GEMINI_31_PRO,
                             Model.GEMINI_3_PRO, Model.CLAUDE_SONNET_45],
    Model.GEMINI_FLASH:     [Model.CLAUDE_HAIKU, Model.GEMINI_3_FLASH,
                             Model.CLAUDE_SONNET_45],
}

# Same-provider upgrades used when retrying a failed critical task.
MODEL_UPGRADES: dict[Model, Model] = {
    Model.GEMINI_FLASH:     Model.GEMINI_PRO,
    Model.GEMINI_3_FLASH:   Model.GEMINI_3_PRO,
    Model.GEMINI_3_PRO:     Model.GEMINI_31_PRO,
    Model.CLAUDE_HAIKU:     Model.CLAUDE_SONNET,
    Model.CLAUDE_SONNET_45: Model.CLAUDE_SONNET,
}

# Used instead of an upgrade when a worker produced no output at all.
CROSS_PROVIDER_FALLBACK: dict[Model, Model] = {
    Model.CLAUDE_OPUS:   Model.GEMINI_31_PRO,
    Model.CLAUDE_SONNET: Model.GEMINI_PRO,
    Model.GEMINI_31_PRO: Model.CLAUDE_SONNET,
    Model.GEMINI_3_PRO:  Model.CLAUDE_SONNET,
    Model.GEMINI_PRO:    Model.CLAUDE_SONNET,
}


# ─────────────────────────────────────────────
# Data classes
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class Task:
    id: str
    prompt: str
    assigned_model: Model = DEFAULT_WORKER_MODEL
    description: str = ""
    priority: Priority = Priority.STANDARD
    depends_on: tuple[str, ...] = ()

    @property
    def is_critical(self) -> bool:
        return self.priority == Priority.CRITICAL


@dataclass(frozen=True)
class Plan:
    reasoning: str
    tasks: tuple[Task, ...]
    synthesis_hint: str = "Merge all results into a coherent response."

    def task(self, task_id: str) -> Optional[Task]:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None

    @property
    def is_multi_task(self) -> bool:
        return len(self.tasks) > 1


@dataclass(frozen=True)
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0


@dataclass(frozen=True)
class WorkerResult:
    task_id: str
    model: Model
    status: WorkerStatus
    content: str = ""
    cost: Optional[float] = None
    tokens: Optional[TokenUsage] = None
    duration: Optional[float] = None
    error: Optional[str] = None

    @property
    def has_usable_content(self) -> bool:
        """Success, or a partial that streamed text before timing out."""
        return self.status != WorkerStatus.ERROR and bool(self.content)


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


@dataclass
class GapAnalysis:
    complete: bool
    reasoning: str = ""
    follow_ups: list[Task] = field(default_factory=list)
