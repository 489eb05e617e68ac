"""
Failover Registry — per-model rate-limit cooldowns with escalating backoff.

Per-model states:
  AVAILABLE   — no cooldown recorded, or the cooldown has elapsed
  COOLING     — rate-limited; skipped until the cooldown expires

Consecutive failures on the same model escalate the cooldown along
BACKOFF_SCHEDULE (capped at the last step). A success resets the counter
and clears the cooldown immediately.

One registry instance is shared by every orchestration run in the process.
Callers inject it; tests construct a fresh instance with a fake clock.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .models import (
    CROSS_PROVIDER_FALLBACK,
    FAILOVER_CHAINS,
    MODEL_UPGRADES,
    Model,
    ModelLike,
    WorkerResult,
)

logger = logging.getLogger("commander.failover")

# 1 min → 5 min → 25 min → 60 min
BACKOFF_SCHEDULE: tuple[float, ...] = (60.0, 300.0, 1500.0, 3600.0)

RATE_LIMIT_PATTERNS: tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"rate.?limit",
        r"\b429\b",
        r"overloaded",
        r"too many requests",
        r"quota.?exceeded",
        r"RESOURCE_EXHAUSTED",
        r"capacity",
        r"exceeded.*limit",
        r"retry.?after",
    )
)


def is_rate_limit_error(text: Optional[str]) -> bool:
    """True when error text (stderr, exception message) looks like a rate limit."""
    if not text:
        return False
    return any(p.search(text) for p in RATE_LIMIT_PATTERNS)


class ModelState(str, Enum):
    AVAILABLE = "available"
    COOLING = "cooling"


@dataclass(frozen=True)
class Cooldown:
    model: str
    until: float
    failures: int
    reason: str


def _key(model: ModelLike) -> str:
    return model.value if isinstance(model, Model) else str(model)


def _as_model(model: ModelLike) -> ModelLike:
    if isinstance(model, Model):
        return model
    try:
        return Model(model)
    except ValueError:
        return model


class FailoverRegistry:

    def __init__(
        self,
        chains: Optional[dict[Model, list[Model]]] = None,
        clock: Callable[[], float] = time.monotonic,
        backoff: tuple[float, ...] = BACKOFF_SCHEDULE,
    ) -> None:
        self._chains = chains if chains is not None else FAILOVER_CHAINS
        self._clock = clock
        self._backoff = backoff
        self._cooldowns: dict[str, Cooldown] = {}

    # ── Reporting ─────────────────────────────────────────────────────────────

    def report_failure(self, model: ModelLike, reason: str = "rate limit") -> Cooldown:
        key = _key(model)
        previous = self._active(key)
        failures = previous.failures + 1 if previous else 1
        step = self._backoff[min(failures - 1, len(self._backoff) - 1)]
        cooldown = Cooldown(
            model=key,
            until=self._clock() + step,
            failures=failures,
            reason=reason[:200],
        )
        self._cooldowns[key] = cooldown
        logger.warning(
            f"{key} rate-limited (failure #{failures}), cooling down {step:.0f}s: "
            f"{cooldown.reason}"
        )
        return cooldown

    def report_success(self, model: ModelLike) -> None:
        if self._cooldowns.pop(_key(model), None) is not None:
            logger.info(f"{_key(model)} recovered, cooldown cleared")

    def record_outcome(self, model: ModelLike, content: str, stderr: Optional[str]) -> None:
        """Apply the side effect every invocation owes the registry."""
        if is_rate_limit_error(stderr):
            first_line = (stderr or "").strip().splitlines()[0] if stderr and stderr.strip() else ""
            self.report_failure(model, first_line or "rate limit")
        elif content:
            self.report_success(model)

    # ── Queries ───────────────────────────────────────────────────────────────

    def _active(self, key: str) -> Optional[Cooldown]:
        cooldown = self._cooldowns.get(key)
        if cooldown is None:
            return None
        if self._clock() >= cooldown.until:
            # cooldown elapsed, forget the failure streak
            del self._cooldowns[key]
            return None
        return cooldown

    def get_state(self, model: ModelLike) -> ModelState:
        if self._active(_key(model)) is not None:
            return ModelState.COOLING
        return ModelState.AVAILABLE

    def is_available(self, model: ModelLike) -> bool:
        return self.get_state(model) == ModelState.AVAILABLE

    def cooldown_remaining(self, model: ModelLike) -> float:
        cooldown = self._active(_key(model))
        if cooldown is None:
            return 0.0
        return max(0.0, cooldown.until - self._clock())

    def cooldown_info(self, model: ModelLike) -> Optional[Cooldown]:
        return self._active(_key(model))

    def active_cooldowns(self) -> list[Cooldown]:
        active = []
        for key in list(self._cooldowns):
            cooldown = self._active(key)
            if cooldown is not None:
                active.append(cooldown)
        return active

    def chain_for(self, model: ModelLike) -> list[Model]:
        resolved = _as_model(model)
        if isinstance(resolved, Model):
            return list(self._chains.get(resolved, []))
        return []

    def resolve(self, preferred: ModelLike) -> ModelLike:
        """
        Return the preferred model if available, else the first available
        entry of its failover chain. When everything is cooling down, return
        whichever candidate (original included) frees up soonest.
        """
        preferred = _as_model(preferred)
        if self.is_available(preferred):
            return preferred

        chain = self.chain_for(preferred)
        for candidate in chain:
            if self.is_available(candidate):
                logger.info(f"Failover: {_key(preferred)} → {candidate.value}")
                return candidate

        candidates = [preferred, *chain]
        best = min(candidates, key=self.cooldown_remaining)
        logger.warning(
            f"Whole failover chain for {_key(preferred)} is cooling down; "
            f"using {_key(best)} ({self.cooldown_remaining(best):.0f}s left)"
        )
        return best

    def clear(self) -> None:
        self._cooldowns.clear()


# ─────────────────────────────────────────────────────────────────────────────
# Retry model selection
# ─────────────────────────────────────────────────────────────────────────────

def was_no_output(result: Optional[WorkerResult]) -> bool:
    return bool(result and result.error and "no output" in result.error)


def upgrade_model(model: Model) -> Model:
    return MODEL_UPGRADES.get(model, model)


def select_retry_model(model: Model, previous: Optional[WorkerResult]) -> Model:
    """
    Pick the model for a critical retry:
      - no output at all    → cross-provider fallback (spawn/init failure)
      - any other error     → same-provider upgrade
      - no upgrade exists   → same model
    """
    if was_no_output(previous):
        fallback = CROSS_PROVIDER_FALLBACK.get(model)
        if fallback is not None:
            return fallback
    return upgrade_model(model)
