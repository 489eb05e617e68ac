"""
Tests for FailoverRegistry: rate-limit detection, escalating cooldowns,
chain resolution and retry model selection. Time is driven by FakeClock.
"""
from __future__ import annotations

import pytest

from commander.failover import (
    BACKOFF_SCHEDULE,
    FailoverRegistry,
    ModelState,
    is_rate_limit_error,
    select_retry_model,
    upgrade_model,
    was_no_output,
)
from commander.models import FAILOVER_CHAINS, Model, WorkerResult, WorkerStatus


@pytest.fixture()
def reg(clock):
    return FailoverRegistry(clock=clock)


# ─────────────────────────────────────────────────────────────────────────────
# Rate-limit detection
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("text", [
    "Error: 429 Too Many Requests",
    "rate_limit_error: slow down",
    "Overloaded",
    "RESOURCE_EXHAUSTED: quota",
    "Quota exceeded for metric",
    "Please retry after 30s",
])
def test_rate_limit_patterns_match(text):
    assert is_rate_limit_error(text)


@pytest.mark.parametrize("text", [None, "", "SyntaxError: unexpected token", "exit code 4290x"])
def test_non_rate_limit_text(text):
    assert not is_rate_limit_error(text)


# ─────────────────────────────────────────────────────────────────────────────
# Cooldowns
# ─────────────────────────────────────────────────────────────────────────────

def test_first_failure_cools_for_one_minute(reg, clock):
    cd = reg.report_failure(Model.CLAUDE_SONNET, "429")
    assert cd.failures == 1
    assert reg.get_state(Model.CLAUDE_SONNET) == ModelState.COOLING
    assert reg.cooldown_remaining(Model.CLAUDE_SONNET) == pytest.approx(BACKOFF_SCHEDULE[0])
    clock.advance(BACKOFF_SCHEDULE[0])
    assert reg.is_available(Model.CLAUDE_SONNET)


def test_consecutive_failures_escalate(reg):
    first = reg.report_failure(Model.GEMINI_PRO)
    first_remaining = reg.cooldown_remaining(Model.GEMINI_PRO)
    second = reg.report_failure(Model.GEMINI_PRO)
    assert second.failures == 2
    assert reg.cooldown_remaining(Model.GEMINI_PRO) > first_remaining
    assert second.until > first.until


def test_backoff_is_capped_at_last_step(reg):
    for _ in range(len(BACKOFF_SCHEDULE) + 3):
        reg.report_failure(Model.GEMINI_FLASH)
    assert reg.cooldown_remaining(Model.GEMINI_FLASH) == pytest.approx(BACKOFF_SCHEDULE[-1])


def test_expired_cooldown_resets_failure_streak(reg, clock):
    reg.report_failure(Model.CLAUDE_HAIKU)
    clock.advance(BACKOFF_SCHEDULE[0] + 1)
    assert reg.report_failure(Model.CLAUDE_HAIKU).failures == 1


def test_success_clears_cooldown(reg):
    reg.report_failure(Model.CLAUDE_OPUS)
    reg.report_success(Model.CLAUDE_OPUS)
    assert reg.is_available(Model.CLAUDE_OPUS)
    assert reg.cooldown_info(Model.CLAUDE_OPUS) is None


def test_record_outcome(reg):
    reg.record_outcome(Model.GEMINI_3_PRO, "", "Error: 429 quota\nstack...")
    info = reg.cooldown_info(Model.GEMINI_3_PRO)
    assert info is not None and info.reason == "Error: 429 quota"

    reg.record_outcome(Model.GEMINI_3_PRO, "", "some other failure")
    assert not reg.is_available(Model.GEMINI_3_PRO)

    reg.record_outcome(Model.GEMINI_3_PRO, "content", None)
    assert reg.is_available(Model.GEMINI_3_PRO)


def test_active_cooldowns_drops_expired(reg, clock):
    reg.report_failure(Model.CLAUDE_SONNET)
    reg.report_failure(Model.GEMINI_PRO)
    reg.report_failure(Model.GEMINI_PRO)
    clock.advance(BACKOFF_SCHEDULE[0] + 1)
    assert [c.model for c in reg.active_cooldowns()] == [Model.GEMINI_PRO.value]


# ─────────────────────────────────────────────────────────────────────────────
# Resolution
# ─────────────────────────────────────────────────────────────────────────────

def test_resolve_prefers_available_model(reg):
    assert reg.resolve(Model.CLAUDE_SONNET) == Model.CLAUDE_SONNET


def test_resolve_walks_chain_in_order(reg):
    chain = FAILOVER_CHAINS[Model.CLAUDE_OPUS]
    reg.report_failure(Model.CLAUDE_OPUS)
    reg.report_failure(chain[0])
    assert reg.resolve(Model.CLAUDE_OPUS) == chain[1]


def test_resolve_never_returns_cooling_model_when_any_available(reg):
    for preferred, chain in FAILOVER_CHAINS.items():
        reg.clear()
        reg.report_failure(preferred)
        for m in chain[:-1]:
            reg.report_failure(m)
        resolved = reg.resolve(preferred)
        assert reg.is_available(resolved), preferred


def test_resolve_whole_chain_cooling_picks_soonest(reg, clock):
    preferred = Model.CLAUDE_HAIKU
    chain = FAILOVER_CHAINS[preferred]
    reg.report_failure(preferred)
    reg.report_failure(preferred)            # 300s
    clock.advance(10)
    reg.report_failure(chain[0])             # 60s from now
    reg.report_failure(chain[1])
    reg.report_failure(chain[1])             # 300s from now
    assert reg.resolve(preferred) == chain[0]


def test_resolve_accepts_model_strings(reg):
    reg.report_failure("claude-sonnet-4-6")
    assert reg.resolve("claude-sonnet-4-6") == FAILOVER_CHAINS[Model.CLAUDE_SONNET][0]
    assert reg.resolve("some-unknown-model") == "some-unknown-model"


# ─────────────────────────────────────────────────────────────────────────────
# Retry model selection
# ─────────────────────────────────────────────────────────────────────────────

def _failed(model: Model, error: str) -> WorkerResult:
    return WorkerResult("t1", model, WorkerStatus.ERROR, error=error)


def test_no_output_failure_goes_cross_provider():
    prev = _failed(Model.CLAUDE_SONNET, "claude-sonnet-4-6: no output (timeout or spawn crash)")
    assert was_no_output(prev)
    assert select_retry_model(Model.CLAUDE_SONNET, prev) == Model.GEMINI_PRO


def test_other_failures_upgrade_within_provider():
    prev = _failed(Model.GEMINI_FLASH, "gemini-2.5-flash: bad request")
    assert select_retry_model(Model.GEMINI_FLASH, prev) == Model.GEMINI_PRO
    assert upgrade_model(Model.CLAUDE_HAIKU) == Model.CLAUDE_SONNET
    assert upgrade_model(Model.GEMINI_3_PRO) == Model.GEMINI_31_PRO


def test_no_upgrade_keeps_model():
    prev = _failed(Model.CLAUDE_OPUS, "claude-opus-4-6: boom")
    assert select_retry_model(Model.CLAUDE_OPUS, prev) == Model.CLAUDE_OPUS
    assert select_retry_model(Model.CLAUDE_OPUS, None) == Model.CLAUDE_OPUS
