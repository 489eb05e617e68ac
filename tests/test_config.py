"""Tests for CommanderConfig."""
from __future__ import annotations

import pytest

from commander.config import CommanderConfig
from commander.models import DEFAULT_WORKER_MODEL, Model


def test_defaults():
    cfg = CommanderConfig.from_env({})
    assert cfg == CommanderConfig()
    assert cfg.backend == "cli"
    assert cfg.max_concurrency == 3
    assert cfg.partial_counts_as_success is True
    assert cfg.default_worker_model == DEFAULT_WORKER_MODEL


def test_environment_overrides():
    cfg = CommanderConfig.from_env({
        "COMMANDER_BACKEND": "api",
        "COMMANDER_MAX_CONCURRENCY": " 5 ",
        "COMMANDER_STAGGER_SECONDS": "0",
        "COMMANDER_AUTO_APPROVE": "yes",
        "COMMANDER_PARTIAL_COUNTS_AS_SUCCESS": "off",
        "COMMANDER_DEFAULT_MODEL": "gemini-2.5-flash",
        "COMMANDER_CLAUDE_BIN": "/opt/bin/claude",
        "UNRELATED": "ignored",
    })
    assert cfg.backend == "api"
    assert cfg.max_concurrency == 5
    assert cfg.stagger_seconds == 0.0
    assert cfg.auto_approve is True
    assert cfg.partial_counts_as_success is False
    assert cfg.default_worker_model == Model.GEMINI_FLASH
    assert cfg.claude_bin == "/opt/bin/claude"


@pytest.mark.parametrize("env, fragment", [
    ({"COMMANDER_MAX_CONCURRENCY": "many"}, "COMMANDER_MAX_CONCURRENCY"),
    ({"COMMANDER_AUTO_APPROVE": "perhaps"}, "COMMANDER_AUTO_APPROVE"),
    ({"COMMANDER_DEFAULT_MODEL": "gpt-4o"}, "COMMANDER_DEFAULT_MODEL"),
])
def test_unparseable_values_name_the_variable(env, fragment):
    with pytest.raises(ValueError, match=fragment):
        CommanderConfig.from_env(env)


@pytest.mark.parametrize("kwargs", [
    {"backend": "grpc"},
    {"max_concurrency": 0},
    {"stagger_seconds": -1},
    {"stream_throttle": -0.1},
])
def test_invalid_values_rejected(kwargs):
    with pytest.raises(ValueError):
        CommanderConfig(**kwargs)
