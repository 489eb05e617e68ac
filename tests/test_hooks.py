"""Tests for HookRegistry."""
from __future__ import annotations

import pytest

from commander.hooks import EventType, HookRegistry


def test_fire_passes_kwargs_in_registration_order():
    hooks = HookRegistry()
    calls = []
    hooks.add(EventType.WORKER_STARTED, lambda task_id, model: calls.append(("first", task_id)))
    hooks.add("worker_started", lambda **kw: calls.append(("second", kw["model"])))
    hooks.fire(EventType.WORKER_STARTED, task_id="t1", model="m")
    assert calls == [("first", "t1"), ("second", "m")]


def test_raising_callback_does_not_stop_others(caplog):
    hooks = HookRegistry()
    seen = []

    def broken(**_):
        raise RuntimeError("observer bug")

    hooks.add(EventType.PHASE_CHANGED, broken)
    hooks.add(EventType.PHASE_CHANGED, lambda **kw: seen.append(kw["phase"]))
    hooks.fire(EventType.PHASE_CHANGED, phase="executing", previous="planning")
    assert seen == ["executing"]
    assert "observer bug" in caplog.text


def test_fire_without_hooks_is_a_no_op():
    HookRegistry().fire(EventType.QUALITY_CHECKED, verdict=None)


def test_clear_and_introspection():
    hooks = HookRegistry()
    hooks.add(EventType.WORKER_RETRY, lambda **_: None)
    hooks.add(EventType.MODEL_FAILOVER, lambda **_: None)
    hooks.add(EventType.MODEL_FAILOVER, lambda **_: None)
    assert len(hooks) == 3
    assert sorted(hooks.registered_events()) == ["model_failover", "worker_retry"]

    hooks.clear(EventType.MODEL_FAILOVER)
    assert hooks.registered_events() == ["worker_retry"]
    hooks.clear()
    assert len(hooks) == 0


def test_unknown_event_name_rejected():
    with pytest.raises(ValueError):
        HookRegistry().add("worker_finished", lambda **_: None)
