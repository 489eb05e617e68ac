"""Tests for the `commander` command-line entry point."""
from __future__ import annotations

import argparse
import asyncio
import threading

import pytest

import commander.cli as cli
from commander.engine import RunOutcome
from commander.models import Phase

from conftest import FakeInvoker, kind_of, plan_json, task


def _handler(req):
    kind = kind_of(req)
    if kind == "plan":
        return plan_json(task("a", "do a"), task("b", "do b"))
    if kind == "synthesis":
        return "the merged answer"
    if kind == "quality":
        return '{"score": 9}'
    return f"worker output for {req.prompt}"


@pytest.fixture(autouse=True)
def fast_env(monkeypatch):
    monkeypatch.setenv("COMMANDER_STAGGER_SECONDS", "0")
    monkeypatch.setenv("COMMANDER_STREAM_THROTTLE", "0")
    monkeypatch.setattr(cli, "setup_logging", lambda verbose=False: None)


def _args(**overrides):
    values = dict(message="question", mode="commander", backend=None, auto_approve=False,
                  cwd=None, concurrency=None, quiet=True, verbose=False,
                  tracing=False, otlp_endpoint=None)
    values.update(overrides)
    return argparse.Namespace(**values)


def test_no_subcommand_prints_help(capsys):
    assert cli.main([]) == cli.EXIT_ERROR
    assert "ask" in capsys.readouterr().out


def test_flags_override_environment(monkeypatch):
    monkeypatch.setenv("COMMANDER_BACKEND", "api")
    monkeypatch.setenv("COMMANDER_MAX_CONCURRENCY", "2")
    cfg = cli.build_config(_args(backend="cli", concurrency=6, auto_approve=True, cwd="/work"))
    assert cfg.backend == "cli"
    assert cfg.max_concurrency == 6
    assert cfg.auto_approve is True
    assert cfg.cwd == "/work"
    assert cfg.stagger_seconds == 0.0


def test_build_invoker_by_backend():
    cfg = cli.build_config(_args())
    invoker = cli.build_invoker(cfg)
    assert isinstance(invoker, cli.CLIInvoker)
    assert invoker.claude_bin == cfg.claude_bin


def test_exit_codes():
    assert cli.exit_code_for(RunOutcome(Phase.DONE, content="x")) == cli.EXIT_OK
    assert cli.exit_code_for(RunOutcome(Phase.ERROR, error="boom")) == cli.EXIT_ERROR
    assert cli.exit_code_for(RunOutcome(Phase.ERROR, cancelled=True)) == cli.EXIT_CANCELLED


def test_tracing_flag_builds_config():
    assert cli._build_tracing_cfg(_args()) is None
    cfg = cli._build_tracing_cfg(_args(tracing=True, otlp_endpoint="http://collector:4317"))
    assert cfg.enabled and cfg.otlp_endpoint == "http://collector:4317"


def test_async_ask_auto_approved_run():
    invoker = FakeInvoker(_handler)
    outcome = asyncio.run(cli._async_ask(_args(auto_approve=True), invoker))
    assert outcome.phase == Phase.DONE
    assert outcome.content == "the merged answer"
    assert len(invoker.calls_of("worker")) == 2


@pytest.mark.parametrize("answer, phase", [("", Phase.DONE), ("y", Phase.DONE), ("n", Phase.ERROR)])
def test_review_prompt_answers(monkeypatch, answer, phase):
    monkeypatch.setattr("builtins.input", lambda prompt="": answer)
    outcome = asyncio.run(cli._async_ask(_args(), FakeInvoker(_handler)))
    assert outcome.phase == phase
    if phase == Phase.ERROR:
        assert outcome.cancelled
        assert cli.exit_code_for(outcome) == cli.EXIT_CANCELLED


def test_closed_stdin_rejects_the_plan(monkeypatch):
    def _eof(prompt=""):
        raise EOFError

    monkeypatch.setattr("builtins.input", _eof)
    outcome = asyncio.run(cli._async_ask(_args(), FakeInvoker(_handler)))
    assert outcome.phase == Phase.ERROR
    assert outcome.error == "Plan rejected during reviewing"


def test_unanswered_prompt_does_not_block_loop_shutdown(monkeypatch):
    release = threading.Event()

    def _blocking_input(prompt=""):
        release.wait()
        return "y"

    monkeypatch.setattr("builtins.input", _blocking_input)

    async def scenario():
        answer = cli._read_answer("Approve? ")
        await asyncio.sleep(0.01)
        return answer.done()

    try:
        # returns while the reader thread is still parked in input()
        assert asyncio.run(scenario()) is False
    finally:
        release.set()


def test_ask_prints_answer_to_stdout(monkeypatch, capsys):
    monkeypatch.setattr(cli, "build_invoker", lambda config: FakeInvoker(_handler))
    code = cli.main(["ask", "question", "--auto-approve", "--quiet"])
    out, err = capsys.readouterr()
    assert code == cli.EXIT_OK
    assert out.strip() == "the merged answer"


def test_ask_reports_errors_on_stderr(monkeypatch, capsys):
    monkeypatch.setattr(cli, "build_invoker", lambda config: FakeInvoker(lambda req: "no json here"))
    code = cli.main(["ask", "question", "--quiet"])
    out, err = capsys.readouterr()
    assert code == cli.EXIT_ERROR
    assert out == ""
    assert "ERROR: planning failed: could not parse a plan" in err


def test_progress_goes_to_stderr(monkeypatch, capsys):
    monkeypatch.setattr(cli, "build_invoker", lambda config: FakeInvoker(_handler))
    cli.main(["ask", "question", "--auto-approve", "--mode", "research-quick"])
    out, err = capsys.readouterr()
    assert "Planning" in err
    assert "✓ Done" in err
    assert "Planning" not in out
