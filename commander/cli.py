#!/usr/bin/env python3
"""
CLI Entry Point — run the commander from a terminal
===================================================
Usage:
    python -m commander ask "Compare three approaches to rate limiting"
    python -m commander ask "What changed in HTTP/3?" --mode research-deep
    commander ask "Build a CLI todo app in Python" --auto-approve --cwd ./todo

Progress goes to stderr, the final answer to stdout. When a multi-task plan
reaches the review gate the plan is printed and the user is asked to approve
it (skip with --auto-approve). Ctrl-C cancels the run.

Exit codes: 0 done, 1 error, 130 cancelled.
"""

import argparse
import asyncio
import dataclasses
import logging
import signal
import sys
import threading
from typing import Optional

from dotenv import load_dotenv
load_dotenv(override=True)  # .env values win over empty system env vars

from .api_clients import SDKInvoker
from .cli_invoker import CLIInvoker
from .config import CommanderConfig
from .engine import MODES, Orchestrator, RunOutcome
from .failover import FailoverRegistry
from .invoker import ModelInvoker
from .models import Phase
from .progress import ProgressRenderer
from .state import StateSnapshot
from .tracing import TracingConfig, configure_tracing

logger = logging.getLogger("commander.cli")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,  # re-apply even if already configured
    )


def _build_tracing_cfg(args) -> "TracingConfig | None":
    """Return a TracingConfig when --tracing is set, otherwise None."""
    if getattr(args, "tracing", False):
        return TracingConfig(
            enabled=True,
            otlp_endpoint=getattr(args, "otlp_endpoint", None),
        )
    return None


def build_config(args) -> CommanderConfig:
    """Environment first, then explicit flags on top."""
    config = CommanderConfig.from_env()
    overrides = {}
    if args.backend:
        overrides["backend"] = args.backend
    if args.auto_approve:
        overrides["auto_approve"] = True
    if args.cwd:
        overrides["cwd"] = args.cwd
    if args.concurrency:
        overrides["max_concurrency"] = args.concurrency
    return dataclasses.replace(config, **overrides)


def build_invoker(config: CommanderConfig) -> ModelInvoker:
    if config.backend == "api":
        return SDKInvoker()
    return CLIInvoker(claude_bin=config.claude_bin, gemini_bin=config.gemini_bin)


def _read_answer(prompt: str) -> asyncio.Future:
    """
    input() on a daemon thread. Unlike asyncio.to_thread, an unanswered
    prompt does not hold up interpreter or event-loop shutdown.
    """
    loop = asyncio.get_running_loop()
    answer = loop.create_future()

    def _deliver(line: str) -> None:
        if not answer.done():
            answer.set_result(line)

    def _reader() -> None:
        try:
            line = input(prompt)
        except EOFError:
            line = "n"  # stdin closed: nobody can approve
        try:
            loop.call_soon_threadsafe(_deliver, line)
        except RuntimeError:
            pass  # loop already closed; the run ended without an answer

    threading.Thread(target=_reader, name="commander-review", daemon=True).start()
    return answer


async def _ask_review(snapshot: StateSnapshot) -> None:
    """Wait for a stdin answer and resolve the review gate."""
    answer = await _read_answer("Approve this plan? [Y/n] ")
    if answer.strip().lower() in ("", "y", "yes"):
        snapshot.approve()
    else:
        snapshot.reject()


async def _async_ask(args, invoker: Optional[ModelInvoker] = None) -> RunOutcome:
    config = build_config(args)
    tracing_cfg = _build_tracing_cfg(args)
    if tracing_cfg is not None:
        configure_tracing(tracing_cfg)

    orch = Orchestrator(
        invoker or build_invoker(config), FailoverRegistry(), config, mode=args.mode,
    )
    renderer = ProgressRenderer(quiet=args.quiet)
    review_task: Optional[asyncio.Task] = None

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orch.cancel)
    except (NotImplementedError, RuntimeError):
        pass  # Windows / non-main thread: Ctrl-C falls back to KeyboardInterrupt

    try:
        async for snapshot in orch.run_streaming(args.message):
            renderer.handle(snapshot)
            if snapshot.phase == Phase.REVIEWING and snapshot.approve and review_task is None:
                review_task = asyncio.create_task(_ask_review(snapshot))
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
        if review_task is not None and not review_task.done():
            review_task.cancel()

    return orch.last_outcome


def exit_code_for(outcome: RunOutcome) -> int:
    if outcome.cancelled:
        return EXIT_CANCELLED
    return EXIT_OK if outcome.phase == Phase.DONE else EXIT_ERROR


def cmd_ask(args) -> int:
    try:
        outcome = asyncio.run(_async_ask(args))
    except KeyboardInterrupt:
        print("\nCancelled", file=sys.stderr)
        return EXIT_CANCELLED

    if outcome.phase == Phase.DONE:
        print(outcome.content or "")
    else:
        print(f"ERROR: {outcome.error}", file=sys.stderr)
    return exit_code_for(outcome)


def _ask_subparsers(subparsers) -> None:
    ap = subparsers.add_parser(
        "ask",
        help="Plan, run and synthesize one request across several models",
    )
    ap.add_argument("message", type=str, help="The request to orchestrate")
    ap.add_argument("--mode", choices=sorted(MODES), default="commander",
                    help="Run mode (default: commander)")
    ap.add_argument("--backend", choices=["cli", "api"], default=None,
                    help="Invoke models through their CLIs or their SDKs "
                         "(default: COMMANDER_BACKEND or cli)")
    ap.add_argument("--auto-approve", action="store_true",
                    help="Skip the plan review gate")
    ap.add_argument("--concurrency", type=int, default=None,
                    help="Max simultaneous model calls (default: 3)")
    ap.add_argument("--cwd", type=str, default=None,
                    help="Working directory for CLI workers")
    ap.add_argument("--quiet", "-q", action="store_true",
                    help="No progress output on stderr")
    ap.add_argument("--verbose", "-v", action="store_true")
    ap.add_argument(
        "--tracing",
        action="store_true",
        default=False,
        help="Enable OpenTelemetry tracing (console exporter unless --otlp-endpoint)",
    )
    ap.add_argument(
        "--otlp-endpoint",
        type=str,
        default=None,
        metavar="URL",
        help="OTLP gRPC endpoint, e.g. http://localhost:4317. "
             "Requires: pip install 'multi-model-commander[otlp]'",
    )
    ap.set_defaults(func=cmd_ask)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="commander",
        description="Multi-Model Commander — plan, fan out and synthesize across Claude and Gemini",
    )
    subparsers = parser.add_subparsers(dest="subcommand", metavar="SUBCOMMAND")
    _ask_subparsers(subparsers)

    args = parser.parse_args(argv)
    if args.subcommand is None:
        parser.print_help()
        return EXIT_ERROR

    setup_logging(getattr(args, "verbose", False))
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
