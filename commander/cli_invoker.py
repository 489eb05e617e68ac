"""
Process-backed ModelInvoker for the `claude` and `gemini` command-line agents.

Both CLIs are run in stream-json mode; every stdout line is one JSON event:

  claude:  {"type": "assistant", "message": {"content": [{"type": "text", ...}]}}
           {"type": "result", "result": "...", "total_cost_usd": .., "duration_ms": ..}
  gemini:  {"type": "message", "role": "assistant", "delta": true, "content": "..."}
           {"type": "result", "stats": {"input_tokens": .., "output_tokens": .., ...}}

A timeout keeps whatever text already streamed (PARTIAL); cancellation kills
the process and settles with None.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from typing import Optional

from .invoker import (
    CancelScope,
    InvocationError,
    InvocationRequest,
    InvocationResult,
    wait_for_settlement,
)
from .models import Outcome, TokenUsage, get_engine

logger = logging.getLogger("commander.cli_invoker")

# Longer messages go over stdin to stay clear of command-line length limits.
MAX_ARG_MESSAGE_CHARS = 6000

# A single Claude `result` line carries the whole answer.
_STREAM_LIMIT = 16 * 1024 * 1024


# ─────────────────────────────────────────────────────────────────────────────
# Argument building
# ─────────────────────────────────────────────────────────────────────────────

def build_claude_args(request: InvocationRequest) -> tuple[list[str], Optional[str]]:
    """Return (argv tail, stdin payload or None)."""
    args = ["-p", "--verbose", "--output-format", "stream-json",
            "--model", request.model.value]
    if request.system_prompt:
        args += ["--system-prompt", request.system_prompt]
    if request.max_turns is not None:
        args += ["--max-turns", str(request.max_turns)]
    if not request.tools_enabled:
        args += ["--tools", "", "--strict-mcp-config"]
    elif request.mcp_config:
        args += ["--mcp-config", request.mcp_config]
    if request.permission_mode:
        args += ["--permission-mode", request.permission_mode]
    if len(request.prompt) > MAX_ARG_MESSAGE_CHARS:
        return args, request.prompt
    return args + [request.prompt], None


def build_gemini_args(request: InvocationRequest) -> list[str]:
    if request.system_prompt:
        message = (
            f"[System Instructions]\n{request.system_prompt}\n\n"
            f"[User Message]\n{request.prompt}"
        )
    else:
        message = request.prompt
    return ["--prompt", message, "--output-format", "stream-json",
            "--yolo", "--model", request.model.value]


# ─────────────────────────────────────────────────────────────────────────────
# Stream parsing
# ─────────────────────────────────────────────────────────────────────────────

class StreamAccumulator:
    """Folds stream-json events into the text so far plus result metadata."""

    def __init__(self, engine: str) -> None:
        self.engine = engine
        self.text = ""
        self.cost: Optional[float] = None
        self.tokens: Optional[TokenUsage] = None
        self.duration: Optional[float] = None

    def feed(self, line: str) -> bool:
        """Consume one line. Returns True when the visible text changed."""
        line = line.strip()
        if not line:
            return False
        try:
            msg = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Ignoring non-JSON {self.engine} output: {line[:120]!r}")
            return False
        if not isinstance(msg, dict):
            return False
        if self.engine == "gemini":
            return self._feed_gemini(msg)
        return self._feed_claude(msg)

    def _feed_gemini(self, msg: dict) -> bool:
        kind = msg.get("type")
        if kind == "message" and msg.get("role") == "assistant" and msg.get("delta"):
            content = msg.get("content") or ""
            if content:
                self.text += content
                return True
        elif kind == "result":
            stats = msg.get("stats") or {}
            self.tokens = TokenUsage(
                input=int(stats.get("input_tokens") or 0),
                output=int(stats.get("output_tokens") or 0),
                total=int(stats.get("total_tokens") or 0),
            )
            if stats.get("duration_ms") is not None:
                self.duration = stats["duration_ms"] / 1000.0
        return False

    def _feed_claude(self, msg: dict) -> bool:
        kind = msg.get("type")
        if kind == "assistant":
            blocks = (msg.get("message") or {}).get("content") or []
            text = "".join(
                b.get("text", "") for b in blocks
                if isinstance(b, dict) and b.get("type") == "text"
            )
            if text:
                self.text += text
                return True
        elif kind == "result":
            changed = False
            if msg.get("result"):
                changed = msg["result"] != self.text
                self.text = msg["result"]
            self.cost = msg.get("total_cost_usd")
            if msg.get("duration_ms") is not None:
                self.duration = msg["duration_ms"] / 1000.0
            usage = msg.get("usage") or {}
            if usage:
                inp = int(usage.get("input_tokens") or 0)
                out = int(usage.get("output_tokens") or 0)
                self.tokens = TokenUsage(input=inp, output=out, total=inp + out)
            return changed
        return False


# ─────────────────────────────────────────────────────────────────────────────
# CLIInvoker
# ─────────────────────────────────────────────────────────────────────────────

class CLIInvoker:
    """
    Runs one CLI process per invocation.

    Usage:
        invoker = CLIInvoker(claude_bin="claude", gemini_bin="gemini")
        result = await invoker.invoke(InvocationRequest(prompt, model), scope)
    """

    def __init__(self, claude_bin: str = "claude", gemini_bin: str = "gemini") -> None:
        self.claude_bin = claude_bin
        self.gemini_bin = gemini_bin
        self._procs: dict[str, asyncio.subprocess.Process] = {}

    @property
    def active_invocations(self) -> list[str]:
        return list(self._procs)

    def _command(self, request: InvocationRequest) -> tuple[list[str], Optional[str]]:
        if get_engine(request.model) == "gemini":
            return [self.gemini_bin, *build_gemini_args(request)], None
        args, stdin_payload = build_claude_args(request)
        return [self.claude_bin, *args], stdin_payload

    async def _spawn(self, argv: list[str], stdin_payload: Optional[str], cwd: Optional[str]):
        env = dict(os.environ)
        # a nested claude refuses to start when it thinks it is inside another session
        env.pop("CLAUDECODE", None)
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin_payload is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                limit=_STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise InvocationError(f"CLI not found: {argv[0]}", transient=False) from exc
        except OSError as exc:
            raise InvocationError(f"CLI failed to start: {exc}", transient=True) from exc

    async def invoke(
        self, request: InvocationRequest, scope: CancelScope,
    ) -> Optional[InvocationResult]:
        if scope.aborted:
            return None
        engine = get_engine(request.model)
        argv, stdin_payload = self._command(request)
        started = time.monotonic()
        proc = await self._spawn(argv, stdin_payload, request.cwd)

        invocation_id = uuid.uuid4().hex
        self._procs[invocation_id] = proc
        scope.track(invocation_id, self)
        acc = StreamAccumulator(engine)
        stderr_parts: list[str] = []

        async def _pump_stdout() -> None:
            async for raw in proc.stdout:
                if acc.feed(raw.decode("utf-8", errors="replace")) and request.on_streaming_text:
                    request.on_streaming_text(acc.text)

        async def _pump_stderr() -> None:
            data = await proc.stderr.read()
            stderr_parts.append(data.decode("utf-8", errors="replace"))

        async def _run() -> int:
            if stdin_payload is not None:
                proc.stdin.write(stdin_payload.encode("utf-8"))
                await proc.stdin.drain()
                proc.stdin.close()
            await asyncio.gather(_pump_stdout(), _pump_stderr())
            return await proc.wait()

        work = asyncio.ensure_future(_run())
        try:
            settled = await wait_for_settlement(work, scope, request.timeout)
            if settled != "done":
                self._kill(proc)
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
        finally:
            self._procs.pop(invocation_id, None)
            scope.untrack(invocation_id)

        duration = acc.duration if acc.duration is not None else time.monotonic() - started
        stderr = "".join(stderr_parts).strip() or None

        if settled == "aborted":
            logger.info(f"{request.model.value} invocation cancelled")
            return None

        if settled == "timeout":
            if acc.text.strip():
                logger.warning(
                    f"{request.model.value} timed out after {request.timeout:.0f}s, "
                    f"keeping {len(acc.text)} chars"
                )
                return InvocationResult(acc.text, Outcome.PARTIAL, acc.cost, acc.tokens,
                                        duration, stderr)
            return InvocationResult(
                "", Outcome.ERROR, duration=duration,
                stderr=stderr or f"Timed out after {request.timeout:.0f}s with no output",
            )

        try:
            exit_code = work.result()
        except (OSError, ValueError) as exc:
            raise InvocationError(f"{engine} CLI pipe failed: {exc}", transient=True) from exc

        if acc.text.strip():
            return InvocationResult(acc.text, Outcome.SUCCESS, acc.cost, acc.tokens,
                                    duration, stderr)
        if stderr:
            return InvocationResult("", Outcome.ERROR, duration=duration, stderr=stderr)
        if exit_code != 0:
            return InvocationResult(
                "", Outcome.ERROR, duration=duration,
                stderr=f"{engine} CLI exited with code {exit_code} "
                       "(likely rate limit or spawn failure)",
            )
        return InvocationResult(
            "", Outcome.ERROR, duration=duration,
            stderr=f"{engine} CLI exited cleanly but produced no output",
        )

    def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def terminate(self, invocation_id: str) -> None:
        proc = self._procs.pop(invocation_id, None)
        if proc is None:
            return
        logger.info(f"Terminating invocation {invocation_id}")
        self._kill(proc)
