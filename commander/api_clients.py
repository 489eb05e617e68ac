"""
API Clients — ModelInvoker over the provider SDKs
=================================================
Streams Claude models through `anthropic.AsyncAnthropic` and Gemini models
through `google.genai.Client().aio`, normalizing both into InvocationResult.

Unlike the CLI agents these are plain completions: tool use, max_turns and
permission settings in the request are ignored. Provider exceptions are
reported as ERROR results whose stderr carries the exception text, so the
failover registry's rate-limit patterns see "429" / "RESOURCE_EXHAUSTED"
exactly as they would in CLI stderr.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from typing import Optional

from anthropic import AsyncAnthropic
from dotenv import load_dotenv
from google import genai
from google.genai import types

from .invoker import CancelScope, InvocationRequest, InvocationResult, wait_for_settlement
from .models import Outcome, TokenUsage, get_provider

logger = logging.getLogger("commander.api")

DEFAULT_MAX_OUTPUT_TOKENS = 8192


class _StreamBuffer:
    """Text and usage collected while a stream is in flight."""
    __slots__ = ("text", "input_tokens", "output_tokens")

    def __init__(self) -> None:
        self.text = ""
        self.input_tokens = 0
        self.output_tokens = 0

    def tokens(self) -> Optional[TokenUsage]:
        if not (self.input_tokens or self.output_tokens):
            return None
        return TokenUsage(self.input_tokens, self.output_tokens,
                          self.input_tokens + self.output_tokens)


class SDKInvoker:
    """
    Async SDK client with:
    - per-provider lazy initialization from environment keys
    - streaming text callbacks
    - timeout → PARTIAL / ERROR classification
    - cooperative cancellation by invocation id
    """

    def __init__(self, max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS) -> None:
        self.max_output_tokens = max_output_tokens
        self._clients: dict[str, object] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._init_clients()

    def _init_clients(self) -> None:
        """Missing keys → provider unavailable (reported per call, never skipped)."""
        load_dotenv(override=True)

        if os.environ.get("ANTHROPIC_API_KEY"):
            self._clients["anthropic"] = AsyncAnthropic()
            logger.info("Anthropic client initialized")

        api_key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
        if api_key:
            self._clients["google"] = genai.Client(api_key=api_key)
            logger.info("Google GenAI client initialized")

    def is_available(self, provider: str) -> bool:
        return provider in self._clients

    async def _stream_anthropic(self, request: InvocationRequest, buf: _StreamBuffer) -> None:
        client = self._clients["anthropic"]
        kwargs = {
            "model": request.model.value,
            "max_tokens": self.max_output_tokens,
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_prompt:
            kwargs["system"] = request.system_prompt

        async with client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                buf.text += text
                if request.on_streaming_text:
                    request.on_streaming_text(buf.text)
            final = await stream.get_final_message()
        buf.input_tokens = final.usage.input_tokens
        buf.output_tokens = final.usage.output_tokens

    async def _stream_google(self, request: InvocationRequest, buf: _StreamBuffer) -> None:
        client = self._clients["google"]
        config = types.GenerateContentConfig(max_output_tokens=self.max_output_tokens)
        if request.system_prompt:
            config.system_instruction = request.system_prompt

        stream = await client.aio.models.generate_content_stream(
            model=request.model.value,
            contents=request.prompt,
            config=config,
        )
        async for chunk in stream:
            if chunk.text:
                buf.text += chunk.text
                if request.on_streaming_text:
                    request.on_streaming_text(buf.text)
            usage = getattr(chunk, "usage_metadata", None)
            if usage:
                buf.input_tokens = getattr(usage, "prompt_token_count", 0) or 0
                buf.output_tokens = getattr(usage, "candidates_token_count", 0) or 0

    async def _dispatch(self, provider: str, request: InvocationRequest, buf: _StreamBuffer) -> None:
        if provider == "anthropic":
            await self._stream_anthropic(request, buf)
        elif provider == "google":
            await self._stream_google(request, buf)
        else:
            raise ValueError(f"Unknown provider for {request.model.value}")

    async def invoke(
        self, request: InvocationRequest, scope: CancelScope,
    ) -> Optional[InvocationResult]:
        if scope.aborted:
            return None
        provider = get_provider(request.model)
        if not self.is_available(provider):
            return InvocationResult(
                "", Outcome.ERROR,
                stderr=f"No API key configured for provider {provider!r}",
            )

        started = time.monotonic()
        buf = _StreamBuffer()
        invocation_id = uuid.uuid4().hex
        work = asyncio.ensure_future(self._dispatch(provider, request, buf))
        self._tasks[invocation_id] = work
        scope.track(invocation_id, self)
        try:
            settled = await wait_for_settlement(work, scope, request.timeout)
            if settled != "done":
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
        finally:
            self._tasks.pop(invocation_id, None)
            scope.untrack(invocation_id)

        duration = time.monotonic() - started
        if settled == "aborted" or (settled == "done" and work.cancelled()):
            return None

        if settled == "timeout":
            if buf.text.strip():
                return InvocationResult(buf.text, Outcome.PARTIAL, tokens=buf.tokens(),
                                        duration=duration)
            return InvocationResult(
                "", Outcome.ERROR, duration=duration,
                stderr=f"Timed out after {request.timeout:.0f}s with no output",
            )

        exc = work.exception()
        if exc is not None:
            logger.warning(f"{request.model.value} call failed: {type(exc).__name__}: {exc}")
            return InvocationResult(
                "", Outcome.ERROR, duration=duration,
                stderr=f"{type(exc).__name__}: {exc}",
            )
        if not buf.text.strip():
            return InvocationResult("", Outcome.ERROR, duration=duration,
                                    stderr=f"{request.model.value} returned no output")
        return InvocationResult(buf.text, Outcome.SUCCESS, tokens=buf.tokens(),
                                duration=duration)

    async def terminate(self, invocation_id: str) -> None:
        task = self._tasks.pop(invocation_id, None)
        if task is not None and not task.done():
            logger.info(f"Terminating invocation {invocation_id}")
            task.cancel()
