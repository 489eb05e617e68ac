"""
Snapshot streaming for Orchestrator.run_streaming().

Snapshots flow through SnapshotBus, an asyncio fan-out hub. Each subscriber
gets an independent async iterator over every snapshot published after it
subscribed. The state machine publishes synchronously from its observer
callback, so queues are unbounded and publish() never awaits.
"""
from __future__ import annotations

import asyncio
from typing import AsyncIterator

from .state import StateSnapshot

_SENTINEL = object()   # marks end-of-stream


class SnapshotBus:

    def __init__(self) -> None:
        self._queues: list[asyncio.Queue] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> AsyncIterator[StateSnapshot]:
        q: asyncio.Queue = asyncio.Queue()
        self._queues.append(q)
        if self._closed:
            q.put_nowait(_SENTINEL)
        return self._drain(q)

    async def _drain(self, q: asyncio.Queue) -> AsyncIterator[StateSnapshot]:
        while True:
            item = await q.get()
            if item is _SENTINEL:
                return
            yield item

    def publish(self, snapshot: StateSnapshot) -> None:
        if self._closed:
            return
        for q in self._queues:
            q.put_nowait(snapshot)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for q in self._queues:
            q.put_nowait(_SENTINEL)
