"""Engine events and the bounded channel that carries them.

Publishing never blocks the engine: every :class:`Subscription` owns a
fixed-size buffer, and when a slow consumer lets it fill up the oldest
event is discarded and counted in :attr:`Subscription.dropped`.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from collections.abc import AsyncIterator, Callable, Iterable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from concord.log import get_logger

_log = get_logger(__name__)


class EventType(StrEnum):
    """Every event the engine publishes."""

    TASK_SUBMITTED = "task-submitted"
    TASK_SCHEDULED = "task-scheduled"
    TASK_COMPLETED = "task-completed"
    TASK_FAILED = "task-failed"
    TASK_RETRYING = "task-retrying"
    TASK_CANCELLED = "task-cancelled"
    TASK_CANCEL_REQUESTED = "task-cancel-requested"
    AGENT_TASK_FAILED = "agent-task-failed"
    SESSION_TIMEOUT = "session-timeout"
    CHAIN_CREATED = "chain-created"
    CHAIN_TASK_COMPLETED = "chain-task-completed"
    CHAIN_REMAPPED = "chain-remapped"
    CHAIN_COMPLETED = "chain-completed"
    CHAIN_FAILED = "chain-failed"
    SESSION_CREATED = "collaboration-session-created"
    AGENT_REGISTERED = "agent-registered"
    AGENT_UNREGISTERED = "agent-unregistered"


class EngineEvent(BaseModel):
    """An immutable notification; ``data`` holds JSON-friendly snapshots."""

    model_config = {"frozen": True}

    type: EventType
    timestamp: float = 0.0
    data: dict[str, Any] = Field(default_factory=dict)


class Subscription:
    """A consumer's view of the channel.

    Args:
        maxsize: Buffer capacity.
        types: Only buffer these event types; ``None`` buffers everything.
        on_close: Called once when the subscription is closed.
    """

    def __init__(
        self,
        maxsize: int,
        types: Iterable[EventType] | None = None,
        on_close: Callable[[Subscription], None] | None = None,
    ) -> None:
        self._buffer: deque[EngineEvent] = deque(maxlen=maxsize)
        self._types = frozenset(types) if types is not None else None
        self._ready = asyncio.Event()
        self._on_close = on_close
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def wants(self, event: EngineEvent) -> bool:
        return self._types is None or event.type in self._types

    def push(self, event: EngineEvent) -> None:
        if self._closed:
            return
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
        self._buffer.append(event)
        self._ready.set()

    def get_nowait(self) -> EngineEvent | None:
        """Pop the oldest buffered event, or ``None`` when empty."""
        if not self._buffer:
            self._ready.clear()
            return None
        event = self._buffer.popleft()
        if not self._buffer:
            self._ready.clear()
        return event

    async def get(self, timeout: float | None = None) -> EngineEvent | None:
        """Wait for the next event.

        Returns ``None`` on timeout or when the subscription is closed and
        its buffer is empty.
        """
        while not self._buffer:
            if self._closed:
                return None
            if timeout is None:
                await self._ready.wait()
            else:
                try:
                    await asyncio.wait_for(self._ready.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            if not self._buffer:
                self._ready.clear()
        return self.get_nowait()

    def drain(self) -> list[EngineEvent]:
        """Pop and return everything buffered."""
        events = list(self._buffer)
        self._buffer.clear()
        self._ready.clear()
        return events

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._ready.set()
        if self._on_close is not None:
            self._on_close(self)

    def __len__(self) -> int:
        return len(self._buffer)

    def __aiter__(self) -> AsyncIterator[EngineEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[EngineEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class EventChannel:
    """Fan-out of engine events to bounded subscriptions.

    Args:
        buffer_size: Default capacity for new subscriptions.
    """

    def __init__(self, buffer_size: int = 1000) -> None:
        self._buffer_size = buffer_size
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        types: Iterable[EventType] | None = None,
        *,
        maxsize: int | None = None,
    ) -> Subscription:
        """Open a subscription, optionally filtered to *types*."""
        sub = Subscription(maxsize or self._buffer_size, types, on_close=self._remove)
        self._subscriptions.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscriptions.remove(sub)

    def publish(self, event: EngineEvent) -> None:
        _log.debug("event %s %s", event.type, event.data.get("task_id") or event.data.get("chain_id") or "")
        for sub in self._subscriptions:
            if sub.wants(event):
                sub.push(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        """Close every subscription; pending events stay readable."""
        for sub in list(self._subscriptions):
            sub.close()
