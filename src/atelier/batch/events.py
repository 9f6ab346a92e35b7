"""Batch stream events and server-sent event framing.

Each job owns an EventLog. The orchestrator appends events as tasks settle;
any number of subscribers can follow the log from the start, so a client
that connects late still receives every event in order.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass

from pydantic import BaseModel

JOB_PROGRESS = "JOB_PROGRESS"
ITEM_COMPLETED = "ITEM_COMPLETED"
ITEM_FAILED = "ITEM_FAILED"
JOB_FINISHED = "JOB_FINISHED"


@dataclass(frozen=True)
class StreamEvent:
    """One stream event: type tag plus payload model."""

    type: str
    payload: BaseModel


def format_sse(event: StreamEvent) -> str:
    """Frame an event as ``event: <TYPE>\\ndata: <json>\\n\\n``."""
    return f"event: {event.type}\ndata: {event.payload.model_dump_json()}\n\n"


class EventLog:
    """Append-only event history with async followers."""

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []
        self.closed = False
        self._changed = asyncio.Condition()

    async def append(self, event: StreamEvent) -> None:
        async with self._changed:
            self.events.append(event)
            self._changed.notify_all()

    async def close(self) -> None:
        """Mark the log complete; followers stop after the last event."""
        async with self._changed:
            self.closed = True
            self._changed.notify_all()

    async def reopen(self) -> None:
        """Accept events again (task retry after the job finished)."""
        async with self._changed:
            self.closed = False

    def of_type(self, event_type: str) -> list[BaseModel]:
        return [e.payload for e in self.events if e.type == event_type]

    async def follow(self) -> AsyncIterator[StreamEvent]:
        """Yield every event from the start until the log is closed."""
        index = 0
        while True:
            async with self._changed:
                while index >= len(self.events) and not self.closed:
                    await self._changed.wait()
                pending = self.events[index:]
                index = len(self.events)
                done = self.closed
            for event in pending:
                yield event
            if done and index >= len(self.events):
                return
