"""
Execution event sinks.

The engine reports progress through a sink; the chat endpoint uses the
silent base class, the test harness streams events to the browser.
"""
import asyncio
import json


class EventSink:
    """Discards every event."""

    async def emit(self, event_type: str, **data) -> None:
        return None

    async def pace(self) -> None:
        """Called between chained nodes."""
        return None


class CollectingEventSink(EventSink):
    def __init__(self):
        self.events: list[dict] = []

    async def emit(self, event_type: str, **data) -> None:
        self.events.append({"type": event_type, **data})

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["type"] == event_type]


class QueueEventSink(EventSink):
    """
    Buffers events in an asyncio.Queue for a streaming response.
    ``close()`` puts a sentinel so the consumer knows to stop.
    """

    _CLOSED = object()

    def __init__(self, step_delay: float = 0.0):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.step_delay = step_delay

    async def emit(self, event_type: str, **data) -> None:
        await self.queue.put({"type": event_type, **data})

    async def pace(self) -> None:
        if self.step_delay > 0:
            await asyncio.sleep(self.step_delay)

    async def close(self) -> None:
        await self.queue.put(self._CLOSED)

    async def stream(self):
        """Yield server-sent-event frames until the sink is closed."""
        while True:
            event = await self.queue.get()
            if event is self._CLOSED:
                break
            yield format_sse(event)


def format_sse(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"
