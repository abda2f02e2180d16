from typing import AsyncIterator, List, Optional, Sequence
import asyncio

from vulnpatcher.domain.models.workflow_state import WorkflowEvent, WorkflowEventType, utcnow


async def _iterate(events: Sequence[WorkflowEvent]) -> AsyncIterator[WorkflowEvent]:
    for event in events:
        yield event


class EventLog:
    """Append-only, ordered audit trail of one workflow.

    Entries are never edited or removed. Timestamps are clamped so they never
    go backwards even if the wall clock does. The log closes once a terminal
    event (COMPLETED or FAILED) is appended.
    """

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        self._events: List[WorkflowEvent] = []
        self._closed = False
        self._condition = asyncio.Condition()

    def __len__(self) -> int:
        return len(self._events)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_event(self) -> Optional[WorkflowEvent]:
        return self._events[-1] if self._events else None

    async def append(self, event_type: WorkflowEventType, message: str) -> WorkflowEvent:
        """Record an event and wake up live followers"""

        async with self._condition:
            if self._closed:
                raise RuntimeError(f"Event log for workflow {self.workflow_id} is closed")

            timestamp = utcnow()
            if self._events and timestamp < self._events[-1].timestamp:
                timestamp = self._events[-1].timestamp

            event = WorkflowEvent(
                workflow_id=self.workflow_id,
                sequence=len(self._events),
                type=event_type,
                message=message,
                timestamp=timestamp
            )
            self._events.append(event)

            if event_type.is_terminal:
                self._closed = True

            self._condition.notify_all()
            return event

    def snapshot(self) -> List[WorkflowEvent]:
        return list(self._events)

    def replay(self) -> AsyncIterator[WorkflowEvent]:
        """Iterate the history recorded up to this call, then complete"""
        return _iterate(self.snapshot())

    async def follow(self) -> AsyncIterator[WorkflowEvent]:
        """Replay history, then tail new events until the terminal one is delivered"""

        index = 0
        while True:
            async with self._condition:
                await self._condition.wait_for(lambda: index < len(self._events) or self._closed)
                pending = self._events[index:]
                finished = self._closed

            for event in pending:
                yield event
            index += len(pending)

            if finished and index >= len(self._events):
                return
