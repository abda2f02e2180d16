from typing import Awaitable, Callable, Dict, List
import structlog

from vulnpatcher.domain.models.workflow_state import WorkflowEvent, WorkflowEventType
from vulnpatcher.domain.orchestration.registry import WorkflowRegistry

logger = structlog.get_logger(__name__)

EventHandler = Callable[[WorkflowEvent], Awaitable[None]]


class StreamingHandler:
    """Records workflow events and fans them out to registered handlers"""

    def __init__(self, registry: WorkflowRegistry):
        self.registry = registry
        self.event_handlers: Dict[str, List[EventHandler]] = {}

    async def emit(self, workflow_id: str, event_type: WorkflowEventType, message: str) -> WorkflowEvent:
        """Append an event to the workflow's log, then notify subscribers"""

        event = await self.registry.get_event_log(workflow_id).append(event_type, message)

        logger.info(
            "workflow_event",
            workflow_id=workflow_id,
            event_type=event_type.value,
            sequence=event.sequence,
            message=message
        )

        await self._dispatch(event)
        return event

    def register_event_handler(self, event_type: str, handler: EventHandler):
        """Register a handler for one event type, or "*" for all of them"""

        if event_type not in self.event_handlers:
            self.event_handlers[event_type] = []
        self.event_handlers[event_type].append(handler)

    async def _dispatch(self, event: WorkflowEvent):
        handlers = self.event_handlers.get(event.type.value, []) + self.event_handlers.get("*", [])

        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error("Error in event handler",
                             event_type=event.type.value,
                             workflow_id=event.workflow_id,
                             error=str(e))
