import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "vulnpatcher"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    # Processors for structlog
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    # Add appropriate renderer based on format
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set service name in context
    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add workflow and session identifiers to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    bound = structlog.contextvars.get_contextvars()

    # Workflow tasks bind their id for the whole pipeline run
    workflow_id = bound.get("workflow_id")
    if workflow_id and "workflow_id" not in event_dict:
        event_dict["workflow_id"] = workflow_id

    session_id = bound.get("session_id")
    if session_id and "session_id" not in event_dict:
        event_dict["session_id"] = session_id

    return event_dict


class AgentLogger:
    """Specialized logger for agent role calls and workflow transitions"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_agent_event(
        self,
        event_type: str,
        agent_name: str,
        workflow_id: str,
        data: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        """Log agent role invocations"""

        self.logger.info(
            "agent_event",
            event_type=event_type,
            agent_name=agent_name,
            workflow_id=workflow_id,
            data=data or {},
            **kwargs
        )

    def log_workflow_transition(
        self,
        workflow_id: str,
        from_stage: str,
        to_stage: str,
        condition: Optional[str] = None,
        state_summary: Optional[Dict[str, Any]] = None
    ):
        """Log workflow stage transitions"""

        self.logger.info(
            "workflow_transition",
            workflow_id=workflow_id,
            from_stage=from_stage,
            to_stage=to_stage,
            condition=condition,
            state_summary=state_summary or {}
        )

    def log_context_update(
        self,
        session_id: str,
        context_type: str,
        action: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log context store updates"""

        self.logger.info(
            "context_update",
            session_id=session_id,
            context_type=context_type,
            action=action,
            details=details or {}
        )


# Global logger instance
agent_logger = AgentLogger("vulnpatcher")
