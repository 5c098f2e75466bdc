"""
Shared logging configuration for the Access Core.

Events are rendered as JSON by structlog. Every event carries the component
that emitted it, the current OpenTelemetry trace, and the actor and tenant
the gate is working for.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog
from opentelemetry import trace

actor_id_var: ContextVar[Optional[str]] = ContextVar("actor_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured JSON logging for the process."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            add_component,
            add_trace_context,
            add_actor_context,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    structlog.get_logger(service_name).debug("Logging configured", log_level=log_level)


def add_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Split ``access_core.locks`` style logger names into service and component."""
    service, _, component = event_dict.get("logger", "").partition(".")
    if component:
        event_dict["service"] = service
        event_dict["component"] = component
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    span = trace.get_current_span()
    if span.is_recording():
        span_context = span.get_span_context()
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_actor_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Fill in actor and tenant from the bound context unless the event names them."""
    for field, var in (("actor_id", actor_id_var), ("tenant_id", tenant_id_var)):
        value = var.get()
        if value and field not in event_dict:
            event_dict[field] = value
    return event_dict


@contextmanager
def bind_actor_context(actor_id: Optional[str], tenant_id: Optional[str]) -> Iterator[None]:
    """Attribute every event logged inside the block to the actor and tenant."""
    actor_token = actor_id_var.set(actor_id or None)
    tenant_token = tenant_id_var.set(tenant_id)
    try:
        yield
    finally:
        tenant_id_var.reset(tenant_token)
        actor_id_var.reset(actor_token)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
