"""
Distributed tracing via the OpenTelemetry API.

Without an SDK configured the API hands out non-recording spans, so the
decorator costs next to nothing in tests and local runs.
"""

import asyncio
import functools

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

TRACER_NAME = "journal_rag"


class TracingManager:
    """
    Centralized span creation for pipeline stages.
    """

    def __init__(self):
        self._tracer = trace.get_tracer(TRACER_NAME)

    def start_span(self, name: str):
        """
        Start a new span for the given operation.

        Example:
            >>> tracer = TracingManager()
            >>> with tracer.start_span("dual_search") as span:
            ...     span.set_attribute("user_id", "user-1")
        """
        return self._tracer.start_as_current_span(name)


def trace_operation(name: str):
    """
    Decorator wrapping a sync or async function in a span.

    Exceptions mark the span as errored and propagate unchanged.

    Example:
        >>> @trace_operation("plan_query")
        ... def plan(message):
        ...     ...
    """
    def decorator(func):
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                tracer = trace.get_tracer(TRACER_NAME)
                with tracer.start_as_current_span(name) as span:
                    try:
                        return await func(*args, **kwargs)
                    except Exception as e:
                        span.set_status(Status(StatusCode.ERROR, str(e)))
                        raise
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            tracer = trace.get_tracer(TRACER_NAME)
            with tracer.start_as_current_span(name) as span:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    raise
        return wrapper
    return decorator


__all__ = ['TracingManager', 'trace_operation']
