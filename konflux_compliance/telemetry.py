from functools import wraps
from typing import Any, Awaitable, Callable

from opentelemetry import trace
from opentelemetry.util.types import Attributes


def start_as_current_span_async(tracer: trace.Tracer, name: str, attributes: Attributes = None):
    """ A decorator like tracer.start_as_current_span, but works for async functions
    """

    def decorator(function: Callable[..., Awaitable[Any]]):
        @wraps(function)
        async def wrapper(*args, **kwargs):
            with tracer.start_as_current_span(name, attributes=attributes):
                return await function(*args, **kwargs)

        return wrapper

    return decorator
