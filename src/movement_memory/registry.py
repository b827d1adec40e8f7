"""Handler registration.

Two levels: the worker dispatches a claimed job to the single handler for
its job_type, and the projection.update job handler fans out to every
projection handler registered for the event_type in the payload. Handlers
register at import time (see ``movement_memory.handlers``).
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import psycopg

logger = logging.getLogger(__name__)

# async def handler(conn, payload) -> None
HandlerFn = Callable[[psycopg.AsyncConnection[Any], dict[str, Any]], Awaitable[None]]

_registry: dict[str, HandlerFn] = {}
_projection_handlers: dict[str, list[HandlerFn]] = {}


def register(job_type: str) -> Callable[[HandlerFn], HandlerFn]:
    """Make ``fn`` the handler for ``job_type``; a second registration is an error."""

    def decorator(fn: HandlerFn) -> HandlerFn:
        if job_type in _registry:
            raise ValueError(f"Duplicate handler for job_type={job_type!r}")
        _registry[job_type] = fn
        logger.debug("job_type=%s -> %s", job_type, fn.__name__)
        return fn

    return decorator


def projection_handler(*event_types: str) -> Callable[[HandlerFn], HandlerFn]:
    """Subscribe ``fn`` to each event type, after any earlier subscribers.

        @projection_handler("set.logged", "set.edited", "set.deleted")
        async def update_movement_memory(conn, payload): ...
    """

    def decorator(fn: HandlerFn) -> HandlerFn:
        for event_type in event_types:
            _projection_handlers.setdefault(event_type, []).append(fn)
        logger.debug("%s subscribed to %s", fn.__name__, ", ".join(event_types))
        return fn

    return decorator


def get_handler(job_type: str) -> HandlerFn | None:
    return _registry.get(job_type)


def get_projection_handlers(event_type: str) -> list[HandlerFn]:
    return list(_projection_handlers.get(event_type, []))


def registered_types() -> list[str]:
    """Job types the worker may claim."""
    return sorted(_registry)


def subscriptions() -> dict[str, list[str]]:
    """Handler names per event type, for startup logs and the health endpoint."""
    return {
        event_type: [fn.__name__ for fn in handlers]
        for event_type, handlers in sorted(_projection_handlers.items())
    }
