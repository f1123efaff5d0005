"""Atomic command execution with bounded optimistic-concurrency retry.

Every state-changing command (create, submit, decide, cancel, adjust) runs
as one unit of work: a fresh session, a single ``session.begin()`` block,
and, once the commit has succeeded, the events the command staged are
handed to the dispatcher. A failed attempt discards its staged events.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from leaveflow.common.exceptions import ConcurrencyConflictError, TransientFailureError
from leaveflow.config import settings
from leaveflow.notifications.events import take_staged_events

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _run_once(
    session_factory: async_sessionmaker[AsyncSession],
    operation: Callable[..., Awaitable[T]],
    args: tuple[Any, ...],
    kwargs: dict[str, Any],
) -> tuple[T, list]:
    async with session_factory() as session:
        try:
            async with session.begin():
                result = await operation(session, *args, **kwargs)
        except StaleDataError as exc:
            raise ConcurrencyConflictError(str(exc)) from exc
        return result, take_staged_events(session)


async def run_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    dispatcher: Optional[Any] = None,
    **kwargs: Any,
) -> T:
    """Run ``operation(session, *args, **kwargs)`` atomically.

    ``ConcurrencyConflictError`` is retried with exponential backoff up to
    ``CONCURRENCY_MAX_ATTEMPTS`` times, then surfaced as
    ``TransientFailureError``. Events are dispatched only after commit.
    """
    retrying = AsyncRetrying(
        retry=retry_if_exception_type(ConcurrencyConflictError),
        stop=stop_after_attempt(settings.CONCURRENCY_MAX_ATTEMPTS),
        wait=wait_exponential(multiplier=settings.CONCURRENCY_BACKOFF_SECONDS, max=1),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                result, events = await _run_once(
                    session_factory, operation, args, kwargs,
                )
    except ConcurrencyConflictError as exc:
        logger.warning(
            "%s gave up after %d attempts: %s",
            getattr(operation, "__qualname__", operation),
            settings.CONCURRENCY_MAX_ATTEMPTS,
            exc.detail,
        )
        raise TransientFailureError() from exc

    if dispatcher is not None and events:
        dispatcher.dispatch(events)
    return result
