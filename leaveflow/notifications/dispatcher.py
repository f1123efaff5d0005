"""Post-commit fan-out of domain events to notification and audit subscribers.

Delivery is best effort: each subscriber runs on its own asyncio task with
its own database session, and any failure is logged here and nowhere else.
The committed leave state is never touched by a failed delivery.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leaveflow.common.audit import audit_entry_for
from leaveflow.common.constants import LeaveStatus, NotificationType
from leaveflow.database import get_session_factory
from leaveflow.notifications.events import (
    Event,
    ReminderEvent,
    WorkflowTransitionEvent,
)
from leaveflow.notifications.models import Notification

logger = logging.getLogger(__name__)

Subscriber = Callable[[Event], Awaitable[None]]
SessionFactory = Callable[[], async_sessionmaker[AsyncSession]]


class NotificationDeliveryError(Exception):
    """A notification could not be recorded or sent."""


class AuditWriteError(Exception):
    """An audit entry could not be written."""


# ═════════════════════════════════════════════════════════════════════
# Dispatcher
# ═════════════════════════════════════════════════════════════════════


class EventDispatcher:
    """Runs subscribers for committed events on background tasks."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def dispatch(self, events: Iterable[Event]) -> None:
        """Schedule delivery of *events*; returns without waiting."""
        for event in events:
            for subscriber in self._subscribers:
                task = asyncio.create_task(self._deliver(subscriber, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every delivery scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def _deliver(self, subscriber: Subscriber, event: Event) -> None:
        try:
            await subscriber(event)
        except (NotificationDeliveryError, AuditWriteError):
            logger.exception(
                "Delivery of %s to %s failed",
                type(event).__name__,
                getattr(subscriber, "__qualname__", subscriber),
            )
        except Exception:
            logger.exception(
                "Unexpected error delivering %s to %s",
                type(event).__name__,
                getattr(subscriber, "__qualname__", subscriber),
            )


# ═════════════════════════════════════════════════════════════════════
# Notification subscriber
# ═════════════════════════════════════════════════════════════════════


_EMPLOYEE_MESSAGES: dict[LeaveStatus, tuple[NotificationType, str, str]] = {
    LeaveStatus.approved: (
        NotificationType.approval,
        "Leave Request Approved",
        "Your {label} request from {start} to {end} has been approved.",
    ),
    LeaveStatus.refused: (
        NotificationType.alert,
        "Leave Request Refused",
        "Your {label} request from {start} to {end} was refused. Reason: {comment}",
    ),
    LeaveStatus.returned: (
        NotificationType.action_required,
        "Leave Request Returned",
        "Your {label} request from {start} to {end} was returned for changes: {comment}",
    ),
}


class NotificationRecorder:
    """Writes in-app notifications for workflow transitions and reminders."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def __call__(self, event: Event) -> None:
        if isinstance(event, WorkflowTransitionEvent):
            rows = self._for_transition(event)
        elif isinstance(event, ReminderEvent):
            rows = self._for_reminder(event)
        else:
            return
        if not rows:
            return
        try:
            async with self._session_factory()() as session:
                async with session.begin():
                    session.add_all(rows)
        except Exception as exc:
            raise NotificationDeliveryError(str(exc)) from exc

    @staticmethod
    def _for_transition(event: WorkflowTransitionEvent) -> list[Notification]:
        rows: list[Notification] = []
        url = f"/leave/requests/{event.request_id}"
        template = _EMPLOYEE_MESSAGES.get(event.new_status)
        if template is not None:
            ntype, title, message = template
            rows.append(
                Notification(
                    recipient_id=event.employee_id,
                    type=ntype,
                    title=title,
                    message=message.format(
                        label=event.leave_type_label,
                        start=event.start_date,
                        end=event.end_date,
                        comment=event.comment or "",
                    ),
                    action_url=url,
                    entity_type="leave_request",
                    entity_id=event.request_id,
                )
            )
        for approver_id in event.next_approver_ids:
            rows.append(
                Notification(
                    recipient_id=approver_id,
                    type=NotificationType.action_required,
                    title="New Leave Request",
                    message=(
                        f"A {event.leave_type_label} request from {event.start_date} "
                        f"to {event.end_date} ({event.total_days} day(s)) "
                        f"requires your approval."
                    ),
                    action_url=url,
                    entity_type="leave_request",
                    entity_id=event.request_id,
                )
            )
        return rows

    @staticmethod
    def _for_reminder(event: ReminderEvent) -> list[Notification]:
        return [
            Notification(
                recipient_id=approver_id,
                type=NotificationType.reminder,
                title="Leave Request Awaiting Your Decision",
                message=(
                    f"A leave request from {event.start_date} to {event.end_date} "
                    f"is still waiting for your approval."
                ),
                action_url=f"/leave/requests/{event.request_id}",
                entity_type="leave_request",
                entity_id=event.request_id,
            )
            for approver_id in event.approver_ids
        ]


# ═════════════════════════════════════════════════════════════════════
# Audit subscriber
# ═════════════════════════════════════════════════════════════════════


class AuditRecorder:
    """Persists workflow and balance events to the audit trail."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def __call__(self, event: Event) -> None:
        entry = audit_entry_for(event)
        if entry is None:
            return
        try:
            async with self._session_factory()() as session:
                async with session.begin():
                    session.add(entry)
        except Exception as exc:
            raise AuditWriteError(str(exc)) from exc


# ── Module-level wiring ─────────────────────────────────────────────

_dispatcher: Optional[EventDispatcher] = None


def build_dispatcher(session_factory: SessionFactory) -> EventDispatcher:
    dispatcher = EventDispatcher()
    dispatcher.subscribe(NotificationRecorder(session_factory))
    dispatcher.subscribe(AuditRecorder(session_factory))
    return dispatcher


def get_dispatcher() -> EventDispatcher:
    """FastAPI dependency: the process-wide dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher(get_session_factory)
    return _dispatcher
