"""Reminder job for approvals that have been waiting too long.

Safe to trigger concurrently: each request is claimed with a conditional
``UPDATE`` of ``last_reminder_sent_at`` that commits before any delivery
is attempted, so overlapping runs never remind the same request twice
within one interval.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from leaveflow.common.constants import PENDING_STATUSES
from leaveflow.common.transactions import run_transaction
from leaveflow.config import settings
from leaveflow.leave import workflow
from leaveflow.leave.models import LeaveRequest
from leaveflow.leave.schemas import ReminderRunOut
from leaveflow.notifications.dispatcher import NotificationDeliveryError
from leaveflow.notifications.events import ReminderEvent

logger = logging.getLogger(__name__)

Notifier = Callable[[ReminderEvent], Awaitable[None]]


async def _claim_due_requests(
    db: AsyncSession,
    now: datetime,
) -> tuple[int, list[ReminderEvent]]:
    pending_cutoff = now - timedelta(hours=settings.REMINDER_PENDING_AFTER_HOURS)
    remind_cutoff = now - timedelta(hours=settings.REMINDER_INTERVAL_HOURS)
    not_recently_reminded = or_(
        LeaveRequest.last_reminder_sent_at.is_(None),
        LeaveRequest.last_reminder_sent_at <= remind_cutoff,
    )

    result = await db.execute(
        select(LeaveRequest)
        .where(
            LeaveRequest.status.in_(list(PENDING_STATUSES)),
            LeaveRequest.submitted_at <= pending_cutoff,
            not_recently_reminded,
        )
        .options(selectinload(LeaveRequest.approval_steps))
        .order_by(LeaveRequest.submitted_at)
    )
    due = result.scalars().all()

    events: list[ReminderEvent] = []
    for request in due:
        claimed = await db.execute(
            update(LeaveRequest)
            .where(LeaveRequest.id == request.id, not_recently_reminded)
            .values(last_reminder_sent_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            # Another run got there first
            continue
        approvers = tuple(
            s.approver_id
            for s in workflow.actionable_steps(
                request.current_steps(), request.status, request.workflow_mode,
            )
        )
        if not approvers:
            continue
        events.append(ReminderEvent(
            request_id=request.id,
            employee_id=request.employee_id,
            approver_ids=approvers,
            status=request.status,
            start_date=request.start_date,
            end_date=request.end_date,
        ))
    return len(due), events


async def send_pending_reminders(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: Notifier,
    *,
    now: Optional[datetime] = None,
) -> ReminderRunOut:
    """Claim due requests, then notify their current approvers.

    Delivery failures are counted and logged; the claim stays committed.
    """
    now = now or datetime.now(timezone.utc)
    found, events = await run_transaction(session_factory, _claim_due_requests, now)

    sent = errors = 0
    for event in events:
        try:
            await notifier(event)
        except NotificationDeliveryError:
            errors += 1
            logger.exception("Reminder for leave request %s failed", event.request_id)
        else:
            sent += 1

    logger.info("Reminder run: found=%d sent=%d errors=%d", found, sent, errors)
    return ReminderRunOut(found=found, sent=sent, errors=errors)
