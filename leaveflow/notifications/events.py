"""Domain events emitted by the leave core and the per-session outbox.

Commands stage events on the session while they run; ``run_transaction``
collects them once the transaction has committed and hands them to the
dispatcher. A rolled-back attempt simply never gets its events taken.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.constants import LeaveStatus

_OUTBOX_KEY = "leaveflow.outbox"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WorkflowTransitionEvent:
    request_id: uuid.UUID
    employee_id: uuid.UUID
    old_status: Optional[LeaveStatus]
    new_status: LeaveStatus
    actor_id: Optional[uuid.UUID]
    comment: Optional[str]
    leave_type_label: str
    start_date: date
    end_date: date
    total_days: Decimal = Decimal("0")
    # Approvers who can act once this transition is committed
    next_approver_ids: tuple[uuid.UUID, ...] = ()
    occurred_at: datetime = field(default_factory=_utcnow)

    @property
    def action(self) -> str:
        return self.new_status.value


@dataclass(frozen=True)
class BalanceMutationEvent:
    employee_id: uuid.UUID
    year: int
    balance_type: str
    # reserve | commit | release | adjust | open | carry_over
    operation: str
    delta: Decimal
    reason: str
    actor_id: Optional[uuid.UUID] = None
    request_id: Optional[uuid.UUID] = None
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ReminderEvent:
    request_id: uuid.UUID
    employee_id: uuid.UUID
    approver_ids: tuple[uuid.UUID, ...]
    status: LeaveStatus
    start_date: date
    end_date: date
    occurred_at: datetime = field(default_factory=_utcnow)


Event = Union[WorkflowTransitionEvent, BalanceMutationEvent, ReminderEvent]


def stage_event(session: AsyncSession, event: Event) -> None:
    """Queue *event* for delivery after the session's transaction commits."""
    session.info.setdefault(_OUTBOX_KEY, []).append(event)


def take_staged_events(session: AsyncSession) -> list[Event]:
    """Remove and return everything staged on *session*."""
    return session.info.pop(_OUTBOX_KEY, [])
