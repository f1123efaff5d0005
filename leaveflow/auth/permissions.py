"""Capability checks for leave actions.

A ``Capabilities`` object is resolved once per action for the acting
employee (roles, permissions and approval delegations received), and every
authorization rule of the leave core goes through ``can`` / ``require``.
"""

from __future__ import annotations

import enum
import uuid
from datetime import date
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.auth.dependencies import permissions_of
from leaveflow.common.constants import StepType, UserRole
from leaveflow.common.exceptions import AuthorizationError
from leaveflow.common.logging import get_security_logger
from leaveflow.core_hr.models import Delegation, Employee
from leaveflow.leave.models import ApprovalStep, LeaveRequest

security_logger = get_security_logger()


class Action(str, enum.Enum):
    request_leave = "request_leave"
    view_request = "view_request"
    submit_request = "submit_request"
    cancel_request = "cancel_request"
    decide_manager_step = "decide_manager_step"
    decide_hr_step = "decide_hr_step"
    read_own_balance = "read_own_balance"
    adjust_balance = "adjust_balance"


_DECIDE_ACTIONS: dict[StepType, Action] = {
    StepType.manager: Action.decide_manager_step,
    StepType.hr: Action.decide_hr_step,
}


def decide_action_for(step: ApprovalStep) -> Action:
    return _DECIDE_ACTIONS[step.step_type]


async def active_delegators(
    db: AsyncSession,
    employee_id: uuid.UUID,
    on: date,
) -> frozenset[uuid.UUID]:
    """Employees whose approvals *employee_id* may handle on *on*."""
    result = await db.execute(
        select(Delegation.from_employee_id).where(
            Delegation.to_employee_id == employee_id,
            Delegation.is_active.is_(True),
            Delegation.start_date <= on,
            Delegation.end_date >= on,
        )
    )
    return frozenset(row[0] for row in result.all())


class Capabilities:
    """What one employee may do, resolved once per action."""

    def __init__(
        self,
        actor: Employee,
        delegator_ids: frozenset[uuid.UUID] = frozenset(),
    ) -> None:
        self.actor = actor
        self.roles = actor.role_set()
        self.permissions = permissions_of(actor)
        self.delegator_ids = delegator_ids

    @classmethod
    async def resolve(
        cls,
        db: AsyncSession,
        actor: Employee,
        on: Optional[date] = None,
    ) -> Capabilities:
        delegators = await active_delegators(db, actor.id, on or date.today())
        return cls(actor, delegators)

    @property
    def is_hr(self) -> bool:
        return bool(self.roles & {UserRole.hr, UserRole.admin})

    def acts_for(self, approver_id: uuid.UUID) -> bool:
        return approver_id == self.actor.id or approver_id in self.delegator_ids

    def can(
        self,
        action: Action,
        *,
        request: Optional[LeaveRequest] = None,
        step: Optional[ApprovalStep] = None,
    ) -> bool:
        owns = request is not None and request.employee_id == self.actor.id

        if action == Action.request_leave:
            return "leave:request" in self.permissions
        if action in (Action.submit_request, Action.cancel_request):
            return owns and "leave:request" in self.permissions
        if action == Action.view_request:
            if (owns and "leave:read_own" in self.permissions) or self.is_hr:
                return True
            return request is not None and any(
                self.acts_for(s.approver_id) for s in request.approval_steps
            )
        if action in (Action.decide_manager_step, Action.decide_hr_step):
            if step is None or request is None or owns:
                return False
            return (
                step.leave_request_id == request.id
                and _DECIDE_ACTIONS[step.step_type] == action
                and self.acts_for(step.approver_id)
            )
        if action == Action.read_own_balance:
            return "balance:read_own" in self.permissions
        if action == Action.adjust_balance:
            return "balance:adjust" in self.permissions
        return False

    def require(
        self,
        action: Action,
        *,
        request: Optional[LeaveRequest] = None,
        step: Optional[ApprovalStep] = None,
    ) -> None:
        """Raise ``AuthorizationError`` unless ``can`` allows the action."""
        if self.can(action, request=request, step=step):
            return
        security_logger.warning(
            "Denied %s to employee %s (request=%s, step=%s)",
            action.value,
            self.actor.id,
            request.id if request is not None else None,
            step.id if step is not None else None,
        )
        raise AuthorizationError(
            f"You are not allowed to {action.value.replace('_', ' ')}."
        )
