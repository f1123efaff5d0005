"""Approval-chain construction: workflow lookup and approver resolution."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from leaveflow.common.constants import StepType, UserRole, WorkflowMode
from leaveflow.common.exceptions import ValidationException
from leaveflow.core_hr.models import Employee, Team
from leaveflow.leave.models import WorkflowConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepPlan:
    step_order: int
    step_type: StepType
    is_required: bool = True


@dataclass(frozen=True)
class WorkflowPlan:
    mode: WorkflowMode
    steps: tuple[StepPlan, ...]


DEFAULT_WORKFLOW = WorkflowPlan(
    mode=WorkflowMode.sequential,
    steps=(StepPlan(step_order=1, step_type=StepType.manager),),
)


async def find_workflow(db: AsyncSession, employee: Employee) -> WorkflowPlan:
    """Active team workflow, else active office workflow, else the default."""
    scopes = []
    if employee.team_id is not None:
        scopes.append(WorkflowConfig.team_id == employee.team_id)
    scopes.append(
        (WorkflowConfig.office_id == employee.office_id)
        & WorkflowConfig.team_id.is_(None)
    )

    for scope in scopes:
        result = await db.execute(
            select(WorkflowConfig)
            .where(scope, WorkflowConfig.is_active.is_(True))
            .options(selectinload(WorkflowConfig.steps))
            .order_by(WorkflowConfig.created_at.desc())
            .limit(1)
        )
        config = result.scalars().first()
        if config is not None and config.steps:
            return WorkflowPlan(
                mode=config.mode,
                steps=tuple(
                    StepPlan(s.step_order, s.step_type, s.is_required)
                    for s in sorted(config.steps, key=lambda s: s.step_order)
                ),
            )
    return DEFAULT_WORKFLOW


async def _manager_of(db: AsyncSession, employee: Employee) -> Optional[uuid.UUID]:
    if employee.team_id is not None:
        team = await db.get(Team, employee.team_id)
        if team is not None and team.manager_id and team.manager_id != employee.id:
            return team.manager_id
    if employee.manager_id and employee.manager_id != employee.id:
        return employee.manager_id
    return None


async def hr_approvers(db: AsyncSession, office_id: uuid.UUID) -> list[Employee]:
    """Active HR users of an office in a stable order."""
    result = await db.execute(
        select(Employee)
        .where(Employee.office_id == office_id, Employee.is_active.is_(True))
        .order_by(Employee.last_name, Employee.first_name, Employee.id)
    )
    return [e for e in result.scalars().all() if UserRole.hr in e.role_set()]


async def resolve_approvers(
    db: AsyncSession,
    employee: Employee,
    plan: WorkflowPlan,
) -> list[tuple[StepPlan, uuid.UUID]]:
    """Assign an approver to every step of *plan*.

    The k-th HR step goes to the k-th HR user, wrapping around. Optional
    steps without an eligible approver are dropped; required ones fail.

    Raises:
        ValidationException: a required step has no eligible approver.
    """
    hr_pool: Optional[Sequence[Employee]] = None
    hr_index = 0
    assigned: list[tuple[StepPlan, uuid.UUID]] = []

    for step in plan.steps:
        approver_id: Optional[uuid.UUID] = None
        if step.step_type == StepType.manager:
            approver_id = await _manager_of(db, employee)
        else:
            if hr_pool is None:
                hr_pool = [
                    e for e in await hr_approvers(db, employee.office_id)
                    if e.id != employee.id
                ]
            if hr_pool:
                approver_id = hr_pool[hr_index % len(hr_pool)].id
            hr_index += 1

        if approver_id is None:
            if step.is_required:
                raise ValidationException({
                    "workflow": [
                        f"No eligible {step.step_type.value} approver for step "
                        f"{step.step_order}."
                    ]
                })
            logger.info(
                "Skipping optional %s step %d for employee %s: no approver",
                step.step_type.value, step.step_order, employee.id,
            )
            continue
        assigned.append((step, approver_id))

    if not assigned:
        raise ValidationException({"workflow": ["No approver could be assigned."]})
    return assigned
