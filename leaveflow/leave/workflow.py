"""Approval state machine.

Pure decisions over a request's current-cycle steps; the service layer
loads the rows, calls in here and writes the outcome in one transaction.

Stage order is step order: the request sits in the stage of its
lowest-order undecided step. In SEQUENTIAL mode only that step can be
decided. In PARALLEL mode every undecided step of the stage's type can be
decided, and the stage clears once all of them are approved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from leaveflow.common.constants import (
    STAGE_STATUS,
    ApprovalAction,
    LeaveStatus,
    StepType,
    WorkflowMode,
)
from leaveflow.common.exceptions import ValidationException
from leaveflow.leave.models import ApprovalStep

_STATUS_STAGE: dict[LeaveStatus, StepType] = {v: k for k, v in STAGE_STATUS.items()}

COMMENT_REQUIRED = frozenset({ApprovalAction.refused, ApprovalAction.returned})


@dataclass(frozen=True)
class Transition:
    old_status: LeaveStatus
    new_status: LeaveStatus

    @property
    def changed(self) -> bool:
        return self.old_status != self.new_status

    @property
    def releases_reservation(self) -> bool:
        return self.new_status in (
            LeaveStatus.refused,
            LeaveStatus.returned,
            LeaveStatus.cancelled,
        )

    @property
    def commits_reservation(self) -> bool:
        return self.new_status == LeaveStatus.approved


def stage_of(status: LeaveStatus) -> Optional[StepType]:
    return _STATUS_STAGE.get(status)


def _ordered(steps: Sequence[ApprovalStep]) -> list[ApprovalStep]:
    return sorted(steps, key=lambda s: (s.step_order, str(s.id)))


def _first_undecided(steps: Sequence[ApprovalStep]) -> Optional[ApprovalStep]:
    for step in _ordered(steps):
        if not step.is_decided:
            return step
    return None


def initial_status(steps: Sequence[ApprovalStep]) -> LeaveStatus:
    """Status a freshly submitted request enters."""
    first = _first_undecided(steps)
    if first is None:
        return LeaveStatus.approved
    return STAGE_STATUS[first.step_type]


def actionable_steps(
    steps: Sequence[ApprovalStep],
    status: LeaveStatus,
    mode: WorkflowMode,
) -> list[ApprovalStep]:
    """Steps that can be decided right now."""
    stage = stage_of(status)
    first = _first_undecided(steps)
    if stage is None or first is None or first.step_type != stage:
        return []
    if mode == WorkflowMode.sequential:
        return [first]
    return [
        s for s in _ordered(steps)
        if not s.is_decided and s.step_type == stage
    ]


def resolve_status(steps: Sequence[ApprovalStep]) -> LeaveStatus:
    """Overall status implied by the decisions recorded on *steps*.

    A refusal anywhere wins over a return, and both win over approvals.
    """
    actions = {s.action for s in steps}
    if ApprovalAction.refused in actions:
        return LeaveStatus.refused
    if ApprovalAction.returned in actions:
        return LeaveStatus.returned
    return initial_status(steps)


def validate_decision(
    step: ApprovalStep,
    steps: Sequence[ApprovalStep],
    status: LeaveStatus,
    mode: WorkflowMode,
    action: ApprovalAction,
    comment: Optional[str],
) -> None:
    """Reject decisions the state machine does not allow.

    Raises:
        ValidationException: step already decided, request not awaiting the
            step's stage, or a refusal/return without a comment.
    """
    if step.is_decided:
        raise ValidationException(
            {"step": ["This approval step has already been decided."]}
        )
    if stage_of(status) != step.step_type:
        raise ValidationException(
            {"status": [f"The request is {status.value}; this step cannot be decided now."]}
        )
    if step not in actionable_steps(steps, status, mode):
        raise ValidationException(
            {"step": ["Earlier approval steps must be decided first."]}
        )
    if action in COMMENT_REQUIRED and not (comment and comment.strip()):
        raise ValidationException(
            {"comment": [f"A comment is required to mark a request {action.value}."]}
        )


def apply_decision(
    step: ApprovalStep,
    steps: Sequence[ApprovalStep],
    status: LeaveStatus,
    action: ApprovalAction,
) -> Transition:
    """New overall status once *action* is recorded on *step*."""
    step.action = action
    return Transition(old_status=status, new_status=resolve_status(steps))
