"""Leave Pydantic v2 schemas — request / response validation.

Naming conventions:
  - *Create / *Request  → request bodies (write)
  - *Out                → response bodies (read)
  - *Brief              → compact embedded representations
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from leaveflow.common.constants import (
    ApprovalAction,
    HalfDay,
    LeaveStatus,
    StepType,
    WorkflowMode,
)

MAX_SPAN_DAYS = 365


# ═════════════════════════════════════════════════════════════════════
# Embedded / shared
# ═════════════════════════════════════════════════════════════════════


class LeaveTypeBrief(BaseModel):
    """Minimal leave type info embedded in leave responses."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    code: str
    labels: dict[str, str] = Field(default_factory=dict)
    color: str
    balance_type: Optional[str] = None


class ApprovalStepOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    cycle: int
    step_order: int
    step_type: StepType
    approver_id: uuid.UUID
    action: Optional[ApprovalAction] = None
    decided_by: Optional[uuid.UUID] = None
    comment: Optional[str] = None
    decided_at: Optional[datetime] = None


# ═════════════════════════════════════════════════════════════════════
# Day count
# ═════════════════════════════════════════════════════════════════════


class _DateRange(BaseModel):
    start_date: date
    end_date: date
    start_half_day: HalfDay = HalfDay.full_day
    end_half_day: HalfDay = HalfDay.full_day

    @model_validator(mode="after")
    def validate_span(self):
        if (self.end_date - self.start_date).days > MAX_SPAN_DAYS:
            raise ValueError(f"A leave request cannot span more than {MAX_SPAN_DAYS} days.")
        return self


class CalculateDaysRequest(_DateRange):
    """Preview the working-day count of a range for the caller's office."""


class CalculateDaysOut(BaseModel):
    start_date: date
    end_date: date
    total_days: Decimal


# ═════════════════════════════════════════════════════════════════════
# Leave Request: create and submit
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestCreate(_DateRange):
    """Payload for creating a leave request (draft or submitted)."""

    leave_type_id: uuid.UUID
    reason: Optional[str] = Field(None, max_length=1000)
    exceptional_reason: Optional[str] = Field(None, max_length=500)
    attachment_urls: list[str] = Field(default_factory=list, max_length=10)
    as_draft: bool = False


class LeaveRequestCreated(BaseModel):
    request_id: uuid.UUID
    status: LeaveStatus


class LeaveSubmitRequest(BaseModel):
    """Optional attachments added when (re)submitting a draft."""

    attachment_urls: Optional[list[str]] = Field(None, max_length=10)


# ═════════════════════════════════════════════════════════════════════
# Leave Request: responses
# ═════════════════════════════════════════════════════════════════════


class LeaveRequestOut(BaseModel):
    """Full leave request response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    employee_id: uuid.UUID
    leave_type_id: uuid.UUID
    start_date: date
    end_date: date
    start_half_day: HalfDay
    end_half_day: HalfDay
    total_days: Decimal
    status: LeaveStatus
    reason: Optional[str] = None
    exceptional_reason: Optional[str] = None
    attachment_urls: list[str] = Field(default_factory=list)
    cycle: int
    workflow_mode: WorkflowMode
    submitted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    leave_type: Optional[LeaveTypeBrief] = None
    approval_steps: list[ApprovalStepOut] = Field(default_factory=list)


# ═════════════════════════════════════════════════════════════════════
# Decisions
# ═════════════════════════════════════════════════════════════════════


class StepDecisionRequest(BaseModel):
    action: ApprovalAction
    comment: Optional[str] = Field(None, max_length=1000)


class StatusOut(BaseModel):
    request_id: uuid.UUID
    status: LeaveStatus


class PendingApprovalOut(BaseModel):
    """A step the caller can decide right now."""

    step: ApprovalStepOut
    request: LeaveRequestOut


# ═════════════════════════════════════════════════════════════════════
# Balances
# ═════════════════════════════════════════════════════════════════════


class LeaveBalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    employee_id: uuid.UUID
    year: int
    balance_type: str
    total_days: Decimal
    carried_over_days: Decimal
    used_days: Decimal
    pending_days: Decimal
    remaining_days: Decimal


class BalanceAdjustRequest(BaseModel):
    """HR balance adjustment payload."""

    employee_id: uuid.UUID
    year: int = Field(..., ge=2000, le=2100)
    balance_type: str = Field(..., min_length=1, max_length=30)
    delta: Decimal = Field(..., description="Positive to credit, negative to debit")
    reason: str = Field(..., max_length=500)

    @field_validator("delta")
    @classmethod
    def half_day_granularity(cls, v: Decimal) -> Decimal:
        if (v * 2) % 1 != 0:
            raise ValueError("delta must be a multiple of 0.5.")
        return v


class BalanceAdjustOut(BaseModel):
    employee_id: uuid.UUID
    year: int
    balance_type: str
    new_total: Decimal
    remaining_days: Decimal


# ═════════════════════════════════════════════════════════════════════
# Reminders
# ═════════════════════════════════════════════════════════════════════


class ReminderRunOut(BaseModel):
    found: int
    sent: int
    errors: int
