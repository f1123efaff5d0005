"""Leave ORM models: LeaveTypeConfig, LeaveBalance, LeaveRequest, ApprovalStep,
WorkflowConfig, WorkflowStep, ExceptionalLeaveRule."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leaveflow.common.constants import (
    ApprovalAction,
    HalfDay,
    LeaveStatus,
    StepType,
    WorkflowMode,
)
from leaveflow.database import Base

if TYPE_CHECKING:
    from leaveflow.core_hr.models import Employee


class LeaveTypeConfig(Base):
    __tablename__ = "leave_type_configs"
    __table_args__ = (
        sa.UniqueConstraint("office_id", "code", name="uq_leave_type_office_code"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    office_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("offices.id"), nullable=False
    )
    code: Mapped[str] = mapped_column(sa.String(30), nullable=False)
    labels: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    deducts_from_balance: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=True
    )
    balance_type: Mapped[Optional[str]] = mapped_column(sa.String(30))
    balance_exempt: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False
    )
    requires_attachment: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False
    )
    attachment_from_day: Mapped[Optional[int]] = mapped_column(sa.Integer)
    color: Mapped[str] = mapped_column(sa.String(7), nullable=False, default="#3B82F6")
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    # Relationships
    requests: Mapped[list[LeaveRequest]] = relationship(back_populates="leave_type")

    @property
    def touches_balance(self) -> bool:
        """Whether requests of this type reserve and consume balance days."""
        return (
            self.deducts_from_balance
            and self.balance_type is not None
            and not self.balance_exempt
        )

    def label(self, locale: str = "en") -> str:
        labels = self.labels or {}
        return labels.get(locale) or next(iter(labels.values()), self.code)

    def attachment_required_for(self, total_days: Decimal) -> bool:
        if not self.requires_attachment:
            return False
        if self.attachment_from_day is None:
            return True
        return total_days >= self.attachment_from_day


class LeaveBalance(Base):
    __tablename__ = "leave_balances"
    __table_args__ = (
        sa.UniqueConstraint(
            "employee_id", "year", "balance_type", name="uq_leave_balance"
        ),
        sa.CheckConstraint(
            "total_days >= 0 AND carried_over_days >= 0 "
            "AND used_days >= 0 AND pending_days >= 0",
            name="ck_leave_balance_non_negative",
        ),
        sa.CheckConstraint(
            "total_days + carried_over_days - used_days - pending_days >= 0",
            name="ck_leave_balance_remaining",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    balance_type: Mapped[str] = mapped_column(sa.String(30), nullable=False)
    total_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), nullable=False, default=Decimal("0")
    )
    carried_over_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), nullable=False, default=Decimal("0")
    )
    used_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), nullable=False, default=Decimal("0")
    )
    pending_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), nullable=False, default=Decimal("0")
    )
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    @property
    def remaining_days(self) -> Decimal:
        return (
            Decimal(self.total_days)
            + Decimal(self.carried_over_days)
            - Decimal(self.used_days)
            - Decimal(self.pending_days)
        )


class LeaveRequest(Base):
    __tablename__ = "leave_requests"
    __table_args__ = (
        sa.CheckConstraint("end_date >= start_date", name="ck_leave_request_range"),
        sa.Index("ix_leave_requests_employee_dates", "employee_id", "start_date", "end_date"),
        sa.Index("ix_leave_requests_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    leave_type_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_type_configs.id"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    end_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    start_half_day: Mapped[HalfDay] = mapped_column(
        sa.Enum(HalfDay, name="half_day", create_type=False),
        nullable=False,
        default=HalfDay.full_day,
    )
    end_half_day: Mapped[HalfDay] = mapped_column(
        sa.Enum(HalfDay, name="half_day", create_type=False),
        nullable=False,
        default=HalfDay.full_day,
    )
    total_days: Mapped[Decimal] = mapped_column(sa.Numeric(5, 1), nullable=False)
    status: Mapped[LeaveStatus] = mapped_column(
        sa.Enum(LeaveStatus, name="leave_status", create_type=False),
        nullable=False,
        default=LeaveStatus.draft,
    )
    reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    exceptional_reason: Mapped[Optional[str]] = mapped_column(sa.Text)
    attachment_urls: Mapped[list[str]] = mapped_column(
        JSONB, nullable=False, default=list
    )
    # Set while `total_days` sit in the ledger's pending counter
    balance_reserved: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=False
    )
    cycle: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    workflow_mode: Mapped[WorkflowMode] = mapped_column(
        sa.Enum(WorkflowMode, name="workflow_mode", create_type=False),
        nullable=False,
        default=WorkflowMode.sequential,
    )
    submitted_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    last_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    employee: Mapped[Employee] = relationship(
        foreign_keys=[employee_id]
    )
    leave_type: Mapped[LeaveTypeConfig] = relationship(back_populates="requests")
    approval_steps: Mapped[list[ApprovalStep]] = relationship(
        back_populates="leave_request",
        order_by=lambda: [ApprovalStep.cycle, ApprovalStep.step_order],
    )

    @property
    def balance_year(self) -> int:
        return self.start_date.year

    def current_steps(self) -> list[ApprovalStep]:
        """Steps of the live submission cycle; earlier cycles are closed."""
        return sorted(
            (s for s in self.approval_steps if s.cycle == self.cycle),
            key=lambda s: (s.step_order, str(s.id)),
        )


class ApprovalStep(Base):
    __tablename__ = "approval_steps"
    __table_args__ = (
        sa.Index("ix_approval_steps_request_cycle", "leave_request_id", "cycle"),
        sa.Index("ix_approval_steps_approver", "approver_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    leave_request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("leave_requests.id"), nullable=False
    )
    cycle: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    step_order: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    step_type: Mapped[StepType] = mapped_column(
        sa.Enum(StepType, name="step_type", create_type=False), nullable=False
    )
    approver_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False
    )
    action: Mapped[Optional[ApprovalAction]] = mapped_column(
        sa.Enum(ApprovalAction, name="approval_action", create_type=False)
    )
    decided_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id")
    )
    comment: Mapped[Optional[str]] = mapped_column(sa.Text)
    decided_at: Mapped[Optional[datetime]] = mapped_column(
        sa.DateTime(timezone=True)
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    # Relationships
    leave_request: Mapped[LeaveRequest] = relationship(
        back_populates="approval_steps"
    )
    approver: Mapped[Employee] = relationship(
        foreign_keys=[approver_id]
    )

    @property
    def is_decided(self) -> bool:
        return self.action is not None


class WorkflowConfig(Base):
    __tablename__ = "workflow_configs"
    __table_args__ = (
        sa.CheckConstraint(
            "office_id IS NOT NULL OR team_id IS NOT NULL",
            name="ck_workflow_scope",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    office_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("offices.id")
    )
    team_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("teams.id")
    )
    mode: Mapped[WorkflowMode] = mapped_column(
        sa.Enum(WorkflowMode, name="workflow_mode", create_type=False),
        nullable=False,
        default=WorkflowMode.sequential,
    )
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now()
    )

    steps: Mapped[list[WorkflowStep]] = relationship(
        back_populates="workflow", order_by="WorkflowStep.step_order"
    )


class WorkflowStep(Base):
    __tablename__ = "workflow_steps"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    workflow_config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("workflow_configs.id"), nullable=False
    )
    step_order: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    step_type: Mapped[StepType] = mapped_column(
        sa.Enum(StepType, name="step_type", create_type=False), nullable=False
    )
    is_required: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)

    workflow: Mapped[WorkflowConfig] = relationship(back_populates="steps")


class ExceptionalLeaveRule(Base):
    __tablename__ = "exceptional_leave_rules"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    office_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("offices.id"), nullable=False
    )
    reason: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    max_days: Mapped[Decimal] = mapped_column(sa.Numeric(5, 1), nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)
