"""Core HR ORM models: Office, Team, Employee, PublicHoliday, Delegation.

These are maintained by the organization admin screens; the leave core
only reads them (working week, holiday calendar, reporting lines, roles
and approval delegations).
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leaveflow.common.constants import DEFAULT_WORKING_DAYS, UserRole
from leaveflow.database import Base


# ═════════════════════════════════════════════════════════════════════
# Office
# ═════════════════════════════════════════════════════════════════════


class Office(Base):
    """Office / work-site with its own working week and leave defaults."""

    __tablename__ = "offices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(100), unique=True, nullable=False)
    country: Mapped[Optional[str]] = mapped_column(sa.String(100))
    city: Mapped[Optional[str]] = mapped_column(sa.String(100))
    working_days: Mapped[list[str]] = mapped_column(
        JSONB, nullable=False, default=lambda: list(DEFAULT_WORKING_DAYS),
    )
    default_annual_leave: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), nullable=False, default=Decimal("25"),
    )
    default_offered_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), nullable=False, default=Decimal("0"),
    )
    min_notice_days: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, default=0,
    )
    max_carry_over_days: Mapped[Decimal] = mapped_column(
        sa.Numeric(5, 1), nullable=False, default=Decimal("10"),
    )
    carry_over_deadline: Mapped[str] = mapped_column(
        sa.String(5), nullable=False, default="03-31",
    )
    probation_months: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, default=3,
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )

    # ── Relationships ───────────────────────────────────────────────
    employees: Mapped[list[Employee]] = relationship(back_populates="office")
    holidays: Mapped[list[PublicHoliday]] = relationship(back_populates="office")

    def __repr__(self) -> str:
        return f"<Office {self.name!r}>"


# ═════════════════════════════════════════════════════════════════════
# Team
# ═════════════════════════════════════════════════════════════════════


class Team(Base):
    """Team inside an office; its manager approves MANAGER steps."""

    __tablename__ = "teams"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(sa.String(150), nullable=False)
    office_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("offices.id"), nullable=False,
    )
    manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        sa.ForeignKey("employees.id", name="fk_team_manager", use_alter=True),
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )

    # ── Relationships ───────────────────────────────────────────────
    members: Mapped[list[Employee]] = relationship(
        back_populates="team", foreign_keys="Employee.team_id",
    )
    manager: Mapped[Optional[Employee]] = relationship(foreign_keys=[manager_id])

    def __repr__(self) -> str:
        return f"<Team {self.name!r}>"


# ═════════════════════════════════════════════════════════════════════
# Employee
# ═════════════════════════════════════════════════════════════════════


class Employee(Base):
    """An employee; also the identity of approvers and HR users."""

    __tablename__ = "employees"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    email: Mapped[str] = mapped_column(sa.String(200), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(sa.String(100), nullable=False)
    roles: Mapped[list[str]] = mapped_column(
        JSONB, nullable=False, default=lambda: [UserRole.employee.value],
    )
    office_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("offices.id"), nullable=False,
    )
    team_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("teams.id"),
    )
    manager_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"),
    )
    hire_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )

    # ── Relationships ───────────────────────────────────────────────
    office: Mapped[Office] = relationship(back_populates="employees")
    team: Mapped[Optional[Team]] = relationship(
        back_populates="members", foreign_keys=[team_id],
    )
    manager: Mapped[Optional[Employee]] = relationship(
        remote_side=[id], foreign_keys=[manager_id],
    )

    def role_set(self) -> set[UserRole]:
        """Known roles of this employee; unknown strings are ignored."""
        result: set[UserRole] = set()
        for raw in self.roles or []:
            try:
                result.add(UserRole(str(raw).lower()))
            except ValueError:
                continue
        return result

    def __repr__(self) -> str:
        return f"<Employee {self.email!r}>"


# ═════════════════════════════════════════════════════════════════════
# Holiday calendar
# ═════════════════════════════════════════════════════════════════════


class PublicHoliday(Base):
    """A non-working calendar date for one office."""

    __tablename__ = "public_holidays"
    __table_args__ = (
        sa.UniqueConstraint("office_id", "date", name="uq_holiday_office_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    office_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("offices.id"), nullable=False,
    )
    date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    name: Mapped[str] = mapped_column(sa.String(150), nullable=False)

    office: Mapped[Office] = relationship(back_populates="holidays")


# ═════════════════════════════════════════════════════════════════════
# Delegation
# ═════════════════════════════════════════════════════════════════════


class Delegation(Base):
    """Temporary hand-over of a manager's approvals to a colleague."""

    __tablename__ = "delegations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    from_employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False,
    )
    to_employee_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"), nullable=False,
    )
    start_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    end_date: Mapped[date] = mapped_column(sa.Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        sa.Boolean, nullable=False, default=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(),
    )
