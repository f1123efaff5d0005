"""Enums and constants for leaveflow — matching PostgreSQL ENUM types."""

from __future__ import annotations

import enum


# ── Auth / Roles ────────────────────────────────────────────────────

class UserRole(str, enum.Enum):
    employee = "employee"
    manager = "manager"
    hr = "hr"
    admin = "admin"


# ── Leave ───────────────────────────────────────────────────────────

class LeaveStatus(str, enum.Enum):
    draft = "draft"
    pending_manager = "pending_manager"
    pending_hr = "pending_hr"
    approved = "approved"
    refused = "refused"
    returned = "returned"
    cancelled = "cancelled"


class HalfDay(str, enum.Enum):
    full_day = "full_day"
    morning = "morning"
    afternoon = "afternoon"


class BalanceType(str, enum.Enum):
    annual = "ANNUAL"
    offered = "OFFERED"


# ── Approval workflow ───────────────────────────────────────────────

class WorkflowMode(str, enum.Enum):
    sequential = "sequential"
    parallel = "parallel"


class StepType(str, enum.Enum):
    manager = "manager"
    hr = "hr"


class ApprovalAction(str, enum.Enum):
    approved = "approved"
    refused = "refused"
    returned = "returned"


# ── Notifications ───────────────────────────────────────────────────

class NotificationType(str, enum.Enum):
    info = "info"
    action_required = "action_required"
    approval = "approval"
    reminder = "reminder"
    alert = "alert"


# ── Status groupings ────────────────────────────────────────────────

TERMINAL_STATUSES: frozenset[LeaveStatus] = frozenset(
    {LeaveStatus.approved, LeaveStatus.refused, LeaveStatus.cancelled}
)

PENDING_STATUSES: frozenset[LeaveStatus] = frozenset(
    {LeaveStatus.pending_manager, LeaveStatus.pending_hr}
)

# Requests in these states never block a new request for the same dates
NON_BLOCKING_STATUSES: frozenset[LeaveStatus] = frozenset(
    {LeaveStatus.cancelled, LeaveStatus.refused}
)

STAGE_STATUS: dict[StepType, LeaveStatus] = {
    StepType.manager: LeaveStatus.pending_manager,
    StepType.hr: LeaveStatus.pending_hr,
}

# Office working-week codes → Python weekday numbers (0=Mon … 6=Sun)
WEEKDAY_CODES: dict[str, int] = {
    "MON": 0,
    "TUE": 1,
    "WED": 2,
    "THU": 3,
    "FRI": 4,
    "SAT": 5,
    "SUN": 6,
}

DEFAULT_WORKING_DAYS: list[str] = ["MON", "TUE", "WED", "THU", "FRI"]


# ── Role-based permissions ──────────────────────────────────────────

PERMISSIONS: dict[UserRole, list[str]] = {
    UserRole.employee: [
        "leave:request",
        "leave:read_own",
        "balance:read_own",
    ],
    UserRole.manager: [
        "leave:request",
        "leave:read_own",
        "balance:read_own",
    ],
    UserRole.hr: [
        "leave:request",
        "leave:read_own",
        "balance:read_own",
        "balance:adjust",
    ],
    UserRole.admin: [
        "leave:request",
        "leave:read_own",
        "balance:read_own",
        "balance:adjust",
    ],
}

# ── Misc constants ──────────────────────────────────────────────────

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
