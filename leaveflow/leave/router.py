"""Leave router — requests, approval decisions, balances, reminder trigger.

All endpoints except the cron trigger require authentication. Commands run
in their own retried transaction; reads use the request-scoped session.
"""


import hmac
import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.exceptions import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leaveflow.auth.dependencies import get_current_user, require_permission
from leaveflow.common.constants import LeaveStatus
from leaveflow.common.pagination import PaginatedResponse, PaginationParams
from leaveflow.common.rate_limit import limiter
from leaveflow.common.transactions import run_transaction
from leaveflow.config import settings
from leaveflow.core_hr.models import Employee
from leaveflow.database import get_db, get_session_factory
from leaveflow.leave.reminders import send_pending_reminders
from leaveflow.leave.schemas import (
    BalanceAdjustOut,
    BalanceAdjustRequest,
    CalculateDaysOut,
    CalculateDaysRequest,
    LeaveBalanceOut,
    LeaveRequestCreate,
    LeaveRequestCreated,
    LeaveRequestOut,
    LeaveSubmitRequest,
    PendingApprovalOut,
    ReminderRunOut,
    StatusOut,
    StepDecisionRequest,
)
from leaveflow.leave.service import LeaveService
from leaveflow.notifications.dispatcher import (
    EventDispatcher,
    NotificationRecorder,
    get_dispatcher,
)

router = APIRouter(prefix="", tags=["leave"])


# ── POST /requests ──────────────────────────────────────────────────

@router.post(
    "/requests",
    response_model=LeaveRequestCreated,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("30/minute")
async def create_request(
    request: Request,
    body: LeaveRequestCreate,
    employee: Employee = Depends(get_current_user),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """Create a leave request; ``as_draft`` keeps it out of the workflow."""
    return await run_transaction(
        session_factory, LeaveService.create_request, employee.id, body,
        dispatcher=dispatcher,
    )


# ── POST /calculate-days ────────────────────────────────────────────

@router.post("/calculate-days", response_model=CalculateDaysOut)
async def calculate_days(
    body: CalculateDaysRequest,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Working days the range would consume in the caller's office."""
    return await LeaveService.calculate_days(db, employee, body)


# ── GET /requests/mine ──────────────────────────────────────────────
# NOTE: registered before /requests/{request_id} so "mine" is not parsed
# as a UUID.

@router.get("/requests/mine", response_model=PaginatedResponse[LeaveRequestOut])
async def my_requests(
    status_filter: Optional[LeaveStatus] = Query(None, alias="status"),
    pagination: PaginationParams = Depends(),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.list_mine(db, employee, pagination, status=status_filter)


# ── GET /requests/{id} ──────────────────────────────────────────────

@router.get("/requests/{request_id}", response_model=LeaveRequestOut)
async def get_request(
    request_id: uuid.UUID,
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Request detail with its approval steps (owner and approvers only)."""
    return await LeaveService.get_request(db, employee, request_id)


# ── POST /requests/{id}/submit ──────────────────────────────────────

@router.post("/requests/{request_id}/submit", response_model=StatusOut)
async def submit_request(
    request_id: uuid.UUID,
    body: Optional[LeaveSubmitRequest] = None,
    employee: Employee = Depends(get_current_user),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """Submit a draft, or resubmit a returned request."""
    return await run_transaction(
        session_factory, LeaveService.submit, request_id, employee.id,
        body.attachment_urls if body is not None else None,
        dispatcher=dispatcher,
    )


# ── POST /requests/{id}/cancel ──────────────────────────────────────

@router.post("/requests/{request_id}/cancel", response_model=StatusOut)
async def cancel_request(
    request_id: uuid.UUID,
    employee: Employee = Depends(get_current_user),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    return await run_transaction(
        session_factory, LeaveService.cancel, request_id, employee.id,
        dispatcher=dispatcher,
    )


# ── POST /requests/{id}/steps/{step_id}/decide ──────────────────────

@router.post(
    "/requests/{request_id}/steps/{step_id}/decide",
    response_model=StatusOut,
)
async def decide_step(
    request_id: uuid.UUID,
    step_id: uuid.UUID,
    body: StepDecisionRequest,
    employee: Employee = Depends(get_current_user),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """Approve, refuse or return one approval step."""
    return await run_transaction(
        session_factory, LeaveService.decide_step,
        request_id, step_id, employee.id, body.action, body.comment,
        dispatcher=dispatcher,
    )


# ── GET /approvals/pending ──────────────────────────────────────────

@router.get("/approvals/pending", response_model=list[PendingApprovalOut])
async def pending_approvals(
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Steps the caller (or a colleague they stand in for) can decide now."""
    return await LeaveService.pending_approvals(db, employee)


# ── GET /balances ───────────────────────────────────────────────────

@router.get("/balances", response_model=list[LeaveBalanceOut])
async def my_balances(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await LeaveService.get_balances(db, employee, year or date.today().year)


# ── POST /balances/adjust ───────────────────────────────────────────

@router.post("/balances/adjust", response_model=BalanceAdjustOut)
@limiter.limit("30/minute")
async def adjust_balance(
    request: Request,
    body: BalanceAdjustRequest,
    employee: Employee = Depends(require_permission("balance:adjust")),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
):
    """HR correction of a balance total. A reason is mandatory."""
    return await run_transaction(
        session_factory, LeaveService.adjust_balance, employee.id, body,
        dispatcher=dispatcher,
    )


# ── POST /cron/reminders ────────────────────────────────────────────

@router.post("/cron/reminders", response_model=ReminderRunOut)
async def run_reminders(
    x_cron_secret: Optional[str] = Header(None),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Remind approvers of requests waiting too long. Idempotent per interval."""
    expected = settings.CRON_SECRET
    if not expected or not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid cron secret.")
    notifier = NotificationRecorder(lambda: session_factory)
    return await send_pending_reminders(session_factory, notifier)
