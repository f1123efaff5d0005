"""Leave service layer — intake, submission, approval decisions, cancellation.

Command methods take the transaction's session first and are meant to be
run through ``run_transaction``, so that the request row, its steps, the
ledger mutation and the staged events commit together or not at all:

  - create_request   → draft, or straight into the workflow
  - submit           → draft / returned request into a fresh approval cycle
  - decide_step      → one approver decision, status recomputed from all steps
  - cancel           → requester withdrawal before a final decision
  - adjust_balance   → HR correction of a balance total

Read methods use the request-scoped session from ``get_db``.
"""

from __future__ import annotations

import calendar
import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from leaveflow.auth.permissions import Action, Capabilities, decide_action_for
from leaveflow.common.constants import (
    NON_BLOCKING_STATUSES,
    PENDING_STATUSES,
    TERMINAL_STATUSES,
    ApprovalAction,
    LeaveStatus,
)
from leaveflow.common.exceptions import (
    ForbiddenException,
    NotFoundException,
    OverlapConflictError,
    ValidationException,
)
from leaveflow.common.pagination import PaginatedResponse, PaginationParams, paginate
from leaveflow.core_hr.models import Employee, Office
from leaveflow.leave import workflow
from leaveflow.leave.approvers import find_workflow, resolve_approvers
from leaveflow.leave.ledger import LeaveBalanceLedger
from leaveflow.leave.models import (
    ApprovalStep,
    ExceptionalLeaveRule,
    LeaveRequest,
    LeaveTypeConfig,
)
from leaveflow.leave.schemas import (
    ApprovalStepOut,
    BalanceAdjustOut,
    BalanceAdjustRequest,
    CalculateDaysOut,
    CalculateDaysRequest,
    LeaveBalanceOut,
    LeaveRequestCreate,
    LeaveRequestCreated,
    LeaveRequestOut,
    PendingApprovalOut,
    StatusOut,
)
from leaveflow.leave.working_days import compute_for_office
from leaveflow.notifications.events import WorkflowTransitionEvent, stage_event

logger = logging.getLogger(__name__)

_REQUEST_SORT_KEYS = {
    "start_date": LeaveRequest.start_date,
    "created_at": LeaveRequest.created_at,
    "status": LeaveRequest.status,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _add_months(day: date, months: int) -> date:
    year, month_index = divmod(day.month - 1 + months, 12)
    year += day.year
    month = month_index + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


# ═════════════════════════════════════════════════════════════════════
# LeaveService
# ═════════════════════════════════════════════════════════════════════


class LeaveService:
    """Async leave operations: intake, workflow decisions, balances."""

    # ─────────────────────────────────────────────────────────────────
    # Loaders
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _load_employee(
        db: AsyncSession,
        employee_id: uuid.UUID,
        *,
        lock: bool = False,
    ) -> Employee:
        query = select(Employee).where(
            Employee.id == employee_id, Employee.is_active.is_(True),
        )
        if lock:
            query = query.with_for_update()
        employee = (await db.execute(query)).scalars().first()
        if employee is None:
            raise NotFoundException("Employee", employee_id)
        return employee

    @staticmethod
    async def _load_office(db: AsyncSession, office_id: uuid.UUID) -> Office:
        office = await db.get(Office, office_id)
        if office is None:
            raise NotFoundException("Office", office_id)
        return office

    @staticmethod
    async def _load_request(
        db: AsyncSession,
        request_id: uuid.UUID,
        *,
        lock: bool = False,
    ) -> LeaveRequest:
        query = (
            select(LeaveRequest)
            .where(LeaveRequest.id == request_id)
            .options(
                selectinload(LeaveRequest.approval_steps),
                selectinload(LeaveRequest.leave_type),
            )
            .execution_options(populate_existing=True)
        )
        if lock:
            query = query.with_for_update()
        request = (await db.execute(query)).scalars().first()
        if request is None:
            raise NotFoundException("LeaveRequest", request_id)
        return request

    @staticmethod
    async def _load_leave_type(
        db: AsyncSession,
        leave_type_id: uuid.UUID,
        office_id: uuid.UUID,
    ) -> LeaveTypeConfig:
        result = await db.execute(
            select(LeaveTypeConfig).where(
                LeaveTypeConfig.id == leave_type_id,
                LeaveTypeConfig.is_active.is_(True),
            )
        )
        leave_type = result.scalars().first()
        if leave_type is None:
            raise NotFoundException("LeaveType", leave_type_id)
        if leave_type.office_id != office_id:
            raise ValidationException(
                {"leave_type_id": ["This leave type is not available in your office."]}
            )
        return leave_type

    # ─────────────────────────────────────────────────────────────────
    # Intake rules
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _check_probation(employee: Employee, office: Office, today: date) -> None:
        if not office.probation_months:
            return
        probation_end = _add_months(employee.hire_date, office.probation_months)
        if today < probation_end:
            raise ForbiddenException(
                f"Leave requests are not allowed during the probation period "
                f"(ends {probation_end.isoformat()})."
            )

    @staticmethod
    async def _check_overlap(
        db: AsyncSession,
        employee_id: uuid.UUID,
        start: date,
        end: date,
        *,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        query = select(LeaveRequest.id).where(
            LeaveRequest.employee_id == employee_id,
            LeaveRequest.status.notin_(list(NON_BLOCKING_STATUSES)),
            LeaveRequest.start_date <= end,
            LeaveRequest.end_date >= start,
        )
        if exclude_id is not None:
            query = query.where(LeaveRequest.id != exclude_id)
        existing_id = (await db.execute(query.limit(1))).scalar()
        if existing_id is not None:
            raise OverlapConflictError(existing_id)

    @staticmethod
    async def _check_exceptional(
        db: AsyncSession,
        leave_type: LeaveTypeConfig,
        office: Office,
        exceptional_reason: Optional[str],
        total_days: Decimal,
    ) -> None:
        if not leave_type.balance_exempt:
            return
        reason = (exceptional_reason or "").strip()
        if not reason:
            raise ValidationException(
                {"exceptional_reason": ["A reason is required for exceptional leave."]}
            )
        result = await db.execute(
            select(ExceptionalLeaveRule).where(
                ExceptionalLeaveRule.office_id == office.id,
                ExceptionalLeaveRule.is_active.is_(True),
            )
        )
        rules = result.scalars().all()
        if not rules:
            return
        rule = next((r for r in rules if r.reason.strip().lower() == reason.lower()), None)
        if rule is None:
            raise ValidationException(
                {"exceptional_reason": ["This reason is not an allowed exceptional leave reason."]}
            )
        if total_days > rule.max_days:
            raise ValidationException(
                {"total_days": [f"{rule.reason} allows at most {rule.max_days} days."]}
            )

    @staticmethod
    def _check_submission(
        request: LeaveRequest,
        leave_type: LeaveTypeConfig,
        office: Office,
        today: date,
    ) -> None:
        if office.min_notice_days and (request.start_date - today).days < office.min_notice_days:
            raise ValidationException(
                {"start_date": [
                    f"Leave must be requested at least {office.min_notice_days} "
                    f"days in advance."
                ]}
            )
        if leave_type.attachment_required_for(request.total_days) and not request.attachment_urls:
            raise ValidationException(
                {"attachment_urls": [
                    f"{leave_type.label()} of {request.total_days} day(s) requires "
                    f"a supporting document."
                ]}
            )

    @staticmethod
    async def _count_days(
        db: AsyncSession,
        office: Office,
        request: LeaveRequest,
    ) -> Decimal:
        total = await compute_for_office(
            db, office,
            request.start_date, request.end_date,
            request.start_half_day, request.end_half_day,
        )
        if total <= 0:
            raise ValidationException(
                {"dates": ["No working days in the selected range "
                           "(all days are weekends or holidays)."]}
            )
        return total

    # ─────────────────────────────────────────────────────────────────
    # Workflow plumbing
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _start_cycle(
        db: AsyncSession,
        request: LeaveRequest,
        employee: Employee,
    ) -> list[ApprovalStep]:
        plan = await find_workflow(db, employee)
        assigned = await resolve_approvers(db, employee, plan)

        request.cycle += 1
        request.workflow_mode = plan.mode
        steps = []
        for order, (step_plan, approver_id) in enumerate(assigned, start=1):
            step = ApprovalStep(
                cycle=request.cycle,
                step_order=order,
                step_type=step_plan.step_type,
                approver_id=approver_id,
            )
            request.approval_steps.append(step)
            steps.append(step)
        return steps

    @staticmethod
    async def _settle_balance(
        db: AsyncSession,
        request: LeaveRequest,
        transition: workflow.Transition,
        actor_id: uuid.UUID,
    ) -> None:
        """Commit or release the request's reservation, exactly once."""
        if not request.balance_reserved:
            return
        leave_type = request.leave_type
        if transition.commits_reservation:
            await LeaveBalanceLedger.commit(
                db, request.employee_id, request.balance_year,
                leave_type.balance_type, request.total_days,
                request_id=request.id, actor_id=actor_id,
            )
        elif transition.releases_reservation:
            await LeaveBalanceLedger.release(
                db, request.employee_id, request.balance_year,
                leave_type.balance_type, request.total_days,
                reason=f"Leave request {transition.new_status.value}",
                request_id=request.id, actor_id=actor_id,
            )
        else:
            return
        request.balance_reserved = False

    @staticmethod
    def _emit(
        db: AsyncSession,
        request: LeaveRequest,
        old_status: Optional[LeaveStatus],
        actor_id: uuid.UUID,
        comment: Optional[str] = None,
        next_approver_ids: Sequence[uuid.UUID] = (),
    ) -> None:
        stage_event(db, WorkflowTransitionEvent(
            request_id=request.id,
            employee_id=request.employee_id,
            old_status=old_status,
            new_status=request.status,
            actor_id=actor_id,
            comment=comment,
            leave_type_label=request.leave_type.label(),
            start_date=request.start_date,
            end_date=request.end_date,
            total_days=request.total_days,
            next_approver_ids=tuple(dict.fromkeys(next_approver_ids)),
        ))
        logger.info(
            "Leave request %s: %s -> %s by %s",
            request.id,
            old_status.value if old_status else None,
            request.status.value,
            actor_id,
        )

    @staticmethod
    def _actionable_approvers(request: LeaveRequest) -> list[uuid.UUID]:
        return [
            s.approver_id
            for s in workflow.actionable_steps(
                request.current_steps(), request.status, request.workflow_mode,
            )
        ]

    @staticmethod
    async def _enter_workflow(
        db: AsyncSession,
        request: LeaveRequest,
        employee: Employee,
        office: Office,
        actor_id: uuid.UUID,
    ) -> None:
        """Reserve the days and open a new approval cycle."""
        now = _utcnow()
        leave_type = request.leave_type
        LeaveService._check_submission(request, leave_type, office, now.date())

        steps = await LeaveService._start_cycle(db, request, employee)

        if leave_type.touches_balance:
            await LeaveBalanceLedger.reserve(
                db, request.employee_id, request.balance_year,
                leave_type.balance_type, request.total_days,
                request_id=request.id, actor_id=actor_id,
            )
            request.balance_reserved = True

        old_status = request.status
        request.status = workflow.initial_status(steps)
        request.submitted_at = now
        request.last_reminder_sent_at = None
        request.updated_at = now
        await db.flush()

        LeaveService._emit(
            db, request, old_status, actor_id,
            next_approver_ids=LeaveService._actionable_approvers(request),
        )

    # ─────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def create_request(
        db: AsyncSession,
        employee_id: uuid.UUID,
        data: LeaveRequestCreate,
    ) -> LeaveRequestCreated:
        """Create a leave request, as a draft or submitted for approval.

        The employee row is locked for the rest of the transaction so two
        concurrent creations cannot both pass the overlap check.
        """
        employee = await LeaveService._load_employee(db, employee_id, lock=True)
        Capabilities(employee).require(Action.request_leave)

        office = await LeaveService._load_office(db, employee.office_id)
        leave_type = await LeaveService._load_leave_type(
            db, data.leave_type_id, office.id,
        )
        LeaveService._check_probation(employee, office, _utcnow().date())

        request = LeaveRequest(
            employee_id=employee.id,
            leave_type_id=leave_type.id,
            start_date=data.start_date,
            end_date=data.end_date,
            start_half_day=data.start_half_day,
            end_half_day=data.end_half_day,
            total_days=Decimal("0"),
            status=LeaveStatus.draft,
            reason=data.reason,
            exceptional_reason=data.exceptional_reason,
            attachment_urls=list(data.attachment_urls),
            balance_reserved=False,
            cycle=0,
            approval_steps=[],
        )
        request.total_days = await LeaveService._count_days(db, office, request)
        await LeaveService._check_exceptional(
            db, leave_type, office, data.exceptional_reason, request.total_days,
        )
        await LeaveService._check_overlap(
            db, employee.id, data.start_date, data.end_date,
        )

        db.add(request)
        request.leave_type = leave_type
        await db.flush()

        if data.as_draft:
            LeaveService._emit(db, request, None, employee.id)
        else:
            await LeaveService._enter_workflow(db, request, employee, office, employee.id)

        return LeaveRequestCreated(request_id=request.id, status=request.status)

    @staticmethod
    async def submit(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor_id: uuid.UUID,
        attachment_urls: Optional[list[str]] = None,
    ) -> StatusOut:
        """Submit a draft, or resubmit a returned request, for approval."""
        request = await LeaveService._load_request(db, request_id, lock=True)
        employee = await LeaveService._load_employee(db, request.employee_id, lock=True)
        actor = employee if actor_id == employee.id else await LeaveService._load_employee(db, actor_id)
        Capabilities(actor).require(Action.submit_request, request=request)

        if request.status not in (LeaveStatus.draft, LeaveStatus.returned):
            raise ValidationException(
                {"status": [f"Only draft or returned requests can be submitted; "
                            f"this one is {request.status.value}."]}
            )
        if attachment_urls is not None:
            request.attachment_urls = list(attachment_urls)

        office = await LeaveService._load_office(db, employee.office_id)
        LeaveService._check_probation(employee, office, _utcnow().date())

        # The holiday calendar may have changed since the draft was saved
        request.total_days = await LeaveService._count_days(db, office, request)
        await LeaveService._check_exceptional(
            db, request.leave_type, office, request.exceptional_reason, request.total_days,
        )
        await LeaveService._check_overlap(
            db, employee.id, request.start_date, request.end_date,
            exclude_id=request.id,
        )

        await LeaveService._enter_workflow(db, request, employee, office, actor_id)
        return StatusOut(request_id=request.id, status=request.status)

    @staticmethod
    async def decide_step(
        db: AsyncSession,
        request_id: uuid.UUID,
        step_id: uuid.UUID,
        actor_id: uuid.UUID,
        action: ApprovalAction,
        comment: Optional[str] = None,
    ) -> StatusOut:
        """Record one approver decision and recompute the request status.

        The request row is read FOR UPDATE and its version column is bumped
        on every decision, so two decisions racing on the same request
        serialize: the loser conflicts and is retried against the winner's
        outcome.
        """
        request = await LeaveService._load_request(db, request_id, lock=True)
        step = next((s for s in request.approval_steps if s.id == step_id), None)
        if step is None:
            raise NotFoundException("ApprovalStep", step_id)

        actor = await LeaveService._load_employee(db, actor_id)
        caps = await Capabilities.resolve(db, actor)
        caps.require(decide_action_for(step), request=request, step=step)

        if step.cycle != request.cycle:
            raise ValidationException(
                {"step": ["This approval step belongs to a closed approval cycle."]}
            )
        steps = request.current_steps()
        workflow.validate_decision(
            step, steps, request.status, request.workflow_mode, action, comment,
        )

        now = _utcnow()
        before = set(LeaveService._actionable_approvers(request))
        transition = workflow.apply_decision(step, steps, request.status, action)
        step.comment = comment.strip() if comment else None
        step.decided_by = actor.id
        step.decided_at = now

        request.status = transition.new_status
        request.updated_at = now

        await LeaveService._settle_balance(db, request, transition, actor.id)
        await db.flush()

        newly_actionable = [
            a for a in LeaveService._actionable_approvers(request)
            if a not in before or transition.changed
        ]
        LeaveService._emit(
            db, request, transition.old_status, actor.id,
            comment=step.comment,
            next_approver_ids=newly_actionable,
        )
        return StatusOut(request_id=request.id, status=request.status)

    @staticmethod
    async def cancel(
        db: AsyncSession,
        request_id: uuid.UUID,
        actor_id: uuid.UUID,
    ) -> StatusOut:
        """Requester withdrawal of a request that is not yet final."""
        request = await LeaveService._load_request(db, request_id, lock=True)
        actor = await LeaveService._load_employee(db, actor_id)
        Capabilities(actor).require(Action.cancel_request, request=request)

        if request.status in TERMINAL_STATUSES:
            raise ValidationException(
                {"status": [f"Leave request is already {request.status.value}."]}
            )

        old_status = request.status
        request.status = LeaveStatus.cancelled
        request.updated_at = _utcnow()
        await LeaveService._settle_balance(
            db, request, workflow.Transition(old_status, LeaveStatus.cancelled), actor.id,
        )
        await db.flush()

        LeaveService._emit(db, request, old_status, actor.id)
        return StatusOut(request_id=request.id, status=request.status)

    @staticmethod
    async def adjust_balance(
        db: AsyncSession,
        actor_id: uuid.UUID,
        data: BalanceAdjustRequest,
    ) -> BalanceAdjustOut:
        actor = await LeaveService._load_employee(db, actor_id)
        Capabilities(actor).require(Action.adjust_balance)
        await LeaveService._load_employee(db, data.employee_id)

        balance = await LeaveBalanceLedger.adjust(
            db, data.employee_id, data.year, data.balance_type,
            data.delta, data.reason, actor_id=actor.id,
        )
        return BalanceAdjustOut(
            employee_id=balance.employee_id,
            year=balance.year,
            balance_type=balance.balance_type,
            new_total=balance.total_days,
            remaining_days=balance.remaining_days,
        )

    # ─────────────────────────────────────────────────────────────────
    # Yearly balance lifecycle
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def open_year(db: AsyncSession, year: int) -> int:
        """Open the year's balances for every active employee hired by then."""
        employees = (await db.execute(
            select(Employee).where(
                Employee.is_active.is_(True),
                Employee.hire_date <= date(year, 12, 31),
            )
        )).scalars().all()
        for employee in employees:
            await LeaveBalanceLedger.open_balances(db, employee, year)
        return len(employees)

    @staticmethod
    async def carry_over_year(db: AsyncSession, from_year: int) -> int:
        employees = (await db.execute(
            select(Employee).where(Employee.is_active.is_(True))
        )).scalars().all()
        for employee in employees:
            await LeaveBalanceLedger.carry_over(db, employee, from_year)
        return len(employees)

    # ─────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def calculate_days(
        db: AsyncSession,
        employee: Employee,
        data: CalculateDaysRequest,
    ) -> CalculateDaysOut:
        office = await LeaveService._load_office(db, employee.office_id)
        total = await compute_for_office(
            db, office, data.start_date, data.end_date,
            data.start_half_day, data.end_half_day,
        )
        return CalculateDaysOut(
            start_date=data.start_date, end_date=data.end_date, total_days=total,
        )

    @staticmethod
    async def get_balances(
        db: AsyncSession,
        employee: Employee,
        year: int,
    ) -> list[LeaveBalanceOut]:
        Capabilities(employee).require(Action.read_own_balance)
        balances = await LeaveBalanceLedger.list_for(db, employee.id, year)
        return [LeaveBalanceOut.model_validate(b) for b in balances]

    @staticmethod
    async def get_request(
        db: AsyncSession,
        employee: Employee,
        request_id: uuid.UUID,
    ) -> LeaveRequestOut:
        request = await LeaveService._load_request(db, request_id)
        caps = await Capabilities.resolve(db, employee)
        caps.require(Action.view_request, request=request)
        return LeaveRequestOut.model_validate(request)

    @staticmethod
    async def list_mine(
        db: AsyncSession,
        employee: Employee,
        pagination: PaginationParams,
        *,
        status: Optional[LeaveStatus] = None,
    ) -> PaginatedResponse[LeaveRequestOut]:
        query = (
            select(LeaveRequest)
            .where(LeaveRequest.employee_id == employee.id)
            .order_by(LeaveRequest.start_date.desc())
        )
        if status is not None:
            query = query.where(LeaveRequest.status == status)
        rows, meta = await paginate(
            db, query, pagination,
            sortable=_REQUEST_SORT_KEYS,
            options=(
                selectinload(LeaveRequest.approval_steps),
                selectinload(LeaveRequest.leave_type),
            ),
        )
        return PaginatedResponse[LeaveRequestOut](
            data=[LeaveRequestOut.model_validate(r) for r in rows],
            meta=meta,
        )

    @staticmethod
    async def pending_approvals(
        db: AsyncSession,
        employee: Employee,
    ) -> list[PendingApprovalOut]:
        """Steps the caller, or someone they stand in for, can decide now."""
        caps = await Capabilities.resolve(db, employee)
        approver_ids = {employee.id, *caps.delegator_ids}

        open_steps = (
            select(ApprovalStep.leave_request_id)
            .join(LeaveRequest, ApprovalStep.leave_request_id == LeaveRequest.id)
            .where(
                ApprovalStep.approver_id.in_(approver_ids),
                ApprovalStep.action.is_(None),
                ApprovalStep.cycle == LeaveRequest.cycle,
            )
        )
        result = await db.execute(
            select(LeaveRequest)
            .where(
                LeaveRequest.id.in_(open_steps),
                LeaveRequest.status.in_(list(PENDING_STATUSES)),
                LeaveRequest.employee_id != employee.id,
            )
            .options(
                selectinload(LeaveRequest.approval_steps),
                selectinload(LeaveRequest.leave_type),
            )
            .order_by(LeaveRequest.submitted_at)
        )
        pending: list[PendingApprovalOut] = []
        for request in result.scalars().all():
            actionable = workflow.actionable_steps(
                request.current_steps(), request.status, request.workflow_mode,
            )
            request_out = LeaveRequestOut.model_validate(request)
            for step in actionable:
                if caps.can(decide_action_for(step), request=request, step=step):
                    pending.append(PendingApprovalOut(
                        step=ApprovalStepOut.model_validate(step),
                        request=request_out,
                    ))
        return pending
