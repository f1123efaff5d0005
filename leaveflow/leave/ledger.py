"""Leave balance ledger.

Balances are keyed by (employee, year, balance type) and carry four
counters: total, carried over, used, pending. Every mutation is a single
``UPDATE`` whose ``WHERE`` clause re-checks the invariant it needs, so two
concurrent writers on the same key can never both pass the check:

    remaining = total + carried_over - used - pending >= 0

A zero rowcount means the guard failed (or the row is missing) and nothing
was written. Each successful mutation stages a ``BalanceMutationEvent``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Sequence

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.constants import BalanceType
from leaveflow.common.exceptions import (
    InsufficientBalanceError,
    LedgerInconsistencyError,
    NotFoundException,
    ValidationException,
)
from leaveflow.core_hr.models import Employee, Office
from leaveflow.leave.models import LeaveBalance
from leaveflow.notifications.events import BalanceMutationEvent, stage_event

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

_REMAINING = (
    LeaveBalance.total_days
    + LeaveBalance.carried_over_days
    - LeaveBalance.used_days
    - LeaveBalance.pending_days
)


def _key(employee_id: uuid.UUID, year: int, balance_type: str):
    return and_(
        LeaveBalance.employee_id == employee_id,
        LeaveBalance.year == year,
        LeaveBalance.balance_type == balance_type,
    )


def _as_days(value) -> Decimal:
    return Decimal(str(value))


def prorate_annual(hire_date: date, year: int, annual_days: Decimal) -> Decimal:
    """Annual entitlement for *year*, prorated by hire month.

    Rounded to half-day granularity.
    """
    if hire_date.year < year:
        return _as_days(annual_days)
    if hire_date.year > year:
        return ZERO
    remaining_months = 12 - (hire_date.month - 1)
    prorated = _as_days(annual_days) / 12 * remaining_months
    return (prorated * 2).quantize(Decimal("1"), rounding=ROUND_HALF_UP) / 2


# ═════════════════════════════════════════════════════════════════════
# LeaveBalanceLedger
# ═════════════════════════════════════════════════════════════════════


class LeaveBalanceLedger:
    """Atomic operations on leave balances."""

    # ─────────────────────────────────────────────────────────────────
    # Reads
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def get(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: int,
        balance_type: str,
    ) -> Optional[LeaveBalance]:
        result = await db.execute(
            select(LeaveBalance)
            .where(_key(employee_id, year, balance_type))
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    @staticmethod
    async def list_for(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: int,
    ) -> Sequence[LeaveBalance]:
        result = await db.execute(
            select(LeaveBalance)
            .where(
                LeaveBalance.employee_id == employee_id,
                LeaveBalance.year == year,
            )
            .order_by(LeaveBalance.balance_type)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    @staticmethod
    async def _require(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: int,
        balance_type: str,
    ) -> LeaveBalance:
        balance = await LeaveBalanceLedger.get(db, employee_id, year, balance_type)
        if balance is None:
            raise NotFoundException(
                "LeaveBalance", f"{employee_id}/{year}/{balance_type}"
            )
        return balance

    # ─────────────────────────────────────────────────────────────────
    # Guarded mutations
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def _guarded_update(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: int,
        balance_type: str,
        guard,
        **values,
    ) -> bool:
        stmt = (
            update(LeaveBalance)
            .where(_key(employee_id, year, balance_type), guard)
            .values(
                version=LeaveBalance.version + 1,
                updated_at=func.now(),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    async def reserve(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: int,
        balance_type: str,
        days: Decimal,
        *,
        request_id: Optional[uuid.UUID] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeaveBalance:
        """Move *days* into ``pending`` if the remaining balance covers them.

        Raises:
            InsufficientBalanceError: remaining < days, or no balance row.
        """
        days = _as_days(days)
        ok = await LeaveBalanceLedger._guarded_update(
            db, employee_id, year, balance_type,
            _REMAINING >= days,
            pending_days=LeaveBalance.pending_days + days,
        )
        balance = await LeaveBalanceLedger.get(db, employee_id, year, balance_type)
        if not ok:
            remaining = balance.remaining_days if balance is not None else ZERO
            logger.info(
                "Reservation of %s %s days refused for employee %s (remaining %s)",
                days, balance_type, employee_id, remaining,
            )
            raise InsufficientBalanceError(balance_type, remaining, days)

        stage_event(db, BalanceMutationEvent(
            employee_id=employee_id,
            year=year,
            balance_type=balance_type,
            operation="reserve",
            delta=days,
            reason="Leave request submitted",
            actor_id=actor_id,
            request_id=request_id,
        ))
        return balance

    @staticmethod
    async def commit(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: int,
        balance_type: str,
        days: Decimal,
        *,
        request_id: Optional[uuid.UUID] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeaveBalance:
        """Convert reserved days into used days."""
        days = _as_days(days)
        ok = await LeaveBalanceLedger._guarded_update(
            db, employee_id, year, balance_type,
            LeaveBalance.pending_days >= days,
            pending_days=LeaveBalance.pending_days - days,
            used_days=LeaveBalance.used_days + days,
        )
        if not ok:
            raise LedgerInconsistencyError(
                f"Cannot commit {days} {balance_type} days for employee "
                f"{employee_id} in {year}: not reserved."
            )
        stage_event(db, BalanceMutationEvent(
            employee_id=employee_id,
            year=year,
            balance_type=balance_type,
            operation="commit",
            delta=days,
            reason="Leave request approved",
            actor_id=actor_id,
            request_id=request_id,
        ))
        return await LeaveBalanceLedger._require(db, employee_id, year, balance_type)

    @staticmethod
    async def release(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: int,
        balance_type: str,
        days: Decimal,
        *,
        reason: str = "Reservation released",
        request_id: Optional[uuid.UUID] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeaveBalance:
        """Give reserved days back without touching ``used``."""
        days = _as_days(days)
        ok = await LeaveBalanceLedger._guarded_update(
            db, employee_id, year, balance_type,
            LeaveBalance.pending_days >= days,
            pending_days=LeaveBalance.pending_days - days,
        )
        if not ok:
            raise LedgerInconsistencyError(
                f"Cannot release {days} {balance_type} days for employee "
                f"{employee_id} in {year}: not reserved."
            )
        stage_event(db, BalanceMutationEvent(
            employee_id=employee_id,
            year=year,
            balance_type=balance_type,
            operation="release",
            delta=-days,
            reason=reason,
            actor_id=actor_id,
            request_id=request_id,
        ))
        return await LeaveBalanceLedger._require(db, employee_id, year, balance_type)

    @staticmethod
    async def adjust(
        db: AsyncSession,
        employee_id: uuid.UUID,
        year: int,
        balance_type: str,
        delta: Decimal,
        reason: str,
        *,
        actor_id: Optional[uuid.UUID] = None,
    ) -> LeaveBalance:
        """Administrative correction of ``total_days``.

        A missing balance row is opened when *delta* is a grant.

        Raises:
            ValidationException: empty reason, or the result would leave a
                negative total or remaining balance.
        """
        if not reason or not reason.strip():
            raise ValidationException({"reason": ["A reason is required."]})
        delta = _as_days(delta)
        if delta == ZERO:
            raise ValidationException({"delta": ["Adjustment must not be zero."]})

        ok = await LeaveBalanceLedger._guarded_update(
            db, employee_id, year, balance_type,
            and_(_REMAINING + delta >= 0, LeaveBalance.total_days + delta >= 0),
            total_days=LeaveBalance.total_days + delta,
        )
        if not ok:
            existing = await LeaveBalanceLedger.get(db, employee_id, year, balance_type)
            if existing is not None or delta < 0:
                raise ValidationException({
                    "delta": [
                        f"Adjustment of {delta} would make the "
                        f"{balance_type} balance negative."
                    ]
                })
            db.add(LeaveBalance(
                employee_id=employee_id,
                year=year,
                balance_type=balance_type,
                total_days=delta,
            ))
            await db.flush()

        stage_event(db, BalanceMutationEvent(
            employee_id=employee_id,
            year=year,
            balance_type=balance_type,
            operation="adjust",
            delta=delta,
            reason=reason.strip(),
            actor_id=actor_id,
        ))
        logger.info(
            "Balance %s/%s/%s adjusted by %s: %s",
            employee_id, year, balance_type, delta, reason.strip(),
        )
        return await LeaveBalanceLedger._require(db, employee_id, year, balance_type)

    # ─────────────────────────────────────────────────────────────────
    # Yearly lifecycle
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    async def open_balances(
        db: AsyncSession,
        employee: Employee,
        year: int,
        *,
        office: Optional[Office] = None,
    ) -> list[LeaveBalance]:
        """Create the year's ANNUAL and OFFERED rows from office defaults.

        Rows that already exist are returned untouched.
        """
        office = office or await db.get(Office, employee.office_id)
        if office is None:
            raise NotFoundException("Office", employee.office_id)

        defaults = {
            BalanceType.annual.value: prorate_annual(
                employee.hire_date, year, office.default_annual_leave
            ),
            BalanceType.offered.value: _as_days(office.default_offered_days),
        }
        balances: list[LeaveBalance] = []
        for balance_type, total in defaults.items():
            existing = await LeaveBalanceLedger.get(db, employee.id, year, balance_type)
            if existing is not None:
                balances.append(existing)
                continue
            balance = LeaveBalance(
                employee_id=employee.id,
                year=year,
                balance_type=balance_type,
                total_days=total,
            )
            db.add(balance)
            balances.append(balance)
            stage_event(db, BalanceMutationEvent(
                employee_id=employee.id,
                year=year,
                balance_type=balance_type,
                operation="open",
                delta=total,
                reason="Yearly entitlement",
            ))
        await db.flush()
        return balances

    @staticmethod
    async def carry_over(
        db: AsyncSession,
        employee: Employee,
        from_year: int,
        *,
        office: Optional[Office] = None,
    ) -> LeaveBalance:
        """Carry the unused ANNUAL days of *from_year* into the next year.

        The carried amount is capped at ``office.max_carry_over_days`` and
        set, not added, so a repeated run leaves the target unchanged.
        """
        office = office or await db.get(Office, employee.office_id)
        if office is None:
            raise NotFoundException("Office", employee.office_id)

        annual = BalanceType.annual.value
        source = await LeaveBalanceLedger.get(db, employee.id, from_year, annual)
        unused = max(source.remaining_days, ZERO) if source is not None else ZERO
        carried = min(unused, _as_days(office.max_carry_over_days))

        target_year = from_year + 1
        await LeaveBalanceLedger.open_balances(db, employee, target_year, office=office)
        target = await LeaveBalanceLedger._require(db, employee.id, target_year, annual)
        previous = _as_days(target.carried_over_days)
        if previous == carried:
            return target

        ok = await LeaveBalanceLedger._guarded_update(
            db, employee.id, target_year, annual,
            _REMAINING - LeaveBalance.carried_over_days + carried >= 0,
            carried_over_days=carried,
        )
        if not ok:
            raise LedgerInconsistencyError(
                f"Carry-over of {carried} days would leave the {target_year} "
                f"balance of employee {employee.id} negative."
            )
        stage_event(db, BalanceMutationEvent(
            employee_id=employee.id,
            year=target_year,
            balance_type=annual,
            operation="carry_over",
            delta=carried - previous,
            reason=f"Carried over from {from_year}",
        ))
        return await LeaveBalanceLedger._require(db, employee.id, target_year, annual)
