"""Leave balance ledger tests — guarded reserve / commit / release / adjust,
yearly opening and carry-over."""

from __future__ import annotations

import asyncio
import uuid
from datetime import date
from decimal import Decimal

import pytest

from leaveflow.common.constants import BalanceType
from leaveflow.common.exceptions import (
    InsufficientBalanceError,
    LedgerInconsistencyError,
    ValidationException,
)
from leaveflow.common.transactions import run_transaction
from leaveflow.leave.ledger import LeaveBalanceLedger, prorate_annual
from leaveflow.leave.models import LeaveBalance
from leaveflow.notifications.events import BalanceMutationEvent, take_staged_events
from tests.conftest import (
    YEAR,
    TestSessionFactory,
    fetch_balance,
    seed_balance,
    seed_employee,
    seed_office,
)

ANNUAL = BalanceType.annual.value
OFFERED = BalanceType.offered.value


@pytest.fixture
async def employee(db):
    office = await seed_office(db)
    return await seed_employee(db, office)


# ═════════════════════════════════════════════════════════════════════
# Reserve / commit / release
# ═════════════════════════════════════════════════════════════════════


class TestReserve:

    async def test_reserve_moves_days_to_pending(self, db, employee):
        await seed_balance(db, employee, total=Decimal("10"))

        balance = await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.reserve,
            employee.id, YEAR, ANNUAL, Decimal("3"),
        )

        assert balance.pending_days == Decimal("3")
        assert balance.remaining_days == Decimal("7")
        assert balance.version == 2

    async def test_reserve_counts_carried_over_days(self, db, employee):
        await seed_balance(db, employee, total=Decimal("2"), carried_over=Decimal("3"))

        balance = await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.reserve,
            employee.id, YEAR, ANNUAL, Decimal("5"),
        )
        assert balance.remaining_days == Decimal("0")

    async def test_reserve_beyond_remaining_is_refused(self, db, employee):
        await seed_balance(db, employee, total=Decimal("10"), used=Decimal("8"))

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await run_transaction(
                TestSessionFactory, LeaveBalanceLedger.reserve,
                employee.id, YEAR, ANNUAL, Decimal("2.5"),
            )
        assert exc_info.value.remaining == Decimal("2")
        assert exc_info.value.status_code == 400

        balance = await fetch_balance(employee.id)
        assert balance.pending_days == Decimal("0")
        assert balance.version == 1

    async def test_reserve_without_balance_row(self, employee):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            await run_transaction(
                TestSessionFactory, LeaveBalanceLedger.reserve,
                employee.id, YEAR, OFFERED, Decimal("1"),
            )
        assert exc_info.value.remaining == Decimal("0")

    async def test_reserve_stages_an_event(self, db, employee):
        await seed_balance(db, employee, total=Decimal("10"))
        async with TestSessionFactory() as session:
            async with session.begin():
                await LeaveBalanceLedger.reserve(
                    session, employee.id, YEAR, ANNUAL, Decimal("1.5"),
                )
            events = take_staged_events(session)

        assert len(events) == 1
        assert isinstance(events[0], BalanceMutationEvent)
        assert events[0].operation == "reserve"
        assert events[0].delta == Decimal("1.5")


class TestCommitAndRelease:

    async def test_commit_converts_pending_to_used(self, db, employee):
        await seed_balance(db, employee, total=Decimal("10"), pending=Decimal("4"))

        balance = await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.commit,
            employee.id, YEAR, ANNUAL, Decimal("4"),
        )
        assert balance.pending_days == Decimal("0")
        assert balance.used_days == Decimal("4")
        assert balance.remaining_days == Decimal("6")

    async def test_release_returns_pending_days(self, db, employee):
        await seed_balance(db, employee, total=Decimal("10"), pending=Decimal("4"))

        balance = await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.release,
            employee.id, YEAR, ANNUAL, Decimal("4"),
        )
        assert balance.pending_days == Decimal("0")
        assert balance.used_days == Decimal("0")
        assert balance.remaining_days == Decimal("10")

    async def test_commit_more_than_pending_is_inconsistent(self, db, employee):
        await seed_balance(db, employee, total=Decimal("10"), pending=Decimal("1"))

        with pytest.raises(LedgerInconsistencyError):
            await run_transaction(
                TestSessionFactory, LeaveBalanceLedger.commit,
                employee.id, YEAR, ANNUAL, Decimal("2"),
            )

    async def test_second_release_is_inconsistent(self, db, employee):
        await seed_balance(db, employee, total=Decimal("10"), pending=Decimal("3"))
        await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.release,
            employee.id, YEAR, ANNUAL, Decimal("3"),
        )

        with pytest.raises(LedgerInconsistencyError):
            await run_transaction(
                TestSessionFactory, LeaveBalanceLedger.release,
                employee.id, YEAR, ANNUAL, Decimal("3"),
            )
        balance = await fetch_balance(employee.id)
        assert balance.pending_days == Decimal("0")

    async def test_reserve_then_release_restores_every_counter(self, db, employee):
        await seed_balance(
            db, employee,
            total=Decimal("12"), carried_over=Decimal("2.5"),
            used=Decimal("3"), pending=Decimal("1.5"),
        )
        before = _counters(await fetch_balance(employee.id))

        await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.reserve,
            employee.id, YEAR, ANNUAL, Decimal("4.5"),
        )
        await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.release,
            employee.id, YEAR, ANNUAL, Decimal("4.5"),
        )

        assert _counters(await fetch_balance(employee.id)) == before


def _counters(balance: LeaveBalance) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    return (
        balance.total_days,
        balance.carried_over_days,
        balance.used_days,
        balance.pending_days,
    )


class TestConcurrentReservations:

    async def _seed(self, session_factory, *, total: Decimal) -> uuid.UUID:
        employee_id = uuid.uuid4()
        async with session_factory() as session:
            async with session.begin():
                session.add(LeaveBalance(
                    employee_id=employee_id,
                    year=YEAR,
                    balance_type=ANNUAL,
                    total_days=total,
                    carried_over_days=Decimal("0"),
                    used_days=Decimal("0"),
                    pending_days=Decimal("0"),
                    version=1,
                ))
        return employee_id

    async def test_only_one_of_two_racing_reservations_succeeds(self, file_session_factory):
        employee_id = await self._seed(file_session_factory, total=Decimal("5"))

        outcomes = await asyncio.gather(
            *(
                run_transaction(
                    file_session_factory, LeaveBalanceLedger.reserve,
                    employee_id, YEAR, ANNUAL, Decimal("4"),
                )
                for _ in range(2)
            ),
            return_exceptions=True,
        )

        refused = [o for o in outcomes if isinstance(o, InsufficientBalanceError)]
        granted = [o for o in outcomes if isinstance(o, LeaveBalance)]
        assert len(refused) == 1
        assert len(granted) == 1

        async with file_session_factory() as session:
            balance = await LeaveBalanceLedger.get(session, employee_id, YEAR, ANNUAL)
        assert balance.pending_days == Decimal("4")
        assert balance.remaining_days == Decimal("1")

    async def test_racing_reservations_that_both_fit(self, file_session_factory):
        employee_id = await self._seed(file_session_factory, total=Decimal("10"))

        await asyncio.gather(
            *(
                run_transaction(
                    file_session_factory, LeaveBalanceLedger.reserve,
                    employee_id, YEAR, ANNUAL, Decimal("4"),
                )
                for _ in range(2)
            )
        )

        async with file_session_factory() as session:
            balance = await LeaveBalanceLedger.get(session, employee_id, YEAR, ANNUAL)
        assert balance.pending_days == Decimal("8")
        assert balance.version == 3


# ═════════════════════════════════════════════════════════════════════
# Adjust
# ═════════════════════════════════════════════════════════════════════


class TestAdjust:

    async def test_adjust_credits_total(self, db, employee):
        await seed_balance(db, employee, total=Decimal("10"))

        balance = await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.adjust,
            employee.id, YEAR, ANNUAL, Decimal("2.5"), "Seniority bonus",
        )
        assert balance.total_days == Decimal("12.5")

    async def test_adjust_requires_reason(self, db, employee):
        await seed_balance(db, employee)
        with pytest.raises(ValidationException) as exc_info:
            await run_transaction(
                TestSessionFactory, LeaveBalanceLedger.adjust,
                employee.id, YEAR, ANNUAL, Decimal("1"), "   ",
            )
        assert "reason" in exc_info.value.errors

    async def test_adjust_rejects_zero(self, db, employee):
        await seed_balance(db, employee)
        with pytest.raises(ValidationException):
            await run_transaction(
                TestSessionFactory, LeaveBalanceLedger.adjust,
                employee.id, YEAR, ANNUAL, Decimal("0"), "Nothing",
            )

    async def test_debit_cannot_eat_reserved_days(self, db, employee):
        await seed_balance(db, employee, total=Decimal("5"), pending=Decimal("4"))

        with pytest.raises(ValidationException):
            await run_transaction(
                TestSessionFactory, LeaveBalanceLedger.adjust,
                employee.id, YEAR, ANNUAL, Decimal("-2"), "Correction",
            )
        balance = await fetch_balance(employee.id)
        assert balance.total_days == Decimal("5")

    async def test_credit_opens_missing_row(self, employee):
        balance = await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.adjust,
            employee.id, YEAR, OFFERED, Decimal("1"), "Company day off",
        )
        assert balance.balance_type == OFFERED
        assert balance.total_days == Decimal("1")

    async def test_debit_on_missing_row_is_refused(self, employee):
        with pytest.raises(ValidationException):
            await run_transaction(
                TestSessionFactory, LeaveBalanceLedger.adjust,
                employee.id, YEAR, OFFERED, Decimal("-1"), "Correction",
            )
        assert await fetch_balance(employee.id, balance_type=OFFERED) is None


# ═════════════════════════════════════════════════════════════════════
# Yearly lifecycle
# ═════════════════════════════════════════════════════════════════════


class TestProrate:

    def test_hired_before_the_year(self):
        assert prorate_annual(date(2019, 6, 1), 2026, Decimal("25")) == Decimal("25")

    def test_hired_after_the_year(self):
        assert prorate_annual(date(2027, 1, 1), 2026, Decimal("25")) == Decimal("0")

    def test_hired_in_july(self):
        # 25 / 12 * 6 = 12.5
        assert prorate_annual(date(2026, 7, 20), 2026, Decimal("25")) == Decimal("12.5")

    def test_rounded_to_half_days(self):
        # 25 / 12 * 10 = 20.83 → 21
        assert prorate_annual(date(2026, 3, 1), 2026, Decimal("25")) == Decimal("21")


class TestYearlyBalances:

    async def test_open_balances_from_office_defaults(self, db):
        office = await seed_office(db, default_annual_leave=Decimal("24"))
        employee = await seed_employee(db, office, hire_date=date(YEAR, 4, 10))

        await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.open_balances, employee, YEAR,
        )

        annual = await fetch_balance(employee.id)
        offered = await fetch_balance(employee.id, balance_type=OFFERED)
        assert annual.total_days == Decimal("18")
        assert offered.total_days == Decimal("2")

    async def test_open_balances_is_idempotent(self, db, employee):
        await seed_balance(db, employee, total=Decimal("7"))

        await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.open_balances, employee, YEAR,
        )

        annual = await fetch_balance(employee.id)
        assert annual.total_days == Decimal("7")

    async def test_carry_over_is_capped(self, db):
        office = await seed_office(db, max_carry_over_days=Decimal("5"))
        employee = await seed_employee(db, office)
        await seed_balance(db, employee, total=Decimal("25"), used=Decimal("12"))

        await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.carry_over, employee, YEAR,
        )

        target = await fetch_balance(employee.id, year=YEAR + 1)
        assert target.carried_over_days == Decimal("5")
        assert target.total_days == Decimal("25")

    async def test_carry_over_twice_does_not_double(self, db, employee):
        await seed_balance(db, employee, total=Decimal("25"), used=Decimal("22"))

        for _ in range(2):
            await run_transaction(
                TestSessionFactory, LeaveBalanceLedger.carry_over, employee, YEAR,
            )

        target = await fetch_balance(employee.id, year=YEAR + 1)
        assert target.carried_over_days == Decimal("3")

    async def test_pending_days_are_not_carried(self, db, employee):
        await seed_balance(
            db, employee, total=Decimal("10"), used=Decimal("4"), pending=Decimal("4"),
        )

        await run_transaction(
            TestSessionFactory, LeaveBalanceLedger.carry_over, employee, YEAR,
        )

        target = await fetch_balance(employee.id, year=YEAR + 1)
        assert target.carried_over_days == Decimal("2")
