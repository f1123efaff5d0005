"""Default leave-type catalogue for a new office."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leaveflow.common.constants import BalanceType
from leaveflow.config import settings
from leaveflow.core_hr.models import Office
from leaveflow.leave.models import LeaveTypeConfig

DEFAULT_LEAVE_TYPES: list[dict] = [
    dict(code="ANNUAL", labels={"fr": "Congé annuel", "en": "Annual leave"},
         deducts_from_balance=True, balance_type=BalanceType.annual.value, color="#3B82F6"),
    dict(code="OFFERED", labels={"fr": "Congé offert", "en": "Offered leave"},
         deducts_from_balance=True, balance_type=BalanceType.offered.value, color="#10B981"),
    dict(code="SICK", labels={"fr": "Congé maladie", "en": "Sick leave"},
         deducts_from_balance=False, requires_attachment=True, attachment_from_day=2,
         color="#EF4444"),
    dict(code="UNPAID", labels={"fr": "Congé sans solde", "en": "Unpaid leave"},
         deducts_from_balance=False, color="#F59E0B"),
    dict(code="MATERNITY", labels={"fr": "Congé maternité", "en": "Maternity leave"},
         deducts_from_balance=False, color="#EC4899"),
    dict(code="PATERNITY", labels={"fr": "Congé paternité", "en": "Paternity leave"},
         deducts_from_balance=False, color="#8B5CF6"),
    dict(code="EXCEPTIONAL", labels={"fr": "Congé exceptionnel", "en": "Exceptional leave"},
         deducts_from_balance=True, balance_type=BalanceType.annual.value, color="#F97316"),
    dict(code="TELEWORK", labels={"fr": "Télétravail", "en": "Telework"},
         deducts_from_balance=False, color="#6366F1"),
]


async def seed_leave_types(db: AsyncSession, office: Office) -> list[LeaveTypeConfig]:
    """Insert missing default leave types for *office*; returns all of them.

    The type whose code matches ``EXCEPTIONAL_LEAVE_CODE`` is flagged
    ``balance_exempt`` whatever its nominal balance settings.
    """
    result = await db.execute(
        select(LeaveTypeConfig).where(LeaveTypeConfig.office_id == office.id)
    )
    existing = {lt.code: lt for lt in result.scalars().all()}

    for definition in DEFAULT_LEAVE_TYPES:
        if definition["code"] in existing:
            continue
        leave_type = LeaveTypeConfig(
            office_id=office.id,
            balance_exempt=definition["code"] == settings.EXCEPTIONAL_LEAVE_CODE,
            **definition,
        )
        db.add(leave_type)
        existing[leave_type.code] = leave_type

    await db.flush()
    return list(existing.values())
