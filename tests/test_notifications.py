"""Event dispatch tests — post-commit delivery, failure isolation, notification
and audit subscribers."""

from __future__ import annotations

import logging
import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from leaveflow.common.audit import AuditTrail
from leaveflow.common.constants import LeaveStatus, NotificationType
from leaveflow.common.exceptions import OverlapConflictError
from leaveflow.common.transactions import run_transaction
from leaveflow.leave.schemas import LeaveRequestCreate
from leaveflow.leave.service import LeaveService
from leaveflow.notifications.dispatcher import (
    AuditRecorder,
    AuditWriteError,
    EventDispatcher,
    NotificationDeliveryError,
    NotificationRecorder,
)
from leaveflow.notifications.events import (
    BalanceMutationEvent,
    WorkflowTransitionEvent,
)
from leaveflow.notifications.models import Notification
from tests.conftest import MONDAY, Org, TestSessionFactory


def _transition(**overrides) -> WorkflowTransitionEvent:
    data = dict(
        request_id=uuid.uuid4(),
        employee_id=uuid.uuid4(),
        old_status=LeaveStatus.pending_manager,
        new_status=LeaveStatus.approved,
        actor_id=uuid.uuid4(),
        comment=None,
        leave_type_label="Annual leave",
        start_date=date(2030, 1, 7),
        end_date=date(2030, 1, 11),
        total_days=Decimal("5"),
    )
    data.update(overrides)
    return WorkflowTransitionEvent(**data)


async def _notifications() -> list[Notification]:
    async with TestSessionFactory() as session:
        return list((await session.execute(select(Notification))).scalars().all())


async def _audit_rows() -> list[AuditTrail]:
    async with TestSessionFactory() as session:
        return list((await session.execute(select(AuditTrail))).scalars().all())


# ═════════════════════════════════════════════════════════════════════
# Dispatcher
# ═════════════════════════════════════════════════════════════════════


class TestEventDispatcher:

    async def test_failures_are_logged_not_raised(self, caplog):
        delivered = []

        async def flaky_notifier(event):
            raise NotificationDeliveryError("mail server unreachable")

        async def flaky_audit(event):
            raise AuditWriteError("disk full")

        async def buggy(event):
            raise RuntimeError("boom")

        async def healthy(event):
            delivered.append(event)

        dispatcher = EventDispatcher()
        for subscriber in (flaky_notifier, flaky_audit, buggy, healthy):
            dispatcher.subscribe(subscriber)

        event = _transition()
        with caplog.at_level(logging.ERROR, logger="leaveflow.notifications.dispatcher"):
            dispatcher.dispatch([event])
            await dispatcher.drain()

        assert delivered == [event]
        messages = [r.getMessage() for r in caplog.records]
        assert any("flaky_notifier" in m for m in messages)
        assert any("flaky_audit" in m for m in messages)
        assert any("Unexpected error" in m for m in messages)

    async def test_drain_without_deliveries(self):
        await EventDispatcher().drain()


# ═════════════════════════════════════════════════════════════════════
# Subscribers
# ═════════════════════════════════════════════════════════════════════


class TestNotificationRecorder:

    async def test_approval_notifies_requester(self, org: Org):
        recorder = NotificationRecorder(lambda: TestSessionFactory)

        await recorder(_transition(employee_id=org.employee.id))

        rows = await _notifications()
        assert len(rows) == 1
        assert rows[0].recipient_id == org.employee.id
        assert rows[0].type == NotificationType.approval

    async def test_refusal_carries_comment(self, org: Org):
        recorder = NotificationRecorder(lambda: TestSessionFactory)

        await recorder(_transition(
            employee_id=org.employee.id,
            new_status=LeaveStatus.refused,
            comment="Busy sprint",
        ))

        rows = await _notifications()
        assert rows[0].type == NotificationType.alert
        assert "Busy sprint" in rows[0].message

    async def test_next_approvers_get_action_required(self, org: Org):
        recorder = NotificationRecorder(lambda: TestSessionFactory)

        await recorder(_transition(
            employee_id=org.employee.id,
            old_status=None,
            new_status=LeaveStatus.pending_hr,
            next_approver_ids=(org.hr_one.id, org.hr_two.id),
        ))

        rows = await _notifications()
        assert sorted(str(r.recipient_id) for r in rows) == sorted(
            [str(org.hr_one.id), str(org.hr_two.id)]
        )
        assert {r.type for r in rows} == {NotificationType.action_required}

    async def test_storage_failure_is_wrapped(self):
        def broken_factory():
            raise RuntimeError("connection refused")

        recorder = NotificationRecorder(lambda: broken_factory)
        with pytest.raises(NotificationDeliveryError):
            await recorder(_transition())


class TestAuditRecorder:

    async def test_transition_and_balance_entries(self, org: Org):
        recorder = AuditRecorder(lambda: TestSessionFactory)
        transition = _transition(employee_id=org.employee.id, actor_id=org.manager.id)

        await recorder(transition)
        await recorder(BalanceMutationEvent(
            employee_id=org.employee.id,
            year=2030,
            balance_type="ANNUAL",
            operation="commit",
            delta=Decimal("5"),
            reason="Leave request approved",
            actor_id=org.manager.id,
            request_id=transition.request_id,
        ))

        rows = sorted(await _audit_rows(), key=lambda r: r.entity_type)
        assert [r.entity_type for r in rows] == ["leave_balance", "leave_request"]
        balance_row, request_row = rows
        assert balance_row.action == "balance_commit"
        assert balance_row.new_values["delta"] == "5"
        assert request_row.action == "approved"
        assert request_row.old_values == {"status": "pending_manager"}

    async def test_storage_failure_is_wrapped(self):
        def broken_factory():
            raise RuntimeError("connection refused")

        recorder = AuditRecorder(lambda: broken_factory)
        with pytest.raises(AuditWriteError):
            await recorder(_transition())


# ═════════════════════════════════════════════════════════════════════
# End to end through run_transaction
# ═════════════════════════════════════════════════════════════════════


class TestPostCommitDelivery:

    async def test_committed_command_notifies_and_audits(self, org: Org, dispatcher):
        await run_transaction(
            TestSessionFactory, LeaveService.create_request, org.employee.id,
            LeaveRequestCreate(
                leave_type_id=org.annual.id, start_date=MONDAY, end_date=MONDAY,
            ),
            dispatcher=dispatcher,
        )
        await dispatcher.drain()

        rows = await _notifications()
        assert [(r.recipient_id, r.type) for r in rows] == [
            (org.manager.id, NotificationType.action_required)
        ]
        actions = sorted(r.action for r in await _audit_rows())
        assert actions == ["balance_reserve", "pending_manager"]

    async def test_failed_command_dispatches_nothing(self, org: Org, dispatcher):
        payload = LeaveRequestCreate(
            leave_type_id=org.annual.id, start_date=MONDAY, end_date=MONDAY,
        )
        await run_transaction(
            TestSessionFactory, LeaveService.create_request, org.employee.id, payload,
        )

        with pytest.raises(OverlapConflictError):
            await run_transaction(
                TestSessionFactory, LeaveService.create_request, org.employee.id, payload,
                dispatcher=dispatcher,
            )
        await dispatcher.drain()

        assert await _notifications() == []
        assert await _audit_rows() == []
