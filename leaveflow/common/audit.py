"""Audit trail for leave requests and balance ledger keys.

Rows are written by the audit subscriber after the originating command has
committed, one row per workflow transition or balance mutation.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from leaveflow.database import Base
from leaveflow.notifications.events import (
    BalanceMutationEvent,
    Event,
    WorkflowTransitionEvent,
)


class AuditTrail(Base):
    __tablename__ = "audit_trail"
    __table_args__ = (
        sa.Index("ix_audit_trail_entity", "entity_type", "entity_id"),
        sa.Index("ix_audit_trail_actor_id", "actor_id"),
        sa.Index("ix_audit_trail_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    # Null for system jobs (year opening, carry-over)
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), sa.ForeignKey("employees.id"),
    )
    # A leave status value, or balance_<operation>
    action: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    old_values: Mapped[Optional[dict]] = mapped_column(JSONB)
    new_values: Mapped[Optional[dict]] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(),
    )

    def __repr__(self) -> str:
        return f"<AuditTrail {self.action} {self.entity_type}/{self.entity_id}>"


def balance_key_id(employee_id: uuid.UUID, year: int, balance_type: str) -> uuid.UUID:
    """Stable entity id for one (employee, year, balance type) ledger key."""
    return uuid.uuid5(employee_id, f"{year}:{balance_type}")


def audit_entry_for(event: Event) -> Optional[AuditTrail]:
    """Build the audit row recording *event*, or None if it is not audited."""
    if isinstance(event, WorkflowTransitionEvent):
        return AuditTrail(
            actor_id=event.actor_id,
            action=event.action,
            entity_type="leave_request",
            entity_id=event.request_id,
            old_values={
                "status": event.old_status.value if event.old_status else None,
            },
            new_values={"status": event.new_status.value, "comment": event.comment},
        )
    if isinstance(event, BalanceMutationEvent):
        return AuditTrail(
            actor_id=event.actor_id,
            action=f"balance_{event.operation}",
            entity_type="leave_balance",
            entity_id=balance_key_id(event.employee_id, event.year, event.balance_type),
            new_values={
                "employee_id": str(event.employee_id),
                "year": event.year,
                "balance_type": event.balance_type,
                "delta": str(event.delta),
                "reason": event.reason,
                "request_id": str(event.request_id) if event.request_id else None,
            },
        )
    return None
