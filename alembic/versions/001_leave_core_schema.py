"""001 – Leave core schema: organization, leave types, workflows, balances,
requests, approval steps, notifications, audit trail.

Revision ID: 001_leave_core_schema
Revises:
Create Date: 2026-10-16 09:00:00.000000+00:00
"""

from alembic import op
import sqlalchemy as sa

# Revision identifiers
revision = "001_leave_core_schema"
down_revision = None
branch_labels = None
depends_on = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ENUM_TYPES: list[tuple[str, list[str]]] = [
    (
        "leave_status",
        [
            "draft",
            "pending_manager",
            "pending_hr",
            "approved",
            "refused",
            "returned",
            "cancelled",
        ],
    ),
    ("half_day", ["full_day", "morning", "afternoon"]),
    ("workflow_mode", ["sequential", "parallel"]),
    ("step_type", ["manager", "hr"]),
    ("approval_action", ["approved", "refused", "returned"]),
    (
        "notification_type",
        ["info", "action_required", "approval", "reminder", "alert"],
    ),
]


def _create_enum(name: str, values: list[str]) -> None:
    vals = ", ".join(f"'{v}'" for v in values)
    op.execute(f"CREATE TYPE {name} AS ENUM ({vals})")


def _drop_enum(name: str) -> None:
    op.execute(f"DROP TYPE IF EXISTS {name}")


# ---------------------------------------------------------------------------
# UPGRADE
# ---------------------------------------------------------------------------


def upgrade() -> None:
    # ── Extensions ────────────────────────────────────────────────────────
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # ── Enum types ────────────────────────────────────────────────────────
    for name, values in ENUM_TYPES:
        _create_enum(name, values)

    # ── 1. offices ────────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE offices (
            id                   UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name                 VARCHAR(100) NOT NULL UNIQUE,
            country              VARCHAR(100),
            city                 VARCHAR(100),
            working_days         JSONB NOT NULL
                                 DEFAULT '["MON","TUE","WED","THU","FRI"]',
            default_annual_leave NUMERIC(5,1) NOT NULL DEFAULT 25,
            default_offered_days NUMERIC(5,1) NOT NULL DEFAULT 0,
            min_notice_days      INTEGER NOT NULL DEFAULT 0,
            max_carry_over_days  NUMERIC(5,1) NOT NULL DEFAULT 10,
            carry_over_deadline  VARCHAR(5) NOT NULL DEFAULT '03-31',
            probation_months     INTEGER NOT NULL DEFAULT 3,
            created_at           TIMESTAMPTZ DEFAULT NOW(),
            updated_at           TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 2. teams ──────────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE teams (
            id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name        VARCHAR(150) NOT NULL,
            office_id   UUID NOT NULL REFERENCES offices(id),
            manager_id  UUID,  -- FK added after employees table
            created_at  TIMESTAMPTZ DEFAULT NOW()
        )
    """)

    # ── 3. employees ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE employees (
            id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email       VARCHAR(200) NOT NULL UNIQUE,
            first_name  VARCHAR(100) NOT NULL,
            last_name   VARCHAR(100) NOT NULL,
            roles       JSONB NOT NULL DEFAULT '["employee"]',
            office_id   UUID NOT NULL REFERENCES offices(id),
            team_id     UUID REFERENCES teams(id),
            manager_id  UUID REFERENCES employees(id),
            hire_date   DATE NOT NULL,
            is_active   BOOLEAN NOT NULL DEFAULT TRUE,
            created_at  TIMESTAMPTZ DEFAULT NOW(),
            updated_at  TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX idx_employees_office ON employees(office_id)")
    op.execute("""
        ALTER TABLE teams
            ADD CONSTRAINT fk_team_manager
            FOREIGN KEY (manager_id) REFERENCES employees(id)
    """)

    # ── 4. public_holidays ────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE public_holidays (
            id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            office_id   UUID NOT NULL REFERENCES offices(id),
            date        DATE NOT NULL,
            name        VARCHAR(150) NOT NULL,
            CONSTRAINT uq_holiday_office_date UNIQUE (office_id, date)
        )
    """)

    # ── 5. delegations ────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE delegations (
            id                UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            from_employee_id  UUID NOT NULL REFERENCES employees(id),
            to_employee_id    UUID NOT NULL REFERENCES employees(id),
            start_date        DATE NOT NULL,
            end_date          DATE NOT NULL,
            is_active         BOOLEAN NOT NULL DEFAULT TRUE,
            created_at        TIMESTAMPTZ DEFAULT NOW(),
            CHECK (end_date >= start_date)
        )
    """)
    op.execute(
        "CREATE INDEX idx_delegations_to ON delegations(to_employee_id, start_date, end_date)"
    )

    # ── 6. leave_type_configs ─────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_type_configs (
            id                   UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            office_id            UUID NOT NULL REFERENCES offices(id),
            code                 VARCHAR(30) NOT NULL,
            labels               JSONB NOT NULL DEFAULT '{}',
            deducts_from_balance BOOLEAN NOT NULL DEFAULT TRUE,
            balance_type         VARCHAR(30),
            balance_exempt       BOOLEAN NOT NULL DEFAULT FALSE,
            requires_attachment  BOOLEAN NOT NULL DEFAULT FALSE,
            attachment_from_day  INTEGER,
            color                VARCHAR(7) NOT NULL DEFAULT '#3B82F6',
            is_active            BOOLEAN NOT NULL DEFAULT TRUE,
            created_at           TIMESTAMPTZ DEFAULT NOW(),
            updated_at           TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_leave_type_office_code UNIQUE (office_id, code)
        )
    """)

    # ── 7. exceptional_leave_rules ────────────────────────────────────────
    op.execute("""
        CREATE TABLE exceptional_leave_rules (
            id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            office_id   UUID NOT NULL REFERENCES offices(id),
            reason      VARCHAR(200) NOT NULL,
            max_days    NUMERIC(5,1) NOT NULL,
            is_active   BOOLEAN NOT NULL DEFAULT TRUE
        )
    """)

    # ── 8. workflow_configs / workflow_steps ──────────────────────────────
    op.execute("""
        CREATE TABLE workflow_configs (
            id          UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            office_id   UUID REFERENCES offices(id),
            team_id     UUID REFERENCES teams(id),
            mode        workflow_mode NOT NULL DEFAULT 'sequential',
            is_active   BOOLEAN NOT NULL DEFAULT TRUE,
            created_at  TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_workflow_scope
                CHECK (office_id IS NOT NULL OR team_id IS NOT NULL)
        )
    """)
    op.execute("""
        CREATE TABLE workflow_steps (
            id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            workflow_config_id  UUID NOT NULL REFERENCES workflow_configs(id),
            step_order          INTEGER NOT NULL,
            step_type           step_type NOT NULL,
            is_required         BOOLEAN NOT NULL DEFAULT TRUE
        )
    """)

    # ── 9. leave_balances ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_balances (
            id                 UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            employee_id        UUID NOT NULL REFERENCES employees(id),
            year               INTEGER NOT NULL,
            balance_type       VARCHAR(30) NOT NULL,
            total_days         NUMERIC(5,1) NOT NULL DEFAULT 0,
            carried_over_days  NUMERIC(5,1) NOT NULL DEFAULT 0,
            used_days          NUMERIC(5,1) NOT NULL DEFAULT 0,
            pending_days       NUMERIC(5,1) NOT NULL DEFAULT 0,
            version            INTEGER NOT NULL DEFAULT 1,
            created_at         TIMESTAMPTZ DEFAULT NOW(),
            updated_at         TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT uq_leave_balance UNIQUE (employee_id, year, balance_type),
            CONSTRAINT ck_leave_balance_non_negative CHECK (
                total_days >= 0 AND carried_over_days >= 0
                AND used_days >= 0 AND pending_days >= 0
            ),
            CONSTRAINT ck_leave_balance_remaining CHECK (
                total_days + carried_over_days - used_days - pending_days >= 0
            )
        )
    """)

    # ── 10. leave_requests ────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE leave_requests (
            id                     UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            employee_id            UUID NOT NULL REFERENCES employees(id),
            leave_type_id          UUID NOT NULL REFERENCES leave_type_configs(id),
            start_date             DATE NOT NULL,
            end_date               DATE NOT NULL,
            start_half_day         half_day NOT NULL DEFAULT 'full_day',
            end_half_day           half_day NOT NULL DEFAULT 'full_day',
            total_days             NUMERIC(5,1) NOT NULL,
            status                 leave_status NOT NULL DEFAULT 'draft',
            reason                 TEXT,
            exceptional_reason     TEXT,
            attachment_urls        JSONB NOT NULL DEFAULT '[]',
            balance_reserved       BOOLEAN NOT NULL DEFAULT FALSE,
            cycle                  INTEGER NOT NULL DEFAULT 0,
            workflow_mode          workflow_mode NOT NULL DEFAULT 'sequential',
            submitted_at           TIMESTAMPTZ,
            last_reminder_sent_at  TIMESTAMPTZ,
            version                INTEGER NOT NULL,
            created_at             TIMESTAMPTZ DEFAULT NOW(),
            updated_at             TIMESTAMPTZ DEFAULT NOW(),
            CONSTRAINT ck_leave_request_range CHECK (end_date >= start_date)
        )
    """)
    op.execute("""
        CREATE INDEX ix_leave_requests_employee_dates
            ON leave_requests(employee_id, start_date, end_date)
    """)
    op.execute("CREATE INDEX ix_leave_requests_status ON leave_requests(status)")

    # ── 11. approval_steps ────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE approval_steps (
            id                UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            leave_request_id  UUID NOT NULL REFERENCES leave_requests(id),
            cycle             INTEGER NOT NULL DEFAULT 1,
            step_order        INTEGER NOT NULL,
            step_type         step_type NOT NULL,
            approver_id       UUID NOT NULL REFERENCES employees(id),
            action            approval_action,
            decided_by        UUID REFERENCES employees(id),
            comment           TEXT,
            decided_at        TIMESTAMPTZ,
            created_at        TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX ix_approval_steps_request_cycle
            ON approval_steps(leave_request_id, cycle)
    """)
    op.execute("CREATE INDEX ix_approval_steps_approver ON approval_steps(approver_id)")

    # ── 12. notifications ─────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE notifications (
            id           UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            recipient_id UUID NOT NULL REFERENCES employees(id) ON DELETE CASCADE,
            type         notification_type NOT NULL DEFAULT 'info',
            title        VARCHAR(200) NOT NULL,
            message      TEXT NOT NULL,
            action_url   VARCHAR(500),
            entity_type  VARCHAR(50),
            entity_id    UUID,
            is_read      BOOLEAN NOT NULL DEFAULT FALSE,
            read_at      TIMESTAMPTZ,
            created_at   TIMESTAMPTZ DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE INDEX ix_notifications_recipient_unread
            ON notifications(recipient_id, is_read)
    """)

    # ── 13. audit_trail ───────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE audit_trail (
            id           UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            actor_id     UUID REFERENCES employees(id),
            action       VARCHAR(50) NOT NULL,
            entity_type  VARCHAR(50) NOT NULL,
            entity_id    UUID NOT NULL,
            old_values   JSONB,
            new_values   JSONB,
            created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("CREATE INDEX ix_audit_trail_actor_id ON audit_trail(actor_id)")
    op.execute(
        "CREATE INDEX ix_audit_trail_entity ON audit_trail(entity_type, entity_id)"
    )
    op.execute("CREATE INDEX ix_audit_trail_created_at ON audit_trail(created_at)")


# ---------------------------------------------------------------------------
# DOWNGRADE
# ---------------------------------------------------------------------------


def downgrade() -> None:
    tables = [
        "audit_trail",
        "notifications",
        "approval_steps",
        "leave_requests",
        "leave_balances",
        "workflow_steps",
        "workflow_configs",
        "exceptional_leave_rules",
        "leave_type_configs",
        "delegations",
        "public_holidays",
    ]
    for t in tables:
        op.execute(f"DROP TABLE IF EXISTS {t} CASCADE")

    # Drop deferred FK before dropping employees / teams
    op.execute("ALTER TABLE teams DROP CONSTRAINT IF EXISTS fk_team_manager")
    op.execute("DROP TABLE IF EXISTS employees CASCADE")
    op.execute("DROP TABLE IF EXISTS teams CASCADE")
    op.execute("DROP TABLE IF EXISTS offices CASCADE")

    for name, _ in reversed(ENUM_TYPES):
        _drop_enum(name)
