"""Shared test fixtures — async DB, client, dispatcher, auth helpers, factories.

Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL. Seed
helpers commit immediately: every command under test runs in its own
transaction on the same in-memory connection.
"""

from __future__ import annotations

import asyncio
import os

# Set test secrets before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ENVIRONMENT", "test")

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from leaveflow.auth.dependencies import create_access_token
from leaveflow.common.constants import (
    BalanceType,
    StepType,
    UserRole,
    WorkflowMode,
)
from leaveflow.core_hr.models import Delegation, Employee, Office, PublicHoliday, Team
from leaveflow.database import Base, get_db, get_session_factory
from leaveflow.leave.models import (
    LeaveBalance,
    LeaveTypeConfig,
    WorkflowConfig,
    WorkflowStep,
)
from leaveflow.main import create_app
from leaveflow.notifications.dispatcher import (
    AuditRecorder,
    EventDispatcher,
    NotificationRecorder,
    get_dispatcher,
)

# ── SQLite compat: compile PG-specific types to TEXT/CHAR ───────────

from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.ext.compiler import compiles


@compiles(JSONB, "sqlite")
def _jsonb_sqlite(element, compiler, **kw):
    return "TEXT"


@compiles(PG_UUID, "sqlite")
def _uuid_sqlite(element, compiler, **kw):
    return "CHAR(36)"


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Register PG-compatible functions for SQLite
@event.listens_for(engine.sync_engine, "connect")
def _register_sqlite_functions(dbapi_conn, connection_record):
    """Register NOW() and gen_random_uuid() as SQLite custom functions."""
    dbapi_conn.create_function(
        "NOW", 0, lambda: datetime.now(timezone.utc).isoformat(),
    )
    dbapi_conn.create_function(
        "gen_random_uuid", 0, lambda: str(uuid.uuid4()),
    )


TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    """Reset rate limiter storage between tests to prevent cross-test interference."""
    from leaveflow.common.rate_limit import limiter
    try:
        if hasattr(limiter, "_storage"):
            limiter._storage.reset()
    except Exception:
        pass
    yield


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def _override_get_session_factory() -> async_sessionmaker[AsyncSession]:
    return TestSessionFactory


# ── Dispatcher wired to the test database ───────────────────────────

class SerialDispatcher(EventDispatcher):
    """Delivers one event to one subscriber at a time.

    Every session of the in-memory engine shares a single connection, so
    subscribers must not hold transactions open side by side.
    """

    def __init__(self) -> None:
        super().__init__()
        self._delivery_lock = asyncio.Lock()

    async def _deliver(self, subscriber, event) -> None:
        async with self._delivery_lock:
            await super()._deliver(subscriber, event)


@pytest.fixture
async def dispatcher():
    """Notification + audit dispatcher writing to the test database."""
    test_dispatcher = SerialDispatcher()
    test_dispatcher.subscribe(NotificationRecorder(lambda: TestSessionFactory))
    test_dispatcher.subscribe(AuditRecorder(lambda: TestSessionFactory))
    yield test_dispatcher
    await test_dispatcher.drain()


# ── File-backed database for concurrent transactions ────────────────

@pytest.fixture
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory on a SQLite file with a real connection pool.

    Transactions start with ``BEGIN IMMEDIATE`` so two writers queue on the
    database lock instead of interleaving their statements.
    """
    file_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(file_engine.sync_engine, "connect")
    def _connect(dbapi_conn, connection_record):
        _register_sqlite_functions(dbapi_conn, connection_record)
        # Let the "begin" listener below emit BEGIN itself
        dbapi_conn.isolation_level = None

    @event.listens_for(file_engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with file_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)
    await file_engine.dispose()


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
async def app(dispatcher):
    """Create a fresh app instance with DB dependencies overridden."""
    application = create_app()
    application.dependency_overrides[get_db] = _override_get_db
    application.dependency_overrides[get_session_factory] = _override_get_session_factory
    application.dependency_overrides[get_dispatcher] = lambda: dispatcher

    # Finish post-commit deliveries before the client sees the response so
    # they never interleave with the next request on the shared connection
    @application.middleware("http")
    async def _drain_dispatcher(request, call_next):
        response = await call_next(request)
        await dispatcher.drain()
        return response

    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


# ── Model factories ─────────────────────────────────────────────────

# 2030-01-07 is a Monday
MONDAY = date(2030, 1, 7)
YEAR = MONDAY.year


def _make_office(*, name: str = "Paris HQ", **overrides) -> dict:
    data = dict(
        id=uuid.uuid4(),
        name=name,
        country="France",
        city="Paris",
        working_days=["MON", "TUE", "WED", "THU", "FRI"],
        default_annual_leave=Decimal("25"),
        default_offered_days=Decimal("2"),
        min_notice_days=0,
        max_carry_over_days=Decimal("10"),
        carry_over_deadline="03-31",
        probation_months=3,
    )
    data.update(overrides)
    return data


def _make_employee(
    *,
    office_id: uuid.UUID,
    email: Optional[str] = None,
    first_name: str = "Test",
    last_name: str = "User",
    roles: Optional[list[str]] = None,
    team_id: Optional[uuid.UUID] = None,
    manager_id: Optional[uuid.UUID] = None,
    hire_date: date = date(2020, 1, 15),
) -> dict:
    return dict(
        id=uuid.uuid4(),
        email=email or f"{first_name.lower()}.{uuid.uuid4().hex[:6]}@leaveflow.test",
        first_name=first_name,
        last_name=last_name,
        roles=roles or [UserRole.employee.value],
        office_id=office_id,
        team_id=team_id,
        manager_id=manager_id,
        hire_date=hire_date,
        is_active=True,
    )


async def seed_office(db: AsyncSession, **overrides) -> Office:
    office = Office(**_make_office(**overrides))
    db.add(office)
    await db.commit()
    return office


async def seed_employee(db: AsyncSession, office: Office, **kwargs) -> Employee:
    employee = Employee(**_make_employee(office_id=office.id, **kwargs))
    db.add(employee)
    await db.commit()
    return employee


async def seed_team(db: AsyncSession, office: Office, manager: Optional[Employee]) -> Team:
    team = Team(
        id=uuid.uuid4(),
        name=f"Team {uuid.uuid4().hex[:4]}",
        office_id=office.id,
        manager_id=manager.id if manager else None,
    )
    db.add(team)
    await db.commit()
    return team


async def seed_leave_type(
    db: AsyncSession,
    office: Office,
    *,
    code: str = "ANNUAL",
    balance_type: Optional[str] = BalanceType.annual.value,
    deducts_from_balance: bool = True,
    balance_exempt: bool = False,
    requires_attachment: bool = False,
    attachment_from_day: Optional[int] = None,
) -> LeaveTypeConfig:
    leave_type = LeaveTypeConfig(
        id=uuid.uuid4(),
        office_id=office.id,
        code=code,
        labels={"en": f"{code.title()} leave"},
        deducts_from_balance=deducts_from_balance,
        balance_type=balance_type,
        balance_exempt=balance_exempt,
        requires_attachment=requires_attachment,
        attachment_from_day=attachment_from_day,
        is_active=True,
    )
    db.add(leave_type)
    await db.commit()
    return leave_type


async def seed_balance(
    db: AsyncSession,
    employee: Employee,
    *,
    year: int = YEAR,
    balance_type: str = BalanceType.annual.value,
    total: Decimal = Decimal("25"),
    used: Decimal = Decimal("0"),
    pending: Decimal = Decimal("0"),
    carried_over: Decimal = Decimal("0"),
) -> LeaveBalance:
    balance = LeaveBalance(
        id=uuid.uuid4(),
        employee_id=employee.id,
        year=year,
        balance_type=balance_type,
        total_days=total,
        carried_over_days=carried_over,
        used_days=used,
        pending_days=pending,
        version=1,
    )
    db.add(balance)
    await db.commit()
    return balance


async def seed_workflow(
    db: AsyncSession,
    *,
    office: Optional[Office] = None,
    team: Optional[Team] = None,
    mode: WorkflowMode = WorkflowMode.sequential,
    steps: tuple[StepType, ...] = (StepType.manager, StepType.hr),
    optional: tuple[int, ...] = (),
) -> WorkflowConfig:
    """Workflow with one step per entry of *steps*; *optional* lists step orders."""
    config = WorkflowConfig(
        id=uuid.uuid4(),
        office_id=office.id if office else None,
        team_id=team.id if team else None,
        mode=mode,
        is_active=True,
    )
    db.add(config)
    for order, step_type in enumerate(steps, start=1):
        db.add(WorkflowStep(
            id=uuid.uuid4(),
            workflow_config_id=config.id,
            step_order=order,
            step_type=step_type,
            is_required=order not in optional,
        ))
    await db.commit()
    return config


async def seed_holiday(db: AsyncSession, office: Office, day: date, name: str = "Holiday") -> None:
    db.add(PublicHoliday(id=uuid.uuid4(), office_id=office.id, date=day, name=name))
    await db.commit()


async def seed_delegation(
    db: AsyncSession,
    from_employee: Employee,
    to_employee: Employee,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> Delegation:
    today = date.today()
    delegation = Delegation(
        id=uuid.uuid4(),
        from_employee_id=from_employee.id,
        to_employee_id=to_employee.id,
        start_date=start or today - timedelta(days=1),
        end_date=end or today + timedelta(days=30),
        is_active=True,
    )
    db.add(delegation)
    await db.commit()
    return delegation


async def fetch_balance(
    employee_id: uuid.UUID,
    *,
    year: int = YEAR,
    balance_type: str = BalanceType.annual.value,
) -> Optional[LeaveBalance]:
    """Read a balance through a fresh session (sees every committed write)."""
    async with TestSessionFactory() as session:
        result = await session.execute(
            select(LeaveBalance).where(
                LeaveBalance.employee_id == employee_id,
                LeaveBalance.year == year,
                LeaveBalance.balance_type == balance_type,
            )
        )
        return result.scalars().first()


# ── Org fixture ─────────────────────────────────────────────────────

class Org:
    """One office with a manager-led team, an employee, two HR users."""

    office: Office
    manager: Employee
    team: Team
    employee: Employee
    hr_one: Employee
    hr_two: Employee
    annual: LeaveTypeConfig


@pytest.fixture
async def org(db) -> Org:
    result = Org()
    result.office = await seed_office(db)
    result.manager = await seed_employee(
        db, result.office, first_name="Maria", last_name="Manager",
        roles=[UserRole.employee.value, UserRole.manager.value],
    )
    result.team = await seed_team(db, result.office, result.manager)
    result.employee = await seed_employee(
        db, result.office, first_name="Emma", last_name="Employee",
        team_id=result.team.id,
    )
    result.hr_one = await seed_employee(
        db, result.office, first_name="Hugo", last_name="Aubert",
        roles=[UserRole.employee.value, UserRole.hr.value],
    )
    result.hr_two = await seed_employee(
        db, result.office, first_name="Hana", last_name="Bernard",
        roles=[UserRole.employee.value, UserRole.hr.value],
    )
    result.annual = await seed_leave_type(db, result.office)
    await seed_balance(db, result.employee, total=Decimal("10"))
    return result


# ── Auth helpers ────────────────────────────────────────────────────

def auth_headers_for(employee: Employee) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(employee.id)}"}
