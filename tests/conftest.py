"""Pytest fixtures for HR ledger engine tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from hr_ledger.approvals import (
    ApprovalEngine,
    ApproverType,
    DocumentType,
    StepDefinition,
    WorkflowRegistry,
    default_adapters,
    define_workflow,
)
from hr_ledger.config import Settings
from hr_ledger.events import DomainEvent, EventEmitter
from hr_ledger.models import (
    Base,
    Employee,
    MonthlyTimesheet,
    Office,
    ProcurementDocument,
    SalaryAdvanceRequest,
    UserRole,
)
from hr_ledger.services import PayrollRunService

# Use in-memory SQLite for tests (with async support)
# StaticPool keeps every session on the one connection that holds the schema
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        engine_version="test",
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="DEBUG",
        default_currency="USD",
        default_payment_method="bank",
        finance_roles=("admin", "finance"),
        create_schema=False,
    )


@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@dataclass
class Org:
    """Seeded office and people.

    ``alice`` reports to ``manager``; ``hr1``/``hr2`` hold the hr role,
    ``cfo`` holds finance, ``outsider`` holds nothing.
    """

    office: Office
    alice: Employee
    bob: Employee
    manager: Employee
    hr1: Employee
    hr2: Employee
    cfo: Employee
    outsider: Employee


def _employee(office: Office, first: str, last: str, salary: str, **kwargs) -> Employee:
    return Employee(
        employee_id=uuid4(),
        office_id=office.office_id,
        first_name=first,
        last_name=last,
        email=f"{first.lower()}@example.com",
        base_salary=Decimal(salary),
        **kwargs,
    )


@pytest_asyncio.fixture
async def org(session: AsyncSession) -> Org:
    """Create an office with employees and role memberships."""
    office = Office(office_id=uuid4(), name="Office 1", timezone="UTC")
    session.add(office)
    await session.flush()

    # Approvers live in a separate office so they stay out of Office 1 payroll runs
    hq = Office(office_id=uuid4(), name="Head Office", timezone="UTC")
    session.add(hq)
    await session.flush()

    manager = _employee(hq, "Maria", "Manager", "5000")
    hr1 = _employee(hq, "Hana", "Resources", "4000")
    hr2 = _employee(hq, "Hugo", "Resources", "4000")
    cfo = _employee(hq, "Carl", "Finance", "6000")
    outsider = _employee(hq, "Otto", "Outsider", "3000")
    session.add_all([manager, hr1, hr2, cfo, outsider])
    await session.flush()

    alice = _employee(office, "Alice", "Anders", "1000", manager_id=manager.employee_id, payment_method="cash")
    bob = _employee(office, "Bob", "Brown", "2000", manager_id=manager.employee_id, payment_method="bank")
    session.add_all([alice, bob])

    session.add_all(
        [
            UserRole(user_id=hr1.employee_id, role="hr"),
            UserRole(user_id=hr2.employee_id, role="hr"),
            UserRole(user_id=cfo.employee_id, role="finance"),
        ]
    )
    await session.commit()

    return Org(
        office=office,
        alice=alice,
        bob=bob,
        manager=manager,
        hr1=hr1,
        hr2=hr2,
        cfo=cfo,
        outsider=outsider,
    )


@pytest_asyncio.fixture
async def workflows(session: AsyncSession, org: Org) -> WorkflowRegistry:
    """Default workflows for every document type.

    - timesheet: manager
    - salary_advance: manager, then any hr
    - procurement: manager, then finance, then the fixed user ``hr1``
    - payroll_run_employee: finance
    """
    await define_workflow(
        session,
        DocumentType.TIMESHEET,
        "Timesheet approval",
        [StepDefinition("Manager", ApproverType.MANAGER)],
    )
    await define_workflow(
        session,
        DocumentType.SALARY_ADVANCE,
        "Salary advance approval",
        [
            StepDefinition("Manager", ApproverType.MANAGER),
            StepDefinition("HR", ApproverType.ROLE, role_name="hr"),
        ],
    )
    await define_workflow(
        session,
        DocumentType.PROCUREMENT,
        "Procurement approval",
        [
            StepDefinition("Manager", ApproverType.MANAGER),
            StepDefinition("Finance", ApproverType.ROLE, role_name="finance"),
            StepDefinition("Director", ApproverType.USER, approver_id=org.hr1.employee_id),
        ],
    )
    await define_workflow(
        session,
        DocumentType.PAYROLL_RUN_EMPLOYEE,
        "Payroll employee approval",
        [StepDefinition("Finance", ApproverType.ROLE, role_name="finance")],
    )
    await session.commit()
    return await WorkflowRegistry.from_database(session)


@pytest.fixture
def events() -> list[DomainEvent]:
    return []


@pytest.fixture
def emitter(events: list[DomainEvent]) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(events.append)
    return emitter


@pytest.fixture
def approval_engine(
    session: AsyncSession,
    workflows: WorkflowRegistry,
    emitter: EventEmitter,
) -> ApprovalEngine:
    return ApprovalEngine(session, workflows, default_adapters(session), emitter=emitter)


@pytest.fixture
def payroll_service(
    session: AsyncSession,
    emitter: EventEmitter,
    settings: Settings,
) -> PayrollRunService:
    return PayrollRunService(session, emitter=emitter, settings=settings)


# ===== Business documents =====


@pytest_asyncio.fixture
async def timesheet(session: AsyncSession, org: Org) -> MonthlyTimesheet:
    sheet = MonthlyTimesheet(
        timesheet_id=uuid4(),
        employee_id=org.alice.employee_id,
        year=2025,
        month=3,
        total_hours=Decimal("160"),
        status="draft",
    )
    session.add(sheet)
    await session.commit()
    return sheet


@pytest_asyncio.fixture
async def salary_advance(session: AsyncSession, org: Org) -> SalaryAdvanceRequest:
    advance = SalaryAdvanceRequest(
        advance_id=uuid4(),
        employee_id=org.alice.employee_id,
        office_id=org.office.office_id,
        request_number="SA-0001",
        advance_type="installment_advance",
        amount=Decimal("300.00"),
        reason="Rent",
        installments=3,
        first_deduction_month=date(2025, 3, 1),
        last_deduction_month=date(2025, 5, 1),
        status="draft",
    )
    session.add(advance)
    await session.commit()
    return advance


@pytest_asyncio.fixture
async def procurement_doc(session: AsyncSession, org: Org) -> ProcurementDocument:
    doc = ProcurementDocument(
        doc_id=uuid4(),
        doc_type="PR",
        title="Laptops",
        total_amount=Decimal("2400.00"),
        status="draft",
        payload={"lines": 2},
        created_by=org.alice.employee_id,
    )
    session.add(doc)
    await session.commit()
    return doc
