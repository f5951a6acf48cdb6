"""Business documents whose status is governed by approval outcomes."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from hr_ledger.models.base import Base, JSONType, TimestampMixin, UpdatedAtMixin


class MonthlyTimesheet(Base, TimestampMixin, UpdatedAtMixin):
    """An employee's timesheet for one calendar month."""

    __tablename__ = "monthly_timesheet"

    timesheet_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    total_hours: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("employee_id", "year", "month", name="monthly_timesheet_period_unique"),
        CheckConstraint("month BETWEEN 1 AND 12", name="monthly_timesheet_month_check"),
        CheckConstraint(
            "status IN ('draft', 'submitted', 'approved', 'rejected')",
            name="monthly_timesheet_status_check",
        ),
    )


class SalaryAdvanceRequest(Base, TimestampMixin, UpdatedAtMixin):
    """Salary advance or internal loan, repaid through payroll deductions."""

    __tablename__ = "salary_advance_request"

    advance_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    office_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("office.office_id"),
        nullable=True,
    )
    request_number: Mapped[str | None] = mapped_column(String, nullable=True)
    advance_type: Mapped[str] = mapped_column(String, nullable=False, default="salary_advance")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    installments: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    first_deduction_month: Mapped[date] = mapped_column(Date, nullable=False)
    last_deduction_month: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="salary_advance_amount_check"),
        CheckConstraint("installments BETWEEN 1 AND 60", name="salary_advance_installments_check"),
        CheckConstraint(
            "last_deduction_month >= first_deduction_month",
            name="salary_advance_months_check",
        ),
        CheckConstraint(
            "advance_type IN ('salary_advance', 'installment_advance', 'internal_loan')",
            name="salary_advance_type_check",
        ),
        CheckConstraint(
            "status IN ('draft', 'pending', 'approved', 'ready_to_pay', 'paid', "
            "'rejected', 'cancelled')",
            name="salary_advance_status_check",
        ),
    )


class ProcurementDocument(Base, TimestampMixin, UpdatedAtMixin):
    """Procurement summary request (SR), purchase request (PR) or order (PO)."""

    __tablename__ = "procurement_document"

    doc_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    doc_type: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_by: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=True,
    )

    __table_args__ = (
        CheckConstraint("doc_type IN ('SR', 'PR', 'PO')", name="procurement_document_type_check"),
        CheckConstraint(
            "status IN ('draft', 'submitted', 'approved', 'rejected', 'cancelled')",
            name="procurement_document_status_check",
        ),
    )
