"""Payroll run, run employee, run item and payment batch models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from hr_ledger.exceptions import RunLocked
from hr_ledger.models.base import Base, JSONType, TimestampMixin, UpdatedAtMixin

ZERO = Decimal("0")


class PayrollRun(Base, TimestampMixin, UpdatedAtMixin):
    """One payroll computation cycle for a month and office."""

    __tablename__ = "payroll_run"

    run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    run_month: Mapped[date] = mapped_column(Date, nullable=False)
    office_id: Mapped[UUID] = mapped_column(
        ForeignKey("office.office_id"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    payment_method_default: Mapped[str] = mapped_column(String, nullable=False, default="bank")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=True,
    )
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'processed', 'approved', 'ready_to_pay', 'paid', "
            "'locked', 'cancelled')",
            name="payroll_run_status_check",
        ),
        CheckConstraint(
            "payment_method_default IN ('cash', 'bank')",
            name="payroll_run_payment_method_check",
        ),
        # One live run per (month, office); cancelled runs do not count
        Index(
            "payroll_run_month_office_active_unique",
            "run_month",
            "office_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
    )


class PayrollRunEmployee(Base, TimestampMixin, UpdatedAtMixin):
    """An employee's line in a payroll run.

    ``total_additions`` and ``total_deductions`` are cached sums of the
    employee's ``PayrollRunItem`` rows and are always rebuilt from them.
    """

    __tablename__ = "payroll_run_employee"

    run_employee_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.run_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=False,
    )
    base_salary: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=ZERO)
    total_additions: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=ZERO)
    total_deductions: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=ZERO)
    net_salary: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=ZERO)
    calc_net_salary: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=ZERO)
    variance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=ZERO)
    net_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    payment_method: Mapped[str] = mapped_column(String, nullable=False, default="bank")
    payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_batch_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payment_batch.payment_batch_id"),
        nullable=True,
    )
    approval_status: Mapped[str | None] = mapped_column(String, nullable=True)
    approval_request_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("approval_request.request_id"),
        nullable=True,
    )
    calculated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payslip_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    payslip_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("run_id", "employee_id", name="payroll_run_employee_unique"),
        CheckConstraint(
            "status IN ('draft', 'processed', 'approved', 'ready_to_pay', 'paid', "
            "'locked', 'cancelled')",
            name="payroll_run_employee_status_check",
        ),
        CheckConstraint(
            "payment_method IN ('cash', 'bank')",
            name="payroll_run_employee_payment_method_check",
        ),
        CheckConstraint(
            "approval_status IS NULL OR approval_status IN "
            "('pending', 'approved', 'rejected', 'cancelled', 'superseded')",
            name="payroll_run_employee_approval_status_check",
        ),
    )


class PayrollRunItem(Base, TimestampMixin):
    """A single earning or deduction line feeding an employee's net salary."""

    __tablename__ = "payroll_run_item"

    item_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    run_employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run_employee.run_employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False, default="manual")
    name: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reference_table: Mapped[str | None] = mapped_column(String, nullable=True)
    reference_id: Mapped[UUID | None] = mapped_column(nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=True,
    )
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("type IN ('addition', 'deduction')", name="payroll_run_item_type_check"),
        CheckConstraint("source IN ('system', 'manual')", name="payroll_run_item_source_check"),
        CheckConstraint("amount > 0", name="payroll_run_item_amount_check"),
        Index("payroll_run_item_run_employee_idx", "run_employee_id"),
    )

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.type == "addition" else -self.amount


class PaymentBatch(Base, TimestampMixin):
    """A disbursement event for one payment method within a run."""

    __tablename__ = "payment_batch"

    payment_batch_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.run_id", ondelete="CASCADE"),
        nullable=False,
    )
    method: Mapped[str] = mapped_column(String, nullable=False)
    batch_number: Mapped[str] = mapped_column(String, nullable=False)
    paid_by: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=True,
    )
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    attachment_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    employee_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("run_id", "batch_number", name="payment_batch_run_number_unique"),
        CheckConstraint("method IN ('cash', 'bank')", name="payment_batch_method_check"),
    )


# ===== Locked item guard =====


def _was_locked(target: PayrollRunItem) -> bool:
    """True if the item was already locked before the pending change."""
    history = inspect(target).attrs.locked_at.history
    previous = list(history.unchanged) + list(history.deleted)
    return any(value is not None for value in previous)


@event.listens_for(PayrollRunItem, "before_update")
def _reject_locked_item_update(mapper: Any, connection: Any, target: PayrollRunItem) -> None:
    if _was_locked(target):
        raise RunLocked(None)


@event.listens_for(PayrollRunItem, "before_delete")
def _reject_locked_item_delete(mapper: Any, connection: Any, target: PayrollRunItem) -> None:
    if target.locked_at is not None or _was_locked(target):
        raise RunLocked(None)
