"""Payment batch service."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hr_ledger.models import PaymentBatch, PayrollRun, PayrollRunEmployee

PAYMENT_METHODS = ("cash", "bank")


class PaymentService:
    """Service for recording payment batches.

    A batch records one disbursement for one payment method of a run, with
    the reconciliation totals of the employees it paid.

    Constraints:
    - Batch numbers are unique per run
    - Only employees in ready_to_pay can be put in a batch
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def batch_exists(self, run_id: UUID, batch_number: str) -> bool:
        result = await self.session.execute(
            select(PaymentBatch.payment_batch_id).where(
                PaymentBatch.run_id == run_id,
                PaymentBatch.batch_number == batch_number,
            )
        )
        return result.scalar_one_or_none() is not None

    async def create_batch(
        self,
        run: PayrollRun,
        employees: Sequence[PayrollRunEmployee],
        method: str,
        batch_number: str,
        paid_at: datetime,
        paid_by: UUID | None = None,
        attachment_ref: str | None = None,
    ) -> PaymentBatch:
        """Create the batch and attach the given employees to it.

        The caller has already checked that every employee is payable.
        """
        total = sum((Decimal(e.net_salary) for e in employees), Decimal("0"))
        batch = PaymentBatch(
            run_id=run.run_id,
            method=method,
            batch_number=batch_number,
            paid_by=paid_by,
            paid_at=paid_at,
            attachment_ref=attachment_ref,
            employee_count=len(employees),
            total_amount=total,
        )
        self.session.add(batch)
        await self.session.flush()

        for employee in employees:
            employee.status = "paid"
            employee.payment_date = paid_at.date()
            employee.payment_batch_id = batch.payment_batch_id

        return batch

    async def list_batches(self, run_id: UUID) -> list[PaymentBatch]:
        result = await self.session.execute(
            select(PaymentBatch)
            .where(PaymentBatch.run_id == run_id)
            .order_by(PaymentBatch.paid_at, PaymentBatch.batch_number)
        )
        return list(result.scalars())

    async def method_summary(self, run_id: UUID) -> dict[str, dict[str, Any]]:
        """Paid and outstanding amounts of a run per payment method."""
        result = await self.session.execute(
            select(PayrollRunEmployee).where(PayrollRunEmployee.run_id == run_id)
        )
        summary: dict[str, dict[str, Any]] = defaultdict(
            lambda: {
                "employees": 0,
                "paid_employees": 0,
                "total": Decimal("0"),
                "paid": Decimal("0"),
                "outstanding": Decimal("0"),
            }
        )
        for employee in result.scalars():
            row = summary[employee.payment_method]
            amount = Decimal(employee.net_salary)
            row["employees"] += 1
            row["total"] += amount
            if employee.status in ("paid", "locked"):
                row["paid_employees"] += 1
                row["paid"] += amount
            else:
                row["outstanding"] += amount
        return dict(summary)
