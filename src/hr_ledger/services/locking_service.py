"""Payslip snapshot and item locking service."""

from __future__ import annotations

import hashlib
import json
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hr_ledger.models import PayrollRun, PayrollRunEmployee, PayrollRunItem

CENT = Decimal("0.01")


class LockingService:
    """Service for freezing payroll figures.

    When a payroll run is approved, each employee's item list is copied into
    an immutable payslip snapshot together with a content hash. When the run
    is locked, the hashes are checked against the live items and every item
    is stamped with ``locked_at``; from then on the ORM refuses to update or
    delete it.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def items_by_employee(self, run_id: UUID) -> dict[UUID, list[PayrollRunItem]]:
        """All items of a run grouped by run employee."""
        result = await self.session.execute(
            select(PayrollRunItem)
            .join(
                PayrollRunEmployee,
                PayrollRunEmployee.run_employee_id == PayrollRunItem.run_employee_id,
            )
            .where(PayrollRunEmployee.run_id == run_id)
            .order_by(PayrollRunItem.created_at, PayrollRunItem.item_id)
        )
        grouped: dict[UUID, list[PayrollRunItem]] = defaultdict(list)
        for item in result.scalars():
            grouped[item.run_employee_id].append(item)
        return grouped

    def build_payslip_snapshot(
        self,
        run: PayrollRun,
        employee: PayrollRunEmployee,
        items: Sequence[PayrollRunItem],
        generated_at: datetime,
    ) -> dict[str, Any]:
        """Immutable copy of an employee's payslip at approval time."""
        item_rows = self._item_rows(items)
        return {
            "run_id": str(run.run_id),
            "run_month": run.run_month.isoformat(),
            "currency": run.currency,
            "employee_id": str(employee.employee_id),
            "base_salary": str(employee.base_salary),
            "total_additions": str(employee.total_additions),
            "total_deductions": str(employee.total_deductions),
            "net_salary": str(employee.net_salary),
            "payment_method": employee.payment_method,
            "items": item_rows,
            "items_hash": self._compute_hash(item_rows),
            "generated_at": generated_at.isoformat(),
        }

    async def verify_snapshots_intact(self, run_id: UUID) -> list[str]:
        """Compare every payslip snapshot with the run's live items.

        Returns list of error messages (empty if all intact).
        """
        errors: list[str] = []
        items = await self.items_by_employee(run_id)
        result = await self.session.execute(
            select(PayrollRunEmployee).where(PayrollRunEmployee.run_id == run_id)
        )
        for employee in result.scalars():
            snapshot = employee.payslip_snapshot
            if not snapshot:
                errors.append(f"Employee {employee.employee_id} has no payslip snapshot")
                continue
            current = self._compute_hash(self._item_rows(items.get(employee.run_employee_id, [])))
            if snapshot.get("items_hash") != current:
                errors.append(
                    f"Items of employee {employee.employee_id} changed after approval"
                )
        return errors

    async def lock_items_for_run(self, run_id: UUID, locked_at: datetime) -> int:
        """Stamp every unlocked item of the run with ``locked_at``.

        Returns count of locked items.
        """
        run_employee_ids = select(PayrollRunEmployee.run_employee_id).where(
            PayrollRunEmployee.run_id == run_id
        )
        result = await self.session.execute(
            update(PayrollRunItem)
            .where(
                PayrollRunItem.run_employee_id.in_(run_employee_ids),
                PayrollRunItem.locked_at.is_(None),
            )
            .values(locked_at=locked_at)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    @staticmethod
    def _item_rows(items: Sequence[PayrollRunItem]) -> list[dict[str, Any]]:
        rows = [
            {
                "item_id": str(item.item_id),
                "type": item.type,
                "source": item.source,
                "name": item.name,
                "amount": str(Decimal(item.amount).quantize(CENT)),
                "reference_table": item.reference_table,
                "reference_id": str(item.reference_id) if item.reference_id else None,
                "note": item.note,
            }
            for item in items
        ]
        return sorted(rows, key=lambda row: row["item_id"])

    @staticmethod
    def _compute_hash(data: Any) -> str:
        """Compute SHA-256 hash of data."""
        json_str = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()
