"""Read-only reporting projections over the approval and payroll ledgers."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hr_ledger.approvals.types import DocumentType, RequestStatus
from hr_ledger.exceptions import RequestNotFound, RunNotFound
from hr_ledger.models import (
    ApprovalAction,
    ApprovalRequest,
    PaymentBatch,
    PayrollRun,
    PayrollRunEmployee,
)
from hr_ledger.services.payment_service import PaymentService

ZERO = Decimal("0")


@dataclass
class RunSummary:
    run_id: UUID
    run_month: str
    office_id: UUID
    status: str
    currency: str
    employee_count: int
    status_counts: dict[str, int]
    total_base_salary: Decimal
    total_additions: Decimal
    total_deductions: Decimal
    total_net_salary: Decimal
    total_calc_net_salary: Decimal
    total_variance: Decimal
    variance_employees: list[UUID]
    by_method: dict[str, dict[str, Any]]
    batches: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ApprovalStatistics:
    document_type: str
    total: int
    pending: int
    approved: int
    rejected: int
    cancelled: int
    average_resolution_hours: float | None


class ReportingService:
    """Read-only projections. Nothing here writes to the session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def run_summary(self, run_id: UUID) -> RunSummary:
        """Totals, variances and payment progress of one payroll run."""
        run = await self.session.get(PayrollRun, run_id)
        if run is None:
            raise RunNotFound(run_id)

        result = await self.session.execute(
            select(PayrollRunEmployee).where(PayrollRunEmployee.run_id == run_id)
        )
        employees = list(result.scalars())

        def total(attr: str) -> Decimal:
            return sum((Decimal(getattr(e, attr)) for e in employees), ZERO)

        batches = await PaymentService(self.session).list_batches(run_id)
        return RunSummary(
            run_id=run.run_id,
            run_month=run.run_month.isoformat(),
            office_id=run.office_id,
            status=run.status,
            currency=run.currency,
            employee_count=len(employees),
            status_counts=dict(Counter(e.status for e in employees)),
            total_base_salary=total("base_salary"),
            total_additions=total("total_additions"),
            total_deductions=total("total_deductions"),
            total_net_salary=total("net_salary"),
            total_calc_net_salary=total("calc_net_salary"),
            total_variance=total("variance"),
            variance_employees=[e.employee_id for e in employees if Decimal(e.variance) != ZERO],
            by_method=await PaymentService(self.session).method_summary(run_id),
            batches=[self._batch_row(b) for b in batches],
        )

    async def approval_statistics(
        self,
        document_type: DocumentType | None = None,
    ) -> list[ApprovalStatistics]:
        """Request counts per status, per document type."""
        stmt = select(
            ApprovalRequest.document_type,
            ApprovalRequest.status,
            func.count(ApprovalRequest.request_id),
        ).group_by(ApprovalRequest.document_type, ApprovalRequest.status)
        if document_type is not None:
            stmt = stmt.where(ApprovalRequest.document_type == DocumentType(document_type).value)
        result = await self.session.execute(stmt)

        counts: dict[str, Counter] = {}
        for doc_type, status, count in result.all():
            counts.setdefault(doc_type, Counter())[status] = count

        durations = await self._resolution_hours(document_type)
        stats = []
        for doc_type in sorted(counts):
            per_status = counts[doc_type]
            hours = durations.get(doc_type, [])
            stats.append(
                ApprovalStatistics(
                    document_type=doc_type,
                    total=sum(per_status.values()),
                    pending=per_status[RequestStatus.PENDING.value],
                    approved=per_status[RequestStatus.APPROVED.value],
                    rejected=per_status[RequestStatus.REJECTED.value],
                    cancelled=per_status[RequestStatus.CANCELLED.value],
                    average_resolution_hours=round(sum(hours) / len(hours), 2) if hours else None,
                )
            )
        return stats

    async def request_history(self, request_id: UUID) -> dict[str, Any]:
        """A request with every action taken on it, in step order."""
        request = await self.session.get(ApprovalRequest, request_id)
        if request is None:
            raise RequestNotFound(request_id)

        result = await self.session.execute(
            select(ApprovalAction)
            .where(ApprovalAction.request_id == request_id)
            .order_by(ApprovalAction.step_order, ApprovalAction.created_at)
        )
        return {
            "request_id": request.request_id,
            "request_number": request.request_number,
            "document_type": request.document_type,
            "document_id": request.document_id,
            "status": request.status,
            "current_step": request.current_step,
            "total_steps": request.total_steps,
            "created_at": request.created_at,
            "completed_at": request.completed_at,
            "actions": [
                {
                    "step_order": a.step_order,
                    "approver_id": a.approver_id,
                    "acted_by": a.acted_by,
                    "action": a.action,
                    "comment": a.comment,
                    "action_date": a.action_date,
                }
                for a in result.scalars()
            ],
        }

    async def _resolution_hours(self, document_type: DocumentType | None) -> dict[str, list[float]]:
        stmt = select(
            ApprovalRequest.document_type,
            ApprovalRequest.created_at,
            ApprovalRequest.completed_at,
        ).where(ApprovalRequest.completed_at.is_not(None))
        if document_type is not None:
            stmt = stmt.where(ApprovalRequest.document_type == DocumentType(document_type).value)
        result = await self.session.execute(stmt)

        hours: dict[str, list[float]] = {}
        for doc_type, created_at, completed_at in result.all():
            elapsed = (completed_at - created_at).total_seconds() / 3600
            hours.setdefault(doc_type, []).append(elapsed)
        return hours

    @staticmethod
    def _batch_row(batch: PaymentBatch) -> dict[str, Any]:
        return {
            "payment_batch_id": batch.payment_batch_id,
            "method": batch.method,
            "batch_number": batch.batch_number,
            "paid_by": batch.paid_by,
            "paid_at": batch.paid_at,
            "employee_count": batch.employee_count,
            "total_amount": batch.total_amount,
            "attachment_ref": batch.attachment_ref,
        }
