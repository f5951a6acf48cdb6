"""Business record adapters.

Each adapter maps approval outcomes onto the status field of one document
type. Adapters run inside the engine's transaction, so a failed adapter
rolls back the approval decision with it. Every method is idempotent: applying
the same outcome twice leaves the record as it was after the first call.
"""

from __future__ import annotations

import logging
from typing import Mapping, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from hr_ledger.approvals.types import DocumentRef, DocumentType, RequestStatus
from hr_ledger.exceptions import NotFoundError, ValidationFailedError
from hr_ledger.models import (
    MonthlyTimesheet,
    PayrollRunEmployee,
    ProcurementDocument,
    SalaryAdvanceRequest,
    utcnow,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class BusinessRecordAdapter(Protocol):
    """Hooks the engine calls on the record governed by a request."""

    async def on_submitted(self, document_ref: DocumentRef, *, request_id: UUID) -> None:
        """Mark the record as awaiting approval."""
        ...

    async def on_resolved(
        self,
        document_ref: DocumentRef,
        outcome: RequestStatus,
        *,
        request_id: UUID,
        comment: str | None = None,
    ) -> None:
        """Apply a terminal outcome (approved, rejected or cancelled)."""
        ...


class TimesheetAdapter:
    """Monthly timesheets: submitted → approved | rejected, cancel → draft."""

    STATUS_FOR_OUTCOME = {
        RequestStatus.APPROVED: "approved",
        RequestStatus.REJECTED: "rejected",
        # A withdrawn timesheet goes back to the employee for editing
        RequestStatus.CANCELLED: "draft",
    }

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _load(self, document_ref: DocumentRef) -> MonthlyTimesheet:
        timesheet = await self.session.get(MonthlyTimesheet, document_ref.document_id)
        if timesheet is None:
            raise NotFoundError(f"Timesheet {document_ref.document_id} not found")
        return timesheet

    async def on_submitted(self, document_ref: DocumentRef, *, request_id: UUID) -> None:
        timesheet = await self._load(document_ref)
        if timesheet.status == "submitted":
            return
        timesheet.status = "submitted"
        timesheet.submitted_at = utcnow()

    async def on_resolved(
        self,
        document_ref: DocumentRef,
        outcome: RequestStatus,
        *,
        request_id: UUID,
        comment: str | None = None,
    ) -> None:
        timesheet = await self._load(document_ref)
        target = self.STATUS_FOR_OUTCOME[RequestStatus(outcome)]
        if timesheet.status == target:
            logger.debug("Timesheet %s already %s", timesheet.timesheet_id, target)
            return

        timesheet.status = target
        if target == "approved":
            timesheet.approved_at = utcnow()
        elif target == "rejected" and comment:
            timesheet.comments = comment


class SalaryAdvanceAdapter:
    """Salary advances and internal loans."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _load(self, document_ref: DocumentRef) -> SalaryAdvanceRequest:
        advance = await self.session.get(SalaryAdvanceRequest, document_ref.document_id)
        if advance is None:
            raise NotFoundError(f"Salary advance {document_ref.document_id} not found")
        return advance

    async def on_submitted(self, document_ref: DocumentRef, *, request_id: UUID) -> None:
        advance = await self._load(document_ref)
        if advance.status != "pending":
            advance.status = "pending"

    async def on_resolved(
        self,
        document_ref: DocumentRef,
        outcome: RequestStatus,
        *,
        request_id: UUID,
        comment: str | None = None,
    ) -> None:
        advance = await self._load(document_ref)
        target = RequestStatus(outcome).value
        if advance.status == target:
            logger.debug("Salary advance %s already %s", advance.advance_id, target)
            return
        advance.status = target
        advance.decided_at = utcnow()


class ProcurementAdapter:
    """Procurement SR/PR/PO documents.

    Besides the status, the approval request id and the last decision comment
    are recorded in the document's JSON payload.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _load(self, document_ref: DocumentRef) -> ProcurementDocument:
        doc = await self.session.get(ProcurementDocument, document_ref.document_id)
        if doc is None:
            raise NotFoundError(f"Procurement document {document_ref.document_id} not found")
        return doc

    async def on_submitted(self, document_ref: DocumentRef, *, request_id: UUID) -> None:
        doc = await self._load(document_ref)
        if doc.status == "submitted":
            return
        doc.status = "submitted"
        doc.payload = {**(doc.payload or {}), "approval_request_id": str(request_id)}

    async def on_resolved(
        self,
        document_ref: DocumentRef,
        outcome: RequestStatus,
        *,
        request_id: UUID,
        comment: str | None = None,
    ) -> None:
        doc = await self._load(document_ref)
        target = RequestStatus(outcome).value
        current = doc.payload or {}
        if doc.status == target and current.get("approval_request_id") == str(request_id):
            logger.debug("Procurement document %s already %s", doc.doc_id, target)
            return

        updates = {
            "approval_request_id": str(request_id),
            "last_approval_comment": comment,
        }
        doc.status = target
        doc.payload = {**current, **{k: v for k, v in updates.items() if v is not None}}


class PayrollRunEmployeeAdapter:
    """Per-employee approval gate of a payroll run."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _load(self, document_ref: DocumentRef) -> PayrollRunEmployee:
        row = await self.session.get(PayrollRunEmployee, document_ref.document_id)
        if row is None:
            raise NotFoundError(f"Payroll run employee {document_ref.document_id} not found")
        return row

    async def on_submitted(self, document_ref: DocumentRef, *, request_id: UUID) -> None:
        row = await self._load(document_ref)
        row.approval_status = "pending"
        row.approval_request_id = request_id

    async def on_resolved(
        self,
        document_ref: DocumentRef,
        outcome: RequestStatus,
        *,
        request_id: UUID,
        comment: str | None = None,
    ) -> None:
        row = await self._load(document_ref)
        target = RequestStatus(outcome).value
        if row.approval_status == target and row.approval_request_id == request_id:
            return
        row.approval_status = target
        row.approval_request_id = request_id


class AdapterRegistry:
    """Adapters keyed by the document type they govern."""

    def __init__(self, adapters: Mapping[DocumentType, BusinessRecordAdapter] | None = None):
        self._adapters: dict[DocumentType, BusinessRecordAdapter] = dict(adapters or {})

    def register(self, document_type: DocumentType, adapter: BusinessRecordAdapter) -> None:
        self._adapters[DocumentType(document_type)] = adapter

    def for_type(self, document_type: DocumentType) -> BusinessRecordAdapter:
        try:
            return self._adapters[DocumentType(document_type)]
        except KeyError:
            raise ValidationFailedError(
                f"No business record adapter registered for '{DocumentType(document_type).value}'"
            ) from None

    def __contains__(self, document_type: object) -> bool:
        return document_type in self._adapters


def default_adapters(session: AsyncSession) -> AdapterRegistry:
    """Adapters for every built-in document type, bound to ``session``."""
    return AdapterRegistry(
        {
            DocumentType.TIMESHEET: TimesheetAdapter(session),
            DocumentType.SALARY_ADVANCE: SalaryAdvanceAdapter(session),
            DocumentType.PROCUREMENT: ProcurementAdapter(session),
            DocumentType.PAYROLL_RUN_EMPLOYEE: PayrollRunEmployeeAdapter(session),
        }
    )
