"""Tests for business record adapters."""

from datetime import date
from uuid import uuid4

import pytest

from hr_ledger.approvals import (
    AdapterRegistry,
    DocumentRef,
    DocumentType,
    PayrollRunEmployeeAdapter,
    ProcurementAdapter,
    RequestStatus,
    SalaryAdvanceAdapter,
    TimesheetAdapter,
    default_adapters,
)
from hr_ledger.exceptions import NotFoundError, ValidationFailedError


class TestTimesheetAdapter:
    async def test_submit_and_approve(self, session, timesheet):
        adapter = TimesheetAdapter(session)
        ref = DocumentRef(DocumentType.TIMESHEET, timesheet.timesheet_id)

        await adapter.on_submitted(ref, request_id=uuid4())
        assert timesheet.status == "submitted"

        await adapter.on_resolved(ref, RequestStatus.APPROVED, request_id=uuid4())
        approved_at = timesheet.approved_at
        assert timesheet.status == "approved"
        assert approved_at is not None

        # Applying the same outcome again changes nothing
        await adapter.on_resolved(ref, RequestStatus.APPROVED, request_id=uuid4())
        assert timesheet.approved_at == approved_at

    async def test_cancel_returns_to_draft(self, session, timesheet):
        adapter = TimesheetAdapter(session)
        ref = DocumentRef(DocumentType.TIMESHEET, timesheet.timesheet_id)
        await adapter.on_submitted(ref, request_id=uuid4())

        await adapter.on_resolved(ref, RequestStatus.CANCELLED, request_id=uuid4())

        assert timesheet.status == "draft"

    async def test_missing_timesheet(self, session):
        adapter = TimesheetAdapter(session)

        with pytest.raises(NotFoundError):
            await adapter.on_submitted(
                DocumentRef(DocumentType.TIMESHEET, uuid4()), request_id=uuid4()
            )


class TestSalaryAdvanceAdapter:
    @pytest.mark.parametrize(
        "outcome",
        [RequestStatus.APPROVED, RequestStatus.REJECTED, RequestStatus.CANCELLED],
    )
    async def test_outcome_becomes_status(self, session, salary_advance, outcome):
        adapter = SalaryAdvanceAdapter(session)
        ref = DocumentRef(DocumentType.SALARY_ADVANCE, salary_advance.advance_id)

        await adapter.on_submitted(ref, request_id=uuid4())
        assert salary_advance.status == "pending"

        await adapter.on_resolved(ref, outcome, request_id=uuid4())
        assert salary_advance.status == outcome.value
        assert salary_advance.decided_at is not None

    async def test_repeat_keeps_first_decision_time(self, session, salary_advance):
        adapter = SalaryAdvanceAdapter(session)
        ref = DocumentRef(DocumentType.SALARY_ADVANCE, salary_advance.advance_id)

        await adapter.on_resolved(ref, RequestStatus.REJECTED, request_id=uuid4())
        decided_at = salary_advance.decided_at
        await adapter.on_resolved(ref, RequestStatus.REJECTED, request_id=uuid4())

        assert salary_advance.decided_at == decided_at


class TestProcurementAdapter:
    async def test_payload_records_request_and_comment(self, session, procurement_doc):
        adapter = ProcurementAdapter(session)
        ref = DocumentRef(DocumentType.PROCUREMENT, procurement_doc.doc_id)
        request_id = uuid4()

        await adapter.on_submitted(ref, request_id=request_id)
        assert procurement_doc.status == "submitted"
        assert procurement_doc.payload["approval_request_id"] == str(request_id)

        await adapter.on_resolved(
            ref, RequestStatus.REJECTED, request_id=request_id, comment="Over budget"
        )
        assert procurement_doc.status == "rejected"
        assert procurement_doc.payload == {
            "lines": 2,
            "approval_request_id": str(request_id),
            "last_approval_comment": "Over budget",
        }

    async def test_no_comment_keeps_payload_clean(self, session, procurement_doc):
        adapter = ProcurementAdapter(session)
        ref = DocumentRef(DocumentType.PROCUREMENT, procurement_doc.doc_id)
        request_id = uuid4()

        await adapter.on_resolved(ref, RequestStatus.APPROVED, request_id=request_id)
        await adapter.on_resolved(ref, RequestStatus.APPROVED, request_id=request_id)

        assert procurement_doc.status == "approved"
        assert "last_approval_comment" not in procurement_doc.payload


class TestPayrollRunEmployeeAdapter:
    async def test_tracks_approval_status(self, session, payroll_service, org):
        run = await payroll_service.create_run(date(2025, 3, 1), org.office.office_id)
        row = (await payroll_service.list_employees(run.run_id))[0]
        adapter = PayrollRunEmployeeAdapter(session)
        ref = DocumentRef(DocumentType.PAYROLL_RUN_EMPLOYEE, row.run_employee_id)
        request_id = uuid4()

        await adapter.on_submitted(ref, request_id=request_id)
        assert (row.approval_status, row.approval_request_id) == ("pending", request_id)

        await adapter.on_resolved(ref, RequestStatus.APPROVED, request_id=request_id)
        assert row.approval_status == "approved"


class TestAdapterRegistry:
    async def test_default_registry_covers_every_type(self, session):
        registry = default_adapters(session)

        for document_type in DocumentType:
            assert document_type in registry
        assert isinstance(registry.for_type("timesheet"), TimesheetAdapter)

    async def test_unregistered_type(self, session):
        registry = AdapterRegistry({DocumentType.TIMESHEET: TimesheetAdapter(session)})

        with pytest.raises(ValidationFailedError):
            registry.for_type(DocumentType.PROCUREMENT)
