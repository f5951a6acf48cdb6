"""Tests for the approval workflow engine."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from hr_ledger.approvals import (
    ApproverType,
    DocumentRef,
    DocumentType,
    ProcurementPayload,
    SalaryAdvancePayload,
    StepDefinition,
    TimesheetPayload,
    define_workflow,
)
from hr_ledger.events import (
    ApprovalRequestAdvanced,
    ApprovalRequestCreated,
    ApprovalRequestResolved,
)
from hr_ledger.exceptions import (
    ApproverResolutionFailed,
    ConcurrentModificationError,
    DelegationNotFound,
    DuplicateSubmission,
    NotAuthorizedError,
    RequestNotFound,
    RequestNotPending,
    ValidationFailedError,
    WorkflowNotFound,
)
from hr_ledger.models import UserRole, utcnow


def _timesheet_ref(timesheet):
    return DocumentRef(DocumentType.TIMESHEET, timesheet.timesheet_id)


def _timesheet_payload(timesheet):
    return TimesheetPayload(
        timesheet_id=timesheet.timesheet_id,
        employee_id=timesheet.employee_id,
        year=timesheet.year,
        month=timesheet.month,
        total_hours=timesheet.total_hours,
    )


async def _submit_timesheet(engine, org, timesheet):
    return await engine.submit(
        _timesheet_ref(timesheet),
        org.alice.employee_id,
        _timesheet_payload(timesheet),
    )


async def _submit_advance(engine, org, advance, workflow_id=None):
    return await engine.submit(
        DocumentRef(DocumentType.SALARY_ADVANCE, advance.advance_id),
        org.alice.employee_id,
        SalaryAdvancePayload(
            advance_id=advance.advance_id,
            employee_id=advance.employee_id,
            amount=advance.amount,
            installments=advance.installments,
        ),
        workflow_id=workflow_id,
    )


async def _submit_procurement(engine, org, doc):
    return await engine.submit(
        DocumentRef(DocumentType.PROCUREMENT, doc.doc_id),
        org.alice.employee_id,
        ProcurementPayload(
            doc_id=doc.doc_id,
            doc_type=doc.doc_type,
            title=doc.title,
            total_amount=doc.total_amount,
        ),
    )


async def _grant_admin(session, employee):
    session.add(UserRole(user_id=employee.employee_id, role="admin"))
    await session.flush()


def _by_step(actions):
    steps: dict[int, list] = {}
    for action in actions:
        steps.setdefault(action.step_order, []).append(action)
    return steps


class TestSubmit:
    """Opening approval requests."""

    async def test_submit_opens_first_step(self, approval_engine, org, timesheet):
        request = await _submit_timesheet(approval_engine, org, timesheet)

        assert request.status == "pending"
        assert request.current_step == 1
        assert request.total_steps == 1
        assert request.request_number.startswith("APR-")
        assert len(request.request_number) == len("APR-20250101-") + 8

        actions = await approval_engine.list_actions(request.request_id)
        assert [(a.approver_id, a.action) for a in actions] == [
            (org.manager.employee_id, "pending")
        ]

        assert timesheet.status == "submitted"
        assert timesheet.submitted_at is not None

    async def test_payload_is_stored_typed(self, approval_engine, org, timesheet):
        request = await _submit_timesheet(approval_engine, org, timesheet)

        payload = approval_engine.payload_of(request)
        assert payload == _timesheet_payload(timesheet)
        assert request.request_data["timesheet_id"] == str(timesheet.timesheet_id)

    async def test_payload_must_describe_document(self, approval_engine, org, timesheet):
        other = TimesheetPayload(
            timesheet_id=uuid4(),
            employee_id=org.alice.employee_id,
            year=2025,
            month=3,
        )
        with pytest.raises(ValidationFailedError):
            await approval_engine.submit(_timesheet_ref(timesheet), org.alice.employee_id, other)

    async def test_unknown_priority_rejected(self, approval_engine, org, timesheet):
        with pytest.raises(ValidationFailedError, match="priority"):
            await approval_engine.submit(
                _timesheet_ref(timesheet),
                org.alice.employee_id,
                _timesheet_payload(timesheet),
                priority="critical",
            )

    async def test_duplicate_submission_rejected(self, approval_engine, org, timesheet):
        first = await _submit_timesheet(approval_engine, org, timesheet)

        with pytest.raises(DuplicateSubmission) as exc_info:
            await _submit_timesheet(approval_engine, org, timesheet)

        assert exc_info.value.request_id == first.request_id

    async def test_resubmit_after_withdrawal(self, approval_engine, org, timesheet):
        first = await _submit_timesheet(approval_engine, org, timesheet)
        await approval_engine.process_action(first.request_id, org.alice.employee_id, "cancel")

        second = await _submit_timesheet(approval_engine, org, timesheet)

        assert second.request_id != first.request_id
        assert second.status == "pending"
        assert timesheet.status == "submitted"

    async def test_first_step_without_approver_fails(self, session, approval_engine, org, timesheet):
        # Alice's manager leaves
        org.manager.is_active = False
        await session.flush()

        with pytest.raises(ApproverResolutionFailed) as exc_info:
            await _submit_timesheet(approval_engine, org, timesheet)

        assert exc_info.value.step_order == 1
        assert timesheet.status == "draft"


class TestSingleStep:
    async def test_manager_approves_timesheet(self, approval_engine, org, timesheet):
        request = await _submit_timesheet(approval_engine, org, timesheet)

        result = await approval_engine.process_action(
            request.request_id, org.manager.employee_id, "approve", comment="ok"
        )

        assert result.status == "approved"
        assert result.completed_at is not None
        assert timesheet.status == "approved"
        assert timesheet.approved_at is not None

        (action,) = await approval_engine.list_actions(request.request_id)
        assert action.action == "approved"
        assert action.comment == "ok"
        assert action.acted_by == org.manager.employee_id

    async def test_terminal_request_stays_terminal(self, approval_engine, org, timesheet):
        request = await _submit_timesheet(approval_engine, org, timesheet)
        await approval_engine.process_action(request.request_id, org.manager.employee_id, "reject")

        for decision in ("approve", "reject", "cancel"):
            with pytest.raises(RequestNotPending):
                await approval_engine.process_action(
                    request.request_id, org.manager.employee_id, decision
                )

        assert request.status == "rejected"
        assert timesheet.status == "rejected"

    async def test_reject_records_comment_on_timesheet(self, approval_engine, org, timesheet):
        request = await _submit_timesheet(approval_engine, org, timesheet)

        await approval_engine.process_action(
            request.request_id, org.manager.employee_id, "decline", comment="Missing Friday"
        )

        assert timesheet.status == "rejected"
        assert timesheet.comments == "Missing Friday"

    async def test_unknown_decision(self, approval_engine, org, timesheet):
        request = await _submit_timesheet(approval_engine, org, timesheet)

        with pytest.raises(ValidationFailedError):
            await approval_engine.process_action(request.request_id, org.manager.employee_id, "maybe")

    async def test_unknown_request(self, approval_engine, org):
        with pytest.raises(RequestNotFound):
            await approval_engine.process_action(uuid4(), org.manager.employee_id, "approve")


class TestMultiStep:
    """Sequential steps: one active step at a time."""

    async def test_procurement_walks_every_step(self, approval_engine, org, procurement_doc):
        request = await _submit_procurement(approval_engine, org, procurement_doc)
        assert request.total_steps == 3

        await approval_engine.process_action(request.request_id, org.manager.employee_id, "approve")
        assert request.current_step == 2
        assert request.status == "pending"

        steps = _by_step(await approval_engine.list_actions(request.request_id))
        assert set(steps) == {1, 2}
        assert [a.approver_id for a in steps[2]] == [org.cfo.employee_id]

        await approval_engine.process_action(request.request_id, org.cfo.employee_id, "approve")
        assert request.current_step == 3

        await approval_engine.process_action(
            request.request_id, org.hr1.employee_id, "approve", comment="Go ahead"
        )
        assert request.status == "approved"
        assert procurement_doc.status == "approved"
        assert procurement_doc.payload["approval_request_id"] == str(request.request_id)
        assert procurement_doc.payload["last_approval_comment"] == "Go ahead"
        assert procurement_doc.payload["lines"] == 2

    async def test_later_step_approver_cannot_act_early(self, approval_engine, org, procurement_doc):
        request = await _submit_procurement(approval_engine, org, procurement_doc)

        with pytest.raises(NotAuthorizedError):
            await approval_engine.process_action(request.request_id, org.cfo.employee_id, "approve")

        assert request.current_step == 1

    async def test_resolution_failure_leaves_request_untouched(
        self, session, approval_engine, org, procurement_doc
    ):
        request = await _submit_procurement(approval_engine, org, procurement_doc)
        version = request.version

        # Nobody holds the finance role any more
        role = (
            await session.execute(select(UserRole).where(UserRole.user_id == org.cfo.employee_id))
        ).scalar_one()
        role.is_active = False
        await session.flush()

        with pytest.raises(ApproverResolutionFailed) as exc_info:
            await approval_engine.process_action(
                request.request_id, org.manager.employee_id, "approve"
            )
        assert exc_info.value.step_order == 2

        assert request.current_step == 1
        assert request.status == "pending"
        assert request.version == version
        (action,) = await approval_engine.list_actions(request.request_id)
        assert action.action == "pending"

        role.is_active = True
        await session.flush()
        await approval_engine.process_action(request.request_id, org.manager.employee_id, "approve")
        assert request.current_step == 2


class TestMultipleApprovers:
    """Role steps resolving to several approvers."""

    async def test_first_approval_wins(self, approval_engine, org, salary_advance):
        request = await _submit_advance(approval_engine, org, salary_advance)
        await approval_engine.process_action(request.request_id, org.manager.employee_id, "approve")

        steps = _by_step(await approval_engine.list_actions(request.request_id))
        assert {a.approver_id for a in steps[2]} == {org.hr1.employee_id, org.hr2.employee_id}

        await approval_engine.process_action(request.request_id, org.hr2.employee_id, "approve")

        assert request.status == "approved"
        steps = _by_step(await approval_engine.list_actions(request.request_id))
        outcome = {a.approver_id: a.action for a in steps[2]}
        assert outcome == {org.hr1.employee_id: "cancelled", org.hr2.employee_id: "approved"}
        assert salary_advance.status == "approved"
        assert salary_advance.decided_at is not None

    async def test_any_rejection_terminates(self, approval_engine, org, salary_advance):
        request = await _submit_advance(approval_engine, org, salary_advance)
        await approval_engine.process_action(request.request_id, org.manager.employee_id, "approve")

        await approval_engine.process_action(request.request_id, org.hr1.employee_id, "reject")

        assert request.status == "rejected"
        steps = _by_step(await approval_engine.list_actions(request.request_id))
        outcome = {a.approver_id: a.action for a in steps[2]}
        assert outcome == {org.hr1.employee_id: "rejected", org.hr2.employee_id: "cancelled"}
        assert salary_advance.status == "rejected"

        with pytest.raises(RequestNotPending):
            await approval_engine.process_action(request.request_id, org.hr2.employee_id, "approve")

    async def test_required_approvals_waits_for_quorum(
        self, session, approval_engine, org, salary_advance
    ):
        workflow = await define_workflow(
            session,
            DocumentType.SALARY_ADVANCE,
            "Two HR signatures",
            [StepDefinition("HR", ApproverType.ROLE, role_name="hr", required_approvals=2)],
            is_default=False,
        )
        request = await _submit_advance(
            approval_engine, org, salary_advance, workflow_id=workflow.workflow_id
        )
        version = request.version

        await approval_engine.process_action(request.request_id, org.hr1.employee_id, "approve")
        assert request.status == "pending"
        assert request.version > version

        with pytest.raises(NotAuthorizedError):
            await approval_engine.process_action(request.request_id, org.hr1.employee_id, "approve")

        await approval_engine.process_action(request.request_id, org.hr2.employee_id, "approve")
        assert request.status == "approved"

    async def test_required_approvals_capped_by_approvers(
        self, session, approval_engine, org, salary_advance
    ):
        workflow = await define_workflow(
            session,
            DocumentType.SALARY_ADVANCE,
            "Three finance signatures",
            [StepDefinition("Finance", ApproverType.ROLE, role_name="finance", required_approvals=3)],
            is_default=False,
        )
        request = await _submit_advance(
            approval_engine, org, salary_advance, workflow_id=workflow.workflow_id
        )

        await approval_engine.process_action(request.request_id, org.cfo.employee_id, "approve")

        assert request.status == "approved"


class TestAuthorization:
    async def test_stranger_cannot_act(self, approval_engine, org, timesheet):
        request = await _submit_timesheet(approval_engine, org, timesheet)

        with pytest.raises(NotAuthorizedError):
            await approval_engine.process_action(
                request.request_id, org.outsider.employee_id, "approve"
            )

        (action,) = await approval_engine.list_actions(request.request_id)
        assert action.action == "pending"
        assert request.status == "pending"

    async def test_requester_can_withdraw(self, approval_engine, org, timesheet):
        request = await _submit_timesheet(approval_engine, org, timesheet)

        await approval_engine.process_action(request.request_id, org.alice.employee_id, "cancel")

        assert request.status == "cancelled"
        assert timesheet.status == "draft"

    async def test_requester_cannot_approve_own_request(self, approval_engine, org, timesheet):
        request = await _submit_timesheet(approval_engine, org, timesheet)

        with pytest.raises(NotAuthorizedError):
            await approval_engine.process_action(request.request_id, org.alice.employee_id, "approve")

    async def test_can_act(self, approval_engine, org, timesheet):
        request = await _submit_timesheet(approval_engine, org, timesheet)

        assert await approval_engine.can_act(request.request_id, org.manager.employee_id) is True
        assert await approval_engine.can_act(request.request_id, org.outsider.employee_id) is False

        await approval_engine.process_action(request.request_id, org.manager.employee_id, "approve")
        assert await approval_engine.can_act(request.request_id, org.manager.employee_id) is False

    async def test_stale_expected_version(self, approval_engine, org, timesheet):
        request = await _submit_timesheet(approval_engine, org, timesheet)
        stale = request.version + 1

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await approval_engine.process_action(
                request.request_id, org.manager.employee_id, "approve", expected_version=stale
            )
        assert exc_info.value.retryable is True
        assert request.status == "pending"

        await approval_engine.process_action(
            request.request_id,
            org.manager.employee_id,
            "approve",
            expected_version=request.version,
        )
        assert request.status == "approved"


class TestDelegation:
    async def test_delegate_acts_for_approver(self, approval_engine, org, timesheet):
        now = utcnow()
        await approval_engine.delegate(
            org.manager.employee_id,
            org.outsider.employee_id,
            now - timedelta(hours=1),
            now + timedelta(days=7),
            reason="Vacation",
        )
        request = await _submit_timesheet(approval_engine, org, timesheet)

        assert await approval_engine.can_act(request.request_id, org.outsider.employee_id) is True
        await approval_engine.process_action(request.request_id, org.outsider.employee_id, "approve")

        assert request.status == "approved"
        (action,) = await approval_engine.list_actions(request.request_id)
        assert action.approver_id == org.manager.employee_id
        assert action.acted_by == org.outsider.employee_id

    async def test_ended_delegation_grants_nothing(self, approval_engine, org, timesheet):
        now = utcnow()
        delegation = await approval_engine.delegate(
            org.manager.employee_id,
            org.outsider.employee_id,
            now - timedelta(hours=1),
            now + timedelta(days=7),
        )
        await approval_engine.end_delegation(delegation.delegation_id, org.manager.employee_id)
        request = await _submit_timesheet(approval_engine, org, timesheet)

        with pytest.raises(NotAuthorizedError):
            await approval_engine.process_action(
                request.request_id, org.outsider.employee_id, "approve"
            )

    async def test_future_delegation_not_yet_active(self, approval_engine, org, timesheet):
        now = utcnow()
        await approval_engine.delegate(
            org.manager.employee_id,
            org.outsider.employee_id,
            now + timedelta(days=1),
            now + timedelta(days=7),
        )
        request = await _submit_timesheet(approval_engine, org, timesheet)

        assert await approval_engine.can_act(request.request_id, org.outsider.employee_id) is False

    async def test_invalid_delegations(self, approval_engine, org):
        now = utcnow()
        with pytest.raises(ValidationFailedError):
            await approval_engine.delegate(
                org.manager.employee_id, org.manager.employee_id, now, now + timedelta(days=1)
            )
        with pytest.raises(ValidationFailedError):
            await approval_engine.delegate(
                org.manager.employee_id, org.outsider.employee_id, now, now - timedelta(days=1)
            )

    async def test_end_unknown_delegation(self, approval_engine, org):
        with pytest.raises(DelegationNotFound):
            await approval_engine.end_delegation(uuid4(), org.manager.employee_id)

    async def test_only_delegator_or_admin_ends_delegation(self, session, approval_engine, org):
        now = utcnow()
        delegation = await approval_engine.delegate(
            org.manager.employee_id,
            org.outsider.employee_id,
            now - timedelta(hours=1),
            now + timedelta(days=7),
        )

        # Neither the delegate nor an unrelated user may revoke it
        for user in (org.outsider, org.hr1):
            with pytest.raises(NotAuthorizedError):
                await approval_engine.end_delegation(delegation.delegation_id, user.employee_id)
        assert delegation.is_active is True

        await _grant_admin(session, org.cfo)
        await approval_engine.end_delegation(delegation.delegation_id, org.cfo.employee_id)

        assert delegation.is_active is False

    async def test_scoped_delegation_covers_only_its_workflow(
        self, approval_engine, org, workflows, timesheet, salary_advance
    ):
        now = utcnow()
        delegation = await approval_engine.delegate(
            org.manager.employee_id,
            org.outsider.employee_id,
            now - timedelta(hours=1),
            now + timedelta(days=7),
            workflow_id=workflows.workflow_for(DocumentType.TIMESHEET),
        )
        sheet_request = await _submit_timesheet(approval_engine, org, timesheet)
        advance_request = await _submit_advance(approval_engine, org, salary_advance)

        assert delegation.workflow_id == sheet_request.workflow_id
        assert await approval_engine.can_act(sheet_request.request_id, org.outsider.employee_id) is True
        assert await approval_engine.can_act(advance_request.request_id, org.outsider.employee_id) is False
        with pytest.raises(NotAuthorizedError):
            await approval_engine.process_action(
                advance_request.request_id, org.outsider.employee_id, "approve"
            )

        inbox = await approval_engine.pending_for_user(org.outsider.employee_id)
        assert [r.request_id for r in inbox] == [sheet_request.request_id]

        await approval_engine.process_action(
            sheet_request.request_id, org.outsider.employee_id, "approve"
        )
        assert sheet_request.status == "approved"

    async def test_scope_must_name_existing_workflow(self, approval_engine, org):
        now = utcnow()
        with pytest.raises(WorkflowNotFound):
            await approval_engine.delegate(
                org.manager.employee_id,
                org.outsider.employee_id,
                now,
                now + timedelta(days=1),
                workflow_id=uuid4(),
            )

    async def test_list_delegations(self, approval_engine, org):
        now = utcnow()
        given = await approval_engine.delegate(
            org.manager.employee_id, org.outsider.employee_id, now - timedelta(hours=1), now + timedelta(days=7)
        )
        scheduled = await approval_engine.delegate(
            org.hr1.employee_id, org.manager.employee_id, now + timedelta(days=1), now + timedelta(days=2)
        )
        await approval_engine.delegate(
            org.manager.employee_id, org.hr2.employee_id, now - timedelta(days=3), now - timedelta(days=1)
        )
        ended = await approval_engine.delegate(
            org.manager.employee_id, org.cfo.employee_id, now - timedelta(hours=1), now + timedelta(days=1)
        )
        await approval_engine.end_delegation(ended.delegation_id, org.manager.employee_id)

        current = await approval_engine.list_delegations(org.manager.employee_id)
        assert {d.delegation_id for d in current} == {given.delegation_id, scheduled.delegation_id}

        everything = await approval_engine.list_delegations(
            org.manager.employee_id, include_inactive=True
        )
        assert len(everything) == 4
        assert await approval_engine.list_delegations(org.bob.employee_id) == []


class TestInbox:
    async def test_pending_follows_current_step(self, approval_engine, org, salary_advance):
        request = await _submit_advance(approval_engine, org, salary_advance)

        inbox = await approval_engine.pending_for_user(org.manager.employee_id)
        assert [r.request_id for r in inbox] == [request.request_id]
        assert await approval_engine.pending_for_user(org.hr1.employee_id) == []

        await approval_engine.process_action(request.request_id, org.manager.employee_id, "approve")

        assert await approval_engine.pending_for_user(org.manager.employee_id) == []
        for approver in (org.hr1, org.hr2):
            inbox = await approval_engine.pending_for_user(approver.employee_id)
            assert [r.request_id for r in inbox] == [request.request_id]

    async def test_delegate_sees_delegated_requests(self, approval_engine, org, salary_advance):
        now = utcnow()
        await approval_engine.delegate(
            org.manager.employee_id,
            org.outsider.employee_id,
            now - timedelta(hours=1),
            now + timedelta(days=1),
        )
        request = await _submit_advance(approval_engine, org, salary_advance)

        inbox = await approval_engine.pending_for_user(org.outsider.employee_id)
        assert [r.request_id for r in inbox] == [request.request_id]


class TestEvents:
    async def test_lifecycle_events(self, approval_engine, org, salary_advance, events):
        request = await _submit_advance(approval_engine, org, salary_advance)
        await approval_engine.process_action(request.request_id, org.manager.employee_id, "approve")
        await approval_engine.process_action(request.request_id, org.hr1.employee_id, "approve")

        assert [type(e) for e in events] == [
            ApprovalRequestCreated,
            ApprovalRequestAdvanced,
            ApprovalRequestResolved,
        ]
        created, advanced, resolved = events
        assert created.approver_ids == (org.manager.employee_id,)
        assert (advanced.from_step, advanced.to_step) == (1, 2)
        assert resolved.outcome == "approved"
        assert resolved.document_id == salary_advance.advance_id
        assert {e.metadata.correlation_id for e in events} == {request.request_id}

    async def test_failing_consumer_does_not_break_decision(
        self, approval_engine, emitter, org, timesheet
    ):
        def broken(event):
            raise RuntimeError("notification service down")

        emitter.on_all(broken)
        request = await _submit_timesheet(approval_engine, org, timesheet)
        await approval_engine.process_action(request.request_id, org.manager.employee_id, "approve")

        assert request.status == "approved"

    async def test_no_event_for_refused_decision(self, approval_engine, org, timesheet, events):
        request = await _submit_timesheet(approval_engine, org, timesheet)
        events.clear()

        with pytest.raises(NotAuthorizedError):
            await approval_engine.process_action(
                request.request_id, org.outsider.employee_id, "approve"
            )

        assert events == []


class TestPayloads:
    async def test_amounts_survive_storage(self, approval_engine, org, salary_advance):
        request = await _submit_advance(approval_engine, org, salary_advance)

        payload = approval_engine.payload_of(request)
        assert isinstance(payload, SalaryAdvancePayload)
        assert payload.amount == Decimal("300.00")
        assert payload.installments == 3


class TestWorkflowTemplates:
    async def test_admin_defines_default_workflow(self, session, approval_engine, org, timesheet):
        await _grant_admin(session, org.cfo)

        workflow = await approval_engine.create_workflow(
            org.cfo.employee_id,
            "timesheet",
            "Timesheet via HR",
            [StepDefinition("HR", ApproverType.ROLE, role_name="hr")],
        )
        request = await _submit_timesheet(approval_engine, org, timesheet)

        assert approval_engine.registry.workflow_for(DocumentType.TIMESHEET) == workflow.workflow_id
        assert request.workflow_id == workflow.workflow_id
        actions = await approval_engine.list_actions(request.request_id)
        assert {a.approver_id for a in actions} == {org.hr1.employee_id, org.hr2.employee_id}

    async def test_non_admin_cannot_manage_workflows(self, approval_engine, org, workflows):
        with pytest.raises(NotAuthorizedError):
            await approval_engine.create_workflow(
                org.manager.employee_id,
                DocumentType.TIMESHEET,
                "Self service",
                [StepDefinition("Manager", ApproverType.MANAGER)],
            )
        with pytest.raises(NotAuthorizedError):
            await approval_engine.deactivate_workflow(
                workflows.workflow_for(DocumentType.TIMESHEET), org.manager.employee_id
            )

    async def test_get_workflow_lists_steps(self, approval_engine, workflows):
        workflow, steps = await approval_engine.get_workflow(
            workflows.workflow_for(DocumentType.PROCUREMENT)
        )

        assert workflow.document_type == "procurement"
        assert [(s.step_order, s.step_name) for s in steps] == [
            (1, "Manager"),
            (2, "Finance"),
            (3, "Director"),
        ]
        with pytest.raises(WorkflowNotFound):
            await approval_engine.get_workflow(uuid4())

    async def test_deactivated_workflow_takes_no_new_requests(
        self, session, approval_engine, org, workflows, salary_advance
    ):
        await _grant_admin(session, org.cfo)
        advance_wf = workflows.workflow_for(DocumentType.SALARY_ADVANCE)
        running = await _submit_advance(approval_engine, org, salary_advance)

        workflow = await approval_engine.deactivate_workflow(advance_wf, org.cfo.employee_id)

        assert (workflow.is_active, workflow.is_default) == (False, False)
        assert DocumentType.SALARY_ADVANCE not in approval_engine.registry

        # Requests already running finish under the old template
        await approval_engine.process_action(running.request_id, org.manager.employee_id, "approve")
        await approval_engine.process_action(running.request_id, org.hr1.employee_id, "approve")
        assert running.status == "approved"

        with pytest.raises(WorkflowNotFound):
            await _submit_advance(approval_engine, org, salary_advance)
        with pytest.raises(WorkflowNotFound):
            await _submit_advance(approval_engine, org, salary_advance, workflow_id=advance_wf)


class TestDocumentRef:
    def test_plain_string_type_is_coerced(self):
        doc_id = uuid4()
        ref = DocumentRef("timesheet", doc_id)

        assert ref.document_type is DocumentType.TIMESHEET
        assert str(ref) == f"timesheet:{doc_id}"
        assert ref == DocumentRef(DocumentType.TIMESHEET, doc_id)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            DocumentRef("invoice", uuid4())

    async def test_submit_with_plain_string_type(self, approval_engine, org, timesheet):
        request = await approval_engine.submit(
            DocumentRef("timesheet", timesheet.timesheet_id),
            org.alice.employee_id,
            _timesheet_payload(timesheet),
        )

        assert request.document_type == "timesheet"
        assert timesheet.status == "submitted"
