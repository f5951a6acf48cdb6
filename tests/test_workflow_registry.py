"""Tests for workflow templates and the workflow registry."""

from uuid import uuid4

import pytest

from hr_ledger.approvals import (
    ApproverType,
    DocumentType,
    StepDefinition,
    WorkflowRegistry,
    define_workflow,
    load_steps,
)
from hr_ledger.exceptions import ValidationFailedError, WorkflowNotFound
from hr_ledger.models import ApprovalWorkflow


class TestWorkflowRegistry:
    def test_explicit_registration(self):
        workflow_id = uuid4()
        registry = WorkflowRegistry({DocumentType.TIMESHEET: workflow_id})

        assert registry.workflow_for(DocumentType.TIMESHEET) == workflow_id
        assert DocumentType.TIMESHEET in registry

    def test_accepts_enum_values(self):
        workflow_id = uuid4()
        registry = WorkflowRegistry()
        registry.register("procurement", workflow_id)

        assert registry.workflow_for(DocumentType.PROCUREMENT) == workflow_id

    def test_missing_type_raises(self):
        with pytest.raises(WorkflowNotFound):
            WorkflowRegistry().workflow_for(DocumentType.SALARY_ADVANCE)

    async def test_from_database_uses_default_workflows(self, session, workflows):
        registry = await WorkflowRegistry.from_database(session)

        assert {doc_type for doc_type, _ in registry.items()} == set(DocumentType)
        assert registry.workflow_for(DocumentType.TIMESHEET) == workflows.workflow_for(
            DocumentType.TIMESHEET
        )

    async def test_new_default_replaces_previous(self, session, workflows, org):
        old_id = workflows.workflow_for(DocumentType.TIMESHEET)
        new = await define_workflow(
            session,
            DocumentType.TIMESHEET,
            "Timesheet v2",
            [StepDefinition("HR", ApproverType.ROLE, role_name="hr")],
        )

        registry = await WorkflowRegistry.from_database(session)
        assert registry.workflow_for(DocumentType.TIMESHEET) == new.workflow_id

        old = await session.get(ApprovalWorkflow, old_id)
        assert old.is_default is False


class TestDefineWorkflow:
    async def test_steps_are_stored_in_order(self, session, org):
        workflow = await define_workflow(
            session,
            DocumentType.SALARY_ADVANCE,
            "Out of order",
            [
                StepDefinition("HR", ApproverType.ROLE, role_name="hr", step_order=2),
                StepDefinition("Manager", ApproverType.MANAGER, step_order=1),
            ],
        )

        steps = await load_steps(session, workflow.workflow_id)
        assert [(s.step_order, s.step_name) for s in steps] == [(1, "Manager"), (2, "HR")]

    async def test_empty_workflow_rejected(self, session):
        with pytest.raises(WorkflowNotFound):
            await define_workflow(session, DocumentType.TIMESHEET, "Empty", [])

    async def test_gap_in_orders_rejected(self, session):
        with pytest.raises(ValidationFailedError, match="contiguous"):
            await define_workflow(
                session,
                DocumentType.TIMESHEET,
                "Gap",
                [
                    StepDefinition("First", ApproverType.MANAGER, step_order=1),
                    StepDefinition("Third", ApproverType.MANAGER, step_order=3),
                ],
            )

    async def test_user_step_requires_approver(self, session):
        with pytest.raises(ValidationFailedError, match="approver_id"):
            await define_workflow(
                session,
                DocumentType.TIMESHEET,
                "No approver",
                [StepDefinition("Fixed", ApproverType.USER)],
            )

    async def test_role_step_requires_role_name(self, session):
        with pytest.raises(ValidationFailedError, match="role_name"):
            await define_workflow(
                session,
                DocumentType.TIMESHEET,
                "No role",
                [StepDefinition("Role", ApproverType.ROLE_WITH_DELEGATES)],
            )

    async def test_unknown_approver_type_rejected(self, session):
        with pytest.raises(ValidationFailedError, match="unknown approver type"):
            await define_workflow(
                session,
                DocumentType.TIMESHEET,
                "Bad type",
                [StepDefinition("Who", "direct_report")],
            )

    async def test_load_steps_of_unknown_workflow(self, session):
        with pytest.raises(WorkflowNotFound):
            await load_steps(session, uuid4())
