"""Workflow template registry and template persistence."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hr_ledger.approvals.types import ApproverType, DocumentType
from hr_ledger.exceptions import ValidationFailedError, WorkflowNotFound
from hr_ledger.models import ApprovalStep, ApprovalWorkflow

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """Maps each document type to the workflow template used for it.

    The registry is built once and injected into the engine, so the engine
    never looks workflows up by free-form keys.

    Usage:
        registry = WorkflowRegistry({DocumentType.TIMESHEET: timesheet_wf_id})
        # or
        registry = await WorkflowRegistry.from_database(session)
    """

    def __init__(self, workflows: Mapping[DocumentType, UUID] | None = None):
        self._workflows: dict[DocumentType, UUID] = dict(workflows or {})

    def register(self, document_type: DocumentType, workflow_id: UUID) -> None:
        self._workflows[DocumentType(document_type)] = workflow_id

    def unregister(self, workflow_id: UUID) -> list[DocumentType]:
        """Drop every mapping to ``workflow_id`` and return the types it served."""
        dropped = [t for t, w in self._workflows.items() if w == workflow_id]
        for doc_type in dropped:
            del self._workflows[doc_type]
        return dropped

    def workflow_for(self, document_type: DocumentType) -> UUID:
        """Return the workflow id registered for a document type.

        Raises:
            WorkflowNotFound: No workflow registered for the type
        """
        try:
            return self._workflows[DocumentType(document_type)]
        except KeyError:
            raise WorkflowNotFound(
                f"No workflow registered for document type '{DocumentType(document_type).value}'"
            ) from None

    def __contains__(self, document_type: object) -> bool:
        return document_type in self._workflows

    def items(self) -> list[tuple[DocumentType, UUID]]:
        return list(self._workflows.items())

    @classmethod
    async def from_database(cls, session: AsyncSession) -> WorkflowRegistry:
        """Build a registry from the active default workflow of each type.

        When several active defaults exist for one type, the newest wins.
        """
        result = await session.execute(
            select(ApprovalWorkflow)
            .where(
                ApprovalWorkflow.is_active.is_(True),
                ApprovalWorkflow.is_default.is_(True),
            )
            .order_by(ApprovalWorkflow.created_at)
        )
        registry = cls()
        for workflow in result.scalars():
            registry.register(DocumentType(workflow.document_type), workflow.workflow_id)
        return registry


@dataclass(frozen=True)
class StepDefinition:
    """Definition of one workflow step, used when saving a template."""

    step_name: str
    approver_type: ApproverType
    approver_id: UUID | None = None
    role_name: str | None = None
    required_approvals: int = 1
    step_order: int | None = None


def _validate_steps(steps: list[StepDefinition]) -> list[tuple[int, StepDefinition]]:
    """Check step definitions and return them paired with their order."""
    if not steps:
        raise WorkflowNotFound("A workflow needs at least one step")

    ordered = [
        (step.step_order if step.step_order is not None else position, step)
        for position, step in enumerate(steps, start=1)
    ]
    orders = sorted(order for order, _ in ordered)
    if orders != list(range(1, len(steps) + 1)):
        raise ValidationFailedError(
            f"Step orders must be contiguous starting at 1 (got {orders})"
        )

    for order, step in ordered:
        try:
            approver_type = ApproverType(step.approver_type)
        except ValueError:
            raise ValidationFailedError(
                f"Step {order} has unknown approver type '{step.approver_type}'"
            ) from None
        if not step.step_name:
            raise ValidationFailedError(f"Step {order} has no name")
        if approver_type is ApproverType.USER and step.approver_id is None:
            raise ValidationFailedError(f"Step {order} requires an approver_id")
        if (
            approver_type in (ApproverType.ROLE, ApproverType.ROLE_WITH_DELEGATES)
            and not step.role_name
        ):
            raise ValidationFailedError(f"Step {order} requires a role_name")
        if step.required_approvals < 1:
            raise ValidationFailedError(f"Step {order} must require at least one approval")

    return sorted(ordered, key=lambda pair: pair[0])


async def define_workflow(
    session: AsyncSession,
    document_type: DocumentType,
    name: str,
    steps: Iterable[StepDefinition],
    is_default: bool = True,
) -> ApprovalWorkflow:
    """Persist a workflow template with its steps.

    A new default workflow replaces the previous default for the same
    document type. Requests already in flight keep the workflow they were
    submitted under.
    """
    doc_type = DocumentType(document_type)
    ordered = _validate_steps(list(steps))

    if is_default:
        await session.execute(
            update(ApprovalWorkflow)
            .where(
                ApprovalWorkflow.document_type == doc_type.value,
                ApprovalWorkflow.is_default.is_(True),
            )
            .values(is_default=False)
        )

    workflow = ApprovalWorkflow(
        document_type=doc_type.value,
        name=name,
        is_default=is_default,
        is_active=True,
    )
    session.add(workflow)
    await session.flush()

    for order, step in ordered:
        session.add(
            ApprovalStep(
                workflow_id=workflow.workflow_id,
                step_order=order,
                step_name=step.step_name,
                approver_type=ApproverType(step.approver_type).value,
                approver_id=step.approver_id,
                role_name=step.role_name,
                required_approvals=step.required_approvals,
            )
        )
    await session.flush()

    logger.info(
        "Defined workflow %s '%s' for %s with %d step(s)",
        workflow.workflow_id,
        name,
        doc_type.value,
        len(ordered),
    )
    return workflow


async def load_workflow(
    session: AsyncSession, workflow_id: UUID
) -> tuple[ApprovalWorkflow, list[ApprovalStep]]:
    """Load a workflow template with all of its steps, active or not."""
    workflow = await session.get(ApprovalWorkflow, workflow_id)
    if workflow is None:
        raise WorkflowNotFound(f"Workflow {workflow_id} not found")
    result = await session.execute(
        select(ApprovalStep)
        .where(ApprovalStep.workflow_id == workflow_id)
        .order_by(ApprovalStep.step_order)
    )
    return workflow, list(result.scalars())


async def load_steps(session: AsyncSession, workflow_id: UUID) -> list[ApprovalStep]:
    """Load the active steps of a workflow in order.

    Raises:
        WorkflowNotFound: Workflow missing, inactive, without steps, or with
            a gap in its step orders
    """
    workflow = await session.get(ApprovalWorkflow, workflow_id)
    if workflow is None or not workflow.is_active:
        raise WorkflowNotFound(f"Workflow {workflow_id} not found or inactive")

    result = await session.execute(
        select(ApprovalStep)
        .where(
            ApprovalStep.workflow_id == workflow_id,
            ApprovalStep.is_active.is_(True),
        )
        .order_by(ApprovalStep.step_order)
    )
    steps = list(result.scalars())
    if not steps:
        raise WorkflowNotFound(f"Workflow {workflow_id} has no active steps")

    if [s.step_order for s in steps] != list(range(1, len(steps) + 1)):
        raise WorkflowNotFound(
            f"Workflow {workflow_id} has non-contiguous step orders"
        )
    return steps
