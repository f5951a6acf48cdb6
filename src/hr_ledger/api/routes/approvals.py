"""Approval workflow API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from hr_ledger.api.dependencies import ActorId, Engine, Reporting
from hr_ledger.api.schemas import (
    ApprovalActionResponse,
    ApprovalDecision,
    ApprovalRequestResponse,
    ApprovalStatisticsResponse,
    ApprovalSubmit,
    CanActResponse,
    DelegationCreate,
    DelegationResponse,
    ErrorResponse,
    WorkflowCreate,
    WorkflowResponse,
    WorkflowStepResponse,
)
from hr_ledger.approvals import DocumentRef, DocumentType, StepDefinition, parse_payload

router = APIRouter(prefix="/approvals", tags=["approvals"])


# ============================================================================
# Requests
# ============================================================================


@router.post(
    "/requests",
    response_model=ApprovalRequestResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def submit_request(
    engine: Engine,
    actor_id: ActorId,
    body: ApprovalSubmit,
) -> ApprovalRequestResponse:
    """Submit a document for approval on behalf of the acting user."""
    ref = DocumentRef(body.document_type, body.document_id)
    payload = parse_payload(body.document_type, body.payload)
    request = await engine.submit(
        ref,
        actor_id,
        payload,
        workflow_id=body.workflow_id,
        priority=body.priority,
    )
    return ApprovalRequestResponse.model_validate(request)


@router.get(
    "/requests/{request_id}",
    response_model=ApprovalRequestResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_request(
    engine: Engine,
    request_id: Annotated[UUID, Path()],
) -> ApprovalRequestResponse:
    request = await engine.get_request(request_id)
    return ApprovalRequestResponse.model_validate(request)


@router.get(
    "/requests/{request_id}/actions",
    response_model=list[ApprovalActionResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_actions(
    engine: Engine,
    request_id: Annotated[UUID, Path()],
) -> list[ApprovalActionResponse]:
    actions = await engine.list_actions(request_id)
    return [ApprovalActionResponse.model_validate(a) for a in actions]


@router.post(
    "/requests/{request_id}/actions",
    response_model=ApprovalRequestResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def process_action(
    engine: Engine,
    actor_id: ActorId,
    request_id: Annotated[UUID, Path()],
    body: ApprovalDecision,
) -> ApprovalRequestResponse:
    """Approve, reject or cancel the current step as the acting user."""
    request = await engine.process_action(
        request_id,
        actor_id,
        body.decision,
        comment=body.comment,
        expected_version=body.expected_version,
    )
    return ApprovalRequestResponse.model_validate(request)


@router.get(
    "/requests/{request_id}/can-act",
    response_model=CanActResponse,
    responses={404: {"model": ErrorResponse}},
)
async def can_act(
    engine: Engine,
    actor_id: ActorId,
    request_id: Annotated[UUID, Path()],
) -> CanActResponse:
    """Whether the acting user may decide the current step right now."""
    allowed = await engine.can_act(request_id, actor_id)
    return CanActResponse(request_id=request_id, user_id=actor_id, can_act=allowed)


@router.get("/requests/{request_id}/history", responses={404: {"model": ErrorResponse}})
async def request_history(
    reporting: Reporting,
    request_id: Annotated[UUID, Path()],
) -> dict:
    return await reporting.request_history(request_id)


@router.get("/inbox", response_model=list[ApprovalRequestResponse])
async def inbox(engine: Engine, actor_id: ActorId) -> list[ApprovalRequestResponse]:
    """Pending requests waiting on the acting user, including delegated ones."""
    requests = await engine.pending_for_user(actor_id)
    return [ApprovalRequestResponse.model_validate(r) for r in requests]


@router.get("/statistics", response_model=list[ApprovalStatisticsResponse])
async def statistics(
    reporting: Reporting,
    document_type: Annotated[DocumentType | None, Query()] = None,
) -> list[ApprovalStatisticsResponse]:
    stats = await reporting.approval_statistics(document_type)
    return [ApprovalStatisticsResponse.model_validate(s) for s in stats]


# ============================================================================
# Delegations
# ============================================================================


@router.post(
    "/delegations",
    response_model=DelegationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def create_delegation(
    engine: Engine,
    actor_id: ActorId,
    body: DelegationCreate,
) -> DelegationResponse:
    """Delegate the acting user's approval authority for a time window."""
    delegation = await engine.delegate(
        actor_id,
        body.delegate_id,
        body.valid_from,
        body.valid_to,
        reason=body.reason,
        workflow_id=body.workflow_id,
    )
    return DelegationResponse.model_validate(delegation)


@router.get("/delegations", response_model=list[DelegationResponse])
async def list_delegations(
    engine: Engine,
    actor_id: ActorId,
    include_inactive: Annotated[bool, Query()] = False,
) -> list[DelegationResponse]:
    """Delegations the acting user has given or received."""
    delegations = await engine.list_delegations(actor_id, include_inactive=include_inactive)
    return [DelegationResponse.model_validate(d) for d in delegations]


@router.delete(
    "/delegations/{delegation_id}",
    response_model=DelegationResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def end_delegation(
    engine: Engine,
    actor_id: ActorId,
    delegation_id: Annotated[UUID, Path()],
) -> DelegationResponse:
    """End a delegation; allowed for its delegator and for admins."""
    delegation = await engine.end_delegation(delegation_id, actor_id)
    return DelegationResponse.model_validate(delegation)


# ============================================================================
# Workflow templates
# ============================================================================


def _workflow_response(workflow, steps) -> WorkflowResponse:
    response = WorkflowResponse.model_validate(workflow)
    response.steps = [WorkflowStepResponse.model_validate(s) for s in steps]
    return response


@router.post(
    "/workflows",
    response_model=WorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def create_workflow(
    engine: Engine,
    actor_id: ActorId,
    body: WorkflowCreate,
) -> WorkflowResponse:
    """Define a workflow template. Admin only."""
    steps = [
        StepDefinition(
            step_name=s.step_name,
            approver_type=s.approver_type,
            approver_id=s.approver_id,
            role_name=s.role_name,
            required_approvals=s.required_approvals,
        )
        for s in body.steps
    ]
    workflow = await engine.create_workflow(
        actor_id, body.document_type, body.name, steps, is_default=body.is_default
    )
    return _workflow_response(*await engine.get_workflow(workflow.workflow_id))


@router.get(
    "/workflows/{workflow_id}",
    response_model=WorkflowResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_workflow(
    engine: Engine,
    workflow_id: Annotated[UUID, Path()],
) -> WorkflowResponse:
    return _workflow_response(*await engine.get_workflow(workflow_id))


@router.delete(
    "/workflows/{workflow_id}",
    response_model=WorkflowResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def deactivate_workflow(
    engine: Engine,
    actor_id: ActorId,
    workflow_id: Annotated[UUID, Path()],
) -> WorkflowResponse:
    """Take a workflow out of service; running requests are unaffected."""
    workflow = await engine.deactivate_workflow(workflow_id, actor_id)
    return _workflow_response(*await engine.get_workflow(workflow.workflow_id))
