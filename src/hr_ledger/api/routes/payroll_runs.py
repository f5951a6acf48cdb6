"""Payroll run API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, status

from hr_ledger.api.dependencies import ActorId, Engine, PayrollService, Reporting
from hr_ledger.api.schemas import (
    ApprovalRequestResponse,
    CancelRunRequest,
    ErrorResponse,
    NetSalaryOverride,
    PaymentBatchResponse,
    PaymentCreate,
    PaymentMethodUpdate,
    PayrollRunCreate,
    PayrollRunEmployeeResponse,
    PayrollRunItemCreate,
    PayrollRunItemResponse,
    PayrollRunResponse,
    RunSummaryResponse,
)

router = APIRouter(prefix="/payroll-runs", tags=["payroll-runs"])
employees_router = APIRouter(prefix="/payroll-run-employees", tags=["payroll-runs"])

RunId = Annotated[UUID, Path()]
RunEmployeeId = Annotated[UUID, Path()]


# ============================================================================
# Payroll Run lifecycle
# ============================================================================


@router.post(
    "",
    response_model=PayrollRunResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def create_run(
    service: PayrollService,
    actor_id: ActorId,
    body: PayrollRunCreate,
) -> PayrollRunResponse:
    """Create the run of a month and office, or return the existing one."""
    run = await service.create_run(
        body.month,
        body.office_id,
        currency=body.currency,
        payment_method_default=body.payment_method_default,
        actor_id=actor_id,
    )
    return PayrollRunResponse.model_validate(run)


@router.get(
    "/{run_id}",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_run(service: PayrollService, run_id: RunId) -> PayrollRunResponse:
    run = await service.get_run(run_id)
    return PayrollRunResponse.model_validate(run)


@router.get(
    "/{run_id}/employees",
    response_model=list[PayrollRunEmployeeResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_run_employees(
    service: PayrollService,
    run_id: RunId,
) -> list[PayrollRunEmployeeResponse]:
    await service.get_run(run_id)
    employees = await service.list_employees(run_id)
    return [PayrollRunEmployeeResponse.model_validate(e) for e in employees]


@router.get(
    "/{run_id}/summary",
    response_model=RunSummaryResponse,
    responses={404: {"model": ErrorResponse}},
)
async def run_summary(reporting: Reporting, run_id: RunId) -> RunSummaryResponse:
    summary = await reporting.run_summary(run_id)
    return RunSummaryResponse.model_validate(summary)


@router.post(
    "/{run_id}/process",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def process_run(
    service: PayrollService,
    actor_id: ActorId,
    run_id: RunId,
) -> PayrollRunResponse:
    """Recompute every employee of the run from its items."""
    run = await service.process_run(run_id, actor_id=actor_id)
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/approve",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def approve_run(
    service: PayrollService,
    actor_id: ActorId,
    run_id: RunId,
) -> PayrollRunResponse:
    run = await service.approve_run(run_id, actor_id=actor_id)
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/ready-to-pay",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def mark_ready_to_pay(
    service: PayrollService,
    actor_id: ActorId,
    run_id: RunId,
) -> PayrollRunResponse:
    run = await service.mark_ready_to_pay(run_id, actor_id=actor_id)
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/payments",
    response_model=PaymentBatchResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def pay_run(
    service: PayrollService,
    actor_id: ActorId,
    run_id: RunId,
    body: PaymentCreate,
) -> PaymentBatchResponse:
    """Pay every ready employee of one payment method; the actor is the payer."""
    batch = await service.pay_run(
        run_id,
        body.method,
        body.batch_number,
        paid_by=actor_id,
        attachment_ref=body.attachment_ref,
    )
    return PaymentBatchResponse.model_validate(batch)


@router.post(
    "/{run_id}/lock",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def lock_run(
    service: PayrollService,
    actor_id: ActorId,
    run_id: RunId,
) -> PayrollRunResponse:
    run = await service.lock_run(run_id, actor_id=actor_id)
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/cancel",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_run(
    service: PayrollService,
    actor_id: ActorId,
    run_id: RunId,
    body: CancelRunRequest,
) -> PayrollRunResponse:
    run = await service.cancel_run(run_id, body.reason, actor_id=actor_id)
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/employee-approvals",
    response_model=list[ApprovalRequestResponse],
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def submit_employee_approvals(
    service: PayrollService,
    engine: Engine,
    actor_id: ActorId,
    run_id: RunId,
) -> list[ApprovalRequestResponse]:
    """Route each employee of a processed run through approval."""
    requests = await service.submit_employee_approvals(run_id, actor_id, engine)
    return [ApprovalRequestResponse.model_validate(r) for r in requests]


# ============================================================================
# Run employees and items
# ============================================================================


@employees_router.get(
    "/{run_employee_id}/items",
    response_model=list[PayrollRunItemResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_items(
    service: PayrollService,
    run_employee_id: RunEmployeeId,
) -> list[PayrollRunItemResponse]:
    items = await service.list_items(run_employee_id)
    return [PayrollRunItemResponse.model_validate(i) for i in items]


@employees_router.post(
    "/{run_employee_id}/items",
    response_model=PayrollRunItemResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def add_manual_item(
    service: PayrollService,
    actor_id: ActorId,
    run_employee_id: RunEmployeeId,
    body: PayrollRunItemCreate,
) -> PayrollRunItemResponse:
    """Add a manual addition or deduction. Re-process the run to update totals."""
    item = await service.add_manual_item(
        run_employee_id,
        body.type,
        body.name,
        body.amount,
        note=body.note,
        created_by=actor_id,
    )
    return PayrollRunItemResponse.model_validate(item)


@employees_router.delete(
    "/items/{item_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def remove_item(
    service: PayrollService,
    actor_id: ActorId,
    item_id: Annotated[UUID, Path()],
) -> None:
    await service.remove_item(item_id, actor_id=actor_id)


@employees_router.put(
    "/{run_employee_id}/payment-method",
    response_model=PayrollRunEmployeeResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def set_payment_method(
    service: PayrollService,
    actor_id: ActorId,
    run_employee_id: RunEmployeeId,
    body: PaymentMethodUpdate,
) -> PayrollRunEmployeeResponse:
    row = await service.set_payment_method(run_employee_id, body.payment_method, actor_id=actor_id)
    return PayrollRunEmployeeResponse.model_validate(row)


@employees_router.put(
    "/{run_employee_id}/net-salary",
    response_model=PayrollRunEmployeeResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def override_net_salary(
    service: PayrollService,
    actor_id: ActorId,
    run_employee_id: RunEmployeeId,
    body: NetSalaryOverride,
) -> PayrollRunEmployeeResponse:
    """Set an administrator net salary; the variance shows the difference."""
    row = await service.override_net_salary(run_employee_id, body.net_salary, actor_id=actor_id)
    return PayrollRunEmployeeResponse.model_validate(row)
