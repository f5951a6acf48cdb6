"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from hr_ledger.approvals.types import ApproverType, DocumentType, Priority


# ============================================================================
# Approval schemas
# ============================================================================


class ApprovalSubmit(BaseModel):
    """Schema for submitting a document for approval."""

    document_type: DocumentType
    document_id: UUID
    payload: dict[str, Any] = Field(default_factory=dict)
    workflow_id: UUID | None = None
    priority: Priority = Priority.NORMAL


class ApprovalDecision(BaseModel):
    """Schema for recording a decision on the current step."""

    decision: str = Field(..., description="approve/approved, reject/rejected or cancel/cancelled")
    comment: str | None = None
    expected_version: int | None = None


class ApprovalRequestResponse(BaseModel):
    """Schema for approval request response."""

    model_config = ConfigDict(from_attributes=True)

    request_id: UUID
    request_number: str
    requester_id: UUID
    document_type: str
    document_id: UUID
    workflow_id: UUID
    current_step: int
    total_steps: int
    status: str
    priority: str
    request_data: dict[str, Any]
    version: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class ApprovalActionResponse(BaseModel):
    """Schema for approval action response."""

    model_config = ConfigDict(from_attributes=True)

    action_id: UUID
    request_id: UUID
    step_order: int
    approver_id: UUID
    acted_by: UUID | None = None
    action: str
    comment: str | None = None
    action_date: datetime | None = None
    created_at: datetime


class CanActResponse(BaseModel):
    request_id: UUID
    user_id: UUID
    can_act: bool


class DelegationCreate(BaseModel):
    """Schema for delegating approval authority to another user."""

    delegate_id: UUID
    valid_from: datetime
    valid_to: datetime
    reason: str | None = None
    workflow_id: UUID | None = Field(None, description="Limit the delegation to one workflow")


class DelegationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    delegation_id: UUID
    delegator_id: UUID
    delegate_id: UUID
    workflow_id: UUID | None = None
    valid_from: datetime
    valid_to: datetime
    reason: str | None = None
    is_active: bool


class WorkflowStepCreate(BaseModel):
    step_name: str = Field(..., min_length=1)
    approver_type: ApproverType
    approver_id: UUID | None = None
    role_name: str | None = None
    required_approvals: int = Field(1, ge=1)


class WorkflowCreate(BaseModel):
    """Schema for defining a workflow template; steps run in list order."""

    document_type: DocumentType
    name: str = Field(..., min_length=1)
    steps: list[WorkflowStepCreate] = Field(..., min_length=1)
    is_default: bool = True


class WorkflowStepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    step_id: UUID
    step_order: int
    step_name: str
    approver_type: str
    approver_id: UUID | None = None
    role_name: str | None = None
    required_approvals: int
    is_active: bool


class WorkflowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    workflow_id: UUID
    document_type: str
    name: str
    is_default: bool
    is_active: bool
    steps: list[WorkflowStepResponse] = Field(default_factory=list)


class ApprovalStatisticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    document_type: str
    total: int
    pending: int
    approved: int
    rejected: int
    cancelled: int
    average_resolution_hours: float | None = None


# ============================================================================
# Payroll Run schemas
# ============================================================================


class PayrollRunCreate(BaseModel):
    """Schema for creating (or fetching) the run of a month and office."""

    month: date
    office_id: UUID
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    payment_method_default: str | None = None


class PayrollRunResponse(BaseModel):
    """Schema for payroll run response."""

    model_config = ConfigDict(from_attributes=True)

    run_id: UUID
    run_month: date
    office_id: UUID
    status: str
    currency: str
    payment_method_default: str
    notes: str | None = None
    processed_at: datetime | None = None
    approved_at: datetime | None = None
    approved_by: UUID | None = None
    locked_at: datetime | None = None
    cancel_reason: str | None = None
    version: int
    created_at: datetime
    updated_at: datetime


class PayrollRunEmployeeResponse(BaseModel):
    """Schema for payroll run employee response."""

    model_config = ConfigDict(from_attributes=True)

    run_employee_id: UUID
    run_id: UUID
    employee_id: UUID
    base_salary: Decimal
    total_additions: Decimal
    total_deductions: Decimal
    net_salary: Decimal
    calc_net_salary: Decimal
    variance: Decimal
    net_overridden: bool
    status: str
    payment_method: str
    payment_date: date | None = None
    payment_batch_id: UUID | None = None
    approval_status: str | None = None
    approval_request_id: UUID | None = None
    calculated_at: datetime | None = None
    payslip_snapshot: dict[str, Any] | None = None


class PayrollRunItemCreate(BaseModel):
    """Schema for adding a manual addition or deduction."""

    type: str = Field(..., pattern="^(addition|deduction)$")
    name: str = Field(..., min_length=1)
    amount: Decimal
    note: str | None = None


class PayrollRunItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: UUID
    run_employee_id: UUID
    type: str
    source: str
    name: str
    amount: Decimal
    reference_table: str | None = None
    reference_id: UUID | None = None
    note: str | None = None
    created_by: UUID | None = None
    locked_at: datetime | None = None
    created_at: datetime


class CancelRunRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class PaymentMethodUpdate(BaseModel):
    payment_method: str


class NetSalaryOverride(BaseModel):
    net_salary: Decimal


class PaymentCreate(BaseModel):
    """Schema for recording the payment of one payment method."""

    method: str
    batch_number: str = Field(..., min_length=1)
    attachment_ref: str | None = None


class PaymentBatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_batch_id: UUID
    run_id: UUID
    method: str
    batch_number: str
    paid_by: UUID | None = None
    paid_at: datetime
    attachment_ref: str | None = None
    employee_count: int
    total_amount: Decimal


class RunSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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
    batches: list[dict[str, Any]]


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    retryable: bool = False
