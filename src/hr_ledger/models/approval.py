"""Approval workflow templates, requests, actions and delegations."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from hr_ledger.models.base import Base, JSONType, TimestampMixin, UpdatedAtMixin

DOCUMENT_TYPES = "('timesheet', 'salary_advance', 'procurement', 'payroll_run_employee')"


# ===== Templates =====


class ApprovalWorkflow(Base, TimestampMixin):
    """Workflow template header."""

    __tablename__ = "approval_workflow"

    workflow_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    document_type: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint(
            f"document_type IN {DOCUMENT_TYPES}",
            name="approval_workflow_document_type_check",
        ),
    )


class ApprovalStep(Base, TimestampMixin):
    """One position in a workflow: who approves, in what order."""

    __tablename__ = "approval_step"

    step_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    workflow_id: Mapped[UUID] = mapped_column(
        ForeignKey("approval_workflow.workflow_id", ondelete="CASCADE"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(String, nullable=False)
    approver_type: Mapped[str] = mapped_column(String, nullable=False)
    approver_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=True,
    )
    role_name: Mapped[str | None] = mapped_column(String, nullable=True)
    required_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("workflow_id", "step_order", name="approval_step_order_unique"),
        CheckConstraint("step_order >= 1", name="approval_step_order_check"),
        CheckConstraint("required_approvals >= 1", name="approval_step_required_check"),
        CheckConstraint(
            "approver_type IN ('user', 'manager', 'role', 'role_with_delegates')",
            name="approval_step_approver_type_check",
        ),
    )


# ===== Requests & actions =====


class ApprovalRequest(Base, TimestampMixin, UpdatedAtMixin):
    """One document's journey through a workflow. Never deleted."""

    __tablename__ = "approval_request"

    request_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    request_number: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    requester_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=False,
    )
    document_type: Mapped[str] = mapped_column(String, nullable=False)
    document_id: Mapped[UUID] = mapped_column(nullable=False)
    workflow_id: Mapped[UUID] = mapped_column(
        ForeignKey("approval_workflow.workflow_id"),
        nullable=False,
    )
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    priority: Mapped[str] = mapped_column(String, nullable=False, default="normal")
    request_data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'cancelled')",
            name="approval_request_status_check",
        ),
        CheckConstraint(
            "priority IN ('low', 'normal', 'high', 'urgent')",
            name="approval_request_priority_check",
        ),
        CheckConstraint(
            "current_step >= 1 AND current_step <= total_steps",
            name="approval_request_step_range_check",
        ),
        Index("approval_request_document_idx", "document_type", "document_id"),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"


class ApprovalAction(Base, TimestampMixin):
    """One approver's decision slot for one step of one request."""

    __tablename__ = "approval_action"

    action_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    request_id: Mapped[UUID] = mapped_column(
        ForeignKey("approval_request.request_id", ondelete="CASCADE"),
        nullable=False,
    )
    step_id: Mapped[UUID] = mapped_column(
        ForeignKey("approval_step.step_id"),
        nullable=False,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=False,
    )
    acted_by: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=True,
    )
    action: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "request_id", "step_order", "approver_id",
            name="approval_action_request_step_approver_unique",
        ),
        CheckConstraint(
            "action IN ('pending', 'approved', 'rejected', 'cancelled', 'delegated', 'escalated')",
            name="approval_action_action_check",
        ),
        Index("approval_action_approver_idx", "approver_id", "action"),
    )

    @property
    def is_pending(self) -> bool:
        return self.action == "pending"


class ApprovalDelegation(Base, TimestampMixin):
    """Temporal hand-over of approval authority from one user to another."""

    __tablename__ = "approval_delegation"

    delegation_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    delegator_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=False,
    )
    delegate_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"),
        nullable=False,
    )
    # None covers every workflow
    workflow_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("approval_workflow.workflow_id"),
        nullable=True,
    )
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_to: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("valid_to > valid_from", name="approval_delegation_dates_check"),
        CheckConstraint("delegator_id <> delegate_id", name="approval_delegation_self_check"),
        Index("approval_delegation_delegator_idx", "delegator_id", "is_active"),
    )
