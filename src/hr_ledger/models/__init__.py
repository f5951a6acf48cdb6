"""ORM models for the approval and payroll ledgers."""

from hr_ledger.models.base import Base, JSONType, TimestampMixin, UpdatedAtMixin, utcnow
from hr_ledger.models.organization import Employee, Office, UserRole
from hr_ledger.models.approval import (
    ApprovalAction,
    ApprovalDelegation,
    ApprovalRequest,
    ApprovalStep,
    ApprovalWorkflow,
)
from hr_ledger.models.documents import (
    MonthlyTimesheet,
    ProcurementDocument,
    SalaryAdvanceRequest,
)
from hr_ledger.models.payroll import (
    PaymentBatch,
    PayrollRun,
    PayrollRunEmployee,
    PayrollRunItem,
)
from hr_ledger.models.audit import AuditEvent

__all__ = [
    "Base",
    "JSONType",
    "TimestampMixin",
    "UpdatedAtMixin",
    "utcnow",
    # Organization
    "Office",
    "Employee",
    "UserRole",
    # Approvals
    "ApprovalWorkflow",
    "ApprovalStep",
    "ApprovalRequest",
    "ApprovalAction",
    "ApprovalDelegation",
    # Documents
    "MonthlyTimesheet",
    "SalaryAdvanceRequest",
    "ProcurementDocument",
    # Payroll
    "PayrollRun",
    "PayrollRunEmployee",
    "PayrollRunItem",
    "PaymentBatch",
    # Audit
    "AuditEvent",
]
