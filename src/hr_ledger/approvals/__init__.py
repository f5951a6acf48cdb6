"""Approval workflow engine and its collaborators."""

from hr_ledger.approvals.types import (
    ActionStatus,
    ApprovalPayload,
    ApproverType,
    Decision,
    DocumentRef,
    DocumentType,
    PayrollEmployeePayload,
    Priority,
    ProcurementPayload,
    RequestStatus,
    SalaryAdvancePayload,
    TimesheetPayload,
    normalize_decision,
    parse_payload,
)
from hr_ledger.approvals.registry import (
    StepDefinition,
    WorkflowRegistry,
    define_workflow,
    load_steps,
    load_workflow,
)
from hr_ledger.approvals.identity import DatabaseIdentityProvider, IdentityProvider
from hr_ledger.approvals.adapters import (
    AdapterRegistry,
    BusinessRecordAdapter,
    PayrollRunEmployeeAdapter,
    ProcurementAdapter,
    SalaryAdvanceAdapter,
    TimesheetAdapter,
    default_adapters,
)
from hr_ledger.approvals.engine import ApprovalEngine

__all__ = [
    # Types
    "ActionStatus",
    "ApprovalPayload",
    "ApproverType",
    "Decision",
    "DocumentRef",
    "DocumentType",
    "Priority",
    "RequestStatus",
    "normalize_decision",
    "parse_payload",
    # Payloads
    "TimesheetPayload",
    "SalaryAdvancePayload",
    "ProcurementPayload",
    "PayrollEmployeePayload",
    # Registry
    "StepDefinition",
    "WorkflowRegistry",
    "define_workflow",
    "load_steps",
    "load_workflow",
    # Identity
    "IdentityProvider",
    "DatabaseIdentityProvider",
    # Adapters
    "AdapterRegistry",
    "BusinessRecordAdapter",
    "TimesheetAdapter",
    "SalaryAdvanceAdapter",
    "ProcurementAdapter",
    "PayrollRunEmployeeAdapter",
    "default_adapters",
    # Engine
    "ApprovalEngine",
]
