"""Payroll run ledger services."""

from hr_ledger.services.state_machine import PayrollRunStateMachine, PayrollRunStatus
from hr_ledger.services.locking_service import LockingService
from hr_ledger.services.payment_service import PaymentService
from hr_ledger.services.payroll_run_service import PayrollRunService
from hr_ledger.services.reporting import ApprovalStatistics, ReportingService, RunSummary

__all__ = [
    "PayrollRunStateMachine",
    "PayrollRunStatus",
    "LockingService",
    "PaymentService",
    "PayrollRunService",
    "ReportingService",
    "RunSummary",
    "ApprovalStatistics",
]
