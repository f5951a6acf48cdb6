"""API routes."""

from hr_ledger.api.routes.approvals import router as approvals_router
from hr_ledger.api.routes.health import router as health_router
from hr_ledger.api.routes.payroll_runs import employees_router as payroll_run_employees_router
from hr_ledger.api.routes.payroll_runs import router as payroll_runs_router

__all__ = [
    "approvals_router",
    "health_router",
    "payroll_runs_router",
    "payroll_run_employees_router",
]
