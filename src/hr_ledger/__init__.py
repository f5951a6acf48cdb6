"""Approval workflow and payroll run ledger engine."""

__version__ = "1.0.0"
