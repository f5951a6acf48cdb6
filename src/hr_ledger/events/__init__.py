"""Domain events package.

This package provides:
- Typed domain events for approval and payroll operations
- Event emitter for publishing events to notification/reporting sinks
"""

from hr_ledger.events.types import (
    # Base
    DomainEvent,
    EventMetadata,
    EventCategory,
    # Approval Events
    ApprovalRequestCreated,
    ApprovalRequestAdvanced,
    ApprovalRequestResolved,
    # Payroll Events
    PayrollRunStatusChanged,
    PaymentBatchCreated,
)
from hr_ledger.events.emitter import (
    EventBatch,
    EventEmitter,
    EventHandler,
)

__all__ = [
    # Base
    "DomainEvent",
    "EventMetadata",
    "EventCategory",
    # Approval Events
    "ApprovalRequestCreated",
    "ApprovalRequestAdvanced",
    "ApprovalRequestResolved",
    # Payroll Events
    "PayrollRunStatusChanged",
    "PaymentBatchCreated",
    # Emitter
    "EventEmitter",
    "EventBatch",
    "EventHandler",
]
