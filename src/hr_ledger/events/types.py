"""Events raised by the approval engine and the payroll run service.

Events are frozen dataclasses published after the producing unit of work has
flushed. `to_dict` / `to_json` give the wire shape handed to notification
and reporting sinks. Events sharing a `correlation_id` belong to the same
approval request or payroll run.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from hr_ledger.models.base import utcnow


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    APPROVAL = "approval"
    PAYROLL = "payroll"
    PAYMENT = "payment"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID
    actor_id: UUID | None
    actor_type: str  # 'user', 'system', 'scheduler'
    source_service: str
    version: int = 1

    @classmethod
    def create(
        cls,
        correlation_id: UUID | None = None,
        actor_id: UUID | None = None,
        actor_type: str | None = None,
        source_service: str = "hr_ledger",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=utcnow(),
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            actor_type=actor_type or ("user" if actor_id else "system"),
            source_service=source_service,
        )


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = _serialize_dict(asdict(self))
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def _serialize_dict(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {key: _serialize_dict(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize_dict(value) for value in obj]
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (UUID, Decimal)):
        # Decimals keep their exact scale as strings
        return str(obj)
    return obj


# =============================================================================
# Approval Events
# =============================================================================


@dataclass(frozen=True)
class ApprovalRequestCreated(DomainEvent):
    """A document was submitted and its first step became active."""

    request_id: UUID
    document_type: str
    document_id: UUID
    approver_ids: tuple[UUID, ...]

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class ApprovalRequestAdvanced(DomainEvent):
    """A step completed and the next step became active."""

    request_id: UUID
    from_step: int
    to_step: int
    approver_ids: tuple[UUID, ...]

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class ApprovalRequestResolved(DomainEvent):
    """A request reached a terminal status."""

    request_id: UUID
    document_type: str
    document_id: UUID
    outcome: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


# =============================================================================
# Payroll Events
# =============================================================================


@dataclass(frozen=True)
class PayrollRunStatusChanged(DomainEvent):
    """A payroll run moved between lifecycle states."""

    run_id: UUID
    from_status: str
    to_status: str

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYROLL


@dataclass(frozen=True)
class PaymentBatchCreated(DomainEvent):
    """Employees of one payment method were paid."""

    run_id: UUID
    payment_batch_id: UUID
    method: str
    batch_number: str
    employee_count: int
    total_amount: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.PAYMENT
