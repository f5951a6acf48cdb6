"""Typed vocabulary of the approval engine.

Request payloads are a tagged union keyed by ``DocumentType``: each document
type has its own frozen payload class, so adapters receive typed data while
the engine core only ever sees ``ApprovalPayload``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Union
from uuid import UUID

from hr_ledger.exceptions import ValidationFailedError


class DocumentType(str, Enum):
    """Business documents that can be routed through an approval workflow."""

    TIMESHEET = "timesheet"
    SALARY_ADVANCE = "salary_advance"
    PROCUREMENT = "procurement"
    PAYROLL_RUN_EMPLOYEE = "payroll_run_employee"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


TERMINAL_REQUEST_STATUSES = frozenset(
    {RequestStatus.APPROVED, RequestStatus.REJECTED, RequestStatus.CANCELLED}
)


class ActionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    DELEGATED = "delegated"
    ESCALATED = "escalated"


class Decision(str, Enum):
    """Decision an approver can record on a pending action."""

    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


_DECISION_ALIASES: dict[str, Decision] = {
    "approve": Decision.APPROVED,
    "approved": Decision.APPROVED,
    "accept": Decision.APPROVED,
    "reject": Decision.REJECTED,
    "rejected": Decision.REJECTED,
    "decline": Decision.REJECTED,
    "cancel": Decision.CANCELLED,
    "cancelled": Decision.CANCELLED,
}


def normalize_decision(value: str | Decision) -> Decision:
    """Map a decision or one of its verb aliases to a ``Decision``."""
    if isinstance(value, Decision):
        return value
    try:
        return _DECISION_ALIASES[value.strip().lower()]
    except KeyError:
        raise ValidationFailedError(f"Unknown decision '{value}'") from None


class ApproverType(str, Enum):
    """How a workflow step resolves its approvers."""

    USER = "user"
    MANAGER = "manager"
    ROLE = "role"
    ROLE_WITH_DELEGATES = "role_with_delegates"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


@dataclass(frozen=True)
class DocumentRef:
    """Opaque reference to the business record an approval request governs."""

    document_type: DocumentType
    document_id: UUID

    def __post_init__(self) -> None:
        # Accept plain strings such as "timesheet"
        object.__setattr__(self, "document_type", DocumentType(self.document_type))

    def __str__(self) -> str:
        return f"{self.document_type.value}:{self.document_id}"


# =============================================================================
# Request payloads
# =============================================================================


def _to_json(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class TimesheetPayload:
    document_type: ClassVar[DocumentType] = DocumentType.TIMESHEET

    timesheet_id: UUID
    employee_id: UUID
    year: int
    month: int
    total_hours: Decimal = Decimal("0")

    @property
    def document_id(self) -> UUID:
        return self.timesheet_id

    def to_dict(self) -> dict[str, Any]:
        return {k: _to_json(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class SalaryAdvancePayload:
    document_type: ClassVar[DocumentType] = DocumentType.SALARY_ADVANCE

    advance_id: UUID
    employee_id: UUID
    amount: Decimal
    installments: int = 1

    @property
    def document_id(self) -> UUID:
        return self.advance_id

    def to_dict(self) -> dict[str, Any]:
        return {k: _to_json(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class ProcurementPayload:
    document_type: ClassVar[DocumentType] = DocumentType.PROCUREMENT

    doc_id: UUID
    doc_type: str
    title: str
    total_amount: Decimal = Decimal("0")

    @property
    def document_id(self) -> UUID:
        return self.doc_id

    def to_dict(self) -> dict[str, Any]:
        return {k: _to_json(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class PayrollEmployeePayload:
    document_type: ClassVar[DocumentType] = DocumentType.PAYROLL_RUN_EMPLOYEE

    run_employee_id: UUID
    run_id: UUID
    employee_id: UUID
    net_salary: Decimal

    @property
    def document_id(self) -> UUID:
        return self.run_employee_id

    def to_dict(self) -> dict[str, Any]:
        return {k: _to_json(v) for k, v in asdict(self).items()}


ApprovalPayload = Union[
    TimesheetPayload,
    SalaryAdvancePayload,
    ProcurementPayload,
    PayrollEmployeePayload,
]

PAYLOAD_TYPES: dict[DocumentType, type] = {
    DocumentType.TIMESHEET: TimesheetPayload,
    DocumentType.SALARY_ADVANCE: SalaryAdvancePayload,
    DocumentType.PROCUREMENT: ProcurementPayload,
    DocumentType.PAYROLL_RUN_EMPLOYEE: PayrollEmployeePayload,
}

_UUID_FIELDS = {"timesheet_id", "employee_id", "advance_id", "doc_id", "run_employee_id", "run_id"}
_DECIMAL_FIELDS = {"total_hours", "amount", "total_amount", "net_salary"}


def parse_payload(document_type: DocumentType | str, data: dict[str, Any]) -> ApprovalPayload:
    """Build the typed payload for ``document_type`` from stored request data.

    Raises:
        ValidationFailedError: Unknown document type or malformed data
    """
    try:
        doc_type = DocumentType(document_type)
    except ValueError:
        raise ValidationFailedError(f"Unknown document type '{document_type}'") from None

    payload_cls = PAYLOAD_TYPES[doc_type]
    kwargs: dict[str, Any] = {}
    try:
        for key, value in data.items():
            if key in _UUID_FIELDS:
                value = value if isinstance(value, UUID) else UUID(str(value))
            elif key in _DECIMAL_FIELDS:
                value = Decimal(str(value))
            kwargs[key] = value
        return payload_cls(**kwargs)
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise ValidationFailedError(
            f"Invalid {doc_type.value} payload: {exc}"
        ) from exc
