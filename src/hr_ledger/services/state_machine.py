"""Payroll run state machine with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Sequence

from hr_ledger.exceptions import InvalidTransitionError

if TYPE_CHECKING:
    from hr_ledger.models import PayrollRun, PayrollRunEmployee


class PayrollRunStatus(str, Enum):
    """Payroll run status values."""

    DRAFT = "draft"
    PROCESSED = "processed"
    APPROVED = "approved"
    READY_TO_PAY = "ready_to_pay"
    PAID = "paid"
    LOCKED = "locked"
    CANCELLED = "cancelled"


# Per-employee approval states that block run approval
BLOCKING_APPROVAL_STATUSES = {"pending", "rejected", "cancelled", "superseded"}


class PayrollRunStateMachine:
    """State machine for payroll run status transitions.

    Allowed transitions:
    - draft → processed
    - processed → processed (re-process after item edits)
    - processed → approved
    - approved → ready_to_pay
    - ready_to_pay → paid (once every payment method is settled)
    - paid → locked
    - draft/processed → cancelled
    """

    # Define valid transitions: {from_status: [allowed_to_statuses]}
    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayrollRunStatus.DRAFT: [PayrollRunStatus.PROCESSED, PayrollRunStatus.CANCELLED],
        PayrollRunStatus.PROCESSED: [
            PayrollRunStatus.PROCESSED,
            PayrollRunStatus.APPROVED,
            PayrollRunStatus.CANCELLED,
        ],
        PayrollRunStatus.APPROVED: [PayrollRunStatus.READY_TO_PAY],
        PayrollRunStatus.READY_TO_PAY: [PayrollRunStatus.PAID],
        PayrollRunStatus.PAID: [PayrollRunStatus.LOCKED],
        PayrollRunStatus.LOCKED: [],  # Terminal state
        PayrollRunStatus.CANCELLED: [],  # Terminal state
    }

    # Statuses where processing (recomputation) is allowed
    PROCESSING_ALLOWED = {
        PayrollRunStatus.DRAFT,
        PayrollRunStatus.PROCESSED,
    }

    # Statuses where items can be added or edited
    ITEMS_MUTABLE = {
        PayrollRunStatus.DRAFT,
        PayrollRunStatus.PROCESSED,
    }

    # Statuses where the approved figures are frozen
    RESULTS_IMMUTABLE = {
        PayrollRunStatus.APPROVED,
        PayrollRunStatus.READY_TO_PAY,
        PayrollRunStatus.PAID,
        PayrollRunStatus.LOCKED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_process(cls, status: str) -> bool:
        return status in cls.PROCESSING_ALLOWED

    @classmethod
    def can_modify_items(cls, status: str) -> bool:
        """Check if run items (manual additions/deductions) can be modified."""
        return status in cls.ITEMS_MUTABLE

    @classmethod
    def are_results_immutable(cls, status: str) -> bool:
        return status in cls.RESULTS_IMMUTABLE

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def validate_run_for_transition(
        cls,
        run: PayrollRun,
        employees: Sequence[PayrollRunEmployee],
        to_status: str,
    ) -> list[str]:
        """Validate a payroll run for a specific transition, returning any errors.

        Returns list of error messages (empty if valid).
        """
        errors: list[str] = []
        from_status = getattr(run.status, "value", run.status)
        to_status = getattr(to_status, "value", to_status)

        # Basic transition check
        if not cls.can_transition(from_status, to_status):
            errors.append(f"Cannot transition from '{from_status}' to '{to_status}'")
            return errors

        # Transition-specific validations
        if to_status == PayrollRunStatus.PROCESSED:
            if not employees:
                errors.append("Payroll run has no employees")

        elif to_status == PayrollRunStatus.APPROVED:
            if not employees:
                errors.append("Payroll run has no employees")

            uncomputed = [e for e in employees if e.calculated_at is None]
            if uncomputed:
                errors.append(f"{len(uncomputed)} employee(s) have not been computed")

            blocked = [e for e in employees if e.approval_status in BLOCKING_APPROVAL_STATUSES]
            if blocked:
                errors.append(f"{len(blocked)} employee(s) are not approved")

        elif to_status == PayrollRunStatus.PAID:
            unpaid = [e for e in employees if e.status != PayrollRunStatus.PAID]
            if unpaid:
                errors.append(f"{len(unpaid)} employee(s) are not paid")

        elif to_status == PayrollRunStatus.CANCELLED:
            # Reason is enforced at service level
            pass

        return errors
