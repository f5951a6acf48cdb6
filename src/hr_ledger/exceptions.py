"""Error taxonomy shared by the approval and payroll engines.

Every failure an engine operation can surface belongs to one of five
families. Only ``ConcurrentModificationError`` is retryable; the others need a
human to correct the input or the state of the record.

    NotFoundError               missing request, run, run employee, delegation
    InvalidStateError           operation not legal from the current status
    NotAuthorizedError          actor is not the approver/delegate or lacks a role
    ValidationFailedError       bad amounts, duplicate batch, empty workflow
    ConcurrentModificationError optimistic-lock conflict
"""

from __future__ import annotations

from uuid import UUID


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "ENGINE_ERROR"
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# ===== Not found =====


class NotFoundError(EngineError):
    code = "NOT_FOUND"


class RequestNotFound(NotFoundError):
    code = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: UUID):
        self.request_id = request_id
        super().__init__(f"Approval request {request_id} not found")


class RunNotFound(NotFoundError):
    code = "RUN_NOT_FOUND"

    def __init__(self, run_id: UUID):
        self.run_id = run_id
        super().__init__(f"Payroll run {run_id} not found")


class RunEmployeeNotFound(NotFoundError):
    code = "RUN_EMPLOYEE_NOT_FOUND"

    def __init__(self, run_employee_id: UUID):
        self.run_employee_id = run_employee_id
        super().__init__(f"Payroll run employee {run_employee_id} not found")


class DelegationNotFound(NotFoundError):
    code = "DELEGATION_NOT_FOUND"

    def __init__(self, delegation_id: UUID):
        self.delegation_id = delegation_id
        super().__init__(f"Delegation {delegation_id} not found")


# ===== Invalid state =====


class InvalidStateError(EngineError):
    code = "INVALID_STATE"


class RequestNotPending(InvalidStateError):
    code = "REQUEST_NOT_PENDING"

    def __init__(self, request_id: UUID, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Approval request {request_id} is not pending (status: {status})")


class ActionNotPending(InvalidStateError):
    code = "ACTION_NOT_PENDING"

    def __init__(self, request_id: UUID, step_order: int):
        self.request_id = request_id
        self.step_order = step_order
        super().__init__(
            f"No pending action for step {step_order} of request {request_id}"
        )


class DuplicateSubmission(InvalidStateError):
    code = "DUPLICATE_SUBMISSION"

    def __init__(self, document_type: str, document_id: UUID, request_id: UUID):
        self.document_type = document_type
        self.document_id = document_id
        self.request_id = request_id
        super().__init__(
            f"{document_type} {document_id} already has pending request {request_id}"
        )


class InvalidTransitionError(InvalidStateError):
    """Raised when an invalid state transition is attempted."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = getattr(from_status, "value", from_status)
        self.to_status = getattr(to_status, "value", to_status)
        self.reason = reason
        msg = f"Invalid transition from '{self.from_status}' to '{self.to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class RunLocked(InvalidStateError):
    code = "RUN_LOCKED"

    def __init__(self, run_id: UUID | None, status: str | None = None):
        self.run_id = run_id
        self.status = status
        if run_id is None:
            msg = "Payroll run item is locked"
        elif status:
            msg = f"Payroll run {run_id} does not accept item changes in status '{status}'"
        else:
            msg = f"Items of payroll run {run_id} are locked"
        super().__init__(msg)


class NoPayableEmployees(InvalidStateError):
    code = "NO_PAYABLE_EMPLOYEES"

    def __init__(self, run_id: UUID, method: str):
        self.run_id = run_id
        self.method = method
        super().__init__(f"No employees ready to pay by '{method}' in run {run_id}")


class EmployeeUnderReview(InvalidStateError):
    """A run employee's figures are frozen while their approval is pending."""

    code = "EMPLOYEE_UNDER_REVIEW"

    def __init__(self, run_employee_id: UUID, request_id: UUID | None = None):
        self.run_employee_id = run_employee_id
        self.request_id = request_id
        super().__init__(
            f"Run employee {run_employee_id} is awaiting approval (request {request_id}); "
            "decide or cancel it before changing pay"
        )


# ===== Authorization =====


class NotAuthorizedError(EngineError):
    code = "NOT_AUTHORIZED"


# ===== Validation =====


class ValidationFailedError(EngineError):
    code = "VALIDATION_FAILED"


class WorkflowNotFound(ValidationFailedError):
    """No usable workflow template (missing, inactive, or zero steps)."""

    code = "WORKFLOW_NOT_FOUND"


class ApproverResolutionFailed(ValidationFailedError):
    code = "APPROVER_RESOLUTION_FAILED"

    def __init__(self, step_order: int, step_name: str):
        self.step_order = step_order
        self.step_name = step_name
        super().__init__(
            f"Unable to resolve an approver for step {step_order} ({step_name})"
        )


class DuplicateBatchNumber(ValidationFailedError):
    code = "DUPLICATE_BATCH_NUMBER"

    def __init__(self, run_id: UUID, batch_number: str):
        self.run_id = run_id
        self.batch_number = batch_number
        super().__init__(f"Batch number '{batch_number}' already used in run {run_id}")


# ===== Concurrency =====


class ConcurrentModificationError(EngineError):
    """Optimistic-lock conflict. Safe to retry."""

    code = "CONCURRENT_MODIFICATION"
    retryable = True
