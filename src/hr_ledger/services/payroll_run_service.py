"""Payroll run service - main orchestrator for the payroll run ledger."""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hr_ledger.approvals.types import DocumentRef, DocumentType, PayrollEmployeePayload
from hr_ledger.config import Settings, get_settings
from hr_ledger.database import flush_or_conflict, lock_for_update
from hr_ledger.events import (
    DomainEvent,
    EventEmitter,
    EventMetadata,
    PaymentBatchCreated,
    PayrollRunStatusChanged,
)
from hr_ledger.exceptions import (
    ConcurrentModificationError,
    DuplicateBatchNumber,
    EmployeeUnderReview,
    InvalidStateError,
    InvalidTransitionError,
    NoPayableEmployees,
    NotAuthorizedError,
    NotFoundError,
    RunEmployeeNotFound,
    RunLocked,
    RunNotFound,
    ValidationFailedError,
)
from hr_ledger.models import (
    AuditEvent,
    Employee,
    Office,
    PaymentBatch,
    PayrollRun,
    PayrollRunEmployee,
    PayrollRunItem,
    SalaryAdvanceRequest,
    utcnow,
)
from hr_ledger.services.locking_service import LockingService
from hr_ledger.services.payment_service import PAYMENT_METHODS, PaymentService
from hr_ledger.services.state_machine import PayrollRunStateMachine, PayrollRunStatus

if TYPE_CHECKING:
    from hr_ledger.approvals.engine import ApprovalEngine
    from hr_ledger.approvals.identity import IdentityProvider
    from hr_ledger.models import ApprovalRequest

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")
ITEM_TYPES = ("addition", "deduction")

# Advances in these states are repaid through payroll deductions
DEDUCTIBLE_ADVANCE_STATUSES = ("approved", "ready_to_pay", "paid")
ADVANCE_REFERENCE = "salary_advance_request"


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT)


def _month_index(value: date) -> int:
    return value.year * 12 + value.month


def _parse_amount(amount: Decimal | str | int | float) -> Decimal:
    try:
        return _money(Decimal(str(amount)))
    except InvalidOperation:
        raise ValidationFailedError(f"Invalid amount '{amount}'") from None


def installment_amount(advance: SalaryAdvanceRequest, run_month: date) -> tuple[int, Decimal] | None:
    """Installment of an advance due in ``run_month``.

    Returns ``(installment_number, amount)``, or None when nothing is due.
    Installments are equal cents-truncated shares; the last one absorbs the
    remainder so the installments always sum to the advance amount.
    """
    number = _month_index(run_month) - _month_index(advance.first_deduction_month) + 1
    if number < 1 or number > advance.installments:
        return None
    if run_month > advance.last_deduction_month.replace(day=1):
        return None

    amount = Decimal(advance.amount)
    share = (amount / advance.installments).quantize(CENT, rounding=ROUND_DOWN)
    if number == advance.installments:
        share = _money(amount - share * (advance.installments - 1))
    if share <= ZERO:
        return None
    return number, share


class PayrollRunService:
    """Service for managing the payroll run lifecycle.

    Operations:
    - create_run: open (or return) the run of a month and office
    - process_run: sync system items and recompute every employee from items
    - approve_run: freeze net salaries and payslip snapshots
    - mark_ready_to_pay: hand the run over to finance
    - pay_run: pay every ready employee of one payment method
    - lock_run: freeze all items of a fully paid run
    - cancel_run: abandon a draft or processed run

    Totals on PayrollRunEmployee are caches. They are rebuilt from item rows
    on every process_run and never incremented in place.
    """

    def __init__(
        self,
        session: AsyncSession,
        identity: IdentityProvider | None = None,
        emitter: EventEmitter | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.identity = identity
        self.emitter = emitter
        self.settings = settings or get_settings()
        self.locking_service = LockingService(session)
        self.payment_service = PaymentService(session)

    # ===== Queries =====

    async def get_run(self, run_id: UUID) -> PayrollRun:
        run = await self.session.get(PayrollRun, run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def list_employees(self, run_id: UUID) -> list[PayrollRunEmployee]:
        result = await self.session.execute(
            select(PayrollRunEmployee)
            .where(PayrollRunEmployee.run_id == run_id)
            .order_by(PayrollRunEmployee.created_at, PayrollRunEmployee.run_employee_id)
        )
        return list(result.scalars())

    async def list_items(self, run_employee_id: UUID) -> list[PayrollRunItem]:
        await self._get_run_employee(run_employee_id)
        result = await self.session.execute(
            select(PayrollRunItem)
            .where(PayrollRunItem.run_employee_id == run_employee_id)
            .order_by(PayrollRunItem.created_at, PayrollRunItem.item_id)
        )
        return list(result.scalars())

    # ===== Lifecycle =====

    async def create_run(
        self,
        month: date,
        office_id: UUID,
        currency: str | None = None,
        payment_method_default: str | None = None,
        actor_id: UUID | None = None,
    ) -> PayrollRun:
        """Create the payroll run of a month and office.

        Idempotent: if a non-cancelled run already exists for the month and
        office it is returned unchanged.
        """
        run_month = month.replace(day=1)
        existing = await self._active_run(run_month, office_id)
        if existing is not None:
            logger.info(
                "Payroll run %s already exists for %s / office %s",
                existing.run_id,
                run_month.isoformat(),
                office_id,
            )
            return existing

        office = await self.session.get(Office, office_id)
        if office is None:
            raise NotFoundError(f"Office {office_id} not found")

        method = payment_method_default or self.settings.default_payment_method
        self._check_method(method)

        run = PayrollRun(
            run_month=run_month,
            office_id=office_id,
            status=PayrollRunStatus.DRAFT.value,
            currency=currency or self.settings.default_currency,
            payment_method_default=method,
        )
        self.session.add(run)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            # Another caller created the run between our check and insert
            raise ConcurrentModificationError(
                f"Payroll run for {run_month.isoformat()} / office {office_id} "
                "was created concurrently"
            ) from exc

        result = await self.session.execute(
            select(Employee)
            .where(Employee.office_id == office_id, Employee.is_active.is_(True))
            .order_by(Employee.last_name, Employee.first_name, Employee.employee_id)
        )
        employees = list(result.scalars())
        for employee in employees:
            self.session.add(
                PayrollRunEmployee(
                    run_id=run.run_id,
                    employee_id=employee.employee_id,
                    base_salary=_money(employee.base_salary),
                    total_additions=ZERO,
                    total_deductions=ZERO,
                    net_salary=ZERO,
                    calc_net_salary=ZERO,
                    variance=ZERO,
                    status=PayrollRunStatus.DRAFT.value,
                    payment_method=employee.payment_method or method,
                )
            )

        self._record_audit(
            entity_type="payroll_run",
            entity_id=run.run_id,
            action="created",
            actor_user_id=actor_id,
            details={"run_month": run_month.isoformat(), "employees": len(employees)},
        )
        await flush_or_conflict(self.session, f"payroll run {run.run_id}")

        logger.info(
            "Created payroll run %s for %s / office %s with %d employee(s)",
            run.run_id,
            run_month.isoformat(),
            office_id,
            len(employees),
        )
        return run

    async def process_run(self, run_id: UUID, actor_id: UUID | None = None) -> PayrollRun:
        """Recompute every employee of the run from its item rows.

        System items (salary advance installments) are synced first. Net
        salary follows the calculated net unless an administrator override is
        in effect; variance is always ``net_salary - calc_net_salary``.

        Employees whose approval is pending block processing. An approved
        employee whose net salary changes loses the approval (status
        ``superseded``) and must be resubmitted before the run is approved.
        """
        run = await self._lock_run(run_id)
        if not PayrollRunStateMachine.can_process(run.status):
            logger.warning("Refused to process run %s in status %s", run_id, run.status)
            raise InvalidTransitionError(
                run.status,
                PayrollRunStatus.PROCESSED,
                "Processing is only allowed from draft or processed",
            )

        employees = await self.list_employees(run_id)
        errors = PayrollRunStateMachine.validate_run_for_transition(
            run, employees, PayrollRunStatus.PROCESSED
        )
        if errors:
            raise InvalidTransitionError(run.status, PayrollRunStatus.PROCESSED, "; ".join(errors))

        for employee in employees:
            self._check_not_under_review(employee)

        await self._sync_system_items(run, employees)
        items = await self.locking_service.items_by_employee(run_id)

        now = utcnow()
        for employee in employees:
            rows = items.get(employee.run_employee_id, [])
            additions = sum((Decimal(i.amount) for i in rows if i.type == "addition"), ZERO)
            deductions = sum((Decimal(i.amount) for i in rows if i.type == "deduction"), ZERO)

            employee.total_additions = _money(additions)
            employee.total_deductions = _money(deductions)
            employee.calc_net_salary = _money(
                Decimal(employee.base_salary) + additions - deductions
            )
            previous_net = employee.net_salary
            if not employee.net_overridden:
                employee.net_salary = employee.calc_net_salary
            if _money(previous_net) != _money(employee.net_salary):
                self._supersede_approval(employee, actor_id)
            employee.variance = _money(Decimal(employee.net_salary) - employee.calc_net_salary)
            employee.calculated_at = now
            employee.status = PayrollRunStatus.PROCESSED.value

        run.processed_at = now
        events = [self._transition(run, PayrollRunStatus.PROCESSED, actor_id)]
        await self._flush_and_publish(run, events)

        logger.info("Processed payroll run %s (%d employee(s))", run_id, len(employees))
        return run

    async def approve_run(self, run_id: UUID, actor_id: UUID | None = None) -> PayrollRun:
        """Approve a processed run, freezing net salaries and payslips."""
        run = await self._lock_run(run_id)
        employees = await self.list_employees(run_id)
        errors = PayrollRunStateMachine.validate_run_for_transition(
            run, employees, PayrollRunStatus.APPROVED
        )
        if errors:
            logger.warning("Refused to approve run %s: %s", run_id, "; ".join(errors))
            raise InvalidTransitionError(run.status, PayrollRunStatus.APPROVED, "; ".join(errors))

        items = await self.locking_service.items_by_employee(run_id)
        now = utcnow()
        for employee in employees:
            employee.net_salary = employee.calc_net_salary
            employee.variance = ZERO
            employee.net_overridden = False
            employee.payslip_snapshot = self.locking_service.build_payslip_snapshot(
                run, employee, items.get(employee.run_employee_id, []), now
            )
            employee.payslip_generated_at = now
            employee.status = PayrollRunStatus.APPROVED.value

        run.approved_at = now
        run.approved_by = actor_id
        events = [self._transition(run, PayrollRunStatus.APPROVED, actor_id)]
        await self._flush_and_publish(run, events)

        logger.info("Approved payroll run %s", run_id)
        return run

    async def mark_ready_to_pay(self, run_id: UUID, actor_id: UUID | None = None) -> PayrollRun:
        run = await self._lock_run(run_id)
        employees = await self.list_employees(run_id)
        errors = PayrollRunStateMachine.validate_run_for_transition(
            run, employees, PayrollRunStatus.READY_TO_PAY
        )
        if errors:
            raise InvalidTransitionError(
                run.status, PayrollRunStatus.READY_TO_PAY, "; ".join(errors)
            )

        for employee in employees:
            employee.status = PayrollRunStatus.READY_TO_PAY.value

        events = [self._transition(run, PayrollRunStatus.READY_TO_PAY, actor_id)]
        await self._flush_and_publish(run, events)
        return run

    async def pay_run(
        self,
        run_id: UUID,
        method: str,
        batch_number: str,
        paid_by: UUID | None = None,
        attachment_ref: str | None = None,
    ) -> PaymentBatch:
        """Pay every ready_to_pay employee of one payment method.

        The run becomes paid only once every employee across every payment
        method is paid.

        Raises:
            ValidationFailedError: Unknown method or empty batch number
            NotAuthorizedError: ``paid_by`` lacks a finance role
            DuplicateBatchNumber: Batch number already used in this run
            InvalidTransitionError: Run is not ready_to_pay
            NoPayableEmployees: Nobody of this method is ready to pay
        """
        self._check_method(method)
        if not batch_number or not batch_number.strip():
            raise ValidationFailedError("A batch number is required")
        batch_number = batch_number.strip()
        await self._check_finance_role(paid_by)

        run = await self._lock_run(run_id)
        if await self.payment_service.batch_exists(run_id, batch_number):
            logger.warning("Duplicate batch number %s for run %s", batch_number, run_id)
            raise DuplicateBatchNumber(run_id, batch_number)
        if run.status != PayrollRunStatus.READY_TO_PAY:
            raise InvalidTransitionError(
                run.status,
                PayrollRunStatus.PAID,
                "Payments can only be recorded for a run that is ready_to_pay",
            )

        employees = await self.list_employees(run_id)
        same_method = [e for e in employees if e.payment_method == method]
        not_payable = [
            e for e in same_method
            if e.status not in (PayrollRunStatus.READY_TO_PAY, PayrollRunStatus.PAID)
        ]
        if not_payable:
            raise InvalidStateError(
                f"{len(not_payable)} '{method}' employee(s) of run {run_id} are not ready to pay"
            )
        selected = [e for e in same_method if e.status == PayrollRunStatus.READY_TO_PAY]
        if not selected:
            raise NoPayableEmployees(run_id, method)

        now = utcnow()
        batch = await self.payment_service.create_batch(
            run,
            selected,
            method=method,
            batch_number=batch_number,
            paid_at=now,
            paid_by=paid_by,
            attachment_ref=attachment_ref,
        )
        self._record_audit(
            entity_type="payroll_run",
            entity_id=run.run_id,
            action="payment",
            actor_user_id=paid_by,
            details={
                "payment_batch_id": str(batch.payment_batch_id),
                "method": method,
                "batch_number": batch_number,
                "employee_count": batch.employee_count,
                "total_amount": str(batch.total_amount),
            },
        )

        events: list[DomainEvent] = [
            PaymentBatchCreated(
                metadata=EventMetadata.create(correlation_id=run.run_id, actor_id=paid_by),
                run_id=run.run_id,
                payment_batch_id=batch.payment_batch_id,
                method=method,
                batch_number=batch_number,
                employee_count=batch.employee_count,
                total_amount=batch.total_amount,
            )
        ]
        if not PayrollRunStateMachine.validate_run_for_transition(
            run, employees, PayrollRunStatus.PAID
        ):
            events.append(self._transition(run, PayrollRunStatus.PAID, paid_by))
        else:
            # Partial payment; touch the run so concurrent payers serialize on its version
            run.updated_at = now

        await self._flush_and_publish(run, events)
        logger.info(
            "Paid %d '%s' employee(s) of run %s in batch %s (run now %s)",
            batch.employee_count,
            method,
            run_id,
            batch_number,
            run.status,
        )
        return batch

    async def lock_run(self, run_id: UUID, actor_id: UUID | None = None) -> PayrollRun:
        """Lock a paid run. Its items become immutable."""
        run = await self._lock_run(run_id)
        employees = await self.list_employees(run_id)
        errors = PayrollRunStateMachine.validate_run_for_transition(
            run, employees, PayrollRunStatus.LOCKED
        )
        if not errors:
            errors = await self.locking_service.verify_snapshots_intact(run_id)
        if errors:
            raise InvalidTransitionError(run.status, PayrollRunStatus.LOCKED, "; ".join(errors))

        now = utcnow()
        locked_count = await self.locking_service.lock_items_for_run(run_id, now)
        for employee in employees:
            employee.status = PayrollRunStatus.LOCKED.value
        run.locked_at = now

        events = [
            self._transition(run, PayrollRunStatus.LOCKED, actor_id, {"locked_items": locked_count})
        ]
        await self._flush_and_publish(run, events)

        logger.info("Locked payroll run %s (%d item(s) frozen)", run_id, locked_count)
        return run

    async def cancel_run(
        self,
        run_id: UUID,
        reason: str,
        actor_id: UUID | None = None,
    ) -> PayrollRun:
        """Cancel a draft or processed run. A new run may then be created."""
        run = await self._lock_run(run_id)
        if not PayrollRunStateMachine.can_transition(run.status, PayrollRunStatus.CANCELLED):
            raise InvalidTransitionError(run.status, PayrollRunStatus.CANCELLED)
        if not reason or not reason.strip():
            raise InvalidTransitionError(
                run.status, PayrollRunStatus.CANCELLED, "Cancel requires a reason"
            )

        for employee in await self.list_employees(run_id):
            employee.status = PayrollRunStatus.CANCELLED.value
        run.cancel_reason = reason.strip()

        events = [
            self._transition(run, PayrollRunStatus.CANCELLED, actor_id, {"reason": run.cancel_reason})
        ]
        await self._flush_and_publish(run, events)

        logger.info("Cancelled payroll run %s: %s", run_id, run.cancel_reason)
        return run

    # ===== Items and per-employee edits =====

    async def add_manual_item(
        self,
        run_employee_id: UUID,
        type: str,
        name: str,
        amount: Decimal | str | int | float,
        note: str | None = None,
        created_by: UUID | None = None,
    ) -> PayrollRunItem:
        """Add a manual addition or deduction.

        Totals are not touched; call ``process_run`` to recompute.
        """
        row = await self._get_run_employee(run_employee_id)
        run = await self._lock_run(row.run_id)
        if not PayrollRunStateMachine.can_modify_items(run.status):
            logger.warning("Refused manual item on run %s in status %s", run.run_id, run.status)
            raise RunLocked(run.run_id, run.status)
        self._check_not_under_review(row)

        if type not in ITEM_TYPES:
            raise ValidationFailedError(f"Item type must be one of {ITEM_TYPES}, got '{type}'")
        if not name or not name.strip():
            raise ValidationFailedError("Item name is required")
        value = _parse_amount(amount)
        if value <= ZERO:
            raise ValidationFailedError(f"Item amount must be greater than zero, got {value}")

        item = PayrollRunItem(
            run_employee_id=run_employee_id,
            type=type,
            source="manual",
            name=name.strip(),
            amount=value,
            note=note,
            created_by=created_by,
        )
        self.session.add(item)
        await self.session.flush()
        self._supersede_approval(row, created_by)

        self._record_audit(
            entity_type="payroll_run_item",
            entity_id=item.item_id,
            action="item_added",
            actor_user_id=created_by,
            details={"run_id": str(run.run_id), "type": type, "name": item.name, "amount": str(value)},
        )
        run.updated_at = utcnow()
        await flush_or_conflict(self.session, f"payroll run {run.run_id}")

        logger.info(
            "Added %s '%s' %s to run employee %s", type, item.name, value, run_employee_id
        )
        return item

    async def remove_item(self, item_id: UUID, actor_id: UUID | None = None) -> None:
        """Remove a manual item from a run that still accepts item changes."""
        item = await self.session.get(PayrollRunItem, item_id)
        if item is None:
            raise NotFoundError(f"Payroll run item {item_id} not found")
        row = await self._get_run_employee(item.run_employee_id)
        run = await self._lock_run(row.run_id)
        if not PayrollRunStateMachine.can_modify_items(run.status):
            raise RunLocked(run.run_id, run.status)
        if item.source != "manual":
            raise ValidationFailedError("System items are maintained by process_run")
        self._check_not_under_review(row)

        await self.session.delete(item)
        self._supersede_approval(row, actor_id)
        self._record_audit(
            entity_type="payroll_run_item",
            entity_id=item_id,
            action="item_removed",
            actor_user_id=actor_id,
            details={"run_id": str(run.run_id), "name": item.name, "amount": str(item.amount)},
        )
        run.updated_at = utcnow()
        await flush_or_conflict(self.session, f"payroll run {run.run_id}")

    async def set_payment_method(
        self,
        run_employee_id: UUID,
        method: str,
        actor_id: UUID | None = None,
    ) -> PayrollRunEmployee:
        """Change how one employee is paid, up until they are paid."""
        self._check_method(method)
        row = await self._get_run_employee(run_employee_id)
        run = await self._lock_run(row.run_id)
        closed = (PayrollRunStatus.PAID, PayrollRunStatus.LOCKED, PayrollRunStatus.CANCELLED)
        if row.status in closed or run.status in closed:
            raise InvalidStateError(
                f"Payment method of run employee {run_employee_id} can no longer change "
                f"(employee {row.status}, run {run.status})"
            )

        if row.payment_method != method:
            self._record_audit(
                entity_type="payroll_run_employee",
                entity_id=run_employee_id,
                action="payment_method_changed",
                actor_user_id=actor_id,
                details={"from": row.payment_method, "to": method},
            )
            row.payment_method = method
            run.updated_at = utcnow()
            await flush_or_conflict(self.session, f"payroll run {run.run_id}")
        return row

    async def override_net_salary(
        self,
        run_employee_id: UUID,
        amount: Decimal | str | int | float,
        actor_id: UUID | None = None,
    ) -> PayrollRunEmployee:
        """Set an administrator net salary; variance shows the gap to the calculation."""
        row = await self._get_run_employee(run_employee_id)
        run = await self._lock_run(row.run_id)
        if not PayrollRunStateMachine.can_modify_items(run.status):
            raise RunLocked(run.run_id, run.status)
        self._check_not_under_review(row)
        value = _parse_amount(amount)
        if value < ZERO:
            raise ValidationFailedError(f"Net salary cannot be negative, got {value}")

        if _money(row.net_salary) != _money(value):
            self._supersede_approval(row, actor_id)
        row.net_salary = value
        row.net_overridden = True
        row.variance = _money(value - Decimal(row.calc_net_salary))
        self._record_audit(
            entity_type="payroll_run_employee",
            entity_id=run_employee_id,
            action="net_overridden",
            actor_user_id=actor_id,
            details={"net_salary": str(value), "calc_net_salary": str(row.calc_net_salary)},
        )
        run.updated_at = utcnow()
        await flush_or_conflict(self.session, f"payroll run {run.run_id}")
        return row

    async def submit_employee_approvals(
        self,
        run_id: UUID,
        requester_id: UUID,
        engine: ApprovalEngine,
        workflow_id: UUID | None = None,
    ) -> list[ApprovalRequest]:
        """Route every employee of a processed run through approval.

        Employees already pending or approved are skipped; rejected,
        cancelled and superseded ones are submitted again with their current
        figures. Until their requests are approved, the run cannot be approved.
        """
        run = await self.get_run(run_id)
        if run.status != PayrollRunStatus.PROCESSED:
            raise InvalidTransitionError(
                run.status,
                PayrollRunStatus.APPROVED,
                "Employee approvals can only be requested for a processed run",
            )

        requests = []
        for employee in await self.list_employees(run_id):
            if employee.approval_status in ("pending", "approved"):
                continue
            ref = DocumentRef(DocumentType.PAYROLL_RUN_EMPLOYEE, employee.run_employee_id)
            payload = PayrollEmployeePayload(
                run_employee_id=employee.run_employee_id,
                run_id=run_id,
                employee_id=employee.employee_id,
                net_salary=Decimal(employee.net_salary),
            )
            requests.append(
                await engine.submit(ref, requester_id, payload, workflow_id=workflow_id)
            )

        logger.info("Submitted %d employee approval(s) for run %s", len(requests), run_id)
        return requests

    # ===== Internals =====

    async def _active_run(self, run_month: date, office_id: UUID) -> PayrollRun | None:
        result = await self.session.execute(
            select(PayrollRun).where(
                PayrollRun.run_month == run_month,
                PayrollRun.office_id == office_id,
                PayrollRun.status != PayrollRunStatus.CANCELLED.value,
            )
        )
        return result.scalar_one_or_none()

    async def _lock_run(self, run_id: UUID) -> PayrollRun:
        run = await lock_for_update(self.session, PayrollRun, run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def _get_run_employee(self, run_employee_id: UUID) -> PayrollRunEmployee:
        row = await self.session.get(PayrollRunEmployee, run_employee_id)
        if row is None:
            raise RunEmployeeNotFound(run_employee_id)
        return row

    async def _sync_system_items(
        self,
        run: PayrollRun,
        employees: list[PayrollRunEmployee],
    ) -> None:
        """Bring system items in line with their source records.

        One deduction per salary advance installment due this month. Stale
        system items (advance cancelled, run month outside the schedule) are
        removed; existing ones are updated in place, never duplicated.
        """
        by_employee = {e.employee_id: e for e in employees}
        wanted: dict[tuple[UUID, UUID], dict[str, Any]] = {}

        if by_employee:
            result = await self.session.execute(
                select(SalaryAdvanceRequest).where(
                    SalaryAdvanceRequest.employee_id.in_(list(by_employee)),
                    SalaryAdvanceRequest.status.in_(DEDUCTIBLE_ADVANCE_STATUSES),
                    SalaryAdvanceRequest.first_deduction_month <= run.run_month,
                )
            )
            for advance in result.scalars():
                due = installment_amount(advance, run.run_month)
                if due is None:
                    continue
                number, amount = due
                row = by_employee[advance.employee_id]
                label = advance.request_number or "Salary advance"
                wanted[(row.run_employee_id, advance.advance_id)] = {
                    "name": f"{label} installment {number}/{advance.installments}",
                    "amount": amount,
                }

        result = await self.session.execute(
            select(PayrollRunItem)
            .join(
                PayrollRunEmployee,
                PayrollRunEmployee.run_employee_id == PayrollRunItem.run_employee_id,
            )
            .where(
                PayrollRunEmployee.run_id == run.run_id,
                PayrollRunItem.source == "system",
                PayrollRunItem.reference_table == ADVANCE_REFERENCE,
            )
        )
        for item in result.scalars():
            key = (item.run_employee_id, item.reference_id)
            spec = wanted.pop(key, None)
            if spec is None:
                await self.session.delete(item)
                continue
            if item.name != spec["name"]:
                item.name = spec["name"]
            if _money(item.amount) != spec["amount"]:
                item.amount = spec["amount"]

        for (run_employee_id, advance_id), spec in wanted.items():
            self.session.add(
                PayrollRunItem(
                    run_employee_id=run_employee_id,
                    type="deduction",
                    source="system",
                    name=spec["name"],
                    amount=spec["amount"],
                    reference_table=ADVANCE_REFERENCE,
                    reference_id=advance_id,
                )
            )
        await self.session.flush()

    @staticmethod
    def _check_not_under_review(row: PayrollRunEmployee) -> None:
        if row.approval_status == "pending":
            logger.warning(
                "Refused pay change for run employee %s under review (request %s)",
                row.run_employee_id,
                row.approval_request_id,
            )
            raise EmployeeUnderReview(row.run_employee_id, row.approval_request_id)

    def _supersede_approval(self, row: PayrollRunEmployee, actor_id: UUID | None) -> None:
        """Void an approval given for figures that are about to change."""
        if row.approval_status != "approved":
            return
        row.approval_status = "superseded"
        self._record_audit(
            entity_type="payroll_run_employee",
            entity_id=row.run_employee_id,
            action="approval_superseded",
            actor_user_id=actor_id,
            details={"approval_request_id": str(row.approval_request_id)},
        )
        logger.info(
            "Approval %s of run employee %s superseded by a pay change",
            row.approval_request_id,
            row.run_employee_id,
        )

    async def _check_finance_role(self, paid_by: UUID | None) -> None:
        if self.identity is None:
            return
        roles = self.settings.finance_roles
        if paid_by is None or not await self.identity.has_any_role(paid_by, roles):
            logger.warning("User %s lacks a finance role to record payments", paid_by)
            raise NotAuthorizedError(
                f"Recording payments requires one of the roles {', '.join(roles)}"
            )

    @staticmethod
    def _check_method(method: str) -> None:
        if method not in PAYMENT_METHODS:
            raise ValidationFailedError(
                f"Payment method must be one of {PAYMENT_METHODS}, got '{method}'"
            )

    def _transition(
        self,
        run: PayrollRun,
        to_status: PayrollRunStatus,
        actor_id: UUID | None,
        details: dict[str, Any] | None = None,
    ) -> PayrollRunStatusChanged:
        """Move the run to ``to_status`` and record the audit trail.

        Returns the event to publish once the change is flushed.
        """
        from_status = run.status
        PayrollRunStateMachine.validate_transition(from_status, to_status)
        run.status = to_status.value

        self._record_audit(
            entity_type="payroll_run",
            entity_id=run.run_id,
            action=f"status_change:{from_status}:{to_status.value}",
            actor_user_id=actor_id,
            details=details,
        )
        return PayrollRunStatusChanged(
            metadata=EventMetadata.create(correlation_id=run.run_id, actor_id=actor_id),
            run_id=run.run_id,
            from_status=from_status,
            to_status=to_status.value,
        )

    async def _flush_and_publish(self, run: PayrollRun, events: list[DomainEvent]) -> None:
        await flush_or_conflict(self.session, f"payroll run {run.run_id}")
        if self.emitter is not None:
            self.emitter.emit_all(events)

    def _record_audit(
        self,
        entity_type: str,
        entity_id: UUID,
        action: str,
        actor_user_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit event."""
        self.session.add(
            AuditEvent(
                actor_user_id=actor_user_id,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                details=details,
            )
        )
