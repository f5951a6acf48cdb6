"""Identity and role lookups used to resolve approvers."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hr_ledger.approvals.types import ApproverType
from hr_ledger.models import ApprovalDelegation, ApprovalStep, Employee, UserRole


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _unique(ids: Iterable[UUID]) -> list[UUID]:
    seen: set[UUID] = set()
    result: list[UUID] = []
    for user_id in ids:
        if user_id not in seen:
            seen.add(user_id)
            result.append(user_id)
    return result


def _active_for(at: datetime, workflow_id: UUID | None) -> list:
    """Filters for delegations in force at ``at`` and covering ``workflow_id``."""
    at = as_utc(at)
    clauses = [
        ApprovalDelegation.is_active.is_(True),
        ApprovalDelegation.valid_from <= at,
        ApprovalDelegation.valid_to >= at,
    ]
    if workflow_id is not None:
        clauses.append(
            or_(
                ApprovalDelegation.workflow_id.is_(None),
                ApprovalDelegation.workflow_id == workflow_id,
            )
        )
    return clauses


@runtime_checkable
class IdentityProvider(Protocol):
    """Query-only view of users, roles and delegations."""

    async def eligible_approvers(self, step: ApprovalStep, requester_id: UUID) -> list[UUID]:
        """Users who must act on ``step`` for a request by ``requester_id``."""
        ...

    async def active_delegates(
        self, approver_id: UUID, at: datetime, workflow_id: UUID | None = None
    ) -> list[UUID]:
        """Users holding an active delegation from ``approver_id`` at ``at``.

        With ``workflow_id`` only delegations covering that workflow count.
        """
        ...

    async def delegators_of(
        self, delegate_id: UUID, at: datetime, workflow_id: UUID | None = None
    ) -> list[UUID]:
        """Users who have delegated to ``delegate_id`` at ``at``.

        With ``workflow_id`` only delegations covering that workflow count.
        """
        ...

    async def has_any_role(self, user_id: UUID, roles: Iterable[str]) -> bool:
        ...


class DatabaseIdentityProvider:
    """Identity provider backed by the employee, role and delegation tables."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def eligible_approvers(self, step: ApprovalStep, requester_id: UUID) -> list[UUID]:
        approver_type = ApproverType(step.approver_type)

        if approver_type is ApproverType.USER:
            if step.approver_id is None:
                return []
            employee = await self.session.get(Employee, step.approver_id)
            if employee is None or not employee.is_active:
                return []
            return [employee.employee_id]

        if approver_type is ApproverType.MANAGER:
            requester = await self.session.get(Employee, requester_id)
            if requester is None or requester.manager_id is None:
                return []
            manager = await self.session.get(Employee, requester.manager_id)
            if manager is None or not manager.is_active:
                return []
            return [manager.employee_id]

        holders = await self._role_holders(step.role_name or "")
        if approver_type is ApproverType.ROLE:
            return holders

        # Role holders away on delegation are replaced by their delegates
        now = datetime.now(timezone.utc)
        resolved: list[UUID] = []
        for holder in holders:
            delegates = await self.active_delegates(holder, now, step.workflow_id)
            resolved.extend(delegates or [holder])
        return _unique(resolved)

    async def active_delegates(
        self, approver_id: UUID, at: datetime, workflow_id: UUID | None = None
    ) -> list[UUID]:
        result = await self.session.execute(
            select(ApprovalDelegation.delegate_id)
            .where(
                ApprovalDelegation.delegator_id == approver_id,
                *_active_for(at, workflow_id),
            )
            .order_by(ApprovalDelegation.created_at)
        )
        return _unique(result.scalars())

    async def delegators_of(
        self, delegate_id: UUID, at: datetime, workflow_id: UUID | None = None
    ) -> list[UUID]:
        result = await self.session.execute(
            select(ApprovalDelegation.delegator_id)
            .where(
                ApprovalDelegation.delegate_id == delegate_id,
                *_active_for(at, workflow_id),
            )
            .order_by(ApprovalDelegation.created_at)
        )
        return _unique(result.scalars())

    async def has_any_role(self, user_id: UUID, roles: Iterable[str]) -> bool:
        wanted = list(roles)
        if not wanted:
            return False
        result = await self.session.execute(
            select(UserRole.user_role_id)
            .where(
                UserRole.user_id == user_id,
                UserRole.role.in_(wanted),
                UserRole.is_active.is_(True),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _role_holders(self, role_name: str) -> list[UUID]:
        result = await self.session.execute(
            select(UserRole.user_id)
            .join(Employee, Employee.employee_id == UserRole.user_id)
            .where(
                UserRole.role == role_name,
                UserRole.is_active.is_(True),
                Employee.is_active.is_(True),
            )
            .order_by(UserRole.created_at, UserRole.user_id)
        )
        return _unique(result.scalars())
