"""Approval workflow engine.

The engine owns approval requests and their per-step actions. Every mutating
call runs inside the caller's session (the unit of work): it locks the
request row, applies the decision, calls the business record adapter and
flushes. Events are published only after the flush succeeds.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable
from uuid import UUID, uuid4

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hr_ledger.approvals.adapters import AdapterRegistry
from hr_ledger.approvals.identity import DatabaseIdentityProvider, IdentityProvider, as_utc
from hr_ledger.approvals.registry import (
    StepDefinition,
    WorkflowRegistry,
    define_workflow,
    load_steps,
    load_workflow,
)
from hr_ledger.approvals.types import (
    ActionStatus,
    ApprovalPayload,
    Decision,
    DocumentRef,
    DocumentType,
    Priority,
    RequestStatus,
    normalize_decision,
    parse_payload,
)
from hr_ledger.database import flush_or_conflict, lock_for_update
from hr_ledger.events import (
    ApprovalRequestAdvanced,
    ApprovalRequestCreated,
    ApprovalRequestResolved,
    DomainEvent,
    EventEmitter,
    EventMetadata,
)
from hr_ledger.exceptions import (
    ActionNotPending,
    ApproverResolutionFailed,
    ConcurrentModificationError,
    DelegationNotFound,
    DuplicateSubmission,
    NotAuthorizedError,
    NotFoundError,
    RequestNotFound,
    RequestNotPending,
    ValidationFailedError,
    WorkflowNotFound,
)
from hr_ledger.models import (
    ApprovalAction,
    ApprovalDelegation,
    ApprovalRequest,
    ApprovalStep,
    ApprovalWorkflow,
    Employee,
    utcnow,
)

logger = logging.getLogger(__name__)


def _request_number(now: datetime) -> str:
    return f"APR-{now:%Y%m%d}-{uuid4().hex[:8].upper()}"


class ApprovalEngine:
    """Multi-step approval workflow engine.

    Operations:
    - submit: open a request at step 1 with one pending action per approver
    - process_action: record a decision and advance, approve, reject or cancel
    - delegate / end_delegation / list_delegations: temporal hand-over of
      approval authority, optionally limited to one workflow
    - create_workflow / get_workflow / deactivate_workflow: template upkeep
    - can_act / pending_for_user: server-side authorization queries

    A step resolving to several approvers completes once
    ``min(step.required_approvals, approvers)`` of them approve; any single
    reject or cancel terminates the request. Remaining pending actions of a
    finished step are cancelled.
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: WorkflowRegistry,
        adapters: AdapterRegistry,
        identity: IdentityProvider | None = None,
        emitter: EventEmitter | None = None,
        admin_roles: Iterable[str] = ("admin",),
    ):
        self.session = session
        self.registry = registry
        self.adapters = adapters
        self.identity = identity or DatabaseIdentityProvider(session)
        self.emitter = emitter
        self.admin_roles = tuple(admin_roles)

    # ===== Submission =====

    async def submit(
        self,
        document_ref: DocumentRef,
        requester_id: UUID,
        payload: ApprovalPayload,
        workflow_id: UUID | None = None,
        priority: Priority | str = Priority.NORMAL,
    ) -> ApprovalRequest:
        """Open an approval request for a business document.

        Raises:
            ValidationFailedError: Payload does not match the document, unknown
                priority, or no adapter for the document type
            DuplicateSubmission: The document already has a pending request
            WorkflowNotFound: No usable workflow for the document type
            ApproverResolutionFailed: Step 1 resolves to nobody
        """
        doc_type = DocumentType(document_ref.document_type)
        if payload.document_type is not doc_type or payload.document_id != document_ref.document_id:
            raise ValidationFailedError(
                f"Payload {type(payload).__name__} does not describe {document_ref}"
            )
        try:
            priority = Priority(priority)
        except ValueError:
            raise ValidationFailedError(f"Unknown priority '{priority}'") from None
        adapter = self.adapters.for_type(doc_type)

        existing = await self._pending_request_for(document_ref)
        if existing is not None:
            logger.warning("Rejected duplicate submission for %s", document_ref)
            raise DuplicateSubmission(doc_type.value, document_ref.document_id, existing.request_id)

        wf_id = workflow_id or self.registry.workflow_for(doc_type)
        workflow = await self.session.get(ApprovalWorkflow, wf_id)
        if workflow is not None and workflow.document_type != doc_type.value:
            raise WorkflowNotFound(
                f"Workflow {wf_id} is for '{workflow.document_type}', not '{doc_type.value}'"
            )
        steps = await load_steps(self.session, wf_id)

        first_step = steps[0]
        approvers = await self.identity.eligible_approvers(first_step, requester_id)
        if not approvers:
            raise ApproverResolutionFailed(first_step.step_order, first_step.step_name)

        now = utcnow()
        request = ApprovalRequest(
            request_id=uuid4(),
            request_number=_request_number(now),
            requester_id=requester_id,
            document_type=doc_type.value,
            document_id=document_ref.document_id,
            workflow_id=wf_id,
            current_step=1,
            total_steps=len(steps),
            status=RequestStatus.PENDING.value,
            priority=priority.value,
            request_data=payload.to_dict(),
        )
        self.session.add(request)
        await self.session.flush()

        self._open_step(request, first_step, approvers)
        await adapter.on_submitted(document_ref, request_id=request.request_id)
        await flush_or_conflict(self.session, f"approval request {request.request_id}")

        logger.info(
            "Submitted %s for %s (workflow %s, %d step(s), approvers %s)",
            request.request_number,
            document_ref,
            wf_id,
            request.total_steps,
            [str(a) for a in approvers],
        )
        self._emit(
            ApprovalRequestCreated(
                metadata=EventMetadata.create(
                    correlation_id=request.request_id, actor_id=requester_id
                ),
                request_id=request.request_id,
                document_type=doc_type.value,
                document_id=document_ref.document_id,
                approver_ids=tuple(approvers),
            )
        )
        return request

    # ===== Decisions =====

    async def process_action(
        self,
        request_id: UUID,
        acting_user_id: UUID,
        decision: Decision | str,
        comment: str | None = None,
        expected_version: int | None = None,
    ) -> ApprovalRequest:
        """Record a decision on the current step of a request.

        The request row is locked for the duration of the call. Next-step
        approvers are resolved before anything is written, so a resolution
        failure leaves the request exactly as it was.

        Raises:
            RequestNotFound: Unknown request
            ConcurrentModificationError: ``expected_version`` is stale or a
                concurrent writer won the race
            RequestNotPending: The request is already terminal
            ActionNotPending: No pending action at the current step
            NotAuthorizedError: Actor is neither an approver nor an active
                delegate of one (nor the requester, for cancellation)
            ApproverResolutionFailed: The next step resolves to nobody
        """
        decision = normalize_decision(decision)

        request = await lock_for_update(self.session, ApprovalRequest, request_id)
        if request is None:
            raise RequestNotFound(request_id)
        if expected_version is not None and request.version != expected_version:
            raise ConcurrentModificationError(
                f"Approval request {request_id} is at version {request.version}, "
                f"expected {expected_version}"
            )
        if request.status != RequestStatus.PENDING:
            logger.warning(
                "Decision %s on %s refused: request is %s",
                decision.value,
                request.request_number,
                request.status,
            )
            raise RequestNotPending(request_id, request.status)

        step_actions = await self._actions_at(request_id, request.current_step, for_update=True)
        pending = [a for a in step_actions if a.is_pending]
        if not pending:
            raise ActionNotPending(request_id, request.current_step)

        now = utcnow()
        action = await self._authorized_action(pending, acting_user_id, now, request.workflow_id)
        if action is None and decision is Decision.CANCELLED and acting_user_id == request.requester_id:
            # The requester may withdraw their own request
            action = pending[0]
        if action is None:
            logger.warning(
                "User %s is not an approver for step %d of %s",
                acting_user_id,
                request.current_step,
                request.request_number,
            )
            raise NotAuthorizedError(
                f"User {acting_user_id} may not act on step {request.current_step} "
                f"of request {request_id}"
            )

        step = await self.session.get(ApprovalStep, action.step_id)
        if step is None:
            raise WorkflowNotFound(f"Step {action.step_id} of request {request_id} no longer exists")

        approved_so_far = sum(1 for a in step_actions if a.action == ActionStatus.APPROVED)
        needed = min(step.required_approvals, len(step_actions))
        step_complete = decision is Decision.APPROVED and approved_so_far + 1 >= needed
        is_last_step = request.current_step >= request.total_steps

        next_step: ApprovalStep | None = None
        next_approvers: list[UUID] = []
        if step_complete and not is_last_step:
            next_step = await self._step_at(request.workflow_id, request.current_step + 1)
            next_approvers = await self.identity.eligible_approvers(next_step, request.requester_id)
            if not next_approvers:
                raise ApproverResolutionFailed(next_step.step_order, next_step.step_name)

        action.action = decision.value
        action.comment = comment
        action.action_date = now
        action.acted_by = acting_user_id

        document_ref = DocumentRef(DocumentType(request.document_type), request.document_id)
        from_step = request.current_step
        event: DomainEvent | None = None

        if decision is not Decision.APPROVED or (step_complete and is_last_step):
            outcome = RequestStatus(decision.value)
            self._cancel_siblings(step_actions, now)
            request.status = outcome.value
            request.completed_at = now
            await self.adapters.for_type(document_ref.document_type).on_resolved(
                document_ref, outcome, request_id=request_id, comment=comment
            )
            event = ApprovalRequestResolved(
                metadata=EventMetadata.create(correlation_id=request_id, actor_id=acting_user_id),
                request_id=request_id,
                document_type=request.document_type,
                document_id=request.document_id,
                outcome=outcome.value,
            )
        elif step_complete and next_step is not None:
            self._cancel_siblings(step_actions, now)
            request.current_step = next_step.step_order
            self._open_step(request, next_step, next_approvers)
            event = ApprovalRequestAdvanced(
                metadata=EventMetadata.create(correlation_id=request_id, actor_id=acting_user_id),
                request_id=request_id,
                from_step=from_step,
                to_step=next_step.step_order,
                approver_ids=tuple(next_approvers),
            )

        # Bumps the version even when the step is still waiting for approvals
        request.updated_at = now
        await flush_or_conflict(self.session, f"approval request {request_id}")

        logger.info(
            "%s: %s by %s at step %d/%d -> %s (step %d)",
            request.request_number,
            decision.value,
            acting_user_id,
            from_step,
            request.total_steps,
            request.status,
            request.current_step,
        )
        if event is not None:
            self._emit(event)
        return request

    # ===== Delegation =====

    async def delegate(
        self,
        approver_id: UUID,
        delegate_id: UUID,
        valid_from: datetime,
        valid_to: datetime,
        reason: str | None = None,
        workflow_id: UUID | None = None,
    ) -> ApprovalDelegation:
        """Let ``delegate_id`` act for ``approver_id`` during a time window.

        With ``workflow_id`` the delegation only covers requests running
        under that workflow; without it every workflow is covered.
        """
        valid_from = as_utc(valid_from)
        valid_to = as_utc(valid_to)
        if approver_id == delegate_id:
            raise ValidationFailedError("An approver cannot delegate to themselves")
        if valid_to <= valid_from:
            raise ValidationFailedError("Delegation must end after it starts")

        for user_id in (approver_id, delegate_id):
            if await self.session.get(Employee, user_id) is None:
                raise NotFoundError(f"Employee {user_id} not found")
        if workflow_id is not None and await self.session.get(ApprovalWorkflow, workflow_id) is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")

        delegation = ApprovalDelegation(
            delegator_id=approver_id,
            delegate_id=delegate_id,
            workflow_id=workflow_id,
            valid_from=valid_from,
            valid_to=valid_to,
            reason=reason,
            is_active=True,
        )
        self.session.add(delegation)
        await self.session.flush()

        logger.info(
            "Delegation %s: %s -> %s from %s to %s (workflow %s)",
            delegation.delegation_id,
            approver_id,
            delegate_id,
            valid_from.isoformat(),
            valid_to.isoformat(),
            workflow_id or "any",
        )
        return delegation

    async def end_delegation(self, delegation_id: UUID, actor_id: UUID) -> ApprovalDelegation:
        """Revoke a delegation. Only its delegator or an admin may do so.

        Raises:
            DelegationNotFound: Unknown delegation
            NotAuthorizedError: Actor is neither the delegator nor an admin
        """
        delegation = await self.session.get(ApprovalDelegation, delegation_id)
        if delegation is None:
            raise DelegationNotFound(delegation_id)
        if actor_id != delegation.delegator_id and not await self._is_admin(actor_id):
            logger.warning("User %s may not end delegation %s", actor_id, delegation_id)
            raise NotAuthorizedError(
                f"User {actor_id} may not end delegation {delegation_id}"
            )
        if delegation.is_active:
            delegation.is_active = False
            await self.session.flush()
            logger.info("Delegation %s ended by %s", delegation_id, actor_id)
        return delegation

    async def list_delegations(
        self, user_id: UUID, include_inactive: bool = False
    ) -> list[ApprovalDelegation]:
        """Delegations ``user_id`` has given or received.

        By default only those still in force or scheduled are listed.
        """
        stmt = select(ApprovalDelegation).where(
            or_(
                ApprovalDelegation.delegator_id == user_id,
                ApprovalDelegation.delegate_id == user_id,
            )
        )
        if not include_inactive:
            stmt = stmt.where(
                ApprovalDelegation.is_active.is_(True),
                ApprovalDelegation.valid_to >= utcnow(),
            )
        result = await self.session.execute(
            stmt.order_by(ApprovalDelegation.valid_from, ApprovalDelegation.created_at)
        )
        return list(result.scalars())

    # ===== Workflow templates =====

    async def create_workflow(
        self,
        actor_id: UUID,
        document_type: DocumentType | str,
        name: str,
        steps: Iterable[StepDefinition],
        is_default: bool = True,
    ) -> ApprovalWorkflow:
        """Save a workflow template; a default one takes over its document type."""
        await self._require_admin(actor_id, "define workflows")
        workflow = await define_workflow(self.session, document_type, name, steps, is_default)
        if is_default:
            self.registry.register(DocumentType(document_type), workflow.workflow_id)
        return workflow

    async def get_workflow(self, workflow_id: UUID) -> tuple[ApprovalWorkflow, list[ApprovalStep]]:
        return await load_workflow(self.session, workflow_id)

    async def deactivate_workflow(self, workflow_id: UUID, actor_id: UUID) -> ApprovalWorkflow:
        """Take a workflow out of service.

        New submissions can no longer use it. Requests already running under
        it continue to completion.
        """
        await self._require_admin(actor_id, "deactivate workflows")
        workflow = await self.session.get(ApprovalWorkflow, workflow_id)
        if workflow is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")
        if workflow.is_active:
            workflow.is_active = False
            workflow.is_default = False
            await self.session.flush()
            dropped = self.registry.unregister(workflow_id)
            logger.info(
                "Workflow %s deactivated by %s (was default for %s)",
                workflow_id,
                actor_id,
                [d.value for d in dropped] or "nothing",
            )
        return workflow

    # ===== Queries =====

    async def get_request(self, request_id: UUID) -> ApprovalRequest:
        request = await self.session.get(ApprovalRequest, request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    async def list_actions(self, request_id: UUID) -> list[ApprovalAction]:
        """All actions of a request in step order."""
        await self.get_request(request_id)
        result = await self.session.execute(
            select(ApprovalAction)
            .where(ApprovalAction.request_id == request_id)
            .order_by(ApprovalAction.step_order, ApprovalAction.created_at)
        )
        return list(result.scalars())

    def payload_of(self, request: ApprovalRequest) -> ApprovalPayload:
        """Typed payload stored with a request."""
        return parse_payload(request.document_type, request.request_data)

    async def can_act(self, request_id: UUID, user_id: UUID) -> bool:
        """Whether ``user_id`` may approve or reject the current step now."""
        request = await self.get_request(request_id)
        if request.status != RequestStatus.PENDING:
            return False
        actions = await self._actions_at(request_id, request.current_step)
        pending = [a for a in actions if a.is_pending]
        action = await self._authorized_action(pending, user_id, utcnow(), request.workflow_id)
        return action is not None

    async def pending_for_user(self, user_id: UUID) -> list[ApprovalRequest]:
        """Pending requests waiting on ``user_id`` directly or by delegation."""
        now = utcnow()
        delegators = await self.identity.delegators_of(user_id, now)
        approver_ids = [user_id, *delegators]

        result = await self.session.execute(
            select(ApprovalRequest, ApprovalAction.approver_id)
            .join(
                ApprovalAction,
                and_(
                    ApprovalAction.request_id == ApprovalRequest.request_id,
                    ApprovalAction.step_order == ApprovalRequest.current_step,
                ),
            )
            .where(
                ApprovalRequest.status == RequestStatus.PENDING.value,
                ApprovalAction.action == ActionStatus.PENDING.value,
                ApprovalAction.approver_id.in_(approver_ids),
            )
            .order_by(ApprovalRequest.created_at, ApprovalRequest.request_id)
        )

        # Workflow-scoped delegations only count for their own workflow
        in_scope: dict[UUID, set[UUID]] = {}
        requests: list[ApprovalRequest] = []
        seen: set[UUID] = set()
        for request, approver_id in result.all():
            if request.request_id in seen:
                continue
            if approver_id != user_id:
                if request.workflow_id not in in_scope:
                    in_scope[request.workflow_id] = set(
                        await self.identity.delegators_of(user_id, now, request.workflow_id)
                    )
                if approver_id not in in_scope[request.workflow_id]:
                    continue
            seen.add(request.request_id)
            requests.append(request)
        return requests

    # ===== Internals =====

    async def _pending_request_for(self, document_ref: DocumentRef) -> ApprovalRequest | None:
        result = await self.session.execute(
            select(ApprovalRequest)
            .where(
                ApprovalRequest.document_type == DocumentType(document_ref.document_type).value,
                ApprovalRequest.document_id == document_ref.document_id,
                ApprovalRequest.status == RequestStatus.PENDING.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _actions_at(
        self,
        request_id: UUID,
        step_order: int,
        for_update: bool = False,
    ) -> list[ApprovalAction]:
        stmt = (
            select(ApprovalAction)
            .where(
                ApprovalAction.request_id == request_id,
                ApprovalAction.step_order == step_order,
            )
            .order_by(ApprovalAction.created_at)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def _step_at(self, workflow_id: UUID, step_order: int) -> ApprovalStep:
        result = await self.session.execute(
            select(ApprovalStep).where(
                ApprovalStep.workflow_id == workflow_id,
                ApprovalStep.step_order == step_order,
            )
        )
        step = result.scalar_one_or_none()
        if step is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} has no step {step_order}")
        return step

    async def _authorized_action(
        self,
        pending: list[ApprovalAction],
        user_id: UUID,
        at: datetime,
        workflow_id: UUID,
    ) -> ApprovalAction | None:
        """The pending action ``user_id`` may decide, directly or as a delegate."""
        for action in pending:
            if action.approver_id == user_id:
                return action
        if not pending:
            return None
        delegators = set(await self.identity.delegators_of(user_id, at, workflow_id))
        for action in pending:
            if action.approver_id in delegators:
                return action
        return None

    async def _is_admin(self, user_id: UUID) -> bool:
        return await self.identity.has_any_role(user_id, self.admin_roles)

    async def _require_admin(self, user_id: UUID, what: str) -> None:
        if not await self._is_admin(user_id):
            logger.warning("User %s may not %s", user_id, what)
            raise NotAuthorizedError(f"User {user_id} may not {what}")

    def _open_step(
        self,
        request: ApprovalRequest,
        step: ApprovalStep,
        approvers: list[UUID],
    ) -> None:
        for approver_id in approvers:
            self.session.add(
                ApprovalAction(
                    request_id=request.request_id,
                    step_id=step.step_id,
                    step_order=step.step_order,
                    approver_id=approver_id,
                    action=ActionStatus.PENDING.value,
                )
            )

    @staticmethod
    def _cancel_siblings(actions: list[ApprovalAction], now: datetime) -> None:
        for sibling in actions:
            if sibling.is_pending:
                sibling.action = ActionStatus.CANCELLED.value
                sibling.action_date = now

    def _emit(self, event: DomainEvent) -> None:
        if self.emitter is not None:
            self.emitter.emit(event)
