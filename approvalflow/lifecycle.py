"""
Request lifecycle: persistence of a decided request and its side effects.

A submission writes three things: the request row, the balance decrement
(auto-approved PTO only) and exactly one ``created`` audit record. They are
written inside one store transaction, so a failure part-way leaves none of
them behind.

Status graph::

    pending --(manager approve)--> approved
    pending --(manager deny)-----> denied
    pending --(requester cancel)-> cancelled
    auto_approved, approved, denied, cancelled are terminal
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from approvalflow.audit import AuditSink
from approvalflow.exceptions import AuthorizationError, InvalidTransitionError, NotFoundError
from approvalflow.models import (
    ActorKind,
    ExpenseDraft,
    ExpenseRequest,
    Identity,
    PolicyDecision,
    PtoDraft,
    PtoRequest,
    Recommendation,
    RequestKind,
    RequestStatus,
    jsonable,
    utcnow,
)
from approvalflow.observability import trace_span
from approvalflow.store import RecordStore, new_id

logger = logging.getLogger(__name__)

STATUS_FOR_RECOMMENDATION = {
    Recommendation.AUTO_APPROVE: RequestStatus.AUTO_APPROVED,
    Recommendation.ESCALATE_TO_MANAGER: RequestStatus.PENDING,
    Recommendation.DENY: RequestStatus.DENIED,
}

ENTITY_TYPES = {RequestKind.PTO: "pto_request", RequestKind.EXPENSE: "expense_request"}


@dataclass
class SubmissionResult:
    request_id: str
    kind: RequestKind
    status: RequestStatus
    message: str
    approver_id: str | None = None
    balance_before: float | None = None
    balance_after: float | None = None

    def to_dict(self) -> dict:
        return jsonable(asdict(self))


def _violation_notes(decision: PolicyDecision) -> str:
    return "; ".join(v.message for v in decision.violations)


class RequestLifecycleManager:
    """Persists decided requests and manages their later transitions."""

    def __init__(self, store: RecordStore, audit: AuditSink):
        self.store = store
        self.audit = audit

    async def submit_pto(
        self,
        draft: PtoDraft,
        identity: Identity,
        decision: PolicyDecision,
        actor_kind: ActorKind = ActorKind.AGENT,
    ) -> SubmissionResult:
        status = STATUS_FOR_RECOMMENDATION[decision.recommendation]
        days = decision.quantities["business_days"]
        request_id = new_id("PTO")

        escalation_reason = None
        if status is RequestStatus.PENDING:
            if decision.override_applied:
                escalation_reason = (
                    f"Insufficient balance ({decision.quantities['current_balance']:g} days) "
                    f"for {days} business days; employee asked for manager review "
                    "as partially unpaid leave"
                )
            else:
                escalation_reason = (
                    f"{days} business days exceeds the {decision.quantities['auto_approval_limit']}-day "
                    f"auto-approval limit for {identity.tier.value} employees"
                )

        with trace_span("lifecycle.submit_pto", employee=identity.id, status=status.value):
            async with self.store.transaction() as tx:
                balance = await tx.get_balance(identity.id)
                before = balance.current_balance if balance else 0.0
                after = before

                request = PtoRequest(
                    id=request_id,
                    employee_id=identity.id,
                    manager_id=identity.manager_id,
                    start_date=draft.start_date,
                    end_date=draft.end_date,
                    total_days=days,
                    reason=draft.reason,
                    status=status,
                    approval_type="auto" if status is RequestStatus.AUTO_APPROVED else None,
                    decision_notes=_violation_notes(decision),
                    escalation_reason=escalation_reason,
                    balance_before=before,
                    decided_at=utcnow() if status.is_terminal else None,
                )

                if status is RequestStatus.AUTO_APPROVED:
                    after = (await tx.adjust_balance(identity.id, days)).current_balance
                request.balance_after = after

                await tx.create_pto_request(request)
                await self.audit.record(
                    "pto_request",
                    request_id,
                    "created",
                    identity.id,
                    actor_kind,
                    {
                        "status": status.value,
                        "recommendation": decision.recommendation.value,
                        "business_days": days,
                        "violations": [v.code for v in decision.violations],
                        "override_applied": decision.override_applied,
                        "balance_before": before,
                        "balance_after": after,
                    },
                    store=tx,
                )

        logger.info(f"PTO request {request_id} created: employee={identity.id} status={status.value}")
        return SubmissionResult(
            request_id=request_id,
            kind=RequestKind.PTO,
            status=status,
            message=self._status_message(status, decision),
            approver_id=identity.manager_id if status is RequestStatus.PENDING else None,
            balance_before=before,
            balance_after=after,
        )

    async def submit_expense(
        self,
        draft: ExpenseDraft,
        identity: Identity,
        decision: PolicyDecision,
        actor_kind: ActorKind = ActorKind.AGENT,
    ) -> SubmissionResult:
        status = STATUS_FOR_RECOMMENDATION[decision.recommendation]
        request_id = new_id("EXP")

        escalation_reason = None
        if status is RequestStatus.PENDING:
            reasons = [v.message for v in decision.violations]
            if draft.amount > decision.quantities["auto_approval_limit"]:
                reasons.insert(
                    0,
                    f"${draft.amount:.2f} exceeds the ${decision.quantities['auto_approval_limit']:.2f} "
                    f"auto-approval limit for {identity.tier.value} employees",
                )
            escalation_reason = "; ".join(reasons)

        request = ExpenseRequest(
            id=request_id,
            employee_id=identity.id,
            manager_id=identity.manager_id,
            category=draft.category,
            amount=draft.amount,
            currency=draft.currency,
            description=draft.description,
            incurred_on=draft.incurred_on,
            receipt_id=draft.receipt_id,
            employee_tier=identity.tier,
            status=status,
            approval_type="auto" if status is RequestStatus.AUTO_APPROVED else None,
            decision_notes=_violation_notes(decision),
            escalation_reason=escalation_reason,
            violations=[v.code for v in decision.violations],
            decided_at=utcnow() if status.is_terminal else None,
        )

        with trace_span("lifecycle.submit_expense", employee=identity.id, status=status.value):
            async with self.store.transaction() as tx:
                await tx.create_expense_request(request)
                await self.audit.record(
                    "expense_request",
                    request_id,
                    "created",
                    identity.id,
                    actor_kind,
                    {
                        "status": status.value,
                        "recommendation": decision.recommendation.value,
                        "amount": draft.amount,
                        "category": draft.category,
                        "violations": request.violations,
                    },
                    store=tx,
                )

        logger.info(
            f"Expense request {request_id} created: employee={identity.id} status={status.value}"
        )
        return SubmissionResult(
            request_id=request_id,
            kind=RequestKind.EXPENSE,
            status=status,
            message=self._status_message(status, decision),
            approver_id=identity.manager_id if status is RequestStatus.PENDING else None,
        )

    async def record_manager_decision(
        self,
        kind: RequestKind,
        request_id: str,
        manager: Identity,
        approve: bool,
        notes: str = "",
    ) -> SubmissionResult:
        """Apply the assigned manager's decision to a pending request."""
        status = RequestStatus.APPROVED if approve else RequestStatus.DENIED
        before = after = None

        async with self.store.transaction() as tx:
            request = await self._load(tx, kind, request_id)
            if request.status.is_terminal:
                raise InvalidTransitionError(
                    f"Request {request_id} is already {request.status.value}",
                    {"status": request.status.value},
                )
            if request.manager_id != manager.id:
                raise AuthorizationError(f"{manager.id} is not the approver for request {request_id}")

            details = {"status": status.value, "notes": notes}
            if kind is RequestKind.PTO and approve:
                balance = await tx.get_balance(request.employee_id)
                before = balance.current_balance if balance else 0.0
                # Balance never goes negative; any shortfall is unpaid leave.
                paid = min(request.total_days, max(before, 0.0))
                after = before
                if paid > 0:
                    after = (await tx.adjust_balance(request.employee_id, paid)).current_balance
                request.balance_before = before
                request.balance_after = after
                details.update(paid_days=paid, unpaid_days=request.total_days - paid)

            request.status = status
            request.approval_type = "manual"
            request.decision_notes = notes or request.decision_notes
            request.decided_at = utcnow()
            if kind is RequestKind.PTO:
                await tx.update_pto_request(request)
            else:
                await tx.update_expense_request(request)

            await self.audit.record(
                ENTITY_TYPES[kind], request_id, status.value, manager.id, ActorKind.HUMAN, details, store=tx
            )

        logger.info(f"Manager {manager.id} {status.value} {kind.value} request {request_id}")
        return SubmissionResult(
            request_id=request_id,
            kind=kind,
            status=status,
            message=f"Request {status.value} by {manager.display_name}.",
            balance_before=before,
            balance_after=after,
        )

    async def cancel(
        self,
        kind: RequestKind,
        request_id: str,
        identity: Identity,
        actor_kind: ActorKind = ActorKind.AGENT,
    ) -> SubmissionResult:
        """Requester withdraws their own pending request."""
        async with self.store.transaction() as tx:
            request = await self._load(tx, kind, request_id)
            if request.employee_id != identity.id:
                raise AuthorizationError("You can only cancel your own requests.")
            if request.status.is_terminal:
                raise InvalidTransitionError(
                    f"Request {request_id} is already {request.status.value} and cannot be cancelled",
                    {"status": request.status.value},
                )
            request.status = RequestStatus.CANCELLED
            request.decided_at = utcnow()
            if kind is RequestKind.PTO:
                await tx.update_pto_request(request)
            else:
                await tx.update_expense_request(request)
            await self.audit.record(
                ENTITY_TYPES[kind], request_id, "cancelled", identity.id, actor_kind, {}, store=tx
            )

        return SubmissionResult(
            request_id=request_id,
            kind=kind,
            status=RequestStatus.CANCELLED,
            message="Request cancelled.",
        )

    @staticmethod
    async def _load(store: RecordStore, kind: RequestKind, request_id: str):
        if kind is RequestKind.PTO:
            request = await store.get_pto_request(request_id)
        else:
            request = await store.get_expense_request(request_id)
        if request is None:
            raise NotFoundError(f"{kind.value.upper()} request {request_id} not found")
        return request

    @staticmethod
    def _status_message(status: RequestStatus, decision: PolicyDecision) -> str:
        if status is RequestStatus.AUTO_APPROVED:
            return "Request auto-approved."
        if status is RequestStatus.PENDING:
            return "Request submitted and routed to your manager for approval."
        return "Request denied: " + _violation_notes(decision)
