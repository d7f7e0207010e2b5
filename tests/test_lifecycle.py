"""
Tests for request persistence, manager decisions and cancellation.
"""

import asyncio
from datetime import date

import pytest

from approvalflow.exceptions import AuthorizationError, InvalidTransitionError, NotFoundError
from approvalflow.models import ActorKind, ExpenseDraft, PtoDraft, Receipt, RequestKind, RequestStatus
from approvalflow.policy import PolicyEngine


def _submit_pto(store, lifecycle, identity, start, end, **kwargs):
    draft = PtoDraft(start, end, "Trip")
    decision = asyncio.run(PolicyEngine(store).validate_pto(draft, identity, **kwargs))
    return asyncio.run(lifecycle.submit_pto(draft, identity, decision))


class TestSubmitPto:
    """Submission writes request, balance and audit together."""

    def test_auto_approved_decrements_balance(self, store, lifecycle, junior):
        result = _submit_pto(store, lifecycle, junior, date(2025, 3, 3), date(2025, 3, 5))

        assert result.status is RequestStatus.AUTO_APPROVED
        assert result.message == "Request auto-approved."
        assert result.balance_before == 15.0
        assert result.balance_after == 12.0
        assert store.balances["E001"].current_balance == 12.0
        assert store.balances["E001"].total_used == 3.0

        request = store.pto_requests[result.request_id]
        assert request.approval_type == "auto"
        assert request.decided_at is not None

        audit = asyncio.run(lifecycle.audit.history("pto_request", result.request_id))
        assert [a.action for a in audit] == ["created"]
        assert audit[0].actor_kind is ActorKind.AGENT
        assert audit[0].details["recommendation"] == "AUTO_APPROVE"

    def test_escalated_leaves_balance(self, store, lifecycle, senior):
        result = _submit_pto(store, lifecycle, senior, date(2025, 4, 7), date(2025, 4, 22))

        assert result.status is RequestStatus.PENDING
        assert result.approver_id == "E003"
        assert result.message == "Request submitted and routed to your manager for approval."
        assert store.balances["E002"].current_balance == 23.0

        request = store.pto_requests[result.request_id]
        assert request.manager_id == "E003"
        assert "12 business days exceeds the 10-day" in request.escalation_reason
        assert request.decided_at is None

    def test_denied_is_recorded_and_audited(self, store, lifecycle, junior):
        result = _submit_pto(store, lifecycle, junior, date(2025, 3, 27), date(2025, 3, 28))

        assert result.status is RequestStatus.DENIED
        assert result.message.startswith("Request denied: Request overlaps with blackout period: Q1 Close")
        assert store.balances["E001"].current_balance == 15.0
        assert store.pto_requests[result.request_id].status is RequestStatus.DENIED
        assert len(store.audit_log) == 1
        assert store.audit_log[0].details["violations"] == ["blackout_conflict"]

    def test_override_escalation_reason(self, store, lifecycle, low_balance):
        result = _submit_pto(
            store, lifecycle, low_balance, date(2025, 3, 3), date(2025, 3, 5), override_confirmed=True
        )
        assert result.status is RequestStatus.PENDING
        assert "partially unpaid" in store.pto_requests[result.request_id].escalation_reason
        assert store.balances["E004"].current_balance == 2.0

    def test_audit_failure_rolls_back_everything(self, store, lifecycle, junior, monkeypatch):
        async def failing_append(record):
            raise RuntimeError("audit table unavailable")

        monkeypatch.setattr(store, "append_audit", failing_append)

        with pytest.raises(RuntimeError):
            _submit_pto(store, lifecycle, junior, date(2025, 3, 3), date(2025, 3, 5))

        assert store.pto_requests == {}
        assert store.balances["E001"].current_balance == 15.0
        assert store.audit_log == []


class TestSubmitExpense:
    def test_denied_expense_records_violation_codes(self, store, lifecycle, junior):
        draft = ExpenseDraft(250.0, "software", date(2025, 3, 3), "Design tool")
        decision = asyncio.run(PolicyEngine(store).validate_expense(draft, junior))
        result = asyncio.run(lifecycle.submit_expense(draft, junior, decision))

        assert result.status is RequestStatus.DENIED
        assert store.expense_requests[result.request_id].violations == ["missing_receipt"]

    def test_escalated_expense_names_ceiling(self, store, lifecycle, junior):
        asyncio.run(store.save_receipt(Receipt("RCT-9", junior.id, "invoice.png", b"img")))
        draft = ExpenseDraft(150.0, "software", date(2025, 3, 3), "Design tool", receipt_id="RCT-9")
        decision = asyncio.run(PolicyEngine(store).validate_expense(draft, junior))
        result = asyncio.run(lifecycle.submit_expense(draft, junior, decision))

        assert result.status is RequestStatus.PENDING
        assert result.approver_id == "E003"
        request = store.expense_requests[result.request_id]
        assert request.escalation_reason.startswith("$150.00 exceeds the $100.00 auto-approval limit")

    def test_auto_approved_expense_records_tier(self, store, lifecycle, junior):
        draft = ExpenseDraft(60.0, "software", date(2025, 3, 3), "Plugin")
        decision = asyncio.run(PolicyEngine(store).validate_expense(draft, junior))
        result = asyncio.run(lifecycle.submit_expense(draft, junior, decision))

        assert result.status is RequestStatus.AUTO_APPROVED
        assert store.expense_requests[result.request_id].employee_tier.value == "junior"


class TestManagerDecision:
    """Transitions out of pending."""

    def test_manager_approves_pto(self, store, lifecycle, senior, manager):
        submitted = _submit_pto(store, lifecycle, senior, date(2025, 4, 7), date(2025, 4, 22))
        result = asyncio.run(
            lifecycle.record_manager_decision(RequestKind.PTO, submitted.request_id, manager, True, "Enjoy")
        )

        assert result.status is RequestStatus.APPROVED
        assert result.balance_before == 23.0
        assert result.balance_after == 11.0
        request = store.pto_requests[submitted.request_id]
        assert request.approval_type == "manual"
        assert request.decision_notes == "Enjoy"

        actions = [a.action for a in asyncio.run(lifecycle.audit.history("pto_request", submitted.request_id))]
        assert actions == ["created", "approved"]
        assert store.audit_log[-1].actor_kind is ActorKind.HUMAN

    def test_overridden_request_floors_balance(self, store, lifecycle, low_balance, manager):
        submitted = _submit_pto(
            store, lifecycle, low_balance, date(2025, 3, 3), date(2025, 3, 5), override_confirmed=True
        )
        asyncio.run(
            lifecycle.record_manager_decision(RequestKind.PTO, submitted.request_id, manager, True)
        )

        assert store.balances["E004"].current_balance == 0.0
        details = store.audit_log[-1].details
        assert details["paid_days"] == 2.0
        assert details["unpaid_days"] == 1.0

    def test_manager_denial_keeps_balance(self, store, lifecycle, senior, manager):
        submitted = _submit_pto(store, lifecycle, senior, date(2025, 4, 7), date(2025, 4, 22))
        result = asyncio.run(
            lifecycle.record_manager_decision(RequestKind.PTO, submitted.request_id, manager, False)
        )
        assert result.status is RequestStatus.DENIED
        assert store.balances["E002"].current_balance == 23.0

    def test_terminal_request_cannot_be_decided(self, store, lifecycle, junior, manager):
        submitted = _submit_pto(store, lifecycle, junior, date(2025, 3, 3), date(2025, 3, 5))
        with pytest.raises(InvalidTransitionError):
            asyncio.run(
                lifecycle.record_manager_decision(RequestKind.PTO, submitted.request_id, manager, False)
            )
        assert store.pto_requests[submitted.request_id].status is RequestStatus.AUTO_APPROVED
        assert len(store.audit_log) == 1

    def test_only_assigned_manager_decides(self, store, lifecycle, senior, junior):
        submitted = _submit_pto(store, lifecycle, senior, date(2025, 4, 7), date(2025, 4, 22))
        with pytest.raises(AuthorizationError):
            asyncio.run(
                lifecycle.record_manager_decision(RequestKind.PTO, submitted.request_id, junior, True)
            )
        assert store.pto_requests[submitted.request_id].status is RequestStatus.PENDING

    def test_unknown_request(self, lifecycle, manager):
        with pytest.raises(NotFoundError):
            asyncio.run(lifecycle.record_manager_decision(RequestKind.EXPENSE, "EXP-missing", manager, True))


class TestCancel:
    def test_requester_cancels_pending(self, store, lifecycle, senior):
        submitted = _submit_pto(store, lifecycle, senior, date(2025, 4, 7), date(2025, 4, 22))
        result = asyncio.run(lifecycle.cancel(RequestKind.PTO, submitted.request_id, senior))

        assert result.status is RequestStatus.CANCELLED
        assert store.pto_requests[submitted.request_id].status is RequestStatus.CANCELLED
        assert store.audit_log[-1].action == "cancelled"

    def test_cancelled_is_terminal(self, store, lifecycle, senior, manager):
        submitted = _submit_pto(store, lifecycle, senior, date(2025, 4, 7), date(2025, 4, 22))
        asyncio.run(lifecycle.cancel(RequestKind.PTO, submitted.request_id, senior))
        with pytest.raises(InvalidTransitionError):
            asyncio.run(
                lifecycle.record_manager_decision(RequestKind.PTO, submitted.request_id, manager, True)
            )

    def test_cannot_cancel_someone_elses(self, store, lifecycle, senior, junior):
        submitted = _submit_pto(store, lifecycle, senior, date(2025, 4, 7), date(2025, 4, 22))
        with pytest.raises(AuthorizationError):
            asyncio.run(lifecycle.cancel(RequestKind.PTO, submitted.request_id, junior))
