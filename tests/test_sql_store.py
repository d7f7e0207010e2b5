"""
Tests for the SQLAlchemy store against a file-backed SQLite database.
"""

import asyncio
from datetime import date

import pytest

from approvalflow.audit import AuditSink
from approvalflow.lifecycle import RequestLifecycleManager
from approvalflow.models import (
    ActorKind,
    AuditRecord,
    EventKind,
    ExpenseDraft,
    PtoDraft,
    Receipt,
    RequestKind,
    RequestStatus,
)
from approvalflow.policy import PolicyEngine
from approvalflow.sql_store import SqlStore


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'approvalflow.db'}"


def run_with_store(db_url, scenario):
    """Create a seeded schema, run the scenario coroutine and dispose the engine."""

    async def _run():
        store = SqlStore.from_url(db_url)
        try:
            await store.create_schema(seed=True)
            return await scenario(store)
        finally:
            await store.dispose()

    return asyncio.run(_run())


class TestSqlStore:
    """Reads and writes through SQLAlchemy Core."""

    def test_seeded_balances_and_calendar(self, db_url):
        async def scenario(store):
            balance = await store.get_balance("E002")
            blackouts = await store.list_calendar_events(
                date(2025, 3, 1), date(2025, 3, 31), EventKind.BLACKOUT
            )
            return balance, blackouts

        balance, blackouts = run_with_store(db_url, scenario)
        assert balance.current_balance == 23.0
        assert [b.name for b in blackouts] == ["Q1 Close"]

    def test_seeding_is_idempotent(self, db_url):
        async def scenario(store):
            await store.create_schema(seed=True)
            return await store.list_calendar_events(date(2025, 11, 1), date(2025, 11, 30))

        events = run_with_store(db_url, scenario)
        assert [e.name for e in events].count("Thanksgiving") == 1

    def test_auto_approved_submission(self, db_url, junior):
        async def scenario(store):
            lifecycle = RequestLifecycleManager(store, AuditSink(store))
            draft = PtoDraft(date(2025, 3, 3), date(2025, 3, 5), "Family trip")
            decision = await PolicyEngine(store).validate_pto(draft, junior)
            result = await lifecycle.submit_pto(draft, junior, decision)
            return (
                result,
                await store.get_balance("E001"),
                await store.get_pto_request(result.request_id),
                await store.list_audit("pto_request", result.request_id),
            )

        result, balance, request, audit = run_with_store(db_url, scenario)
        assert result.status is RequestStatus.AUTO_APPROVED
        assert balance.current_balance == 12.0
        assert balance.total_used == 3.0
        assert request.status is RequestStatus.AUTO_APPROVED
        assert request.start_date == date(2025, 3, 3)
        assert request.reason == "Family trip"
        assert [a.action for a in audit] == ["created"]

    def test_transaction_rolls_back(self, db_url, junior, monkeypatch):
        async def failing_append(self, record):
            raise RuntimeError("audit table unavailable")

        async def scenario(store):
            lifecycle = RequestLifecycleManager(store, AuditSink(store))
            draft = PtoDraft(date(2025, 3, 3), date(2025, 3, 5))
            decision = await PolicyEngine(store).validate_pto(draft, junior)
            monkeypatch.setattr(SqlStore, "append_audit", failing_append)
            with pytest.raises(RuntimeError):
                await lifecycle.submit_pto(draft, junior, decision)
            monkeypatch.undo()
            return await store.get_balance("E001"), await store.list_pto_requests("E001")

        balance, requests = run_with_store(db_url, scenario)
        assert balance.current_balance == 15.0
        assert requests == []

    def test_manager_decision_and_history(self, db_url, senior, manager):
        async def scenario(store):
            lifecycle = RequestLifecycleManager(store, AuditSink(store))
            draft = PtoDraft(date(2025, 4, 7), date(2025, 4, 22))
            decision = await PolicyEngine(store).validate_pto(draft, senior)
            submitted = await lifecycle.submit_pto(draft, senior, decision)
            await lifecycle.record_manager_decision(RequestKind.PTO, submitted.request_id, manager, True)
            return (
                await store.list_pto_requests("E002", RequestStatus.APPROVED),
                await store.get_balance("E002"),
                await store.list_audit("pto_request", submitted.request_id),
            )

        approved, balance, audit = run_with_store(db_url, scenario)
        assert len(approved) == 1
        assert approved[0].approval_type == "manual"
        assert balance.current_balance == 11.0
        assert [a.action for a in audit] == ["created", "approved"]
        assert audit[1].actor_kind is ActorKind.HUMAN

    def test_expenses_and_receipts(self, db_url, junior):
        async def scenario(store):
            await store.save_receipt(Receipt("RCT-1", junior.id, "lunch.png", b"\x89PNG"))
            lifecycle = RequestLifecycleManager(store, AuditSink(store))
            engine = PolicyEngine(store)
            for amount in (30.0, 20.0):
                draft = ExpenseDraft(amount, "meals", date(2025, 3, 3), "Lunch", receipt_id="RCT-1")
                await lifecycle.submit_expense(draft, junior, await engine.validate_expense(draft, junior))
            total = await store.sum_expenses(
                junior.id, "meals", date(2025, 3, 3), [RequestStatus.AUTO_APPROVED]
            )
            return total, await store.get_receipt("RCT-1"), await store.list_expense_requests(junior.id)

        total, receipt, expenses = run_with_store(db_url, scenario)
        assert total == 50.0
        assert receipt.content == b"\x89PNG"
        assert receipt.employee_id == "E001"
        assert len(expenses) == 2
        assert all(e.violations == [] for e in expenses)

    def test_audit_order_preserved(self, db_url):
        async def scenario(store):
            for action in ("created", "approved", "cancelled"):
                await store.append_audit(
                    AuditRecord(
                        id=f"AUD-{action}",
                        entity_type="pto_request",
                        entity_id="PTO-1",
                        action=action,
                        actor_id="E001",
                        actor_kind=ActorKind.AGENT,
                    )
                )
            return await store.list_audit(entity_id="PTO-1", limit=2)

        audit = run_with_store(db_url, scenario)
        assert [a.action for a in audit] == ["approved", "cancelled"]
