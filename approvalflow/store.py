"""
Persistence collaborator.

``RecordStore`` is the async interface the policy engine, lifecycle manager,
audit sink and tools read and write through. ``transaction()`` yields a store
bound to one unit of work: everything written through it commits together or
not at all.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import date

from data.company_records import COMPANY_CALENDAR, PTO_BALANCES
from approvalflow.exceptions import NotFoundError
from approvalflow.models import (
    AuditRecord,
    Balance,
    CalendarEvent,
    EventKind,
    ExpenseRequest,
    PtoRequest,
    Receipt,
    RequestStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class RecordStore(ABC):
    """Async storage interface for balances, calendar, requests, audit and receipts."""

    @abstractmethod
    def transaction(self) -> AsyncIterator[RecordStore]:
        """Async context manager yielding a store bound to a single transaction."""

    # Balances
    @abstractmethod
    async def get_balance(self, employee_id: str) -> Balance | None: ...

    @abstractmethod
    async def adjust_balance(self, employee_id: str, used_days: float) -> Balance:
        """Move ``used_days`` from current balance to total used. Raises NotFoundError."""

    # Calendar
    @abstractmethod
    async def list_calendar_events(
        self, start: date, end: date, kind: EventKind | None = None
    ) -> list[CalendarEvent]:
        """Events overlapping the inclusive range."""

    # PTO requests
    @abstractmethod
    async def create_pto_request(self, request: PtoRequest) -> PtoRequest: ...

    @abstractmethod
    async def get_pto_request(self, request_id: str) -> PtoRequest | None: ...

    @abstractmethod
    async def update_pto_request(self, request: PtoRequest) -> PtoRequest: ...

    @abstractmethod
    async def list_pto_requests(
        self, employee_id: str, status: RequestStatus | None = None, limit: int = 10
    ) -> list[PtoRequest]: ...

    # Expense requests
    @abstractmethod
    async def create_expense_request(self, request: ExpenseRequest) -> ExpenseRequest: ...

    @abstractmethod
    async def get_expense_request(self, request_id: str) -> ExpenseRequest | None: ...

    @abstractmethod
    async def update_expense_request(self, request: ExpenseRequest) -> ExpenseRequest: ...

    @abstractmethod
    async def list_expense_requests(
        self, employee_id: str, status: RequestStatus | None = None, limit: int = 10
    ) -> list[ExpenseRequest]: ...

    @abstractmethod
    async def sum_expenses(
        self,
        employee_id: str,
        category: str,
        incurred_on: date,
        statuses: Iterable[RequestStatus],
    ) -> float: ...

    # Audit
    @abstractmethod
    async def append_audit(self, record: AuditRecord) -> AuditRecord: ...

    @abstractmethod
    async def list_audit(
        self, entity_type: str | None = None, entity_id: str | None = None, limit: int = 100
    ) -> list[AuditRecord]: ...

    # Receipts
    @abstractmethod
    async def save_receipt(self, receipt: Receipt) -> Receipt: ...

    @abstractmethod
    async def get_receipt(self, receipt_id: str) -> Receipt | None: ...


def seed_balances() -> dict[str, Balance]:
    balances = {}
    for employee_id, row in PTO_BALANCES.items():
        current = row["total_accrued"] + row["rollover_from_previous_year"] - row["total_used"]
        balances[employee_id] = Balance(employee_id=employee_id, current_balance=current, **row)
    return balances


def seed_calendar() -> list[CalendarEvent]:
    return [
        CalendarEvent(
            id=i,
            kind=EventKind(kind),
            name=name,
            start_date=date.fromisoformat(start),
            end_date=date.fromisoformat(end),
            description=description,
        )
        for i, (kind, name, start, end, description) in enumerate(COMPANY_CALENDAR, start=1)
    ]


class InMemoryStore(RecordStore):
    """
    Dict-backed store for development and tests.

    Transactions snapshot the whole state and restore it if the block raises.
    They are serialized with a lock, so the store is meant for a single process.
    """

    def __init__(
        self,
        balances: dict[str, Balance] | None = None,
        calendar: list[CalendarEvent] | None = None,
    ):
        self.balances: dict[str, Balance] = balances if balances is not None else {}
        self.calendar: list[CalendarEvent] = calendar if calendar is not None else []
        self.pto_requests: dict[str, PtoRequest] = {}
        self.expense_requests: dict[str, ExpenseRequest] = {}
        self.audit_log: list[AuditRecord] = []
        self.receipts: dict[str, Receipt] = {}
        self._lock = asyncio.Lock()

    @classmethod
    def seeded(cls) -> InMemoryStore:
        return cls(balances=seed_balances(), calendar=seed_calendar())

    def _state(self) -> tuple:
        return (self.balances, self.pto_requests, self.expense_requests, self.audit_log, self.receipts)

    @asynccontextmanager
    async def transaction(self):
        async with self._lock:
            snapshot = copy.deepcopy(self._state())
            try:
                yield self
            except BaseException:
                (
                    self.balances,
                    self.pto_requests,
                    self.expense_requests,
                    self.audit_log,
                    self.receipts,
                ) = snapshot
                logger.warning("In-memory transaction rolled back")
                raise

    async def get_balance(self, employee_id):
        balance = self.balances.get(employee_id)
        return copy.copy(balance) if balance else None

    async def adjust_balance(self, employee_id, used_days):
        balance = self.balances.get(employee_id)
        if balance is None:
            raise NotFoundError(f"No PTO balance for employee {employee_id}")
        balance.current_balance -= used_days
        balance.total_used += used_days
        balance.updated_at = utcnow()
        return copy.copy(balance)

    async def list_calendar_events(self, start, end, kind=None):
        return sorted(
            (e for e in self.calendar if e.overlaps(start, end) and (kind is None or e.kind is kind)),
            key=lambda e: e.start_date,
        )

    async def create_pto_request(self, request):
        self.pto_requests[request.id] = copy.copy(request)
        return request

    async def get_pto_request(self, request_id):
        request = self.pto_requests.get(request_id)
        return copy.copy(request) if request else None

    async def update_pto_request(self, request):
        if request.id not in self.pto_requests:
            raise NotFoundError(f"PTO request {request.id} not found")
        self.pto_requests[request.id] = copy.copy(request)
        return request

    async def list_pto_requests(self, employee_id, status=None, limit=10):
        rows = [
            copy.copy(r)
            for r in self.pto_requests.values()
            if r.employee_id == employee_id and (status is None or r.status is status)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit]

    async def create_expense_request(self, request):
        self.expense_requests[request.id] = copy.deepcopy(request)
        return request

    async def get_expense_request(self, request_id):
        request = self.expense_requests.get(request_id)
        return copy.deepcopy(request) if request else None

    async def update_expense_request(self, request):
        if request.id not in self.expense_requests:
            raise NotFoundError(f"Expense request {request.id} not found")
        self.expense_requests[request.id] = copy.deepcopy(request)
        return request

    async def list_expense_requests(self, employee_id, status=None, limit=10):
        rows = [
            copy.deepcopy(r)
            for r in self.expense_requests.values()
            if r.employee_id == employee_id and (status is None or r.status is status)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit]

    async def sum_expenses(self, employee_id, category, incurred_on, statuses):
        wanted = set(statuses)
        return round(
            sum(
                r.amount
                for r in self.expense_requests.values()
                if r.employee_id == employee_id
                and r.category == category
                and r.incurred_on == incurred_on
                and r.status in wanted
            ),
            2,
        )

    async def append_audit(self, record):
        self.audit_log.append(copy.deepcopy(record))
        return record

    async def list_audit(self, entity_type=None, entity_id=None, limit=100):
        rows = [
            copy.deepcopy(r)
            for r in self.audit_log
            if (entity_type is None or r.entity_type == entity_type)
            and (entity_id is None or r.entity_id == entity_id)
        ]
        return rows[-limit:]

    async def save_receipt(self, receipt):
        self.receipts[receipt.id] = receipt
        return receipt

    async def get_receipt(self, receipt_id):
        return self.receipts.get(receipt_id)
