"""
SQLAlchemy-backed record store.

Uses SQLAlchemy Core over an async engine (asyncpg/aiosqlite). Each public
method runs in its own ``engine.begin()`` block unless the store was handed a
connection by ``transaction()``, in which case all writes share it and commit
together.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    and_,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from approvalflow.exceptions import NotFoundError
from approvalflow.models import (
    ActorKind,
    AuditRecord,
    Balance,
    CalendarEvent,
    EventKind,
    ExpenseRequest,
    PtoRequest,
    Receipt,
    RequestStatus,
    Tier,
    utcnow,
)
from approvalflow.store import RecordStore, seed_balances, seed_calendar

logger = logging.getLogger(__name__)

metadata = MetaData()

pto_balances = Table(
    "pto_balances",
    metadata,
    Column("employee_id", String(32), primary_key=True),
    Column("total_accrued", Float, nullable=False, default=0),
    Column("total_used", Float, nullable=False, default=0),
    Column("current_balance", Float, nullable=False, default=0),
    Column("rollover_from_previous_year", Float, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True)),
)

company_calendar = Table(
    "company_calendar",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("event_type", String(16), nullable=False),
    Column("name", String(200), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("description", Text, default=""),
)

pto_requests = Table(
    "pto_requests",
    metadata,
    Column("id", String(40), primary_key=True),
    Column("employee_id", String(32), nullable=False, index=True),
    Column("manager_id", String(32)),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    Column("total_days", Float, nullable=False),
    Column("reason", Text, default=""),
    Column("status", String(16), nullable=False),
    Column("approval_type", String(16)),
    Column("decision_notes", Text, default=""),
    Column("escalation_reason", Text),
    Column("balance_before", Float),
    Column("balance_after", Float),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("decided_at", DateTime(timezone=True)),
)

receipt_uploads = Table(
    "receipt_uploads",
    metadata,
    Column("id", String(40), primary_key=True),
    Column("employee_id", String(32), nullable=False),
    Column("filename", String(255), nullable=False),
    Column("content_type", String(100), nullable=False),
    Column("content", LargeBinary, nullable=False),
    Column("extracted", JSON),
    Column("uploaded_at", DateTime(timezone=True), nullable=False),
)

expense_requests = Table(
    "expense_requests",
    metadata,
    Column("id", String(40), primary_key=True),
    Column("employee_id", String(32), nullable=False, index=True),
    Column("manager_id", String(32)),
    Column("category", String(32), nullable=False),
    Column("amount", Float, nullable=False),
    Column("currency", String(3), nullable=False, default="USD"),
    Column("description", Text, default=""),
    Column("incurred_on", Date, nullable=False),
    Column("receipt_id", String(40), ForeignKey("receipt_uploads.id")),
    Column("employee_level", String(16)),
    Column("status", String(16), nullable=False),
    Column("approval_type", String(16)),
    Column("decision_notes", Text, default=""),
    Column("escalation_reason", Text),
    Column("policy_violations", JSON),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("decided_at", DateTime(timezone=True)),
)

audit_log = Table(
    "audit_log",
    metadata,
    Column("id", String(40), primary_key=True),
    Column("seq", Integer, nullable=False),
    Column("entity_type", String(32), nullable=False),
    Column("entity_id", String(40), nullable=False),
    Column("action", String(32), nullable=False),
    Column("actor_id", String(32), nullable=False),
    Column("actor_type", String(16), nullable=False),
    Column("details", JSON),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


def _pto_from_row(row) -> PtoRequest:
    return PtoRequest(
        id=row.id,
        employee_id=row.employee_id,
        manager_id=row.manager_id,
        start_date=row.start_date,
        end_date=row.end_date,
        total_days=row.total_days,
        reason=row.reason or "",
        status=RequestStatus(row.status),
        approval_type=row.approval_type,
        decision_notes=row.decision_notes or "",
        escalation_reason=row.escalation_reason,
        balance_before=row.balance_before,
        balance_after=row.balance_after,
        created_at=row.created_at,
        decided_at=row.decided_at,
    )


def _pto_values(request: PtoRequest) -> dict:
    return {
        "id": request.id,
        "employee_id": request.employee_id,
        "manager_id": request.manager_id,
        "start_date": request.start_date,
        "end_date": request.end_date,
        "total_days": request.total_days,
        "reason": request.reason,
        "status": request.status.value,
        "approval_type": request.approval_type,
        "decision_notes": request.decision_notes,
        "escalation_reason": request.escalation_reason,
        "balance_before": request.balance_before,
        "balance_after": request.balance_after,
        "created_at": request.created_at,
        "decided_at": request.decided_at,
    }


def _expense_from_row(row) -> ExpenseRequest:
    return ExpenseRequest(
        id=row.id,
        employee_id=row.employee_id,
        manager_id=row.manager_id,
        category=row.category,
        amount=row.amount,
        currency=row.currency,
        description=row.description or "",
        incurred_on=row.incurred_on,
        receipt_id=row.receipt_id,
        employee_tier=Tier(row.employee_level) if row.employee_level else None,
        status=RequestStatus(row.status),
        approval_type=row.approval_type,
        decision_notes=row.decision_notes or "",
        escalation_reason=row.escalation_reason,
        violations=list(row.policy_violations or []),
        created_at=row.created_at,
        decided_at=row.decided_at,
    )


def _expense_values(request: ExpenseRequest) -> dict:
    return {
        "id": request.id,
        "employee_id": request.employee_id,
        "manager_id": request.manager_id,
        "category": request.category,
        "amount": request.amount,
        "currency": request.currency,
        "description": request.description,
        "incurred_on": request.incurred_on,
        "receipt_id": request.receipt_id,
        "employee_level": request.employee_tier.value if request.employee_tier else None,
        "status": request.status.value,
        "approval_type": request.approval_type,
        "decision_notes": request.decision_notes,
        "escalation_reason": request.escalation_reason,
        "policy_violations": list(request.violations),
        "created_at": request.created_at,
        "decided_at": request.decided_at,
    }


def _balance_from_row(row) -> Balance:
    return Balance(
        employee_id=row.employee_id,
        total_accrued=row.total_accrued,
        total_used=row.total_used,
        current_balance=row.current_balance,
        rollover_from_previous_year=row.rollover_from_previous_year,
        updated_at=row.updated_at,
    )


class SqlStore(RecordStore):
    """Record store over an async SQLAlchemy engine."""

    def __init__(self, engine: AsyncEngine, connection: AsyncConnection | None = None):
        self.engine = engine
        self._connection = connection

    @classmethod
    def from_url(cls, url: str, **engine_kwargs) -> SqlStore:
        return cls(create_async_engine(url, echo=False, **engine_kwargs))

    async def create_schema(self, seed: bool = False):
        """Create tables and optionally load the reference balances and calendar."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
            if seed:
                existing = (await conn.execute(select(func.count()).select_from(pto_balances))).scalar()
                if not existing:
                    await conn.execute(
                        insert(pto_balances),
                        [
                            {
                                "employee_id": b.employee_id,
                                "total_accrued": b.total_accrued,
                                "total_used": b.total_used,
                                "current_balance": b.current_balance,
                                "rollover_from_previous_year": b.rollover_from_previous_year,
                                "updated_at": b.updated_at,
                            }
                            for b in seed_balances().values()
                        ],
                    )
                    await conn.execute(
                        insert(company_calendar),
                        [
                            {
                                "event_type": e.kind.value,
                                "name": e.name,
                                "start_date": e.start_date,
                                "end_date": e.end_date,
                                "description": e.description,
                            }
                            for e in seed_calendar()
                        ],
                    )
                    logger.info("Seeded balances and company calendar")

    async def dispose(self):
        await self.engine.dispose()

    @asynccontextmanager
    async def _connect(self):
        if self._connection is not None:
            yield self._connection
        else:
            async with self.engine.begin() as conn:
                yield conn

    @asynccontextmanager
    async def transaction(self):
        if self._connection is not None:
            yield self
            return
        async with self.engine.begin() as conn:
            yield SqlStore(self.engine, connection=conn)

    async def get_balance(self, employee_id):
        async with self._connect() as conn:
            row = (
                await conn.execute(select(pto_balances).where(pto_balances.c.employee_id == employee_id))
            ).first()
        return _balance_from_row(row) if row else None

    async def adjust_balance(self, employee_id, used_days):
        async with self._connect() as conn:
            result = await conn.execute(
                update(pto_balances)
                .where(pto_balances.c.employee_id == employee_id)
                .values(
                    current_balance=pto_balances.c.current_balance - used_days,
                    total_used=pto_balances.c.total_used + used_days,
                    updated_at=utcnow(),
                )
            )
            if result.rowcount == 0:
                raise NotFoundError(f"No PTO balance for employee {employee_id}")
            row = (
                await conn.execute(select(pto_balances).where(pto_balances.c.employee_id == employee_id))
            ).first()
        return _balance_from_row(row)

    async def list_calendar_events(self, start, end, kind=None):
        query = select(company_calendar).where(
            and_(company_calendar.c.start_date <= end, company_calendar.c.end_date >= start)
        )
        if kind is not None:
            query = query.where(company_calendar.c.event_type == kind.value)
        async with self._connect() as conn:
            rows = (await conn.execute(query.order_by(company_calendar.c.start_date))).all()
        return [
            CalendarEvent(
                id=r.id,
                kind=EventKind(r.event_type),
                name=r.name,
                start_date=r.start_date,
                end_date=r.end_date,
                description=r.description or "",
            )
            for r in rows
        ]

    async def create_pto_request(self, request):
        async with self._connect() as conn:
            await conn.execute(insert(pto_requests).values(**_pto_values(request)))
        return request

    async def get_pto_request(self, request_id):
        async with self._connect() as conn:
            row = (await conn.execute(select(pto_requests).where(pto_requests.c.id == request_id))).first()
        return _pto_from_row(row) if row else None

    async def update_pto_request(self, request):
        values = _pto_values(request)
        values.pop("id")
        async with self._connect() as conn:
            result = await conn.execute(
                update(pto_requests).where(pto_requests.c.id == request.id).values(**values)
            )
        if result.rowcount == 0:
            raise NotFoundError(f"PTO request {request.id} not found")
        return request

    async def list_pto_requests(self, employee_id, status=None, limit=10):
        query = select(pto_requests).where(pto_requests.c.employee_id == employee_id)
        if status is not None:
            query = query.where(pto_requests.c.status == status.value)
        query = query.order_by(pto_requests.c.created_at.desc()).limit(limit)
        async with self._connect() as conn:
            rows = (await conn.execute(query)).all()
        return [_pto_from_row(r) for r in rows]

    async def create_expense_request(self, request):
        async with self._connect() as conn:
            await conn.execute(insert(expense_requests).values(**_expense_values(request)))
        return request

    async def get_expense_request(self, request_id):
        async with self._connect() as conn:
            row = (
                await conn.execute(select(expense_requests).where(expense_requests.c.id == request_id))
            ).first()
        return _expense_from_row(row) if row else None

    async def update_expense_request(self, request):
        values = _expense_values(request)
        values.pop("id")
        async with self._connect() as conn:
            result = await conn.execute(
                update(expense_requests).where(expense_requests.c.id == request.id).values(**values)
            )
        if result.rowcount == 0:
            raise NotFoundError(f"Expense request {request.id} not found")
        return request

    async def list_expense_requests(self, employee_id, status=None, limit=10):
        query = select(expense_requests).where(expense_requests.c.employee_id == employee_id)
        if status is not None:
            query = query.where(expense_requests.c.status == status.value)
        query = query.order_by(expense_requests.c.created_at.desc()).limit(limit)
        async with self._connect() as conn:
            rows = (await conn.execute(query)).all()
        return [_expense_from_row(r) for r in rows]

    async def sum_expenses(self, employee_id, category, incurred_on: date, statuses):
        query = select(func.coalesce(func.sum(expense_requests.c.amount), 0.0)).where(
            and_(
                expense_requests.c.employee_id == employee_id,
                expense_requests.c.category == category,
                expense_requests.c.incurred_on == incurred_on,
                or_(*[expense_requests.c.status == s.value for s in statuses]),
            )
        )
        async with self._connect() as conn:
            total = (await conn.execute(query)).scalar()
        return round(float(total or 0.0), 2)

    async def append_audit(self, record):
        async with self._connect() as conn:
            seq = (await conn.execute(select(func.coalesce(func.max(audit_log.c.seq), 0)))).scalar()
            await conn.execute(
                insert(audit_log).values(
                    id=record.id,
                    seq=seq + 1,
                    entity_type=record.entity_type,
                    entity_id=record.entity_id,
                    action=record.action,
                    actor_id=record.actor_id,
                    actor_type=record.actor_kind.value,
                    details=record.details,
                    created_at=record.created_at,
                )
            )
        return record

    async def list_audit(self, entity_type=None, entity_id=None, limit=100):
        query = select(audit_log)
        if entity_type is not None:
            query = query.where(audit_log.c.entity_type == entity_type)
        if entity_id is not None:
            query = query.where(audit_log.c.entity_id == entity_id)
        query = query.order_by(audit_log.c.seq.desc()).limit(limit)
        async with self._connect() as conn:
            rows = (await conn.execute(query)).all()
        return [
            AuditRecord(
                id=r.id,
                entity_type=r.entity_type,
                entity_id=r.entity_id,
                action=r.action,
                actor_id=r.actor_id,
                actor_kind=ActorKind(r.actor_type),
                details=r.details or {},
                created_at=r.created_at,
            )
            for r in reversed(rows)
        ]

    async def save_receipt(self, receipt):
        async with self._connect() as conn:
            await conn.execute(
                insert(receipt_uploads).values(
                    id=receipt.id,
                    employee_id=receipt.employee_id,
                    filename=receipt.filename,
                    content_type=receipt.content_type,
                    content=receipt.content,
                    extracted=receipt.extracted,
                    uploaded_at=receipt.uploaded_at,
                )
            )
        return receipt

    async def get_receipt(self, receipt_id):
        async with self._connect() as conn:
            row = (
                await conn.execute(select(receipt_uploads).where(receipt_uploads.c.id == receipt_id))
            ).first()
        if row is None:
            return None
        return Receipt(
            id=row.id,
            employee_id=row.employee_id,
            filename=row.filename,
            content_type=row.content_type,
            content=row.content,
            extracted=row.extracted,
            uploaded_at=row.uploaded_at,
        )
