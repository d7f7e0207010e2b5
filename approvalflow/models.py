"""
Domain records shared by the policy engine, lifecycle manager, stores and tools.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


class Tier(str, Enum):
    JUNIOR = "junior"
    SENIOR = "senior"


class RequestKind(str, Enum):
    PTO = "pto"
    EXPENSE = "expense"


class RequestStatus(str, Enum):
    PENDING = "pending"
    AUTO_APPROVED = "auto_approved"
    APPROVED = "approved"
    DENIED = "denied"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class EventKind(str, Enum):
    HOLIDAY = "holiday"
    BLACKOUT = "blackout"


class ActorKind(str, Enum):
    HUMAN = "human"
    AGENT = "agent"
    SYSTEM = "system"


class Recommendation(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    ESCALATE_TO_MANAGER = "ESCALATE_TO_MANAGER"
    DENY = "DENY"


class InvocationState(str, Enum):
    CALLED = "called"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def jsonable(value: Any) -> Any:
    """Convert dataclass output into JSON-safe primitives."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [jsonable(v) for v in value]
    return value


class _Record:
    def to_dict(self) -> dict[str, Any]:
        return jsonable(asdict(self))


@dataclass(frozen=True)
class Identity(_Record):
    """The authenticated caller. Supplied by the identity collaborator, never by the model."""

    id: str
    display_name: str
    tier: Tier
    manager_id: str | None = None
    hire_date: date | None = None
    department: str | None = None
    email: str | None = None


@dataclass
class Balance(_Record):
    employee_id: str
    total_accrued: float
    total_used: float
    current_balance: float
    rollover_from_previous_year: float = 0.0
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class CalendarEvent(_Record):
    id: int
    kind: EventKind
    name: str
    start_date: date
    end_date: date
    description: str = ""

    def overlaps(self, start: date, end: date) -> bool:
        return not (end < self.start_date or start > self.end_date)


@dataclass
class PtoRequest(_Record):
    id: str
    employee_id: str
    start_date: date
    end_date: date
    total_days: float
    status: RequestStatus
    manager_id: str | None = None
    reason: str = ""
    approval_type: str | None = None
    decision_notes: str = ""
    escalation_reason: str | None = None
    balance_before: float | None = None
    balance_after: float | None = None
    created_at: datetime = field(default_factory=utcnow)
    decided_at: datetime | None = None


@dataclass
class ExpenseRequest(_Record):
    id: str
    employee_id: str
    category: str
    amount: float
    incurred_on: date
    status: RequestStatus
    currency: str = "USD"
    description: str = ""
    manager_id: str | None = None
    receipt_id: str | None = None
    employee_tier: Tier | None = None
    approval_type: str | None = None
    decision_notes: str = ""
    escalation_reason: str | None = None
    violations: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    decided_at: datetime | None = None


@dataclass
class AuditRecord(_Record):
    id: str
    entity_type: str
    entity_id: str
    action: str
    actor_id: str
    actor_kind: ActorKind
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Receipt(_Record):
    id: str
    employee_id: str
    filename: str
    content: bytes
    content_type: str = "image/png"
    extracted: dict[str, Any] | None = None
    uploaded_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PtoDraft:
    start_date: date
    end_date: date
    reason: str = ""


@dataclass(frozen=True)
class ExpenseDraft:
    amount: float
    category: str
    incurred_on: date
    description: str = ""
    currency: str = "USD"
    receipt_id: str | None = None


@dataclass(frozen=True)
class Violation(_Record):
    code: str
    message: str
    denial_class: bool = True
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PolicyDecision(_Record):
    kind: RequestKind
    violations: list[Violation]
    can_auto_approve: bool
    requires_escalation: bool
    recommendation: Recommendation
    quantities: dict[str, Any] = field(default_factory=dict)
    override_applied: bool = False
    policy_reference: str | None = None

    def has_violation(self, code: str) -> bool:
        return any(v.code == code for v in self.violations)

    @property
    def is_valid(self) -> bool:
        return not self.violations


@dataclass
class ToolInvocation(_Record):
    """One tool call inside a single loop run."""

    call_id: str
    name: str
    arguments: dict[str, Any]
    state: InvocationState = InvocationState.CALLED
    result: Any = None
    error: str | None = None

    def observation(self) -> dict[str, Any]:
        if self.state is InvocationState.SUCCEEDED:
            return {"tool": self.name, "success": True, "result": jsonable(self.result)}
        return {"tool": self.name, "success": False, "error": self.error}
