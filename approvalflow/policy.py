"""
Deterministic policy validation for PTO and expense requests.

Architectural role
------------------
This module is the single source of approval decisions. The language model
never decides whether a request is approved: it calls a tool, the tool calls
``PolicyEngine``, and the engine calls the pure ``evaluate_*`` functions
below. Given the same draft, identity, balance and calendar the result is
always the same.

All violations are collected in one pass so the employee sees every reason a
request cannot be auto-approved, not just the first.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import TYPE_CHECKING

from approvalflow.exceptions import ToolValidationError
from approvalflow.models import (
    Balance,
    CalendarEvent,
    EventKind,
    ExpenseDraft,
    Identity,
    PolicyDecision,
    PtoDraft,
    Recommendation,
    RequestKind,
    RequestStatus,
    Tier,
    Violation,
)
from approvalflow.observability import trace_span

if TYPE_CHECKING:
    from approvalflow.collaborators import HandbookClient
    from approvalflow.store import RecordStore

logger = logging.getLogger(__name__)

# Business days a request may span and still be approved without a manager.
PTO_AUTO_APPROVAL_DAYS = {Tier.JUNIOR: 3, Tier.SENIOR: 10}

# Per-expense amount (USD) that may be approved without a manager.
EXPENSE_AUTO_APPROVAL_LIMITS = {Tier.JUNIOR: 100.0, Tier.SENIOR: 500.0}

RECEIPT_REQUIRED_ABOVE = 75.0

# Per-day ceilings summed across all of an employee's expenses in the category.
CATEGORY_DAILY_LIMITS = {"meals": 75.0}

EXPENSE_CATEGORIES = ("travel", "meals", "home_office", "training", "software", "supplies")

NON_REIMBURSABLE_ITEMS = {
    "alcohol": ("alcohol", "beer", "wine", "liquor", "cocktail", "whiskey", "vodka", "bar tab"),
    "traffic_fine": ("parking ticket", "speeding ticket", "traffic ticket", "traffic fine", "citation"),
    "family_travel": ("spouse", "spousal", "family member", "my kids", "children's ticket"),
    "in_room_entertainment": ("minibar", "mini-bar", "in-room movie", "pay-per-view", "movie rental"),
    "personal_grooming": ("haircut", "manicure", "salon", "spa treatment"),
    "gym_membership": ("gym membership", "fitness club", "gym fee"),
}

# Statuses that count toward a category's daily accumulation.
ACCUMULATING_STATUSES = (
    RequestStatus.PENDING,
    RequestStatus.AUTO_APPROVED,
    RequestStatus.APPROVED,
)

INSUFFICIENT_BALANCE = "insufficient_balance"
BLACKOUT_CONFLICT = "blackout_conflict"
NO_BUSINESS_DAYS = "no_business_days"
MISSING_RECEIPT = "missing_receipt"
NON_REIMBURSABLE_ITEM = "non_reimbursable_item"
PER_DIEM_EXCEEDED = "per_diem_exceeded"


@dataclass(frozen=True)
class BusinessDayCount:
    business_days: int
    weekend_days: int
    holidays: list[date] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "business_days": self.business_days,
            "weekend_days": self.weekend_days,
            "holidays": [d.isoformat() for d in self.holidays],
        }


def holiday_dates(events: Iterable[CalendarEvent]) -> set[date]:
    """Expand every holiday event (including multi-day ones) into the dates it covers."""
    dates: set[date] = set()
    for event in events:
        if event.kind is not EventKind.HOLIDAY:
            continue
        day = event.start_date
        while day <= event.end_date:
            dates.add(day)
            day += timedelta(days=1)
    return dates


def count_business_days(start: date, end: date, holidays: Iterable[date] = ()) -> BusinessDayCount:
    """Count weekdays in the inclusive range that are not company holidays."""
    if end < start:
        raise ToolValidationError(
            f"End date {end.isoformat()} is before start date {start.isoformat()}"
        )

    holiday_set = set(holidays)
    business = weekend = 0
    hit: list[date] = []
    for offset in range((end - start).days + 1):
        day = start + timedelta(days=offset)
        if day.weekday() >= 5:
            weekend += 1
        elif day in holiday_set:
            hit.append(day)
        else:
            business += 1
    return BusinessDayCount(business_days=business, weekend_days=weekend, holidays=hit)


def find_blackout_conflicts(
    start: date, end: date, events: Iterable[CalendarEvent]
) -> list[CalendarEvent]:
    """Blackout periods overlapping the inclusive range, earliest first."""
    conflicts = [
        e for e in events if e.kind is EventKind.BLACKOUT and e.overlaps(start, end)
    ]
    return sorted(conflicts, key=lambda e: (e.start_date, e.id))


def find_non_reimbursable(description: str) -> list[str]:
    """Names of non-reimbursable item groups mentioned in the description."""
    text = description.lower()
    matched = []
    for item, keywords in NON_REIMBURSABLE_ITEMS.items():
        if any(re.search(rf"\b{re.escape(k)}", text) for k in keywords):
            matched.append(item)
    return matched


def evaluate_pto(
    draft: PtoDraft,
    identity: Identity,
    balance: Balance | None,
    calendar: Iterable[CalendarEvent],
    *,
    override_confirmed: bool = False,
    insufficient_balance_mode: str = "confirm",
) -> PolicyDecision:
    """
    Decide a PTO draft.

    ``override_confirmed`` means the employee explicitly asked to submit
    despite an insufficient balance; in ``auto_escalate`` mode that request is
    implied. Either way an overridden request is escalated, never auto-approved.
    """
    events = list(calendar)
    days = count_business_days(draft.start_date, draft.end_date, holiday_dates(events))
    current = balance.current_balance if balance else 0.0
    threshold = PTO_AUTO_APPROVAL_DAYS[identity.tier]

    violations: list[Violation] = []

    if days.business_days == 0:
        violations.append(
            Violation(
                code=NO_BUSINESS_DAYS,
                message="The requested dates fall entirely on weekends or company holidays.",
            )
        )

    if current < days.business_days:
        violations.append(
            Violation(
                code=INSUFFICIENT_BALANCE,
                message=(
                    f"Insufficient PTO balance. You have {current:g} days available, "
                    f"but you're requesting {days.business_days} business days."
                ),
                details={
                    "current_balance": current,
                    "requested": days.business_days,
                    "shortfall": days.business_days - current,
                },
            )
        )

    conflicts = find_blackout_conflicts(draft.start_date, draft.end_date, events)
    if conflicts:
        first = conflicts[0]
        violations.append(
            Violation(
                code=BLACKOUT_CONFLICT,
                message=(
                    f"Request overlaps with blackout period: {first.name} "
                    f"({first.start_date.isoformat()} to {first.end_date.isoformat()})"
                ),
                details={
                    "name": first.name,
                    "start_date": first.start_date.isoformat(),
                    "end_date": first.end_date.isoformat(),
                },
            )
        )

    has_insufficient = any(v.code == INSUFFICIENT_BALANCE for v in violations)
    override = has_insufficient and (
        override_confirmed or insufficient_balance_mode == "auto_escalate"
    )
    blocking = [v for v in violations if not (override and v.code == INSUFFICIENT_BALANCE)]

    if not violations and days.business_days <= threshold:
        recommendation = Recommendation.AUTO_APPROVE
    elif not blocking:
        recommendation = Recommendation.ESCALATE_TO_MANAGER
    else:
        recommendation = Recommendation.DENY

    return PolicyDecision(
        kind=RequestKind.PTO,
        violations=violations,
        can_auto_approve=recommendation is Recommendation.AUTO_APPROVE,
        requires_escalation=recommendation is Recommendation.ESCALATE_TO_MANAGER,
        recommendation=recommendation,
        quantities={
            **days.to_dict(),
            "current_balance": current,
            "balance_after": current - days.business_days,
            "auto_approval_limit": threshold,
            "tier": identity.tier.value,
        },
        override_applied=override,
    )


def evaluate_expense(
    draft: ExpenseDraft,
    identity: Identity,
    *,
    has_receipt: bool,
    same_day_category_total: float = 0.0,
) -> PolicyDecision:
    """Decide an expense draft. Denial-class violations win, then the tier ceiling."""
    if draft.category not in EXPENSE_CATEGORIES:
        raise ToolValidationError(
            f"Unknown expense category '{draft.category}'. "
            f"Expected one of: {', '.join(EXPENSE_CATEGORIES)}"
        )
    if not math.isfinite(draft.amount) or not math.isfinite(same_day_category_total):
        raise ToolValidationError(f"Expense amount must be a finite number, got {draft.amount}")
    if draft.amount <= 0:
        raise ToolValidationError("Expense amount must be greater than zero")

    ceiling = EXPENSE_AUTO_APPROVAL_LIMITS[identity.tier]
    violations: list[Violation] = []

    if draft.amount > RECEIPT_REQUIRED_ABOVE and not has_receipt:
        violations.append(
            Violation(
                code=MISSING_RECEIPT,
                message=(
                    f"A receipt is required for expenses over ${RECEIPT_REQUIRED_ABOVE:.2f}. "
                    "Please upload the receipt and try again."
                ),
            )
        )

    items = find_non_reimbursable(draft.description)
    if items:
        violations.append(
            Violation(
                code=NON_REIMBURSABLE_ITEM,
                message=(
                    "The description includes non-reimbursable items: "
                    f"{', '.join(i.replace('_', ' ') for i in items)}."
                ),
                details={"items": items},
            )
        )

    daily_limit = CATEGORY_DAILY_LIMITS.get(draft.category)
    day_total = round(same_day_category_total + draft.amount, 2)
    if daily_limit is not None and day_total > daily_limit:
        violations.append(
            Violation(
                code=PER_DIEM_EXCEEDED,
                message=(
                    f"Daily {draft.category} limit is ${daily_limit:.2f}; "
                    f"this brings {draft.incurred_on.isoformat()} to ${day_total:.2f}."
                ),
                denial_class=False,
                details={"daily_limit": daily_limit, "day_total": day_total},
            )
        )

    if any(v.denial_class for v in violations):
        recommendation = Recommendation.DENY
    elif draft.amount > ceiling or violations:
        recommendation = Recommendation.ESCALATE_TO_MANAGER
    else:
        recommendation = Recommendation.AUTO_APPROVE

    return PolicyDecision(
        kind=RequestKind.EXPENSE,
        violations=violations,
        can_auto_approve=recommendation is Recommendation.AUTO_APPROVE,
        requires_escalation=recommendation is Recommendation.ESCALATE_TO_MANAGER,
        recommendation=recommendation,
        quantities={
            "amount": draft.amount,
            "currency": draft.currency,
            "auto_approval_limit": ceiling,
            "receipt_required_above": RECEIPT_REQUIRED_ABOVE,
            "same_day_category_total": day_total,
            "tier": identity.tier.value,
        },
    )


class PolicyEngine:
    """Loads the facts a decision needs from the store and evaluates the draft."""

    def __init__(
        self,
        store: RecordStore,
        handbook: HandbookClient | None = None,
        insufficient_balance_mode: str = "confirm",
    ):
        self.store = store
        self.handbook = handbook
        self.insufficient_balance_mode = insufficient_balance_mode

    async def validate_pto(
        self, draft: PtoDraft, identity: Identity, override_confirmed: bool = False
    ) -> PolicyDecision:
        with trace_span("policy.validate_pto", employee=identity.id):
            balance = await self.store.get_balance(identity.id)
            # Holidays are fetched for the same window so multi-day ones are expanded fully.
            calendar = await self.store.list_calendar_events(draft.start_date, draft.end_date)
            decision = evaluate_pto(
                draft,
                identity,
                balance,
                calendar,
                override_confirmed=override_confirmed,
                insufficient_balance_mode=self.insufficient_balance_mode,
            )

        logger.info(
            f"PTO decision: employee={identity.id} "
            f"days={decision.quantities['business_days']} "
            f"recommendation={decision.recommendation.value} "
            f"violations={[v.code for v in decision.violations]}"
        )
        return decision

    async def validate_expense(self, draft: ExpenseDraft, identity: Identity) -> PolicyDecision:
        with trace_span("policy.validate_expense", employee=identity.id):
            has_receipt = False
            if draft.receipt_id:
                receipt = await self.store.get_receipt(draft.receipt_id)
                has_receipt = receipt is not None and receipt.employee_id == identity.id

            same_day_total = 0.0
            if draft.category in CATEGORY_DAILY_LIMITS:
                same_day_total = await self.store.sum_expenses(
                    identity.id, draft.category, draft.incurred_on, ACCUMULATING_STATUSES
                )

            decision = evaluate_expense(
                draft,
                identity,
                has_receipt=has_receipt,
                same_day_category_total=same_day_total,
            )

        if self.handbook is not None:
            decision.policy_reference = await self._expense_reference(draft.category)

        logger.info(
            f"Expense decision: employee={identity.id} amount={draft.amount} "
            f"category={draft.category} recommendation={decision.recommendation.value} "
            f"violations={[v.code for v in decision.violations]}"
        )
        return decision

    async def _expense_reference(self, category: str) -> str | None:
        # Reference text only; the numeric limits above stay authoritative.
        try:
            answer = await self.handbook.ask(
                f"What is the reimbursement policy for {category.replace('_', ' ')} expenses?"
            )
        except Exception as e:
            logger.warning(f"Handbook lookup failed, using fixed expense limits: {e}")
            return None
        return answer.get("answer")
