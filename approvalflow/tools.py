"""
Agent tools - the only way the model can read or change anything.

Each tool:
1. validates its own arguments before any side effect
2. takes the caller's identity from the ToolContext, never from arguments
3. returns a JSON-serializable dict
4. raises ApprovalFlowError subclasses for failures; the registry turns them
   into failed observations
"""

import logging
import math
from datetime import date
from typing import Any

from dateutil import parser
from dateutil.parser import ParserError

from approvalflow.exceptions import (
    AuthorizationError,
    ConfirmationRequiredError,
    NotFoundError,
    ToolExecutionError,
    ToolValidationError,
)
from approvalflow.models import (
    ActorKind,
    EventKind,
    ExpenseDraft,
    PolicyDecision,
    PtoDraft,
    RequestKind,
    RequestStatus,
)
from approvalflow.policy import (
    EXPENSE_CATEGORIES,
    INSUFFICIENT_BALANCE,
    count_business_days,
    find_blackout_conflicts,
    holiday_dates,
)
from approvalflow.registry import Tool, ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

HISTORY_FILTERS = {
    "all": None,
    "pending": {RequestStatus.PENDING},
    "approved": {RequestStatus.APPROVED, RequestStatus.AUTO_APPROVED},
    "denied": {RequestStatus.DENIED},
    "cancelled": {RequestStatus.CANCELLED},
}

AUDIT_ENTITY_TYPES = ("pto_request", "expense_request", "conversation")

MAX_PTO_SPAN_DAYS = 366


def _require(args: dict[str, Any], *names: str) -> None:
    missing = [n for n in names if args.get(n) in (None, "")]
    if missing:
        raise ToolValidationError(f"Missing required parameter(s): {', '.join(missing)}")


def _date_arg(args: dict[str, Any], name: str) -> date:
    value = args.get(name)
    try:
        return parser.isoparse(str(value)).date()
    except (ParserError, ValueError):
        raise ToolValidationError(f"Invalid {name} '{value}'. Use YYYY-MM-DD format.") from None


def _amount_arg(args: dict[str, Any]) -> float:
    value = args.get("amount")
    try:
        amount = round(float(str(value).replace("$", "").replace(",", "")), 2)
    except ValueError:
        raise ToolValidationError(f"Invalid amount '{value}'") from None
    if not math.isfinite(amount):
        raise ToolValidationError(f"Invalid amount '{value}'")
    if amount <= 0:
        raise ToolValidationError("Expense amount must be greater than zero")
    return amount


def _limit_arg(args: dict[str, Any], default: int = 10) -> int:
    try:
        limit = int(args.get("limit", default))
    except (TypeError, ValueError):
        raise ToolValidationError("limit must be an integer") from None
    return max(1, min(limit, 50))


def _history_filter(args: dict[str, Any]):
    status_filter = str(args.get("status_filter", "all")).lower()
    if status_filter not in HISTORY_FILTERS:
        raise ToolValidationError(
            f"Invalid status_filter '{status_filter}'. Use one of: {', '.join(HISTORY_FILTERS)}"
        )
    return status_filter, HISTORY_FILTERS[status_filter]


def _pto_draft(args: dict[str, Any]) -> PtoDraft:
    _require(args, "start_date", "end_date")
    start = _date_arg(args, "start_date")
    end = _date_arg(args, "end_date")
    if end < start:
        raise ToolValidationError("end_date must be on or after start_date")
    if (end - start).days >= MAX_PTO_SPAN_DAYS:
        raise ToolValidationError(
            f"Date range is too long ({(end - start).days + 1} days). "
            f"A single request can cover at most {MAX_PTO_SPAN_DAYS} days."
        )
    return PtoDraft(start_date=start, end_date=end, reason=str(args.get("reason") or ""))


async def _expense_draft(args: dict[str, Any], ctx: ToolContext) -> ExpenseDraft:
    _require(args, "amount", "category", "date")
    category = str(args["category"]).lower().replace(" ", "_")
    if category not in EXPENSE_CATEGORIES:
        raise ToolValidationError(
            f"Invalid category '{args['category']}'. Use one of: {', '.join(EXPENSE_CATEGORIES)}"
        )

    receipt_id = args.get("receipt_id") or None
    if receipt_id:
        receipt = await ctx.store.get_receipt(receipt_id)
        if receipt is None:
            raise NotFoundError(f"Receipt {receipt_id} not found. Please upload it again.")
        if receipt.employee_id != ctx.identity.id:
            raise AuthorizationError("Access denied: that receipt belongs to another employee.")

    return ExpenseDraft(
        amount=_amount_arg(args),
        category=category,
        incurred_on=_date_arg(args, "date"),
        description=str(args.get("description") or ""),
        currency=str(args.get("currency") or "USD").upper(),
        receipt_id=receipt_id,
    )


def _decision_summary(decision: PolicyDecision) -> dict[str, Any]:
    return {
        "is_valid": decision.is_valid,
        "can_auto_approve": decision.can_auto_approve,
        "requires_escalation": decision.requires_escalation,
        "recommendation": decision.recommendation.value,
        "violations": [
            {"policy": v.code, "message": v.message, "blocking": v.denial_class}
            for v in decision.violations
        ],
        **decision.quantities,
    }


async def get_current_user(args, ctx: ToolContext) -> dict[str, Any]:
    """Profile of the signed-in employee."""
    identity = ctx.identity
    return {
        "employee_id": identity.id,
        "name": identity.display_name,
        "level": identity.tier.value,
        "department": identity.department,
        "manager_id": identity.manager_id,
        "hire_date": identity.hire_date.isoformat() if identity.hire_date else None,
    }


async def search_employee_handbook(args, ctx: ToolContext) -> dict[str, Any]:
    _require(args, "query")
    if ctx.handbook is None:
        raise ToolExecutionError("Handbook search is currently unavailable")
    result = await ctx.handbook.ask(str(args["query"]))
    return {"query": args["query"], **result}


async def get_pto_balance(args, ctx: ToolContext) -> dict[str, Any]:
    balance = await ctx.store.get_balance(ctx.identity.id)
    if balance is None:
        raise NotFoundError(f"No PTO balance found for employee {ctx.identity.id}")
    return {
        "employee_id": balance.employee_id,
        "current_balance": balance.current_balance,
        "total_accrued": balance.total_accrued,
        "total_used": balance.total_used,
        "rollover_from_previous_year": balance.rollover_from_previous_year,
    }


async def calculate_business_days(args, ctx: ToolContext) -> dict[str, Any]:
    """Business days in a range, excluding weekends and company holidays."""
    draft = _pto_draft(args)
    events = await ctx.store.list_calendar_events(draft.start_date, draft.end_date, EventKind.HOLIDAY)
    count = count_business_days(draft.start_date, draft.end_date, holiday_dates(events))
    holiday_names = {e.name for e in events}
    return {
        "start_date": draft.start_date.isoformat(),
        "end_date": draft.end_date.isoformat(),
        **count.to_dict(),
        "holiday_names": sorted(holiday_names),
    }


async def check_blackout_periods(args, ctx: ToolContext) -> dict[str, Any]:
    draft = _pto_draft(args)
    events = await ctx.store.list_calendar_events(draft.start_date, draft.end_date, EventKind.BLACKOUT)
    conflicts = find_blackout_conflicts(draft.start_date, draft.end_date, events)
    return {
        "has_conflicts": bool(conflicts),
        "conflicts": [
            {
                "name": e.name,
                "start_date": e.start_date.isoformat(),
                "end_date": e.end_date.isoformat(),
                "description": e.description,
            }
            for e in conflicts
        ],
    }


async def get_pto_history(args, ctx: ToolContext) -> dict[str, Any]:
    status_filter, statuses = _history_filter(args)
    limit = _limit_arg(args)
    rows = await ctx.store.list_pto_requests(ctx.identity.id, limit=200)
    if statuses is not None:
        rows = [r for r in rows if r.status in statuses]
    return {
        "status_filter": status_filter,
        "requests": [
            {
                "request_id": r.id,
                "start_date": r.start_date.isoformat(),
                "end_date": r.end_date.isoformat(),
                "total_days": r.total_days,
                "status": r.status.value,
                "reason": r.reason,
                "notes": r.decision_notes or r.escalation_reason,
                "created_at": r.created_at.isoformat(),
            }
            for r in rows[:limit]
        ],
    }


async def validate_pto_policy(args, ctx: ToolContext) -> dict[str, Any]:
    """
    Check a PTO request against every policy rule without submitting it.

    Architectural role
    ------------------
    This is where the agent learns the outcome. The recommendation comes from
    the policy engine; the model only relays it.

    When the only obstacle is an insufficient balance, the employee is offered
    manager review as partially unpaid leave. Accepting that offer in their
    next message lets ``submit_pto_request`` be called with ``force=true``.
    """
    draft = _pto_draft(args)
    confirmed = ctx.conversation.can_force(draft.start_date, draft.end_date)
    decision = await ctx.engine.validate_pto(draft, ctx.identity, override_confirmed=confirmed)
    result = _decision_summary(decision)

    others = [v for v in decision.violations if v.code != INSUFFICIENT_BALANCE]
    if decision.has_violation(INSUFFICIENT_BALANCE) and not others and not decision.override_applied:
        ctx.conversation.offer_override(draft.start_date, draft.end_date)
        result["override_available"] = True
        result["override_message"] = (
            "Ask the employee whether they want to submit anyway. If they confirm, "
            "the request goes to their manager as partially unpaid leave."
        )
    return result


async def submit_pto_request(args, ctx: ToolContext) -> dict[str, Any]:
    """
    Create a PTO request. The status is decided by the policy engine, re-run here;
    nothing in the arguments can set it.
    """
    draft = _pto_draft(args)
    force = str(args.get("force", False)).lower() in ("true", "1", "yes")
    if force and not ctx.conversation.can_force(draft.start_date, draft.end_date):
        raise ConfirmationRequiredError(
            "Submitting despite an insufficient balance requires the employee's explicit "
            "confirmation first. Validate the request and ask them."
        )

    decision = await ctx.engine.validate_pto(draft, ctx.identity, override_confirmed=force)
    submission = await ctx.lifecycle.submit_pto(draft, ctx.identity, decision)
    if force:
        ctx.conversation.consume_override()

    return {
        **submission.to_dict(),
        "business_days": decision.quantities["business_days"],
        "violations": [{"policy": v.code, "message": v.message} for v in decision.violations],
    }


async def process_receipt(args, ctx: ToolContext) -> dict[str, Any]:
    """Read amount, date and merchant from an uploaded receipt."""
    _require(args, "receipt_id")
    receipt = await ctx.store.get_receipt(str(args["receipt_id"]))
    if receipt is None:
        raise NotFoundError(f"Receipt {args['receipt_id']} not found. Please upload it again.")
    if receipt.employee_id != ctx.identity.id:
        raise AuthorizationError("Access denied: that receipt belongs to another employee.")
    if ctx.receipts is None:
        raise ToolExecutionError("Receipt processing is currently unavailable")

    extraction = await ctx.receipts.extract(receipt.content, receipt.filename, receipt.content_type)
    return {"receipt_id": receipt.id, **extraction.to_dict()}


async def validate_expense(args, ctx: ToolContext) -> dict[str, Any]:
    draft = await _expense_draft(args, ctx)
    decision = await ctx.engine.validate_expense(draft, ctx.identity)
    result = _decision_summary(decision)
    if decision.policy_reference:
        result["policy_reference"] = decision.policy_reference
    return result


async def submit_expense_request(args, ctx: ToolContext) -> dict[str, Any]:
    draft = await _expense_draft(args, ctx)
    decision = await ctx.engine.validate_expense(draft, ctx.identity)
    submission = await ctx.lifecycle.submit_expense(draft, ctx.identity, decision)
    return {
        **submission.to_dict(),
        "amount": draft.amount,
        "category": draft.category,
        "violations": [{"policy": v.code, "message": v.message} for v in decision.violations],
    }


async def get_expense_history(args, ctx: ToolContext) -> dict[str, Any]:
    status_filter, statuses = _history_filter(args)
    limit = _limit_arg(args)
    rows = await ctx.store.list_expense_requests(ctx.identity.id, limit=200)
    if statuses is not None:
        rows = [r for r in rows if r.status in statuses]
    return {
        "status_filter": status_filter,
        "expenses": [
            {
                "request_id": r.id,
                "category": r.category,
                "amount": r.amount,
                "currency": r.currency,
                "date": r.incurred_on.isoformat(),
                "description": r.description,
                "status": r.status.value,
                "notes": r.decision_notes or r.escalation_reason,
            }
            for r in rows[:limit]
        ],
    }


async def cancel_request(args, ctx: ToolContext) -> dict[str, Any]:
    _require(args, "request_type", "request_id")
    try:
        kind = RequestKind(str(args["request_type"]).lower())
    except ValueError:
        raise ToolValidationError("request_type must be 'pto' or 'expense'") from None
    result = await ctx.lifecycle.cancel(kind, str(args["request_id"]), ctx.identity)
    return result.to_dict()


async def log_audit_event(args, ctx: ToolContext) -> dict[str, Any]:
    _require(args, "entity_type", "entity_id", "action")
    entity_type = str(args["entity_type"])
    entity_id = str(args["entity_id"])
    if entity_type not in AUDIT_ENTITY_TYPES:
        raise ToolValidationError(
            f"Invalid entity_type '{entity_type}'. Use one of: {', '.join(AUDIT_ENTITY_TYPES)}"
        )

    if entity_type == "pto_request":
        owner = await ctx.store.get_pto_request(entity_id)
    elif entity_type == "expense_request":
        owner = await ctx.store.get_expense_request(entity_id)
    else:
        owner = None
    if entity_type != "conversation":
        if owner is None:
            raise NotFoundError(f"{entity_type} {entity_id} not found")
        if owner.employee_id != ctx.identity.id:
            raise AuthorizationError("Access denied: you can only act on your own requests.")

    details = args.get("details") or {}
    if not isinstance(details, dict):
        details = {"note": str(details)}
    record = await ctx.audit.record(
        entity_type, entity_id, str(args["action"]), ctx.identity.id, ActorKind.AGENT, details
    )
    return {"audit_id": record.id, "logged": True}


DATE_RANGE = {
    "start_date": "Start date, YYYY-MM-DD (inclusive)",
    "end_date": "End date, YYYY-MM-DD (inclusive)",
}

EXPENSE_FIELDS = {
    "amount": "Amount as a number, e.g. 42.50",
    "category": f"One of: {', '.join(EXPENSE_CATEGORIES)}",
    "date": "Date the expense was incurred, YYYY-MM-DD",
    "description": "What was purchased",
    "receipt_id": "Optional id of an uploaded receipt",
    "currency": "Optional ISO currency code, default USD",
}

HISTORY_FIELDS = {
    "status_filter": "One of: all, pending, approved, denied, cancelled (default all)",
    "limit": "Maximum number of records, default 10",
}

DEFAULT_TOOLS = (
    Tool(
        "get_current_user",
        "Get the signed-in employee's profile: name, level (junior/senior), department, manager.",
        get_current_user,
    ),
    Tool(
        "search_employee_handbook",
        "Answer a question about company policy from the employee handbook.",
        search_employee_handbook,
        {"query": "The policy question"},
        ("query",),
    ),
    Tool(
        "get_pto_balance",
        "Get the employee's current PTO balance in days.",
        get_pto_balance,
    ),
    Tool(
        "calculate_business_days",
        "Count business days in a date range, excluding weekends and company holidays.",
        calculate_business_days,
        DATE_RANGE,
        ("start_date", "end_date"),
    ),
    Tool(
        "check_blackout_periods",
        "Check whether a date range overlaps a company blackout period.",
        check_blackout_periods,
        DATE_RANGE,
        ("start_date", "end_date"),
    ),
    Tool(
        "get_pto_history",
        "List the employee's past PTO requests.",
        get_pto_history,
        HISTORY_FIELDS,
    ),
    Tool(
        "validate_pto_policy",
        "Validate a PTO request against all policies and get the approval recommendation. "
        "Always call this before submit_pto_request.",
        validate_pto_policy,
        {**DATE_RANGE, "reason": "Optional reason for the time off"},
        ("start_date", "end_date"),
    ),
    Tool(
        "submit_pto_request",
        "Submit a PTO request. Set force=true only after the employee explicitly confirmed "
        "submitting despite an insufficient balance.",
        submit_pto_request,
        {**DATE_RANGE, "reason": "Reason for the time off", "force": "true/false, default false"},
        ("start_date", "end_date"),
    ),
    Tool(
        "process_receipt",
        "Extract amount, date and merchant from an uploaded receipt.",
        process_receipt,
        {"receipt_id": "Id of the uploaded receipt"},
        ("receipt_id",),
    ),
    Tool(
        "validate_expense",
        "Validate an expense against reimbursement policy and get the approval recommendation. "
        "Always call this before submit_expense_request.",
        validate_expense,
        EXPENSE_FIELDS,
        ("amount", "category", "date"),
    ),
    Tool(
        "submit_expense_request",
        "Submit an expense for reimbursement.",
        submit_expense_request,
        EXPENSE_FIELDS,
        ("amount", "category", "date"),
    ),
    Tool(
        "get_expense_history",
        "List the employee's past expense requests.",
        get_expense_history,
        HISTORY_FIELDS,
    ),
    Tool(
        "cancel_request",
        "Cancel one of the employee's own pending requests.",
        cancel_request,
        {"request_type": "pto or expense", "request_id": "Id of the request"},
        ("request_type", "request_id"),
    ),
    Tool(
        "log_audit_event",
        "Record a notable event (for example, the employee declined to proceed) in the audit log.",
        log_audit_event,
        {
            "entity_type": f"One of: {', '.join(AUDIT_ENTITY_TYPES)}",
            "entity_id": "Id of the request, or the session id for conversation events",
            "action": "Short action name, e.g. employee_declined",
            "details": "Optional object with extra context",
        },
        ("entity_type", "entity_id", "action"),
    ),
)


def build_tool_registry() -> ToolRegistry:
    return ToolRegistry(DEFAULT_TOOLS)
