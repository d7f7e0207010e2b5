"""
Per-session conversation state.

Tracks the one piece of cross-turn state the tools rely on: whether the
employee explicitly confirmed submitting a PTO request despite an
insufficient balance. The offer is made by ``validate_pto_policy`` in one
turn; only an affirmative reply in the employee's next message unlocks
``submit_pto_request(force=true)`` for the same dates.
"""

import re
from dataclasses import dataclass
from datetime import date

AFFIRMATIVE_PATTERNS = [
    r"^\s*(yes|yep|yeah|sure|ok|okay|confirm(ed)?)\b",
    r"\bgo ahead\b",
    r"\bsubmit (it )?anyway\b",
    r"\bproceed\b",
    r"\bplease (do|submit)\b",
    r"\bunpaid (leave|is fine)\b",
]

NEGATIVE_PATTERNS = [r"^\s*(no|nope|don't|do not|cancel)\b", r"\bnever ?mind\b"]


def is_affirmative(message: str) -> bool:
    text = message.lower()
    if any(re.search(p, text) for p in NEGATIVE_PATTERNS):
        return False
    return any(re.search(p, text) for p in AFFIRMATIVE_PATTERNS)


@dataclass
class PendingOverride:
    start_date: date
    end_date: date
    offered_turn: int


@dataclass
class ConversationState:
    turn: int = 0
    pending_override: PendingOverride | None = None
    override_confirmed: bool = False

    def begin_turn(self, message: str) -> None:
        """Advance the turn counter and resolve any outstanding override offer."""
        self.turn += 1
        offer = self.pending_override
        if offer is None:
            self.override_confirmed = False
            return
        if offer.offered_turn == self.turn - 1 and is_affirmative(message):
            self.override_confirmed = True
        elif offer.offered_turn < self.turn:
            # Offer not accepted in the very next message; it lapses.
            self.pending_override = None
            self.override_confirmed = False

    def offer_override(self, start_date: date, end_date: date) -> None:
        if self.can_force(start_date, end_date):
            # Re-validating already-confirmed dates keeps the confirmation.
            return
        self.pending_override = PendingOverride(start_date, end_date, self.turn)
        self.override_confirmed = False

    def can_force(self, start_date: date, end_date: date) -> bool:
        offer = self.pending_override
        return (
            self.override_confirmed
            and offer is not None
            and offer.start_date == start_date
            and offer.end_date == end_date
        )

    def consume_override(self) -> None:
        self.pending_override = None
        self.override_confirmed = False
