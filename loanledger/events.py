"""
events.py - Loan Notification Events

Events are just data. Agreement and registry functions attach them to the
PendingTransaction they build; the ledger publishes them to subscribers only
after the transaction commits, so a rejected operation never produces one.

The transaction log is the audit trail - the event stream is a view over it
for observers (status endpoints, collectors) that do not want to decode
state changes.

Core concepts:
1. LoanEvent: Immutable notification of something that happened to a loan
2. Kind constants: the notification vocabulary
3. Factory functions: one per kind
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional


# ============================================================================
# EVENT KINDS
# ============================================================================

LOAN_CREATED = "loan_created"
PAYMENT_APPLIED = "payment_applied"
FULLY_REPAID = "fully_repaid"
DEFAULT_MARKED = "default_marked"
LATE_PENALTY_APPLIED = "late_penalty_applied"
LATE_FEE_ACCUMULATED = "late_fee_accumulated"
TRUST_SCORE_UPDATED = "trust_score_updated"

# Part of the vocabulary only. Overpayment is capped rather than refunded,
# so no code path produces this kind.
REFUND_ISSUED = "refund_issued"

EVENT_KINDS = frozenset({
    LOAN_CREATED,
    PAYMENT_APPLIED,
    FULLY_REPAID,
    DEFAULT_MARKED,
    LATE_PENALTY_APPLIED,
    LATE_FEE_ACCUMULATED,
    TRUST_SCORE_UPDATED,
    REFUND_ISSUED,
})


# ============================================================================
# EVENT DATA STRUCTURE
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanEvent:
    """
    Immutable loan notification.

    Attributes:
        kind: One of the kind constants above
        loan: Agreement symbol the event concerns (registry symbol for
              registry-level events)
        timestamp: Ledger time of the operation that produced it
        params: Event-specific values as a frozen tuple of (key, value) pairs
    """
    kind: str
    loan: str
    timestamp: int
    params: tuple = ()

    def __post_init__(self):
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind '{self.kind}'")

    @property
    def params_dict(self) -> Dict[str, Any]:
        """Get params as a dictionary for convenience."""
        return dict(self.params)

    @property
    def event_id(self) -> str:
        """Deterministic ID (includes params for uniqueness)."""
        params_str = "|".join(f"{k}={v}" for k, v in sorted(self.params))
        return f"{self.kind}:{self.loan}:{self.timestamp}:{params_str}"

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v!r}" for k, v in self.params)
        return f"LoanEvent({self.kind} {self.loan} @{self.timestamp}: {params_str})"


# ============================================================================
# EVENT FACTORY FUNCTIONS
# ============================================================================

def loan_created_event(
    loan: str,
    timestamp: int,
    lender: str,
    borrower: str,
    principal: int,
    asset: str,
) -> LoanEvent:
    """A registry created a new agreement."""
    return LoanEvent(
        kind=LOAN_CREATED,
        loan=loan,
        timestamp=timestamp,
        params=(
            ("lender", lender),
            ("borrower", borrower),
            ("principal", principal),
            ("asset", asset),
        ),
    )


def payment_applied_event(
    loan: str,
    timestamp: int,
    payer: str,
    amount: int,
    repaid_amount: int,
) -> LoanEvent:
    """A repayment moved funds; repaid_amount is the new cumulative total."""
    return LoanEvent(
        kind=PAYMENT_APPLIED,
        loan=loan,
        timestamp=timestamp,
        params=(
            ("payer", payer),
            ("amount", amount),
            ("repaid_amount", repaid_amount),
        ),
    )


def fully_repaid_event(loan: str, timestamp: int, total_repaid: int) -> LoanEvent:
    return LoanEvent(
        kind=FULLY_REPAID,
        loan=loan,
        timestamp=timestamp,
        params=(("total_repaid", total_repaid),),
    )


def default_marked_event(loan: str, timestamp: int, outstanding: int) -> LoanEvent:
    return LoanEvent(
        kind=DEFAULT_MARKED,
        loan=loan,
        timestamp=timestamp,
        params=(("outstanding", outstanding),),
    )


def late_penalty_applied_event(
    loan: str,
    timestamp: int,
    installment: int,
    trust_delta: int,
) -> LoanEvent:
    return LoanEvent(
        kind=LATE_PENALTY_APPLIED,
        loan=loan,
        timestamp=timestamp,
        params=(
            ("installment", installment),
            ("trust_delta", trust_delta),
        ),
    )


def late_fee_accumulated_event(
    loan: str,
    timestamp: int,
    installment: int,
    fee: int,
    accumulated_late_fees: int,
) -> LoanEvent:
    return LoanEvent(
        kind=LATE_FEE_ACCUMULATED,
        loan=loan,
        timestamp=timestamp,
        params=(
            ("installment", installment),
            ("fee", fee),
            ("accumulated_late_fees", accumulated_late_fees),
        ),
    )


def trust_score_updated_event(
    registry: str,
    timestamp: int,
    borrower: str,
    delta: int,
    score: int,
    caller: Optional[str] = None,
) -> LoanEvent:
    return LoanEvent(
        kind=TRUST_SCORE_UPDATED,
        loan=caller or registry,
        timestamp=timestamp,
        params=(
            ("registry", registry),
            ("borrower", borrower),
            ("delta", delta),
            ("score", score),
        ),
    )
