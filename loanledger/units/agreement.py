"""
agreement.py - Installment Loan Agreements

This module provides the per-loan settlement state machine using a pure
function architecture with explicit inputs.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES (explicit inputs):
   - LoanTerms: Immutable term sheet (set at creation, never changes)
   - LoanState: Immutable state snapshot (changes over the loan's lifetime)
   - LatePenalty: One staged late-fee charge

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - Take all inputs explicitly as parameters
   - No LedgerView, no hidden state
   - Example: calculate_total_owed(terms, state) -> int

3. ADAPTER FUNCTIONS (load_agreement / to_state_dict):
   - Extract state from LedgerView once
   - Convert to typed frozen dataclasses

4. CONVENIENCE FUNCTIONS (compute_*):
   - Combine loading + pure calculation + result building
   - Return a PendingTransaction; nothing happens until the ledger executes it

Key Formulas (integer arithmetic, truncating at each step):
    total_with_interest = principal + principal * interest_percent // 100
    total_owed          = total_with_interest + accumulated_late_fees
    installment_amount  = total_with_interest // total_installments
    expected_by(i)      = total_with_interest * i // total_installments
    late_fee            = installment_amount * late_fee_percent // 100
    status              = Defaulted if marked_default
                          else Repaid if repaid_amount >= total_owed
                          else Active

Atomicity:
    A repayment stages the late-penalty check, the pull transfer, the
    repayment bookkeeping and every trust-score delta into ONE
    PendingTransaction. If the ledger rejects it (short balance or
    allowance), none of it happens, including the penalties.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Dict, FrozenSet, List, Sequence, Tuple

from ..core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType, LoanStatus,
    UNIT_TYPE_LOAN_AGREEMENT, MAX_PERCENT,
    Unauthorized, InvalidState, NotYetOverdue, NothingDue,
    build_transaction, empty_pending_transaction, non_transferable_rule,
    _freeze_state,
)
from ..events import (
    LoanEvent,
    payment_applied_event, fully_repaid_event, default_marked_event,
    late_penalty_applied_event, late_fee_accumulated_event,
)
from .reputation import stage_trust_deltas


# Trust-score deltas posted by an agreement.
LATE_PENALTY_TRUST_DELTA = -1
DEFAULT_TRUST_DELTA = -2
CLEAN_PAYOFF_TRUST_DELTA = 1


# ============================================================================
# FROZEN DATACLASSES - Explicit Inputs for Pure Functions
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanTerms:
    """
    Immutable term sheet of an agreement - set at creation, never changes.

    installment_interval is duration // total_installments; the remainder
    of the duration is not covered by any period.
    """
    lender: str
    borrower: str
    asset: str                  # token the loan is denominated and repaid in
    registry: str               # registry that created the agreement
    principal: int
    interest_percent: int       # 0-100
    late_fee_percent: int       # 0-100
    total_installments: int
    duration: int               # seconds
    installment_interval: int   # seconds, truncated
    start_timestamp: int


@dataclass(frozen=True, slots=True)
class LoanState:
    """
    Immutable snapshot of the mutable part of an agreement.

    repaid_amount and accumulated_late_fees never decrease, marked_default
    is a one-way latch, and penalized_installments only grows.
    """
    repaid_amount: int = 0
    accumulated_late_fees: int = 0
    marked_default: bool = False
    penalized_installments: FrozenSet[int] = frozenset()


@dataclass(frozen=True, slots=True)
class LatePenalty:
    """A late fee for one installment period found in shortfall."""
    installment: int    # 1-based period index
    expected: int       # cumulative amount that should have been repaid by then
    fee: int


# ============================================================================
# ADAPTER FUNCTIONS - Bridge Between LedgerView and Pure Functions
# ============================================================================

def load_agreement(view: LedgerView, symbol: str) -> Tuple[LoanTerms, LoanState]:
    """
    Load an agreement from ledger state as typed frozen dataclasses.

    This is the ONLY function that reads agreement state from LedgerView.
    All calculate_* functions take the returned dataclasses explicitly.

    Args:
        view: Read-only ledger access
        symbol: Agreement unit symbol

    Returns:
        Tuple of (LoanTerms, LoanState)

    Example:
        terms, state = load_agreement(view, "REGISTRY:LOAN-000001")
        owed = calculate_total_owed(terms, state)
    """
    raw = view.get_unit_state(symbol)

    terms = LoanTerms(
        lender=raw['lender'],
        borrower=raw['borrower'],
        asset=raw['asset'],
        registry=raw['registry'],
        principal=raw['principal'],
        interest_percent=raw['interest_percent'],
        late_fee_percent=raw['late_fee_percent'],
        total_installments=raw['total_installments'],
        duration=raw['duration'],
        installment_interval=raw['installment_interval'],
        start_timestamp=raw['start_timestamp'],
    )

    state = LoanState(
        repaid_amount=raw.get('repaid_amount', 0),
        accumulated_late_fees=raw.get('accumulated_late_fees', 0),
        marked_default=raw.get('marked_default', False),
        penalized_installments=frozenset(raw.get('penalized_installments', ())),
    )

    return terms, state


def to_state_dict(terms: LoanTerms, state: LoanState) -> Dict[str, Any]:
    """
    Convert typed dataclasses back to a state dict for ledger storage.

    Inverse of load_agreement(). penalized_installments is stored as a
    sorted list.
    """
    return {
        'lender': terms.lender,
        'borrower': terms.borrower,
        'asset': terms.asset,
        'registry': terms.registry,
        'principal': terms.principal,
        'interest_percent': terms.interest_percent,
        'late_fee_percent': terms.late_fee_percent,
        'total_installments': terms.total_installments,
        'duration': terms.duration,
        'installment_interval': terms.installment_interval,
        'start_timestamp': terms.start_timestamp,
        'repaid_amount': state.repaid_amount,
        'accumulated_late_fees': state.accumulated_late_fees,
        'marked_default': state.marked_default,
        'penalized_installments': sorted(state.penalized_installments),
    }


# ============================================================================
# PURE CALCULATION FUNCTIONS - No LedgerView, All Inputs Explicit
# ============================================================================

def calculate_total_with_interest(terms: LoanTerms) -> int:
    """Principal plus flat interest, truncated."""
    return terms.principal + terms.principal * terms.interest_percent // 100


def calculate_total_owed(terms: LoanTerms, state: LoanState) -> int:
    """
    Total the borrower owes over the life of the loan.

    Non-decreasing: late fees are only ever added.
    """
    return calculate_total_with_interest(terms) + state.accumulated_late_fees


def calculate_remaining(terms: LoanTerms, state: LoanState) -> int:
    """Outstanding balance (never negative)."""
    return max(calculate_total_owed(terms, state) - state.repaid_amount, 0)


def calculate_installment_amount(terms: LoanTerms) -> int:
    return calculate_total_with_interest(terms) // terms.total_installments


def calculate_expected_by_period(terms: LoanTerms, installment: int) -> int:
    """Cumulative amount that should be repaid by the end of period `installment`."""
    return calculate_total_with_interest(terms) * installment // terms.total_installments


def calculate_elapsed_periods(terms: LoanTerms, now: int) -> int:
    """
    Number of fully elapsed installment periods at `now`.

    0 before the loan starts; capped at total_installments.
    """
    if now <= terms.start_timestamp:
        return 0
    elapsed = (now - terms.start_timestamp) // terms.installment_interval
    return min(elapsed, terms.total_installments)


def calculate_status(terms: LoanTerms, state: LoanState) -> LoanStatus:
    """Derived status; a pure function of repaid, late fees and the default latch."""
    if state.marked_default:
        return LoanStatus.DEFAULTED
    if state.repaid_amount >= calculate_total_owed(terms, state):
        return LoanStatus.REPAID
    return LoanStatus.ACTIVE


def calculate_late_penalties(
    terms: LoanTerms,
    state: LoanState,
    now: int,
) -> List[LatePenalty]:
    """
    Late fees that a penalty check at `now` would lock in.

    A period i qualifies when it has elapsed, has not been penalized before,
    and repaid_amount < expected_by(i). Defaulted loans accrue nothing.

    Args:
        terms: Immutable loan terms
        state: Current loan state
        now: Current time (epoch seconds)

    Returns:
        Penalties in period order (empty if nothing is late)

    Example:
        >>> # 100 principal, 10% interest, 5% late fee, 5 periods of 18s
        >>> [p.fee for p in calculate_late_penalties(terms, LoanState(), now=18)]
        [1]
    """
    if state.marked_default:
        return []
    fee = calculate_installment_amount(terms) * terms.late_fee_percent // 100
    penalties = []
    for i in range(1, calculate_elapsed_periods(terms, now) + 1):
        if i in state.penalized_installments:
            continue
        expected = calculate_expected_by_period(terms, i)
        if state.repaid_amount < expected:
            penalties.append(LatePenalty(installment=i, expected=expected, fee=fee))
    return penalties


def apply_late_penalties(state: LoanState, penalties: Sequence[LatePenalty]) -> LoanState:
    """Return a new LoanState with the penalties' fees added and their periods marked."""
    if not penalties:
        return state
    return replace(
        state,
        accumulated_late_fees=state.accumulated_late_fees + sum(p.fee for p in penalties),
        penalized_installments=state.penalized_installments | {p.installment for p in penalties},
    )


def calculate_missed_installments(terms: LoanTerms, state: LoanState, now: int) -> int:
    """Elapsed periods whose cumulative expectation is not met, penalized or not."""
    return sum(
        1 for i in range(1, calculate_elapsed_periods(terms, now) + 1)
        if state.repaid_amount < calculate_expected_by_period(terms, i)
    )


def calculate_payment_schedule(terms: LoanTerms) -> List[Tuple[int, int, int]]:
    """
    Installment schedule as (index, due_timestamp, cumulative_expected).

    The last due timestamp is start + total_installments * interval, which
    can fall before start + duration because of interval truncation.
    """
    return [
        (
            i,
            terms.start_timestamp + i * terms.installment_interval,
            calculate_expected_by_period(terms, i),
        )
        for i in range(1, terms.total_installments + 1)
    ]


def calculate_next_due_timestamp(terms: LoanTerms, state: LoanState) -> int:
    """
    Deadline of the first period whose cumulative expectation is unmet.

    When every period is covered but late fees are still outstanding, the
    final period's deadline is returned. 0 when nothing more is due (repaid
    or defaulted).
    """
    if calculate_status(terms, state) != LoanStatus.ACTIVE:
        return 0
    for _, due, expected in calculate_payment_schedule(terms):
        if state.repaid_amount < expected:
            return due
    return calculate_final_deadline(terms)


def calculate_due_timestamp(terms: LoanTerms) -> int:
    """Legacy whole-loan due date (start + duration); not installment-aware."""
    return terms.start_timestamp + terms.duration


def calculate_final_deadline(terms: LoanTerms) -> int:
    """End of the last installment period; mark_default needs now to be past it."""
    return terms.start_timestamp + terms.total_installments * terms.installment_interval


# ============================================================================
# UNIT CREATION
# ============================================================================

def create_agreement_unit(
    symbol: str,
    lender: str,
    borrower: str,
    asset: str,
    registry: str,
    principal: int,
    duration: int,
    interest_percent: int,
    late_fee_percent: int,
    installments: int,
    start_timestamp: int,
) -> Unit:
    """
    Create an agreement unit for an installment loan.

    The agreement is a record unit: it holds terms and repayment state, never
    funds. Repayments are pulled from the borrower straight to the lender
    using the allowance the borrower granted to the agreement's symbol.

    Args:
        symbol: Agreement identifier (e.g., "REGISTRY:LOAN-000001")
        lender: Wallet that is owed
        borrower: Wallet that owes and repays
        asset: Token the loan is repaid in
        registry: Registry unit that created the agreement
        principal: Amount lent, in the asset's smallest unit (must be positive)
        duration: Nominal loan duration in seconds
        interest_percent: Flat interest, 0-100
        late_fee_percent: Late fee as a percent of one installment, 0-100
        installments: Number of installment periods (must be positive)
        start_timestamp: When the first period starts

    Returns:
        Unit of type LOAN_AGREEMENT with state:
        - the term sheet fields (see LoanTerms)
        - repaid_amount, accumulated_late_fees: 0
        - marked_default: False
        - penalized_installments: []

    Raises:
        ValueError: If installments <= 0, principal <= 0, duration is shorter
                    than the number of installments (zero-length periods),
                    a percentage is outside 0-100, or the parties are empty
                    or identical.
    """
    if not symbol or not symbol.strip():
        raise ValueError("symbol cannot be empty")
    if installments <= 0:
        raise ValueError(f"installments must be positive, got {installments}")
    if principal <= 0:
        raise ValueError(f"principal must be positive, got {principal}")
    if duration < installments:
        raise ValueError(
            f"duration ({duration}s) must be at least the number of installments ({installments})"
        )
    if not 0 <= interest_percent <= MAX_PERCENT:
        raise ValueError(f"interest_percent must be in [0, {MAX_PERCENT}], got {interest_percent}")
    if not 0 <= late_fee_percent <= MAX_PERCENT:
        raise ValueError(f"late_fee_percent must be in [0, {MAX_PERCENT}], got {late_fee_percent}")
    if not lender or not lender.strip():
        raise ValueError("lender cannot be empty")
    if not borrower or not borrower.strip():
        raise ValueError("borrower cannot be empty")
    if lender == borrower:
        raise ValueError("lender and borrower must be different")
    if start_timestamp < 0:
        raise ValueError(f"start_timestamp cannot be negative, got {start_timestamp}")

    terms = LoanTerms(
        lender=lender,
        borrower=borrower,
        asset=asset,
        registry=registry,
        principal=principal,
        interest_percent=interest_percent,
        late_fee_percent=late_fee_percent,
        total_installments=installments,
        duration=duration,
        installment_interval=duration // installments,
        start_timestamp=start_timestamp,
    )

    return Unit(
        symbol=symbol,
        name=f"Loan {symbol}: {principal} {asset} {lender}->{borrower}",
        unit_type=UNIT_TYPE_LOAN_AGREEMENT,
        min_balance=0,
        max_balance=0,
        transfer_rule=non_transferable_rule,
        _frozen_state=_freeze_state(to_state_dict(terms, LoanState())),
    )


# ============================================================================
# TRANSACTION ASSEMBLY
# ============================================================================

def _penalty_events(
    symbol: str,
    timestamp: int,
    state: LoanState,
    penalties: Sequence[LatePenalty],
) -> List[LoanEvent]:
    """LATE_FEE_ACCUMULATED + LATE_PENALTY_APPLIED per penalty, with running fee totals."""
    events = []
    running = state.accumulated_late_fees
    for p in penalties:
        running += p.fee
        events.append(late_fee_accumulated_event(symbol, timestamp, p.installment, p.fee, running))
        events.append(late_penalty_applied_event(symbol, timestamp, p.installment, LATE_PENALTY_TRUST_DELTA))
    return events


def _build_agreement_transaction(
    view: LedgerView,
    symbol: str,
    terms: LoanTerms,
    new_state: LoanState,
    moves: List[Move],
    events: List[LoanEvent],
    trust_deltas: List[int],
    origin: TransactionOrigin,
) -> PendingTransaction:
    """
    Assemble the agreement's state change, the registry's trust-score change
    and all notifications into one PendingTransaction.

    Raises:
        UnauthorizedReputationCaller: If the registry did not create this agreement
    """
    old_raw = view.get_unit_state(symbol)
    changes = [UnitStateChange(unit=symbol, old_state=old_raw, new_state=to_state_dict(terms, new_state))]

    registry_change, trust_events = stage_trust_deltas(
        view, terms.registry, symbol, [(terms.borrower, d) for d in trust_deltas]
    )
    if registry_change is not None:
        changes.append(registry_change)

    return build_transaction(
        view, moves, changes, origin=origin, events=list(events) + trust_events
    )


# ============================================================================
# LATE PENALTIES
# ============================================================================

def get_unpenalized_late_payments(view: LedgerView, symbol: str) -> List[LatePenalty]:
    """
    Preview the penalties a check at the view's current time would charge.

    Read-only: nothing is staged or posted.
    """
    terms, state = load_agreement(view, symbol)
    return calculate_late_penalties(terms, state, view.current_time)


def compute_late_penalties(view: LedgerView, symbol: str) -> PendingTransaction:
    """
    Lock in late fees for every elapsed period in shortfall.

    Idempotent and callable by anyone: each period is charged at most once,
    so running it again returns an empty transaction. Each penalty adds its
    fee to accumulated_late_fees, marks the period, and posts a -1 trust
    delta for the borrower through the registry.

    Args:
        view: Read-only ledger access
        symbol: Agreement symbol

    Returns:
        PendingTransaction with the agreement and registry state changes,
        or an empty transaction if nothing is late.
    """
    terms, state = load_agreement(view, symbol)
    penalties = calculate_late_penalties(terms, state, view.current_time)
    if not penalties:
        return empty_pending_transaction(view)

    return _build_agreement_transaction(
        view, symbol, terms,
        new_state=apply_late_penalties(state, penalties),
        moves=[],
        events=_penalty_events(symbol, view.current_time, state, penalties),
        trust_deltas=[LATE_PENALTY_TRUST_DELTA] * len(penalties),
        origin=TransactionOrigin(OriginType.CONTRACT, symbol, symbol, "CHECK_LATE_PAYMENTS"),
    )


# ============================================================================
# REPAYMENT
# ============================================================================

def compute_repayment(
    view: LedgerView,
    symbol: str,
    caller: str,
    amount: int,
) -> PendingTransaction:
    """
    Repay (part of) an agreement.

    Steps, all staged into one transaction:
    1. Only the borrower may repay.
    2. Due late penalties are locked in first, which can raise total_owed.
    3. The payment is capped at the remaining balance; excess is never taken.
    4. The capped amount is pulled from borrower to lender on the
       agreement's allowance.
    5. repaid_amount grows by the capped amount.
    6. On full repayment with no period ever penalized, the borrower's
       trust score gets +1.

    Args:
        view: Read-only ledger access
        symbol: Agreement symbol
        caller: Identity submitting the payment
        amount: Offered amount in the asset's smallest unit

    Returns:
        PendingTransaction with the pull move, state changes and events.
        The ledger rejects it if the borrower's balance or allowance is short.

    Raises:
        Unauthorized: If caller is not the borrower
        InvalidState: If the loan has been marked defaulted
        NothingDue: If the capped payment is not positive

    Example:
        pending = compute_repayment(ledger, loan_id, "bob", 22)
        ledger.execute(pending)
    """
    terms, state = load_agreement(view, symbol)
    now = view.current_time

    if caller != terms.borrower:
        raise Unauthorized(f"only the borrower may repay {symbol}, not {caller}", loan=symbol)
    if state.marked_default:
        raise InvalidState(f"{symbol} is defaulted and no longer accepts repayments", loan=symbol)

    penalties = calculate_late_penalties(terms, state, now)
    penalized = apply_late_penalties(state, penalties)

    payment = min(amount, calculate_remaining(terms, penalized))
    if payment <= 0:
        raise NothingDue(f"nothing to repay on {symbol} (offered {amount})", loan=symbol)

    new_state = replace(penalized, repaid_amount=penalized.repaid_amount + payment)

    moves = [
        Move(
            quantity=payment,
            unit_symbol=terms.asset,
            source=terms.borrower,
            dest=terms.lender,
            contract_id=symbol,
            spender=symbol,
        )
    ]

    events = _penalty_events(symbol, now, state, penalties)
    events.append(payment_applied_event(symbol, now, caller, payment, new_state.repaid_amount))

    trust_deltas = [LATE_PENALTY_TRUST_DELTA] * len(penalties)
    if calculate_status(terms, new_state) == LoanStatus.REPAID:
        events.append(fully_repaid_event(symbol, now, new_state.repaid_amount))
        if not new_state.penalized_installments:
            trust_deltas.append(CLEAN_PAYOFF_TRUST_DELTA)

    return _build_agreement_transaction(
        view, symbol, terms, new_state, moves, events, trust_deltas,
        origin=TransactionOrigin(OriginType.USER_ACTION, caller, symbol, "REPAY"),
    )


# ============================================================================
# DEFAULT
# ============================================================================

def compute_default(view: LedgerView, symbol: str, caller: str) -> PendingTransaction:
    """
    Mark an agreement defaulted.

    Only the lender may call, only while the loan is Active, and only once
    the final installment period has fully elapsed. Outstanding penalties
    are locked in first, then the latch is set and the borrower's trust
    score takes -2.

    Raises:
        Unauthorized: If caller is not the lender
        InvalidState: If the loan is not Active
        NotYetOverdue: If now <= start + total_installments * interval
    """
    terms, state = load_agreement(view, symbol)
    now = view.current_time

    if caller != terms.lender:
        raise Unauthorized(f"only the lender may mark {symbol} defaulted, not {caller}", loan=symbol)
    status = calculate_status(terms, state)
    if status != LoanStatus.ACTIVE:
        raise InvalidState(f"{symbol} is {status.value}, not Active", loan=symbol)
    deadline = calculate_final_deadline(terms)
    if now <= deadline:
        raise NotYetOverdue(
            f"{symbol} cannot be defaulted until after {deadline} (now {now})", loan=symbol
        )

    penalties = calculate_late_penalties(terms, state, now)
    new_state = replace(apply_late_penalties(state, penalties), marked_default=True)

    events = _penalty_events(symbol, now, state, penalties)
    events.append(default_marked_event(symbol, now, calculate_remaining(terms, new_state)))

    return _build_agreement_transaction(
        view, symbol, terms, new_state,
        moves=[],
        events=events,
        trust_deltas=[LATE_PENALTY_TRUST_DELTA] * len(penalties) + [DEFAULT_TRUST_DELTA],
        origin=TransactionOrigin(OriginType.USER_ACTION, caller, symbol, "MARK_DEFAULT"),
    )


# ============================================================================
# TRANSACTION INTERFACE
# ============================================================================

def transact(
    view: LedgerView,
    symbol: str,
    event_type: str,
    **kwargs
) -> PendingTransaction:
    """
    Route an agreement operation by name.

    Args:
        view: Read-only ledger access
        symbol: Agreement symbol
        event_type: Type of event:
            - REPAY: requires 'caller' and 'amount'
            - MARK_DEFAULT: requires 'caller'
            - CHECK_LATE_PAYMENTS: no parameters
        **kwargs: Event-specific parameters

    Raises:
        ValueError: If event_type is unknown or a required parameter is missing
    """
    if event_type == 'REPAY':
        caller = kwargs.get('caller')
        amount = kwargs.get('amount')
        if caller is None:
            raise ValueError(f"Missing 'caller' parameter for REPAY event on {symbol}")
        if amount is None:
            raise ValueError(f"Missing 'amount' parameter for REPAY event on {symbol}")
        return compute_repayment(view, symbol, caller, amount)

    elif event_type == 'MARK_DEFAULT':
        caller = kwargs.get('caller')
        if caller is None:
            raise ValueError(f"Missing 'caller' parameter for MARK_DEFAULT event on {symbol}")
        return compute_default(view, symbol, caller)

    elif event_type == 'CHECK_LATE_PAYMENTS':
        return compute_late_penalties(view, symbol)

    else:
        raise ValueError(f"Unknown event type '{event_type}' for agreement {symbol}")


# ============================================================================
# SMART CONTRACT
# ============================================================================

def agreement_contract(
    view: LedgerView,
    symbol: str,
    timestamp: int,
) -> PendingTransaction:
    """
    SmartContract function for automatic agreement servicing.

    Locks in due late penalties without waiting for the borrower's next
    payment. Terminal agreements are skipped.
    """
    terms, state = load_agreement(view, symbol)
    if calculate_status(terms, state) != LoanStatus.ACTIVE:
        return empty_pending_transaction(view)
    return compute_late_penalties(view, symbol)
