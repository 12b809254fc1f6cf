"""
registry.py - Loan Registry Units

A registry creates agreements, indexes them by participant and owns the
borrowers' trust scores. It is the sole authority over those scores: a
delta is only accepted from an agreement present in its validity set.

Agreement identifiers are "{registry}:LOAN-{n:06d}", numbered from 1 in
creation order.

Functions:
    create_registry_unit(): Registry unit factory
    compute_loan_creation(): Create an agreement (caller becomes the lender)
    compute_trust_score_update(): Gated trust-score entry point
    get_* / is_valid_agreement / filter_by_status: Read-only queries
"""

from __future__ import annotations
from typing import List, Optional, Sequence, Union

from ..core import (
    LedgerView, PendingTransaction, Unit, UnitStateChange,
    TransactionOrigin, OriginType, LoanStatus,
    UNIT_TYPE_LOAN_AGREEMENT, UNIT_TYPE_LOAN_REGISTRY, UNIT_TYPE_TOKEN,
    WalletNotRegistered,
    build_transaction, non_transferable_rule,
    _freeze_state,
)
from ..events import loan_created_event
from .agreement import create_agreement_unit, load_agreement, calculate_status
from .reputation import (
    empty_registry_state, load_registry, to_state_dict,
    register_loan, stage_trust_deltas,
)


def loan_symbol(registry_symbol: str, number: int) -> str:
    return f"{registry_symbol}:LOAN-{number:06d}"


# ============================================================================
# UNIT CREATION
# ============================================================================

def create_registry_unit(symbol: str, name: Optional[str] = None) -> Unit:
    """
    Create an empty registry unit.

    Args:
        symbol: Registry identifier (prefix of every agreement it creates)
        name: Human-readable name (defaults to "Loan Registry {symbol}")

    Raises:
        ValueError: If symbol is empty
    """
    if not symbol or not symbol.strip():
        raise ValueError("registry symbol cannot be empty")
    return Unit(
        symbol=symbol,
        name=name or f"Loan Registry {symbol}",
        unit_type=UNIT_TYPE_LOAN_REGISTRY,
        min_balance=0,
        max_balance=0,
        transfer_rule=non_transferable_rule,
        _frozen_state=_freeze_state(to_state_dict(empty_registry_state())),
    )


# ============================================================================
# LOAN CREATION
# ============================================================================

def compute_loan_creation(
    view: LedgerView,
    registry_symbol: str,
    caller: str,
    borrower: str,
    amount: int,
    asset: str,
    duration: int,
    interest_percent: int,
    late_fee_percent: int,
    installments: int,
) -> PendingTransaction:
    """
    Create a new agreement with the caller as lender.

    The agreement unit, the registry index updates and the LOAN_CREATED
    notification are one transaction. The loan starts at the view's current
    time. No funds move: disbursement happens outside the agreement.

    Args:
        view: Read-only ledger access
        registry_symbol: Registry creating the loan
        caller: Lender
        borrower: Borrower
        amount: Principal in the asset's smallest unit
        asset: Registered token symbol
        duration: Nominal duration in seconds
        interest_percent: Flat interest, 0-100
        late_fee_percent: Late fee percent of one installment, 0-100
        installments: Number of installment periods

    Returns:
        PendingTransaction creating the agreement. The new agreement id is
        the symbol of its single units_to_create entry.

    Raises:
        ValueError: On invalid loan terms or a non-token asset
        WalletNotRegistered: If lender or borrower has no wallet
        UnitNotRegistered: If the registry or asset is unknown
    """
    wallets = view.list_wallets()
    for party in (caller, borrower):
        if party not in wallets:
            raise WalletNotRegistered(f"Wallet {party} not registered")
    if view.get_unit(asset).unit_type != UNIT_TYPE_TOKEN:
        raise ValueError(f"{asset} is not a token")

    old_raw = view.get_unit_state(registry_symbol)
    state = load_registry(view, registry_symbol)
    loan_id = loan_symbol(registry_symbol, state.next_loan_id)
    now = view.current_time

    unit = create_agreement_unit(
        symbol=loan_id,
        lender=caller,
        borrower=borrower,
        asset=asset,
        registry=registry_symbol,
        principal=amount,
        duration=duration,
        interest_percent=interest_percent,
        late_fee_percent=late_fee_percent,
        installments=installments,
        start_timestamp=now,
    )
    new_state = register_loan(state, loan_id, caller, borrower)

    return build_transaction(
        view,
        moves=[],
        state_changes=[UnitStateChange(registry_symbol, old_raw, to_state_dict(new_state))],
        origin=TransactionOrigin(OriginType.USER_ACTION, caller, registry_symbol, "CREATE_LOAN"),
        units_to_create=(unit,),
        events=[loan_created_event(loan_id, now, caller, borrower, amount, asset)],
    )


# ============================================================================
# TRUST SCORES
# ============================================================================

def compute_trust_score_update(
    view: LedgerView,
    registry_symbol: str,
    caller: str,
    borrower: str,
    delta: int,
) -> PendingTransaction:
    """
    Post a trust-score delta on behalf of an agreement.

    Raises:
        UnauthorizedReputationCaller: If caller is not an agreement this
                                      registry created
    """
    change, events = stage_trust_deltas(view, registry_symbol, caller, [(borrower, delta)])
    return build_transaction(
        view,
        moves=[],
        state_changes=[change],
        origin=TransactionOrigin(OriginType.CONTRACT, caller, registry_symbol, "UPDATE_TRUST_SCORE"),
        events=events,
    )


def get_trust_score(view: LedgerView, registry_symbol: str, identity: str) -> int:
    """Signed trust score; 0 for identities never scored."""
    return load_registry(view, registry_symbol).trust_scores.get(identity, 0)


# ============================================================================
# QUERIES
# ============================================================================

def is_valid_agreement(view: LedgerView, registry_symbol: str, loan_id: str) -> bool:
    return loan_id in load_registry(view, registry_symbol).valid


def get_loans(view: LedgerView, registry_symbol: str) -> List[str]:
    return list(load_registry(view, registry_symbol).loans)


def get_loans_by_borrower(view: LedgerView, registry_symbol: str, borrower: str) -> List[str]:
    return list(load_registry(view, registry_symbol).loans_by_borrower.get(borrower, ()))


def get_loans_by_lender(view: LedgerView, registry_symbol: str, lender: str) -> List[str]:
    return list(load_registry(view, registry_symbol).loans_by_lender.get(lender, ()))


def filter_by_status(
    view: LedgerView,
    loan_ids: Sequence[str],
    status: Union[LoanStatus, str],
) -> List[str]:
    """
    The subset of loan_ids whose current status matches, in input order.

    status may be a LoanStatus or its string value ("Active", "Repaid",
    "Defaulted").

    Raises:
        ValueError: If status is not a known status value, or an id names
                    a unit that is not a loan agreement
        UnitNotRegistered: If an id is not a registered unit
    """
    target = LoanStatus(status)
    result = []
    for loan_id in loan_ids:
        if view.get_unit(loan_id).unit_type != UNIT_TYPE_LOAN_AGREEMENT:
            raise ValueError(f"{loan_id} is not a loan agreement")
        terms, state = load_agreement(view, loan_id)
        if calculate_status(terms, state) == target:
            result.append(loan_id)
    return result

