"""
reputation.py - Registry State Model and Trust Scores

The registry unit's state is shared by two writers: the registry itself
(loan creation) and the agreements it created (trust-score deltas). Both go
through the frozen RegistryState loaded here, so every writer applies the
same gate: a delta is accepted only from an identity in the registry's
validity set.

Trust scores are signed integers keyed by borrower identity. Unseen
borrowers score 0.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from ..core import LedgerView, UnitStateChange, UnauthorizedReputationCaller
from ..events import LoanEvent, trust_score_updated_event


# ============================================================================
# FROZEN DATACLASS
# ============================================================================

@dataclass(frozen=True, slots=True)
class RegistryState:
    """
    Immutable snapshot of a registry.

    All collections are append-only over the registry's lifetime: loans are
    never removed, validity is never revoked, and trust scores only ever
    accumulate deltas.
    """
    loans: Tuple[str, ...]                            # every agreement, creation order
    valid: FrozenSet[str]                             # agreements this registry created
    loans_by_borrower: Mapping[str, Tuple[str, ...]]
    loans_by_lender: Mapping[str, Tuple[str, ...]]
    trust_scores: Mapping[str, int]
    next_loan_id: int = 1


def empty_registry_state() -> RegistryState:
    return RegistryState(
        loans=(),
        valid=frozenset(),
        loans_by_borrower={},
        loans_by_lender={},
        trust_scores={},
        next_loan_id=1,
    )


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_registry(view: LedgerView, symbol: str) -> RegistryState:
    """
    Load a registry unit's state as a frozen RegistryState.

    Args:
        view: Read-only ledger access
        symbol: Registry unit symbol

    Returns:
        RegistryState built from the unit's stored state
    """
    raw = view.get_unit_state(symbol)
    return RegistryState(
        loans=tuple(raw.get('loans', ())),
        valid=frozenset(raw.get('valid', ())),
        loans_by_borrower={k: tuple(v) for k, v in raw.get('loans_by_borrower', {}).items()},
        loans_by_lender={k: tuple(v) for k, v in raw.get('loans_by_lender', {}).items()},
        trust_scores=dict(raw.get('trust_scores', {})),
        next_loan_id=raw.get('next_loan_id', 1),
    )


def to_state_dict(state: RegistryState) -> Dict[str, Any]:
    """Inverse of load_registry(): plain lists and dicts for ledger storage."""
    return {
        'loans': list(state.loans),
        'valid': sorted(state.valid),
        'loans_by_borrower': {k: list(v) for k, v in state.loans_by_borrower.items()},
        'loans_by_lender': {k: list(v) for k, v in state.loans_by_lender.items()},
        'trust_scores': dict(state.trust_scores),
        'next_loan_id': state.next_loan_id,
    }


# ============================================================================
# PURE FUNCTIONS
# ============================================================================

def register_loan(state: RegistryState, loan_id: str, lender: str, borrower: str) -> RegistryState:
    """Append a new agreement to every index and mark it valid."""
    by_borrower = dict(state.loans_by_borrower)
    by_borrower[borrower] = by_borrower.get(borrower, ()) + (loan_id,)
    by_lender = dict(state.loans_by_lender)
    by_lender[lender] = by_lender.get(lender, ()) + (loan_id,)
    return replace(
        state,
        loans=state.loans + (loan_id,),
        valid=state.valid | {loan_id},
        loans_by_borrower=by_borrower,
        loans_by_lender=by_lender,
        next_loan_id=state.next_loan_id + 1,
    )


def apply_trust_delta(
    state: RegistryState,
    caller: str,
    borrower: str,
    delta: int,
) -> RegistryState:
    """
    Add a signed delta to a borrower's trust score.

    Args:
        state: Current registry state
        caller: Identity posting the delta; must be an agreement this
                registry created
        borrower: Whose score changes
        delta: Signed adjustment

    Returns:
        New RegistryState with the updated score

    Raises:
        UnauthorizedReputationCaller: If caller is not in the validity set
    """
    if caller not in state.valid:
        raise UnauthorizedReputationCaller(
            f"{caller} is not an agreement created by this registry", loan=caller
        )
    scores = dict(state.trust_scores)
    scores[borrower] = scores.get(borrower, 0) + delta
    return replace(state, trust_scores=scores)


def stage_trust_deltas(
    view: LedgerView,
    registry_symbol: str,
    caller: str,
    deltas: Sequence[Tuple[str, int]],
) -> Tuple[Optional[UnitStateChange], List[LoanEvent]]:
    """
    Stage a batch of trust deltas as one registry state change.

    All deltas from one operation fold into a single UnitStateChange so they
    commit (or roll back) with the rest of the operation.

    Args:
        view: Read-only ledger access
        registry_symbol: Registry that owns the scores
        caller: Agreement posting the deltas
        deltas: (borrower, delta) pairs, applied in order

    Returns:
        (state change or None if there are no deltas, TRUST_SCORE_UPDATED events)
    """
    if not deltas:
        return None, []
    old_raw = view.get_unit_state(registry_symbol)
    state = load_registry(view, registry_symbol)
    events = []
    for borrower, delta in deltas:
        state = apply_trust_delta(state, caller, borrower, delta)
        events.append(trust_score_updated_event(
            registry_symbol, view.current_time, borrower, delta,
            state.trust_scores[borrower], caller=caller,
        ))
    change = UnitStateChange(unit=registry_symbol, old_state=old_raw, new_state=to_state_dict(state))
    return change, events
