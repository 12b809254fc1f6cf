"""
service.py - Registry and Agreement Handles

LoanRegistry and LoanAgreement are thin handles over a Ledger. Each
operation calls the pure compute_* function for it, executes the resulting
PendingTransaction, and turns a rejection into a typed error. They hold no
state of their own: everything lives in the ledger's units.

Usage:
    ledger = Ledger("main", verbose=False)
    ledger.register_unit(token("USDT", "Tether USD"))
    for wallet in ("alice", "bob"):
        ledger.register_wallet(wallet)

    registry = LoanRegistry(ledger)
    loan_id = registry.create_loan("alice", "bob", 100, "USDT",
                                   duration=90, interest_percent=10,
                                   late_fee_percent=5, installments=5)
    loan = registry.agreement(loan_id)
    ledger.approve("bob", loan_id, "USDT", loan.get_total_owed())
    loan.repay("bob", 22)
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union
import logging

from .core import (
    PendingTransaction, ExecuteResult, LoanStatus,
    TransferRejected, UnitNotRegistered, UnauthorizedReputationCaller,
)
from .ledger import Ledger
from .units import agreement as agreement_unit
from .units import registry as registry_unit
from .units.agreement import LatePenalty, LoanTerms, LoanState

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_SYMBOL = "REGISTRY"


def _execute(ledger: Ledger, pending: PendingTransaction, loan: Optional[str] = None) -> ExecuteResult:
    """
    Execute a pending transaction, raising on rejection.

    ALREADY_APPLIED counts as success so a retried submission is harmless.

    Raises:
        TransferRejected: If the ledger rejected the transaction
    """
    result = ledger.execute(pending)
    if result == ExecuteResult.REJECTED:
        reason = ledger.last_rejection or "rejected"
        raise TransferRejected(f"transaction rejected: {reason}", loan=loan, reason=reason)
    return result


@dataclass(frozen=True, slots=True)
class LoanSnapshot:
    """Point-in-time summary of an agreement for status reporting."""
    symbol: str
    status: LoanStatus
    lender: str
    borrower: str
    asset: str
    principal: int
    total_owed: int
    repaid_amount: int
    remaining: int
    accumulated_late_fees: int
    penalized_installments: Tuple[int, ...]
    missed_installments: int
    total_installments: int
    installment_interval: int
    start_timestamp: int
    next_due_timestamp: int
    as_of: int


class LoanRegistry:
    """
    Handle over a registry unit in a ledger.

    Registers the registry unit on first use. Several handles over the same
    ledger and symbol see the same registry.
    """

    def __init__(self, ledger: Ledger, symbol: str = DEFAULT_REGISTRY_SYMBOL):
        self.ledger = ledger
        self.symbol = symbol
        if symbol not in ledger.units:
            ledger.register_unit(registry_unit.create_registry_unit(symbol))

    def __repr__(self) -> str:
        return f"LoanRegistry({self.symbol}, loans={self.get_loan_count()})"

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_loan(
        self,
        caller: str,
        borrower: str,
        amount: int,
        asset: str,
        duration: int,
        interest_percent: int,
        late_fee_percent: int,
        installments: int,
    ) -> str:
        """
        Create an agreement with `caller` as lender; returns its id.

        Raises:
            ValueError: On invalid loan terms
            WalletNotRegistered: If either party has no wallet
            TransferRejected: If the ledger rejects the creation
        """
        pending = registry_unit.compute_loan_creation(
            self.ledger, self.symbol, caller, borrower, amount, asset,
            duration, interest_percent, late_fee_percent, installments,
        )
        loan_id = pending.units_to_create[0].symbol
        _execute(self.ledger, pending, loan_id)
        logger.info("created %s: %d %s %s -> %s", loan_id, amount, asset, caller, borrower)
        return loan_id

    def update_trust_score(self, agreement: LoanAgreement, borrower: str, delta: int) -> int:
        """
        Apply a trust-score delta posted by `agreement`; returns the new score.

        The caller is identified by the agreement handle it holds, never by
        a name it supplies: the handle must have been issued by this registry
        and its symbol must be in the registry's validity set.

        Raises:
            UnauthorizedReputationCaller: If agreement is not a handle over an
                                          agreement this registry created
        """
        if not isinstance(agreement, LoanAgreement) or agreement.registry is not self:
            caller = getattr(agreement, "symbol", agreement)
            raise UnauthorizedReputationCaller(
                f"{caller!r} is not an agreement handle of registry {self.symbol}",
                loan=caller if isinstance(caller, str) else None,
            )
        pending = registry_unit.compute_trust_score_update(
            self.ledger, self.symbol, agreement.symbol, borrower, delta
        )
        _execute(self.ledger, pending, agreement.symbol)
        return self.get_trust_score(borrower)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loan_count(self) -> int:
        return len(self.get_loans())

    def get_loans(self) -> List[str]:
        return registry_unit.get_loans(self.ledger, self.symbol)

    def get_loans_by_borrower(self, borrower: str) -> List[str]:
        return registry_unit.get_loans_by_borrower(self.ledger, self.symbol, borrower)

    def get_loans_by_lender(self, lender: str) -> List[str]:
        return registry_unit.get_loans_by_lender(self.ledger, self.symbol, lender)

    def get_borrower_loan_count(self, borrower: str) -> int:
        return len(self.get_loans_by_borrower(borrower))

    def get_lender_loan_count(self, lender: str) -> int:
        return len(self.get_loans_by_lender(lender))

    def filter_by_status(self, loan_ids: List[str], status: Union[LoanStatus, str]) -> List[str]:
        return registry_unit.filter_by_status(self.ledger, loan_ids, status)

    def get_user_loans_by_status(
        self,
        user: str,
        status: Union[LoanStatus, str],
        role: str = "borrower",
    ) -> List[str]:
        """
        A user's loans in one role, filtered by status.

        Raises:
            ValueError: If role is not "borrower" or "lender"
        """
        if role == "borrower":
            loans = self.get_loans_by_borrower(user)
        elif role == "lender":
            loans = self.get_loans_by_lender(user)
        else:
            raise ValueError(f"role must be 'borrower' or 'lender', got {role!r}")
        return self.filter_by_status(loans, status)

    def get_trust_score(self, identity: str) -> int:
        return registry_unit.get_trust_score(self.ledger, self.symbol, identity)

    def is_valid_agreement(self, loan_id: str) -> bool:
        return registry_unit.is_valid_agreement(self.ledger, self.symbol, loan_id)

    def agreement(self, loan_id: str) -> LoanAgreement:
        """
        Handle for an agreement this registry created.

        Raises:
            UnitNotRegistered: If the registry did not create loan_id
        """
        return LoanAgreement(self, loan_id)

    def agreements(self) -> List[LoanAgreement]:
        return [LoanAgreement(self, loan_id) for loan_id in self.get_loans()]


class LoanAgreement:
    """
    Handle over one agreement unit.

    Terms are read through properties; everything that changes is read
    fresh from the ledger on every call.
    """

    def __init__(self, registry: LoanRegistry, symbol: str):
        if not registry.is_valid_agreement(symbol):
            raise UnitNotRegistered(f"{symbol} is not an agreement of registry {registry.symbol}")
        self.registry = registry
        self.ledger = registry.ledger
        self.symbol = symbol

    def __repr__(self) -> str:
        return f"LoanAgreement({self.symbol}, {self.get_status().value})"

    def _load(self) -> Tuple[LoanTerms, LoanState]:
        return agreement_unit.load_agreement(self.ledger, self.symbol)

    @property
    def terms(self) -> LoanTerms:
        return self._load()[0]

    @property
    def state(self) -> LoanState:
        return self._load()[1]

    # ------------------------------------------------------------------
    # Term sheet
    # ------------------------------------------------------------------

    @property
    def lender(self) -> str:
        return self.terms.lender

    @property
    def borrower(self) -> str:
        return self.terms.borrower

    @property
    def asset(self) -> str:
        return self.terms.asset

    @property
    def principal(self) -> int:
        return self.terms.principal

    @property
    def interest_percent(self) -> int:
        return self.terms.interest_percent

    @property
    def late_fee_percent(self) -> int:
        return self.terms.late_fee_percent

    @property
    def total_installments(self) -> int:
        return self.terms.total_installments

    @property
    def installment_interval(self) -> int:
        return self.terms.installment_interval

    @property
    def start_timestamp(self) -> int:
        return self.terms.start_timestamp

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def get_repaid_amount(self) -> int:
        return self.state.repaid_amount

    def get_accumulated_late_fees(self) -> int:
        return self.state.accumulated_late_fees

    def get_penalized_installments(self) -> List[int]:
        return sorted(self.state.penalized_installments)

    def is_marked_default(self) -> bool:
        return self.state.marked_default

    def get_total_owed(self) -> int:
        terms, state = self._load()
        return agreement_unit.calculate_total_owed(terms, state)

    def get_remaining(self) -> int:
        terms, state = self._load()
        return agreement_unit.calculate_remaining(terms, state)

    def get_status(self) -> LoanStatus:
        terms, state = self._load()
        return agreement_unit.calculate_status(terms, state)

    def get_due_timestamp(self) -> int:
        """Legacy whole-loan due date (start + duration)."""
        return agreement_unit.calculate_due_timestamp(self.terms)

    def get_next_due_timestamp(self) -> int:
        terms, state = self._load()
        return agreement_unit.calculate_next_due_timestamp(terms, state)

    def count_missed_installments(self) -> int:
        terms, state = self._load()
        return agreement_unit.calculate_missed_installments(terms, state, self.ledger.current_time)

    def get_payment_schedule(self) -> List[Tuple[int, int, int]]:
        return agreement_unit.calculate_payment_schedule(self.terms)

    def get_unpenalized_late_payments(self) -> List[LatePenalty]:
        return agreement_unit.get_unpenalized_late_payments(self.ledger, self.symbol)

    def describe(self) -> LoanSnapshot:
        terms, state = self._load()
        now = self.ledger.current_time
        return LoanSnapshot(
            symbol=self.symbol,
            status=agreement_unit.calculate_status(terms, state),
            lender=terms.lender,
            borrower=terms.borrower,
            asset=terms.asset,
            principal=terms.principal,
            total_owed=agreement_unit.calculate_total_owed(terms, state),
            repaid_amount=state.repaid_amount,
            remaining=agreement_unit.calculate_remaining(terms, state),
            accumulated_late_fees=state.accumulated_late_fees,
            penalized_installments=tuple(sorted(state.penalized_installments)),
            missed_installments=agreement_unit.calculate_missed_installments(terms, state, now),
            total_installments=terms.total_installments,
            installment_interval=terms.installment_interval,
            start_timestamp=terms.start_timestamp,
            next_due_timestamp=agreement_unit.calculate_next_due_timestamp(terms, state),
            as_of=now,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def check_and_penalize_late_payments(self) -> List[LatePenalty]:
        """Lock in due late fees; returns the penalties charged by this call."""
        penalties = self.get_unpenalized_late_payments()
        if penalties:
            _execute(self.ledger, agreement_unit.compute_late_penalties(self.ledger, self.symbol), self.symbol)
            logger.info("%s: penalized installments %s", self.symbol, [p.installment for p in penalties])
        return penalties

    def repay(self, caller: str, amount: int) -> int:
        """
        Repay up to `amount`; returns what was actually taken.

        Raises:
            Unauthorized: If caller is not the borrower
            InvalidState: If the loan is defaulted
            NothingDue: If nothing remains to be paid or amount <= 0
            TransferRejected: If balance or allowance is short (nothing changes)
        """
        before = self.get_repaid_amount()
        pending = agreement_unit.compute_repayment(self.ledger, self.symbol, caller, amount)
        _execute(self.ledger, pending, self.symbol)
        paid = self.get_repaid_amount() - before
        logger.info("%s: %s repaid %d (status %s)", self.symbol, caller, paid, self.get_status().value)
        return paid

    def mark_default(self, caller: str) -> None:
        """
        Raises:
            Unauthorized: If caller is not the lender
            InvalidState: If the loan is not Active
            NotYetOverdue: If the final period has not fully elapsed
        """
        pending = agreement_unit.compute_default(self.ledger, self.symbol, caller)
        _execute(self.ledger, pending, self.symbol)
        logger.info("%s: marked defaulted by %s", self.symbol, caller)
