"""
Unit tests for the LoanRegistry and LoanAgreement handles over a real Ledger.
"""

import pytest

from loanledger import (
    LoanRegistry, LoanStatus, LoanSnapshot, UnitNotRegistered,
    UnauthorizedReputationCaller, Unauthorized, NothingDue, TransferRejected,
    WalletNotRegistered,
)
from loanledger.events import LOAN_CREATED, TRUST_SCORE_UPDATED

from tests.helpers import create_loan, LENDER, BORROWER, OTHER, ASSET


class TestLoanRegistry:

    def test_registers_unit_once(self, ledger):
        first = LoanRegistry(ledger)
        second = LoanRegistry(ledger)
        assert first.symbol == second.symbol == "REGISTRY"
        assert "REGISTRY" in ledger.list_units()

    def test_create_loan_returns_id(self, registry):
        loan = create_loan(registry)
        assert loan.symbol == "REGISTRY:LOAN-000001"
        assert registry.get_loan_count() == 1
        assert registry.is_valid_agreement(loan.symbol)
        assert [e.kind for e in registry.ledger.events()] == [LOAN_CREATED]

    def test_create_loan_moves_no_funds(self, registry):
        create_loan(registry)
        assert registry.ledger.get_balance(BORROWER, ASSET) == 1_000
        assert registry.ledger.get_balance(LENDER, ASSET) == 0

    def test_create_loan_unknown_party(self, registry):
        with pytest.raises(WalletNotRegistered):
            registry.create_loan(LENDER, "mallory", 100, ASSET, 90, 10, 5, 5)
        assert registry.get_loan_count() == 0

    def test_indexes_by_participant(self, registry):
        first = create_loan(registry)
        second = create_loan(registry, lender=OTHER)
        assert registry.get_loans() == [first.symbol, second.symbol]
        assert registry.get_borrower_loan_count(BORROWER) == 2
        assert registry.get_lender_loan_count(OTHER) == 1
        assert registry.get_loans_by_lender(LENDER) == [first.symbol]
        assert [a.symbol for a in registry.agreements()] == registry.get_loans()

    def test_user_loans_by_status(self, registry):
        first = create_loan(registry)
        second = create_loan(registry, lender=OTHER)
        first.repay(BORROWER, 110)
        assert registry.get_user_loans_by_status(BORROWER, "Repaid") == [first.symbol]
        assert registry.get_user_loans_by_status(OTHER, LoanStatus.ACTIVE, role="lender") == [second.symbol]

    def test_user_loans_bad_role(self, registry):
        with pytest.raises(ValueError, match="role"):
            registry.get_user_loans_by_status(BORROWER, "Active", role="guarantor")

    @pytest.mark.parametrize("unit", [ASSET, "REGISTRY"])
    def test_filter_by_status_rejects_other_units(self, registry, loan, unit):
        with pytest.raises(ValueError, match="not a loan agreement"):
            registry.filter_by_status([loan.symbol, unit], LoanStatus.ACTIVE)
        assert registry.filter_by_status([loan.symbol], LoanStatus.ACTIVE) == [loan.symbol]

    @pytest.mark.parametrize("caller", [BORROWER, "REGISTRY:LOAN-000001", None])
    def test_update_trust_score_rejects_named_callers(self, registry, loan, caller):
        with pytest.raises(UnauthorizedReputationCaller):
            registry.update_trust_score(caller, BORROWER, 100)
        assert registry.get_trust_score(BORROWER) == 0
        assert registry.ledger.events(kind=TRUST_SCORE_UPDATED) == []

    def test_update_trust_score_accepts_own_handle(self, registry, loan):
        assert registry.update_trust_score(loan, BORROWER, 3) == 3
        assert registry.get_trust_score(BORROWER) == 3

    def test_agreement_for_unknown_id(self, registry):
        with pytest.raises(UnitNotRegistered):
            registry.agreement("REGISTRY:LOAN-000099")

    def test_second_registry_is_independent(self, ledger, registry, loan):
        other = LoanRegistry(ledger, "R2")
        assert other.get_loan_count() == 0
        assert not other.is_valid_agreement(loan.symbol)
        with pytest.raises(UnauthorizedReputationCaller):
            other.update_trust_score(loan, BORROWER, 1)


class TestLoanAgreement:

    def test_term_sheet(self, loan):
        assert loan.lender == LENDER
        assert loan.borrower == BORROWER
        assert loan.asset == ASSET
        assert loan.principal == 100
        assert loan.interest_percent == 10
        assert loan.late_fee_percent == 5
        assert loan.total_installments == 5
        assert loan.installment_interval == 18
        assert loan.start_timestamp == 0
        assert loan.get_due_timestamp() == 90

    def test_initial_queries(self, loan):
        assert loan.get_total_owed() == 110
        assert loan.get_remaining() == 110
        assert loan.get_status() == LoanStatus.ACTIVE
        assert loan.get_next_due_timestamp() == 18
        assert loan.count_missed_installments() == 0
        assert loan.get_payment_schedule()[0] == (1, 18, 22)
        assert repr(loan) == "LoanAgreement(REGISTRY:LOAN-000001, Active)"

    def test_repay_returns_amount_taken(self, loan):
        assert loan.repay(BORROWER, 22) == 22
        assert loan.get_repaid_amount() == 22
        assert loan.get_next_due_timestamp() == 36
        assert loan.repay(BORROWER, 500) == 88
        assert loan.get_status() == LoanStatus.REPAID

    def test_repay_by_lender_is_unauthorized(self, loan):
        with pytest.raises(Unauthorized):
            loan.repay(LENDER, 22)

    def test_repay_after_payoff(self, loan):
        loan.repay(BORROWER, 110)
        with pytest.raises(NothingDue):
            loan.repay(BORROWER, 1)

    def test_repay_without_allowance(self, registry):
        loan = create_loan(registry, approve=0)
        with pytest.raises(TransferRejected) as exc:
            loan.repay(BORROWER, 22)
        assert "allowance" in exc.value.reason
        assert exc.value.loan == loan.symbol

    def test_check_and_penalize(self, ledger, loan):
        ledger.advance_time(36)
        assert loan.count_missed_installments() == 2
        charged = loan.check_and_penalize_late_payments()
        assert [p.installment for p in charged] == [1, 2]
        assert loan.get_accumulated_late_fees() == 2
        assert loan.get_penalized_installments() == [1, 2]
        assert loan.check_and_penalize_late_payments() == []
        assert loan.get_accumulated_late_fees() == 2

    def test_describe(self, ledger, loan):
        ledger.advance_time(20)
        loan.repay(BORROWER, 30)
        snap = loan.describe()
        assert isinstance(snap, LoanSnapshot)
        assert snap.status == LoanStatus.ACTIVE
        assert snap.total_owed == 111
        assert snap.repaid_amount == 30
        assert snap.remaining == 81
        assert snap.penalized_installments == (1,)
        assert snap.missed_installments == 0
        assert snap.next_due_timestamp == 36
        assert snap.as_of == 20

    def test_mark_default(self, ledger, loan):
        ledger.advance_time(91)
        loan.mark_default(LENDER)
        assert loan.is_marked_default()
        assert loan.get_status() == LoanStatus.DEFAULTED
        assert loan.get_next_due_timestamp() == 0
