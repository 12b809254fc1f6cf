"""
test_loan_scenarios.py - End-to-end loan settlement scenarios

Each test walks one loan through a ledger: 100 USDT lent by alice to bob at
10% interest with a 5% late fee, repaid in 5 installments over 90 seconds
(an installment of 22 every 18 seconds, 110 in total).
"""

import pytest

from loanledger import (
    LoanStatus, NotYetOverdue, InvalidState, TransferRejected, Unauthorized,
)
from loanledger.events import (
    LOAN_CREATED, PAYMENT_APPLIED, FULLY_REPAID, DEFAULT_MARKED,
    LATE_PENALTY_APPLIED, LATE_FEE_ACCUMULATED, TRUST_SCORE_UPDATED,
)

from tests.helpers import create_loan, snapshot, LENDER, BORROWER, ASSET


class TestOnTimePayoff:

    def test_full_payoff_at_creation(self, ledger, registry, loan):
        assert loan.repay(BORROWER, 110) == 110
        assert loan.get_status() == LoanStatus.REPAID
        assert registry.get_trust_score(BORROWER) == 1
        assert ledger.get_balance(LENDER, ASSET) == 110
        assert ledger.get_balance(BORROWER, ASSET) == 890
        assert ledger.get_allowance(BORROWER, loan.symbol, ASSET) == 890

    def test_overpayment_is_capped(self, ledger, registry, loan):
        assert loan.repay(BORROWER, 200) == 110
        assert ledger.get_balance(BORROWER, ASSET) == 890
        assert registry.get_trust_score(BORROWER) == 1

    def test_installments_on_schedule(self, ledger, registry, loan):
        for t in (0, 18, 36, 54, 72):
            if t:
                ledger.advance_time(t - 1)
            loan.repay(BORROWER, 22)
        assert loan.get_status() == LoanStatus.REPAID
        assert loan.get_accumulated_late_fees() == 0
        assert registry.get_trust_score(BORROWER) == 1
        kinds = [e.kind for e in ledger.events(loan=loan.symbol)]
        assert kinds.count(PAYMENT_APPLIED) == 5
        assert kinds[-1] == TRUST_SCORE_UPDATED


class TestLatePayoff:

    def test_late_payoff_locks_in_fees(self, ledger, registry, loan):
        ledger.advance_time(36)
        assert loan.get_total_owed() == 110
        assert loan.repay(BORROWER, 112) == 112
        assert loan.get_accumulated_late_fees() == 2
        assert loan.get_penalized_installments() == [1, 2]
        assert loan.get_status() == LoanStatus.REPAID
        assert registry.get_trust_score(BORROWER) == -2
        assert ledger.get_balance(LENDER, ASSET) == 112

    def test_late_payoff_short_of_fees_stays_active(self, ledger, registry, loan):
        ledger.advance_time(36)
        assert loan.repay(BORROWER, 110) == 110
        assert loan.get_status() == LoanStatus.ACTIVE
        assert loan.get_remaining() == 2
        assert loan.get_next_due_timestamp() == 90
        assert loan.repay(BORROWER, 5) == 2
        assert loan.get_status() == LoanStatus.REPAID
        assert registry.get_trust_score(BORROWER) == -2

    def test_partial_payment_avoids_first_penalty(self, ledger, registry, loan):
        loan.repay(BORROWER, 22)
        ledger.advance_time(18)
        assert loan.check_and_penalize_late_payments() == []
        ledger.advance_time(36)
        charged = loan.check_and_penalize_late_payments()
        assert [p.installment for p in charged] == [2]
        assert registry.get_trust_score(BORROWER) == -1

    def test_fees_are_permanent(self, ledger, registry, loan):
        ledger.advance_time(18)
        loan.check_and_penalize_late_payments()
        loan.repay(BORROWER, 200)
        assert loan.get_total_owed() == 111
        assert loan.get_accumulated_late_fees() == 1
        assert loan.get_penalized_installments() == [1]

    def test_penalty_events_in_order(self, ledger, loan):
        ledger.advance_time(18)
        loan.repay(BORROWER, 22)
        kinds = [e.kind for e in ledger.events(loan=loan.symbol)]
        assert kinds == [
            LOAN_CREATED,
            LATE_FEE_ACCUMULATED, LATE_PENALTY_APPLIED, PAYMENT_APPLIED,
            TRUST_SCORE_UPDATED,
        ]


class TestDefault:

    @pytest.mark.parametrize("now", [50, 90])
    def test_default_before_final_deadline(self, ledger, loan, now):
        ledger.advance_time(now)
        with pytest.raises(NotYetOverdue):
            loan.mark_default(LENDER)
        assert not loan.is_marked_default()

    def test_default_after_deadline(self, ledger, registry, loan):
        ledger.advance_time(91)
        loan.mark_default(LENDER)
        assert loan.get_status() == LoanStatus.DEFAULTED
        assert loan.get_accumulated_late_fees() == 5
        assert registry.get_trust_score(BORROWER) == -7
        (event,) = ledger.events(kind=DEFAULT_MARKED)
        assert event.params_dict["outstanding"] == 115

    def test_borrower_cannot_default(self, ledger, loan):
        ledger.advance_time(91)
        with pytest.raises(Unauthorized):
            loan.mark_default(BORROWER)

    def test_defaulted_loan_is_frozen(self, ledger, registry, loan):
        ledger.advance_time(91)
        loan.mark_default(LENDER)
        with pytest.raises(InvalidState):
            loan.repay(BORROWER, 10)
        with pytest.raises(InvalidState):
            loan.mark_default(LENDER)
        ledger.advance_time(500)
        assert loan.check_and_penalize_late_payments() == []
        assert registry.get_trust_score(BORROWER) == -7

    def test_repaid_loan_cannot_default(self, ledger, loan):
        loan.repay(BORROWER, 110)
        ledger.advance_time(91)
        with pytest.raises(InvalidState):
            loan.mark_default(LENDER)


class TestRejectedTransfer:

    def test_short_allowance_rolls_back_everything(self, ledger, registry):
        loan = create_loan(registry, approve=10)
        ledger.advance_time(36)
        before = snapshot(ledger)
        with pytest.raises(TransferRejected) as exc:
            loan.repay(BORROWER, 22)
        assert "insufficient allowance" in exc.value.reason
        assert snapshot(ledger) == before
        assert loan.get_accumulated_late_fees() == 0
        assert registry.get_trust_score(BORROWER) == 0

    def test_short_balance_rolls_back(self, ledger, registry):
        poor = create_loan(registry, approve=10_000, amount=5_000)
        before = snapshot(ledger)
        with pytest.raises(TransferRejected) as exc:
            poor.repay(BORROWER, 5_500)
        assert "insufficient balance" in exc.value.reason
        assert snapshot(ledger) == before

    def test_retry_after_topping_up_allowance(self, ledger, registry):
        loan = create_loan(registry, approve=10)
        with pytest.raises(TransferRejected):
            loan.repay(BORROWER, 22)
        ledger.approve(BORROWER, loan.symbol, ASSET, 22)
        assert loan.repay(BORROWER, 22) == 22
        assert ledger.get_allowance(BORROWER, loan.symbol, ASSET) == 0


class TestMultipleLoans:

    def test_trust_score_spans_loans(self, ledger, registry):
        first = create_loan(registry)
        second = create_loan(registry, amount=50)
        first.repay(BORROWER, 110)
        ledger.advance_time(91)
        second.mark_default(LENDER)
        assert registry.get_trust_score(BORROWER) == 1 - 5 - 2
        assert registry.filter_by_status(registry.get_loans(), "Defaulted") == [second.symbol]

    def test_allowances_are_per_agreement(self, ledger, registry):
        first = create_loan(registry, approve=0)
        second = create_loan(registry, approve=110)
        with pytest.raises(TransferRejected):
            first.repay(BORROWER, 22)
        assert second.repay(BORROWER, 22) == 22
