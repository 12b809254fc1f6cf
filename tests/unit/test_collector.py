"""
Unit tests for repayment collection: retry policy, planning, triggers,
the polling collector and the servicing engine.
"""

import logging

import pytest

from loanledger import (
    CollectorConfig, RepaymentCollector, ServicingEngine, LoanStatus,
    LedgerError, TransientSubmissionError, NothingDue, TransferRejected,
    empty_pending_transaction, UNIT_TYPE_LOAN_AGREEMENT,
)
from loanledger.collector import (
    is_transient, submit_with_retry, plan_installment, is_due, trigger_repayment,
)

from tests.helpers import create_loan, BORROWER, LENDER


class FlakySubmitter:
    """Fails with a transient error `failures` times, then repays for real."""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or TransientSubmissionError("nonce too low")
        self.calls = 0

    def __call__(self, agreement, payer, amount):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return agreement.repay(payer, amount)


class TestRetryPolicy:

    @pytest.mark.parametrize("error,expected", [
        (TransientSubmissionError("anything"), True),
        (LedgerError("nonce has already been used"), True),
        (LedgerError("replacement fee too low"), True),
        (OSError("Fee too low for inclusion"), True),
        (LedgerError("unit not registered"), False),
        (NothingDue("nonce mentioned but permanent"), False),
        (TransferRejected("insufficient allowance"), False),
    ])
    def test_is_transient(self, error, expected):
        assert is_transient(error) is expected

    def test_returns_first_success(self):
        assert submit_with_retry(lambda: 42) == 42

    def test_retries_transient_failures(self):
        calls = []

        def submit():
            calls.append(1)
            if len(calls) < 3:
                raise TransientSubmissionError("nonce too low")
            return "ok"

        assert submit_with_retry(submit, retries=3) == "ok"
        assert len(calls) == 3

    def test_gives_up_after_retries(self):
        calls = []

        def submit():
            calls.append(1)
            raise TransientSubmissionError("nonce too low")

        with pytest.raises(TransientSubmissionError):
            submit_with_retry(submit, retries=2)
        assert len(calls) == 2

    def test_permanent_errors_are_not_retried(self):
        calls = []

        def submit():
            calls.append(1)
            raise NothingDue("nothing to repay")

        with pytest.raises(NothingDue):
            submit_with_retry(submit, retries=5)
        assert len(calls) == 1

    def test_other_exceptions_propagate_immediately(self):
        def submit():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            submit_with_retry(submit)

    def test_invalid_retries(self):
        with pytest.raises(ValueError):
            submit_with_retry(lambda: 1, retries=0)

    def test_logs_attempts(self, caplog):
        flaky = iter([TransientSubmissionError("nonce"), None])

        def submit():
            err = next(flaky)
            if err:
                raise err
            return 1

        with caplog.at_level(logging.INFO, logger="loanledger.collector"):
            submit_with_retry(submit, retries=2)
        messages = [r.getMessage() for r in caplog.records]
        assert any(m.startswith("[WARN] send tx failed (try 1/2)") for m in messages)
        assert "[INFO] retrying..." in messages
        assert "[TX] confirmed (try 2/2)" in messages


class TestPlanning:

    def test_plan_installment(self, loan):
        assert plan_installment(loan) == 22

    def test_plan_capped_by_remaining(self, loan):
        loan.repay(BORROWER, 100)
        assert plan_installment(loan) == 10

    def test_plan_zero_when_repaid(self, loan):
        loan.repay(BORROWER, 110)
        assert plan_installment(loan) == 0

    def test_plan_tiny_loan_pays_remainder(self, registry):
        loan = create_loan(registry, amount=3, interest_percent=0, installments=5, duration=90)
        assert plan_installment(loan) == 3

    def test_is_due(self, loan):
        assert not is_due(loan, 12, lead_seconds=5)
        assert is_due(loan, 13, lead_seconds=5)
        assert is_due(loan, 18)

    def test_terminal_loan_is_never_due(self, loan):
        loan.repay(BORROWER, 110)
        assert not is_due(loan, 1_000)


class TestTriggerRepayment:

    def test_success(self, loan):
        result = trigger_repayment(loan, BORROWER)
        assert result.ok
        assert result.amount == 22
        assert result.message == "Repayment successful"
        assert result.exec_id == loan.ledger.transaction_log[-1].exec_id

    def test_already_repaid(self, loan):
        loan.repay(BORROWER, 110)
        result = trigger_repayment(loan, BORROWER)
        assert not result.ok
        assert result.error == "Loan already fully repaid"

    def test_settlement_failure_is_reported(self, registry):
        loan = create_loan(registry, approve=10)
        result = trigger_repayment(loan, BORROWER)
        assert not result.ok
        assert "insufficient allowance" in result.error
        assert loan.get_repaid_amount() == 0

    def test_wrong_payer_is_reported(self, loan):
        result = trigger_repayment(loan, LENDER)
        assert not result.ok
        assert "only the borrower" in result.error

    def test_transient_failures_are_retried(self, loan):
        flaky = FlakySubmitter(failures=2)
        result = trigger_repayment(loan, BORROWER, retries=3, submit=flaky)
        assert result.ok
        assert flaky.calls == 3
        assert loan.get_repaid_amount() == 22

    def test_exhausted_retries_are_reported(self, loan):
        flaky = FlakySubmitter(failures=5)
        result = trigger_repayment(loan, BORROWER, retries=2, submit=flaky)
        assert not result.ok
        assert "nonce" in result.error
        assert loan.get_repaid_amount() == 0


class TestRepaymentCollector:

    def test_poll_times(self, registry):
        collector = RepaymentCollector(registry, BORROWER, CollectorConfig(poll_interval_seconds=30))
        assert collector.poll_times(0, 90) == [0, 30, 60, 90]

    def test_skips_loans_not_yet_due(self, loan, registry):
        collector = RepaymentCollector(registry, BORROWER)
        assert collector.poll_once() == []
        assert loan.get_repaid_amount() == 0
        assert collector.last_result() is None

    def test_pays_each_installment_with_lead(self, loan, registry):
        collector = RepaymentCollector(registry, BORROWER, CollectorConfig(lead_seconds=5))
        results = collector.run([13, 31, 49, 67, 85])
        assert [r.amount for r in results] == [22] * 5
        assert all(r.ok for r in results)
        assert loan.get_status() == LoanStatus.REPAID
        assert loan.get_accumulated_late_fees() == 0
        assert registry.get_trust_score(BORROWER) == 1
        assert collector.last_result().timestamp == 85

    def test_ignores_terminal_loans(self, loan, registry):
        loan.repay(BORROWER, 110)
        collector = RepaymentCollector(registry, BORROWER)
        assert collector.run([50, 100]) == []

    def test_only_polls_payers_loans(self, ledger, registry):
        create_loan(registry, lender=BORROWER, borrower=LENDER, approve=0)
        collector = RepaymentCollector(registry, BORROWER)
        assert collector.run([50]) == []

    def test_late_collection_pays_fees(self, loan, registry):
        collector = RepaymentCollector(registry, BORROWER)
        results = collector.run([40])
        assert results[0].ok
        assert loan.get_accumulated_late_fees() == 2
        assert results[0].amount == 22
        assert loan.get_repaid_amount() == 22


class TestServicingEngine:

    def test_locks_in_penalties_on_clock(self, ledger, loan):
        engine = ServicingEngine(ledger)
        executed = engine.run([10, 18, 36])
        assert len(executed) == 2
        assert loan.get_penalized_installments() == [1, 2]
        assert loan.registry.get_trust_score(BORROWER) == -2

    def test_nothing_to_do_for_paid_loans(self, ledger, loan):
        loan.repay(BORROWER, 110)
        assert ServicingEngine(ledger).step(90) == []

    def test_contract_must_return_pending(self, ledger, loan):
        engine = ServicingEngine(ledger, {UNIT_TYPE_LOAN_AGREEMENT: lambda view, symbol, ts: None})
        with pytest.raises(LedgerError, match="must return PendingTransaction"):
            engine.step(5)

    def test_register_contract(self, ledger, loan):
        seen = []

        def watcher(view, symbol, timestamp):
            seen.append((symbol, timestamp))
            return empty_pending_transaction(view)

        engine = ServicingEngine(ledger, {})
        engine.register(UNIT_TYPE_LOAN_AGREEMENT, watcher)
        engine.step(5)
        assert seen == [(loan.symbol, 5)]
