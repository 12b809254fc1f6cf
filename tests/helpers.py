"""
helpers.py - Shared builders for loanledger tests

- make_ledger(): quiet test ledger with USDT and the usual parties
- create_loan(): Scenario-A loan (100 principal, 10% interest, 5% late fee,
  5 installments over 90 seconds -> 18-second periods) with overrides
- snapshot(): everything a rolled-back operation must leave untouched
"""

from typing import Any, Dict

from loanledger import Ledger, LoanRegistry, LoanAgreement, LoanError, token


LENDER = "alice"
BORROWER = "bob"
OTHER = "carol"
ASSET = "USDT"

SCENARIO_A = dict(
    amount=100,
    asset=ASSET,
    duration=90,
    interest_percent=10,
    late_fee_percent=5,
    installments=5,
)


def make_ledger(initial_time: int = 0) -> Ledger:
    """Quiet test ledger with USDT and the three parties; bob holds 1000."""
    ledger = Ledger("test", initial_time=initial_time, verbose=False, test_mode=True)
    ledger.register_unit(token(ASSET, "Tether USD"))
    for wallet in (LENDER, BORROWER, OTHER):
        ledger.register_wallet(wallet)
    ledger.issue(ASSET, BORROWER, 1_000)
    return ledger


def create_loan(registry: LoanRegistry, approve: int = 1_000, **overrides) -> LoanAgreement:
    """Create a Scenario-A loan (with overrides) and let the borrower approve it."""
    terms = {**SCENARIO_A, **overrides}
    lender = terms.pop("lender", LENDER)
    borrower = terms.pop("borrower", BORROWER)
    loan_id = registry.create_loan(lender, borrower, **terms)
    if approve:
        registry.ledger.approve(borrower, loan_id, terms["asset"], approve)
    return registry.agreement(loan_id)


def snapshot(ledger: Ledger) -> Dict[str, Any]:
    """Balances, allowances, unit states, log length and event count."""
    return {
        "balances": {w: dict(b) for w, b in ledger.balances.items()},
        "allowances": dict(ledger.allowances),
        "units": {s: ledger.get_unit_state(s) for s in ledger.list_units()},
        "log": len(ledger.transaction_log),
        "events": len(ledger.events()),
    }


# (seconds to advance, action, amount) steps for property tests
OPERATIONS = ("repay", "check", "default", "approve")


def apply_operation(loan: LoanAgreement, step) -> None:
    """Advance the clock and attempt one operation; settlement errors are expected."""
    dt, action, amount = step
    ledger = loan.ledger
    ledger.advance_time(ledger.current_time + dt)
    try:
        if action == "repay":
            loan.repay(loan.borrower, amount)
        elif action == "check":
            loan.check_and_penalize_late_payments()
        elif action == "default":
            loan.mark_default(loan.lender)
        elif action == "approve":
            ledger.approve(loan.borrower, loan.symbol, loan.asset, amount)
    except LoanError:
        pass
