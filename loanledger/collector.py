"""
collector.py - Repayment Collection and Servicing

The settlement core never decides WHEN to pay; this module does. It plays
the payer's side of the scheduler contract:

1. RepaymentCollector polls the payer's loans, and for each loan that is
   due pays one installment (total_owed // total_installments, capped by
   what remains) through submit_with_retry().
2. trigger_repayment() is the same payment as a one-shot call.
3. ServicingEngine runs agreement contracts on a clock so late penalties
   are locked in even when nobody pays.

Retry policy: only submission-layer failures are retried (sequencing
conflicts, fees too low). Settlement errors (Unauthorized, NothingDue,
TransferRejected, ...) are permanent for the given inputs and are reported,
not retried.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, TypeVar
import re

from .config import CollectorConfig
from .core import (
    PendingTransaction, Transaction, ExecuteResult, LoanStatus,
    LedgerError, LoanError, TransientSubmissionError,
    SmartContract, UNIT_TYPE_LOAN_AGREEMENT,
)
from .ledger import Ledger
from .log import get_logger
from .service import LoanAgreement, LoanRegistry
from .units.agreement import agreement_contract

logger = get_logger(__name__)

T = TypeVar("T")

_TRANSIENT_PATTERN = re.compile(r"nonce|replacement fee|fee too low", re.IGNORECASE)

# Submits one installment: (agreement, payer, amount) -> amount actually paid.
Submitter = Callable[[LoanAgreement, str, int], int]


# ============================================================================
# RETRY
# ============================================================================

def is_transient(error: BaseException) -> bool:
    """
    True for failures worth retrying.

    Settlement errors are never transient, whatever their message says.
    """
    if isinstance(error, TransientSubmissionError):
        return True
    if isinstance(error, LoanError):
        return False
    return bool(_TRANSIENT_PATTERN.search(str(error)))


def submit_with_retry(submit: Callable[[], T], retries: int = 3) -> T:
    """
    Call `submit` up to `retries` times, retrying transient failures only.

    Args:
        submit: Zero-argument submission
        retries: Maximum number of attempts (at least 1)

    Returns:
        Whatever `submit` returns on the first successful attempt

    Raises:
        The last error, once it is non-transient or attempts are exhausted
    """
    if retries < 1:
        raise ValueError(f"retries must be at least 1, got {retries}")
    for attempt in range(1, retries + 1):
        try:
            result = submit()
        except (LedgerError, OSError) as e:
            logger.warning("[WARN] send tx failed (try %d/%d): %s", attempt, retries, e)
            if attempt < retries and is_transient(e):
                logger.info("[INFO] retrying...")
                continue
            raise
        logger.info("[TX] confirmed (try %d/%d)", attempt, retries)
        return result


# ============================================================================
# PLANNING
# ============================================================================

def plan_installment(agreement: LoanAgreement) -> int:
    """
    Amount the collector pays per period: total_owed // total_installments,
    capped by the outstanding remainder. 0 when nothing is owed.

    Loans so small that the per-period amount truncates to 0 are paid off
    in one go.
    """
    total_owed = agreement.get_total_owed()
    remaining = max(total_owed - agreement.get_repaid_amount(), 0)
    per_period = total_owed // agreement.total_installments or remaining
    return min(per_period, remaining)


def is_due(agreement: LoanAgreement, now: int, lead_seconds: int = 0) -> bool:
    """True once now is within lead_seconds of the agreement's next due time."""
    next_due = agreement.get_next_due_timestamp()
    return next_due != 0 and now >= next_due - lead_seconds


def _repay(agreement: LoanAgreement, payer: str, amount: int) -> int:
    return agreement.repay(payer, amount)


@dataclass(frozen=True, slots=True)
class CollectionResult:
    """Outcome of one collection attempt for one loan."""
    ok: bool
    loan: str
    amount: int = 0
    message: str = ""
    error: str = ""
    exec_id: Optional[str] = None
    timestamp: int = 0


def trigger_repayment(
    agreement: LoanAgreement,
    payer: str,
    retries: int = 3,
    submit: Submitter = _repay,
) -> CollectionResult:
    """
    Pay one installment now, regardless of the schedule.

    Never raises for settlement failures: they are returned as a result
    with ok=False.
    """
    now = agreement.ledger.current_time
    if agreement.get_status() == LoanStatus.REPAID:
        return CollectionResult(False, agreement.symbol, error="Loan already fully repaid", timestamp=now)

    amount = plan_installment(agreement)
    try:
        paid = submit_with_retry(lambda: submit(agreement, payer, amount), retries)
    except LedgerError as e:
        logger.error("[ERR] %s | %s", agreement.symbol, e, extra={"loan": agreement.symbol})
        return CollectionResult(False, agreement.symbol, amount=amount, error=str(e), timestamp=now)

    log = agreement.ledger.transaction_log
    exec_id = log[-1].exec_id if log else None
    logger.info("[TX] %s | paid %d (%s)", agreement.symbol, paid, exec_id, extra={"loan": agreement.symbol})
    return CollectionResult(
        True, agreement.symbol, amount=paid, message="Repayment successful",
        exec_id=exec_id, timestamp=now,
    )


# ============================================================================
# POLLING COLLECTOR
# ============================================================================

class RepaymentCollector:
    """
    Polls a payer's loans and pays installments as they fall due.

    Example:
        collector = RepaymentCollector(registry, "bob", CollectorConfig(lead_seconds=5))
        collector.run(collector.poll_times(0, 90))
    """

    def __init__(
        self,
        registry: LoanRegistry,
        payer: str,
        config: Optional[CollectorConfig] = None,
        submit: Submitter = _repay,
    ):
        self.registry = registry
        self.ledger = registry.ledger
        self.payer = payer
        self.config = config or CollectorConfig()
        self.submit = submit
        self.results: List[CollectionResult] = []

    def poll_times(self, start: int, end: int) -> List[int]:
        """Poll timestamps from start to end (inclusive), poll_interval_seconds apart."""
        return list(range(start, end + 1, self.config.poll_interval_seconds))

    def poll_once(self) -> List[CollectionResult]:
        """
        One pass over the payer's loans at the ledger's current time.

        Skips loans that are not Active or not yet due; pays one planned
        installment for each of the rest. Returns a result per loan paid or
        attempted.
        """
        now = self.ledger.current_time
        results = []
        for agreement in map(self.registry.agreement, self.registry.get_loans_by_borrower(self.payer)):
            status = agreement.get_status()
            if status != LoanStatus.ACTIVE:
                logger.info("[done] %s | %s", agreement.symbol, status.value)
                continue
            if not is_due(agreement, now, self.config.lead_seconds):
                next_due = agreement.get_next_due_timestamp()
                logger.info(
                    "[skip] %s | next due in %ds (repaid=%d)",
                    agreement.symbol, max(next_due - now, 0), agreement.get_repaid_amount(),
                )
                continue
            results.append(trigger_repayment(agreement, self.payer, self.config.max_attempts, self.submit))
        self.results.extend(results)
        return results

    def run(self, timestamps: List[int]) -> List[CollectionResult]:
        """Advance the ledger clock to each timestamp in turn and poll."""
        results = []
        for ts in timestamps:
            if ts > self.ledger.current_time:
                self.ledger.advance_time(ts)
            results.extend(self.poll_once())
        return results

    def last_result(self) -> Optional[CollectionResult]:
        """Most recent successful collection, if any."""
        for result in reversed(self.results):
            if result.ok:
                return result
        return None


# ============================================================================
# SERVICING ENGINE
# ============================================================================

class ServicingEngine:
    """
    Smart contract polling over the ledger's units.

    Each step advances the ledger clock, then runs the contract registered
    for each unit's type and executes whatever it returns. By default the
    agreement contract is registered, which locks in late penalties.
    """

    def __init__(
        self,
        ledger: Ledger,
        contracts: Optional[Dict[str, SmartContract]] = None,
    ):
        self.ledger = ledger
        if contracts is None:
            contracts = {UNIT_TYPE_LOAN_AGREEMENT: agreement_contract}
        self.contracts: Dict[str, SmartContract] = contracts

    def register(self, unit_type: str, contract: SmartContract) -> None:
        self.contracts[unit_type] = contract

    def step(self, timestamp: int) -> List[Transaction]:
        """
        Advance time to `timestamp` and run every registered contract.

        Raises:
            LedgerError: If a contract returns something other than a
                         PendingTransaction, or the ledger rejects it
        """
        if timestamp > self.ledger.current_time:
            self.ledger.advance_time(timestamp)
        executed: List[Transaction] = []

        # Sorted for deterministic iteration order
        for symbol in self.ledger.list_units():
            contract = self.contracts.get(self.ledger.get_unit(symbol).unit_type)
            if not contract:
                continue

            if hasattr(contract, 'check_lifecycle'):
                pending = contract.check_lifecycle(self.ledger, symbol, timestamp)
            else:
                pending = contract(self.ledger, symbol, timestamp)

            if not isinstance(pending, PendingTransaction):
                raise LedgerError(
                    f"Contract for {symbol} must return PendingTransaction, got {type(pending)}"
                )
            if pending.is_empty():
                continue

            result = self.ledger.execute(pending)
            if result == ExecuteResult.REJECTED:
                raise LedgerError(f"Lifecycle event failed for {symbol}: {self.ledger.last_rejection}")
            if result == ExecuteResult.APPLIED:
                executed.append(self.ledger.transaction_log[-1])

        return executed

    def run(self, timestamps: List[int]) -> List[Transaction]:
        executed: List[Transaction] = []
        for ts in timestamps:
            executed.extend(self.step(ts))
        return executed
