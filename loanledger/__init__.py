"""
loanledger - Installment Loan Settlement Ledger

Installment loans between a lender and a borrower, settled against an
in-memory ledger, with permanent late fees and a cross-loan trust score
per borrower.

Usage:
    from loanledger import Ledger, LoanRegistry, token

    ledger = Ledger("main", verbose=False)
    ledger.register_unit(token("USDT", "Tether USD"))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    ledger.issue("USDT", "bob", 1_000)

    registry = LoanRegistry(ledger)
    loan_id = registry.create_loan("alice", "bob", 100, "USDT", duration=90,
                                   interest_percent=10, late_fee_percent=5,
                                   installments=5)
    ledger.approve("bob", loan_id, "USDT", 1_000)
    registry.agreement(loan_id).repay("bob", 110)
    registry.get_trust_score("bob")   # 1
"""

__version__ = "0.1.0"

# Core types
from .core import (
    LedgerView,
    AssetTransfer,
    SmartContract,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    LoanStatus,
    LedgerError,
    InsufficientFunds,
    TransferRuleViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    TransientSubmissionError,
    LoanError,
    Unauthorized,
    InvalidState,
    NotYetOverdue,
    NothingDue,
    TransferRejected,
    UnauthorizedReputationCaller,
    non_transferable_rule,
    token,
    SYSTEM_WALLET,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_LOAN_AGREEMENT,
    UNIT_TYPE_LOAN_REGISTRY,
)

# Ledger
from .ledger import Ledger

# Events
from .events import (
    LoanEvent,
    LOAN_CREATED,
    PAYMENT_APPLIED,
    FULLY_REPAID,
    DEFAULT_MARKED,
    LATE_PENALTY_APPLIED,
    LATE_FEE_ACCUMULATED,
    TRUST_SCORE_UPDATED,
    REFUND_ISSUED,
    EVENT_KINDS,
)

# Agreements and registries
from .units.agreement import (
    LoanTerms,
    LoanState,
    LatePenalty,
    load_agreement,
    create_agreement_unit,
    calculate_total_owed,
    calculate_status,
    calculate_late_penalties,
    compute_late_penalties,
    compute_repayment,
    compute_default,
    get_unpenalized_late_payments,
    agreement_contract,
    transact as agreement_transact,
)
from .units.registry import (
    create_registry_unit,
    compute_loan_creation,
    compute_trust_score_update,
    get_trust_score,
    is_valid_agreement,
    filter_by_status,
)
from .units.reputation import RegistryState, load_registry, apply_trust_delta

# Handles
from .service import LoanRegistry, LoanAgreement, LoanSnapshot

# Collection
from .collector import (
    CollectionResult,
    RepaymentCollector,
    ServicingEngine,
    is_transient,
    plan_installment,
    submit_with_retry,
    trigger_repayment,
)

# Configuration and logging
from .config import CollectorConfig, LedgerConfig
from .log import setup_logging, get_logger

__all__ = [
    # Core
    'LedgerView',
    'AssetTransfer',
    'SmartContract',
    'Move',
    'Transaction',
    'PendingTransaction',
    'TransactionOrigin',
    'OriginType',
    'build_transaction',
    'empty_pending_transaction',
    'Unit',
    'UnitStateChange',
    'ExecuteResult',
    'LoanStatus',
    'LedgerError',
    'InsufficientFunds',
    'TransferRuleViolation',
    'UnitNotRegistered',
    'WalletNotRegistered',
    'TransientSubmissionError',
    'LoanError',
    'Unauthorized',
    'InvalidState',
    'NotYetOverdue',
    'NothingDue',
    'TransferRejected',
    'UnauthorizedReputationCaller',
    'non_transferable_rule',
    'token',
    'SYSTEM_WALLET',
    'UNIT_TYPE_TOKEN',
    'UNIT_TYPE_LOAN_AGREEMENT',
    'UNIT_TYPE_LOAN_REGISTRY',
    # Ledger
    'Ledger',
    # Events
    'LoanEvent',
    'LOAN_CREATED',
    'PAYMENT_APPLIED',
    'FULLY_REPAID',
    'DEFAULT_MARKED',
    'LATE_PENALTY_APPLIED',
    'LATE_FEE_ACCUMULATED',
    'TRUST_SCORE_UPDATED',
    'REFUND_ISSUED',
    'EVENT_KINDS',
    # Agreements
    'LoanTerms',
    'LoanState',
    'LatePenalty',
    'load_agreement',
    'create_agreement_unit',
    'calculate_total_owed',
    'calculate_status',
    'calculate_late_penalties',
    'compute_late_penalties',
    'compute_repayment',
    'compute_default',
    'get_unpenalized_late_payments',
    'agreement_contract',
    'agreement_transact',
    # Registries
    'create_registry_unit',
    'compute_loan_creation',
    'compute_trust_score_update',
    'get_trust_score',
    'is_valid_agreement',
    'filter_by_status',
    'RegistryState',
    'load_registry',
    'apply_trust_delta',
    # Handles
    'LoanRegistry',
    'LoanAgreement',
    'LoanSnapshot',
    # Collection
    'CollectionResult',
    'RepaymentCollector',
    'ServicingEngine',
    'is_transient',
    'plan_installment',
    'submit_with_retry',
    'trigger_repayment',
    # Configuration and logging
    'CollectorConfig',
    'LedgerConfig',
    'setup_logging',
    'get_logger',
]
