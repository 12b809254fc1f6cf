"""
Units module - Factory functions and pure logic for loan records.

This module provides the two stateful record units of the settlement system:
- Loan agreements: per-loan settlement state machine
- Loan registries: agreement index and borrower trust scores

All unit factories and related functions are re-exported here for convenience.
"""

# Agreements
from .agreement import (
    LoanTerms,
    LoanState,
    LatePenalty,
    load_agreement,
    create_agreement_unit,
    calculate_total_with_interest,
    calculate_total_owed,
    calculate_remaining,
    calculate_installment_amount,
    calculate_expected_by_period,
    calculate_elapsed_periods,
    calculate_status,
    calculate_late_penalties,
    calculate_missed_installments,
    calculate_next_due_timestamp,
    calculate_due_timestamp,
    calculate_final_deadline,
    calculate_payment_schedule,
    apply_late_penalties,
    get_unpenalized_late_payments,
    compute_late_penalties,
    compute_repayment,
    compute_default,
    agreement_contract,
    transact as agreement_transact,
)

# Registries
from .registry import (
    loan_symbol,
    create_registry_unit,
    compute_loan_creation,
    compute_trust_score_update,
    get_trust_score,
    is_valid_agreement,
    get_loans,
    get_loans_by_borrower,
    get_loans_by_lender,
    filter_by_status,
)

# Registry state and trust scores
from .reputation import (
    RegistryState,
    load_registry,
    apply_trust_delta,
    stage_trust_deltas,
)

__all__ = [
    # Agreements
    'LoanTerms',
    'LoanState',
    'LatePenalty',
    'load_agreement',
    'create_agreement_unit',
    'calculate_total_with_interest',
    'calculate_total_owed',
    'calculate_remaining',
    'calculate_installment_amount',
    'calculate_expected_by_period',
    'calculate_elapsed_periods',
    'calculate_status',
    'calculate_late_penalties',
    'calculate_missed_installments',
    'calculate_next_due_timestamp',
    'calculate_due_timestamp',
    'calculate_final_deadline',
    'calculate_payment_schedule',
    'apply_late_penalties',
    'get_unpenalized_late_payments',
    'compute_late_penalties',
    'compute_repayment',
    'compute_default',
    'agreement_contract',
    'agreement_transact',
    # Registries
    'loan_symbol',
    'create_registry_unit',
    'compute_loan_creation',
    'compute_trust_score_update',
    'get_trust_score',
    'is_valid_agreement',
    'get_loans',
    'get_loans_by_borrower',
    'get_loans_by_lender',
    'filter_by_status',
    'RegistryState',
    'load_registry',
    'apply_trust_delta',
    'stage_trust_deltas',
]
