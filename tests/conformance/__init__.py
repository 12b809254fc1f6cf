"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the loan settlement system.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Tokens are only ever moved, never created by settlement
2. atomicity.py - A rejected operation leaves no trace
3. idempotency.py - Duplicate submissions are detected and ignored
4. determinism.py - Replaying the same operations reproduces the same ledger
5. settlement_invariants.py - Monotone loan state, terminal states, trust-score gating

These tests use hypothesis for property-based testing.
"""
