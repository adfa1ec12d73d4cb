"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the vault ledger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Share sum, share price and pool backing
2. atomicity.py - All-or-nothing settlement
3. idempotency.py - Duplicate intents and finalized requests
4. determinism.py - Reproducible ids, replay and simulation
5. canonicalization.py - Content-addressable identity
6. temporal.py - Ledger time, NAV ordering and fee accrual
7. concurrency.py - Concurrent settlements serialize

These tests use hypothesis for property-based testing.
"""
