"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending protocol.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Double-entry balances and the protocol's own books agree
2. atomicity.py - All-or-nothing operations, reentrancy rejected
3. determinism.py - Reproducible behavior
4. temporal.py - Time ordering, interest accrual and price staleness

These tests use hypothesis for property-based testing.
"""
