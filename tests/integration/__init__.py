"""
Integration Tests Package

Full write and read paths through RulesetBackend and the HTTP API.

TEST AXIOMS:
=============
1. One write path: validate -> coordinate -> resolve -> publish
2. Newest token wins per target
3. Explicit failure: typed errors, no silent fallbacks
"""
