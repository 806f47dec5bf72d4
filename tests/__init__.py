"""
Ruleset Engine Tests

TEST AXIOMS:
=============
1. Determinism: same inputs -> same rules, ids and conflict order
2. Bounds: effective numeric knobs never leave lane bounds unless bypassed
3. Explicit failure: malformed input raises, stale writes are discarded
"""
