"""
Contracts Module

Explicit interfaces and data transfer objects shared by every layer.
All inter-layer communication MUST use these contracts. No layer may
import implementation details from another layer.

DESIGN PRINCIPLES:
==================
1. All contract types are immutable (frozen dataclasses, tuples)
2. All errors are enumerated in ErrorCode
3. Rulesets are replaced, never mutated
4. All timestamps use UTC
5. Hash-based identity for profiles, conflicts and batches
"""
