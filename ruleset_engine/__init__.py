"""
Story Ruleset Resolution & Override Engine

This package turns lane defaults, comparable-title suggestions and user
overrides into one effective ruleset per (project, lane). Each layer
communicates only through the immutable contracts in ``contracts/``.

LAYER STRUCTURE:
================

1. LANE POLICY TABLE (lanes/)
   - Responsibility: Per-lane numeric bounds, structural defaults, presets
   - Outputs: LanePolicy (immutable, built at import time)
   - MUST NOT: Depend on project state

2. CLAMP & VALIDATE ENGINE (clamp.py)
   - Responsibility: Enforce lane bounds and BPM-like ordering
   - Outputs: ClampResult (rules + warnings + adjustments)
   - MUST NOT: Hold state between calls

3. PATCH APPLIER (patching.py)
   - Responsibility: Apply ordered override patches atomically
   - Outputs: New Ruleset or MalformedPatch
   - MUST NOT: Mutate its input, partially apply a batch

4. CONFLICT DETECTOR (conflicts.py)
   - Responsibility: Compare comps suggestions against overrides
   - Outputs: Sorted RuleConflict tuple
   - MUST NOT: Apply any suggested action

5. RESOLUTION POLICY (resolution.py)
   - Responsibility: Precedence merge, provenance, strategy handling
   - Outputs: EngineProfile (immutable)
   - MUST NOT: Persist anything

6. SCOPE & PERSISTENCE COORDINATOR (coordination/)
   - Responsibility: Route writes to run or project_default scope,
     newest-token-wins guard per write target
   - Outputs: WriteOutcome
   - MUST NOT: Promote run-scoped writes to durable storage

7. STORAGE (storage/) and OBSERVABILITY (observability/)
   - Append-only persistence and audit/metrics collection

CONSTRAINTS ENFORCED:
=====================
- Immutability-first: rulesets and profiles are replaced, never mutated
- Deterministic: identical inputs always produce identical outputs
- Explicit errors: no silent fallbacks, errors are typed
- Conflicts are advisory: resolution always produces a usable ruleset
"""

__version__ = "0.1.0"
