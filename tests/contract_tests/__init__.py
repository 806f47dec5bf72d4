"""Property and determinism tests for the ruleset contracts."""
