"""Reconciliation engine for blueprint-driven environments.

Builds a dependency graph from resource declarations, diffs it against the
persisted state and dispatches create/destroy calls to providers level by
level.
"""
