"""Snapshot persistence, merging and eviction."""
