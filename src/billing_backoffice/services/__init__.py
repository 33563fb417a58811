"""Workflows that load aggregates, mutate them, and persist them."""
