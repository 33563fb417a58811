"""Core primitives shared by every layer: errors, ids, clocks, config."""
