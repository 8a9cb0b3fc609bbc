"""Integration adapters: provider fetch + normalization into per-member metric deltas."""
