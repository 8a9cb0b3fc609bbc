"""Per-member monthly metrics: additive writes and read-path aggregation."""
