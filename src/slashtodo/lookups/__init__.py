"""Read-model projections built from committed events."""
