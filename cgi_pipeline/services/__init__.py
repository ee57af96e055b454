"""Service layer: job store, pipeline stages, task polling and recovery."""
