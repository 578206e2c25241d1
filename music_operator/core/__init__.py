"""Core reconciliation primitives: conditions, phase rules and the work queue."""
