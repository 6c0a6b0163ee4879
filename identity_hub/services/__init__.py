"""Service layer: token verification, profile reconciliation and shared state."""
