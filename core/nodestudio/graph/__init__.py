"""Graph data model, validation, scoping, scheduling and reconciliation."""
