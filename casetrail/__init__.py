"""CaseTrail: case management with ledger-backed audit events."""

__version__ = "0.1.0"
