"""Time-tracking and billing reconciliation engine."""

__version__ = "0.1.0"
