"""stackweave: declarative infrastructure reconciliation."""

__version__ = "0.1.0"
