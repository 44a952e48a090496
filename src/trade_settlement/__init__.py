"""Milestone-based trade-finance settlement core on the XRP Ledger."""

__version__ = "0.1.0"
