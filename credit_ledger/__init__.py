"""Credit ledger and billing reconciliation service."""

__version__ = '0.1.0'
