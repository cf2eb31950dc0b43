"""feeledger - student fee ledger, payment processing and reconciliation engine."""

__version__ = "0.3.0"
__all__ = ["__version__"]
