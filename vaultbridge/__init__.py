"""Request-processing bridge between a request ledger and a managed-position service."""

__version__ = "0.1.0"
