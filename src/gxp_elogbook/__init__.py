"""GxP eLogbook ledger: append-only audit trail and signed-record store."""

__version__ = "0.1.0"
