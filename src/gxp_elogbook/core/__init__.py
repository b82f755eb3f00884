"""Core domain: models, write pipeline, audit ledger, access rules and export."""
