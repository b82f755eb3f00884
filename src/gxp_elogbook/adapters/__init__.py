"""Adapters — Record Store backends for the eLogbook ledger.

Contains:
- memory_store.py  — InMemoryRecordStore, non-durable, for tests and demos
- sql_store.py     — SqlRecordStore, SQLAlchemy async, entity + audit in one transaction
- tables.py        — ORM tables and append-only guards for the audit ledger
"""

__all__: list[str] = []
