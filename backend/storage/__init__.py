# storage/__init__.py
# ============================================================================
# TLANGAU SERVER - STORAGE MODULE
# ============================================================================
# Ledger store contract with in-memory and Postgres implementations
# ============================================================================

from storage.ledger_store import (
    ILedgerStore,
    InMemoryLedgerStore,
    normalize_record,
    LEGACY_FIELD_ALIASES,
)
from storage.postgres_store import (
    Database,
    PostgresLedgerStore,
)

__all__ = [
    "ILedgerStore",
    "InMemoryLedgerStore",
    "normalize_record",
    "LEGACY_FIELD_ALIASES",
    "Database",
    "PostgresLedgerStore",
]
