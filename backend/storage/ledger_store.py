# storage/ledger_store.py
# ============================================================================
# TLANGAU SERVER - LEDGER STORE
# ============================================================================
# Document-store contract for orders, access codes and their claims,
# plus the read-boundary normalization for legacy field spellings.
# ============================================================================

import asyncio
import copy
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

logger = structlog.get_logger().bind(component="ledger_store")


# ============================================================================
# COLLECTIONS
# ============================================================================

ORDERS = "orders"
ACCESS_CODES = "access_codes"
ORDER_CODE_CLAIMS = "order_code_claims"
ACCOUNT_REDEMPTIONS = "account_redemptions"
BUNDLES = "bundles"
BUNDLE_TOPICS = "bundle_topics"
SYSTEM_EVENTS = "system_events"
COUNTERS = "counters"


# ============================================================================
# LEGACY FIELD NORMALIZATION
# ============================================================================

# canonical field -> older spellings still present in stored records
LEGACY_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "order_id": ("orderId",),
    "expires_at": ("expiresAt",),
    "payment_id": ("paymentId",),
    "payment_request_id": ("paymentRequestId",),
    "created_at": ("createdAt",),
}


def normalize_record(record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Populate canonical fields from legacy spellings.

    Only fills a canonical field that is absent; the legacy field is left
    in place so a later write never loses data.
    """
    if record is None:
        return None

    normalized = dict(record)
    for canonical, aliases in LEGACY_FIELD_ALIASES.items():
        if normalized.get(canonical) is not None:
            continue
        for alias in aliases:
            if normalized.get(alias) is not None:
                normalized[canonical] = normalized[alias]
                break
    return normalized


def field_candidates(field: str) -> Tuple[str, ...]:
    """Field name plus any legacy spellings, canonical first."""
    return (field,) + LEGACY_FIELD_ALIASES.get(field, ())


# ============================================================================
# STORE CONTRACT
# ============================================================================

class ILedgerStore(ABC):
    """
    Generic document store keyed by (collection, key).

    Every read goes through normalize_record. The conditional writes
    (put_if_absent, compare_and_patch) and increment are atomic with
    respect to concurrent callers, including other processes for
    persistent implementations.
    """

    @abstractmethod
    async def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        """Full overwrite."""

    @abstractmethod
    async def put_if_absent(self, collection: str, key: str, value: Dict[str, Any]) -> bool:
        """Create only if the key is free. Returns True if this call created it."""

    @abstractmethod
    async def patch(self, collection: str, key: str, partial: Dict[str, Any]) -> None:
        """Merge-update. Fields not named in partial are kept."""

    @abstractmethod
    async def compare_and_patch(
        self,
        collection: str,
        key: str,
        expected: Dict[str, Any],
        partial: Dict[str, Any],
        unless: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Merge partial into an existing record, only if every expected field
        holds its value and no unless field holds its value. A field absent
        from the record never matches unless.
        """

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_one_by(self, collection: str, field: str, value: Any) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_all_by(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def all(self, collection: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def delete(self, collection: str, key: str) -> bool:
        pass

    @abstractmethod
    async def bulk_delete_paths(self, paths: Iterable[Tuple[str, str]]) -> int:
        """Remove every (collection, key) pair in one atomic step. Returns rows removed."""

    @abstractmethod
    async def increment(
        self, collection: str, key: str, field: str, delta: int = 1, create: bool = True
    ) -> Optional[int]:
        """
        Atomic counter add with a zero default. Returns the new value.

        With create=False a missing record is left missing and None is returned.
        """

    async def bulk_delete(self, collection: str, keys: Iterable[str]) -> int:
        return await self.bulk_delete_paths((collection, key) for key in keys)

    async def close(self) -> None:
        pass


# ============================================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================================

class InMemoryLedgerStore(ILedgerStore):
    """Single-process store guarded by one asyncio.Lock."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    @staticmethod
    def _matches(record: Dict[str, Any], field: str, value: Any) -> bool:
        normalized = normalize_record(record)
        return normalized.get(field) == value

    async def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            self._data[collection][key] = copy.deepcopy(value)

    async def put_if_absent(self, collection: str, key: str, value: Dict[str, Any]) -> bool:
        async with self._lock:
            if key in self._data[collection]:
                return False
            self._data[collection][key] = copy.deepcopy(value)
            return True

    async def patch(self, collection: str, key: str, partial: Dict[str, Any]) -> None:
        async with self._lock:
            record = self._data[collection].setdefault(key, {})
            record.update(copy.deepcopy(partial))

    async def compare_and_patch(
        self,
        collection: str,
        key: str,
        expected: Dict[str, Any],
        partial: Dict[str, Any],
        unless: Optional[Dict[str, Any]] = None,
    ) -> bool:
        async with self._lock:
            record = self._data[collection].get(key)
            if record is None:
                return False
            if any(record.get(field) != value for field, value in expected.items()):
                return False
            if any(field in record and record[field] == value for field, value in (unless or {}).items()):
                return False
            record.update(copy.deepcopy(partial))
            return True

    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._data[collection].get(key)
            return normalize_record(copy.deepcopy(record)) if record is not None else None

    async def find_one_by(self, collection: str, field: str, value: Any) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for key in sorted(self._data[collection]):
                record = self._data[collection][key]
                if self._matches(record, field, value):
                    return normalize_record(copy.deepcopy(record))
            return None

    async def find_all_by(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        async with self._lock:
            return [
                normalize_record(copy.deepcopy(self._data[collection][key]))
                for key in sorted(self._data[collection])
                if self._matches(self._data[collection][key], field, value)
            ]

    async def all(self, collection: str) -> List[Dict[str, Any]]:
        async with self._lock:
            return [
                normalize_record(copy.deepcopy(self._data[collection][key]))
                for key in sorted(self._data[collection])
            ]

    async def delete(self, collection: str, key: str) -> bool:
        async with self._lock:
            return self._data[collection].pop(key, None) is not None

    async def bulk_delete_paths(self, paths: Iterable[Tuple[str, str]]) -> int:
        paths = list(paths)
        async with self._lock:
            removed = 0
            for collection, key in paths:
                if self._data[collection].pop(key, None) is not None:
                    removed += 1
            return removed

    async def increment(
        self, collection: str, key: str, field: str, delta: int = 1, create: bool = True
    ) -> Optional[int]:
        async with self._lock:
            if not create and key not in self._data[collection]:
                return None
            record = self._data[collection].setdefault(key, {})
            record[field] = int(record.get(field) or 0) + delta
            return record[field]
