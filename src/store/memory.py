"""In-process document store with optimistic transactions.

Used by tests and single-process development. Every write bumps a
store-wide version counter, so a delete followed by a re-create is still
detected as a change by concurrent transactions.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import operator
from typing import Any

from uuid_extensions import uuid7

from src.core.constants import TX_MAX_ATTEMPTS
from src.core.logging import get_logger
from src.store.base import DocumentStore, Filter, Transaction, apply_op, validate_filters

log = get_logger(__name__)

_COMPARATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class _MemoryTransaction(Transaction):
    def __init__(self, store: InMemoryDocumentStore) -> None:
        super().__init__()
        self._store = store

    async def _read(self, collection: str, doc_id: str) -> tuple[dict[str, Any] | None, Any]:
        # Yield so concurrent transactions interleave between read and commit
        await asyncio.sleep(0)
        entry = self._store._docs.get(collection, {}).get(doc_id)
        if entry is None:
            return None, None
        version, data = entry
        return copy.deepcopy(data), version


class InMemoryDocumentStore(DocumentStore):
    """Versioned dict-of-dicts guarded by an asyncio lock."""

    def __init__(self, max_attempts: int = TX_MAX_ATTEMPTS) -> None:
        super().__init__(max_attempts=max_attempts)
        # collection -> doc_id -> (version, data)
        self._docs: dict[str, dict[str, tuple[int, dict[str, Any]]]] = {}
        self._clock = itertools.count(1)
        self._lock = asyncio.Lock()

    def _write(self, collection: str, doc_id: str, op: str, data: dict[str, Any] | None) -> None:
        bucket = self._docs.setdefault(collection, {})
        current = bucket.get(doc_id)
        result = apply_op(current[1] if current else None, op, data)
        if result is None:
            bucket.pop(doc_id, None)
        else:
            bucket[doc_id] = (next(self._clock), result)

    # ── Plain Operations ─────────────────────────────────────────

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        entry = self._docs.get(collection, {}).get(doc_id)
        return copy.deepcopy(entry[1]) if entry else None

    async def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        async with self._lock:
            self._write(collection, doc_id, "merge" if merge else "set", data)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = str(uuid7())
        await self.set(collection, doc_id, data)
        return doc_id

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._lock:
            self._write(collection, doc_id, "delete", None)

    async def query(
        self,
        collection: str,
        filters: list[Filter] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[tuple[str, dict[str, Any]]]:
        validate_filters(filters, order_by)
        rows: list[tuple[str, dict[str, Any]]] = []
        for doc_id, (_, data) in self._docs.get(collection, {}).items():
            if all(
                field_name in data
                and data[field_name] is not None
                and _COMPARATORS[op](data[field_name], value)
                for field_name, op, value in filters or []
            ):
                rows.append((doc_id, copy.deepcopy(data)))

        if order_by is not None:
            rows = [r for r in rows if r[1].get(order_by) is not None]
            rows.sort(key=lambda r: r[1][order_by], reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def list_ids(self, collection: str) -> list[str]:
        return sorted(self._docs.get(collection, {}))

    # ── Transactions ─────────────────────────────────────────────

    def _new_transaction(self) -> Transaction:
        return _MemoryTransaction(self)

    async def _commit(self, tx: Transaction) -> bool:
        async with self._lock:
            for (collection, doc_id), (_, seen_version) in tx.reads.items():
                entry = self._docs.get(collection, {}).get(doc_id)
                current_version = entry[0] if entry else None
                if current_version != seen_version:
                    return False
            for op, collection, doc_id, data in tx.writes:
                self._write(collection, doc_id, op, data)
        return True
