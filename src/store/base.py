"""Document store interface — the narrow contract the quota core needs.

Collections are slash-separated paths (``organizations/acme/usage``) and
documents are JSON-compatible dicts. Atomic read-modify-write goes through
``run_transaction``: every document read inside the callback is version-checked
at commit, and the callback is re-run on conflict.
"""

from __future__ import annotations

import asyncio
import copy
import random
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from src.core.constants import TX_BACKOFF_SECONDS, TX_MAX_ATTEMPTS
from src.core.exceptions import TransactionConflictError, ValidationError
from src.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

Filter = tuple[str, str, Any]
OPERATORS = frozenset({"==", "!=", "<", "<=", ">", ">="})
_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Buffered write operations
OP_SET = "set"
OP_MERGE = "merge"
OP_DELETE = "delete"


def validate_filters(filters: list[Filter] | None, order_by: str | None = None) -> None:
    for field_name, op, value in filters or []:
        if not _FIELD_RE.match(field_name):
            raise ValidationError(f"Invalid filter field: {field_name!r}")
        if op not in OPERATORS:
            raise ValidationError(f"Unsupported filter operator: {op!r}")
        if value is None:
            raise ValidationError("Filtering on null values is not supported")
    if order_by is not None and not _FIELD_RE.match(order_by):
        raise ValidationError(f"Invalid order_by field: {order_by!r}")


def apply_op(current: dict[str, Any] | None, op: str, data: dict[str, Any] | None) -> dict[str, Any] | None:
    """Apply one buffered write to a document snapshot."""
    if op == OP_DELETE:
        return None
    if op == OP_MERGE and current is not None:
        merged = dict(current)
        merged.update(copy.deepcopy(data or {}))
        return merged
    return copy.deepcopy(data or {})


class Transaction(ABC):
    """Read-tracking, write-buffering transaction handle.

    Reads record the version they observed. Writes are buffered and only
    reach the store when the owning ``run_transaction`` commits.
    """

    def __init__(self) -> None:
        # (collection, doc_id) -> (snapshot, version); version None = absent
        self.reads: dict[tuple[str, str], tuple[dict[str, Any] | None, Any]] = {}
        self.writes: list[tuple[str, str, str, dict[str, Any] | None]] = []

    @abstractmethod
    async def _read(self, collection: str, doc_id: str) -> tuple[dict[str, Any] | None, Any]:
        """Return (data, version) straight from the backing store."""
        ...

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        key = (collection, doc_id)
        if key not in self.reads:
            self.reads[key] = await self._read(collection, doc_id)
        snapshot = copy.deepcopy(self.reads[key][0])
        # Read-your-writes within the same transaction
        for op, coll, did, data in self.writes:
            if (coll, did) == key:
                snapshot = apply_op(snapshot, op, data)
        return snapshot

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        self.writes.append((OP_MERGE if merge else OP_SET, collection, doc_id, copy.deepcopy(data)))

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Shallow-merge ``fields`` into the document."""
        self.set(collection, doc_id, fields, merge=True)

    def delete(self, collection: str, doc_id: str) -> None:
        self.writes.append((OP_DELETE, collection, doc_id, None))


class DocumentStore(ABC):
    """Async transactional document store."""

    def __init__(self, max_attempts: int = TX_MAX_ATTEMPTS) -> None:
        self._max_attempts = max_attempts

    # ── Plain Operations ─────────────────────────────────────────

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        ...

    @abstractmethod
    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Insert a document under a fresh time-ordered id and return the id."""
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: list[Filter] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[tuple[str, dict[str, Any]]]:
        ...

    @abstractmethod
    async def list_ids(self, collection: str) -> list[str]:
        ...

    async def close(self) -> None:
        return None

    # ── Transactions ─────────────────────────────────────────────

    @abstractmethod
    def _new_transaction(self) -> Transaction:
        ...

    @abstractmethod
    async def _commit(self, tx: Transaction) -> bool:
        """Atomically apply buffered writes. Return False on a version conflict."""
        ...

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        max_attempts: int | None = None,
    ) -> T:
        """Run ``fn`` with optimistic concurrency, retrying on conflict.

        Raises:
            TransactionConflictError: when every attempt conflicted.
        """
        attempts = max_attempts or self._max_attempts
        for attempt in range(1, attempts + 1):
            tx = self._new_transaction()
            result = await fn(tx)
            if await self._commit(tx):
                return result
            log.debug("transaction_conflict", attempt=attempt)
            await asyncio.sleep(random.uniform(0, TX_BACKOFF_SECONDS * attempt))

        log.warning("transaction_attempts_exhausted", attempts=attempts)
        raise TransactionConflictError(
            f"Transaction failed after {attempts} attempts",
            context={"attempts": attempts},
        )
