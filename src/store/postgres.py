"""PostgreSQL JSONB document store.

One ``documents`` table keyed by (collection, doc_id). The ``version`` column
is drawn from a shared sequence and drives compare-and-swap commits.
"""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import BigInteger, Column, DateTime, MetaData, String, Table, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from uuid_extensions import uuid7

from src.core.constants import TX_MAX_ATTEMPTS
from src.core.exceptions import TransientStoreError
from src.core.logging import get_logger
from src.store.base import OP_DELETE, OP_MERGE, DocumentStore, Filter, Transaction, validate_filters

log = get_logger(__name__)

metadata = MetaData()

# ── Tables ───────────────────────────────────────────────────────

documents = Table(
    "documents",
    metadata,
    Column("collection", String, primary_key=True),
    Column("doc_id", String, primary_key=True),
    Column("data", JSONB, nullable=False),
    Column("version", BigInteger, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=text("now()")),
)

_UPSERT_SQL = text(
    "INSERT INTO documents (collection, doc_id, data, version, updated_at) "
    "VALUES (:c, :d, CAST(:data AS JSONB), nextval('document_versions'), now()) "
    "ON CONFLICT (collection, doc_id) DO UPDATE SET "
    "data = EXCLUDED.data, version = EXCLUDED.version, updated_at = now()"
)

_MERGE_SQL = text(
    "INSERT INTO documents (collection, doc_id, data, version, updated_at) "
    "VALUES (:c, :d, CAST(:data AS JSONB), nextval('document_versions'), now()) "
    "ON CONFLICT (collection, doc_id) DO UPDATE SET "
    "data = documents.data || EXCLUDED.data, version = EXCLUDED.version, updated_at = now()"
)

_INSERT_IF_ABSENT_SQL = text(
    "INSERT INTO documents (collection, doc_id, data, version, updated_at) "
    "VALUES (:c, :d, CAST(:data AS JSONB), nextval('document_versions'), now()) "
    "ON CONFLICT (collection, doc_id) DO NOTHING"
)

_DELETE_SQL = text("DELETE FROM documents WHERE collection = :c AND doc_id = :d")

_SELECT_SQL = text("SELECT data, version FROM documents WHERE collection = :c AND doc_id = :d")

_LOCK_SQL = text(
    "SELECT version FROM documents WHERE collection = :c AND doc_id = :d FOR UPDATE"
)


class _Conflict(Exception):
    """Raised inside a commit block to roll the connection back."""


def _load(data: Any) -> dict[str, Any]:
    if isinstance(data, str):
        return json.loads(data)
    return dict(data)


def _filter_clause(index: int, field_name: str, op: str, value: Any) -> tuple[str, dict[str, Any]]:
    param = f"f{index}"
    if isinstance(value, bool):
        return f"(data->>'{field_name}')::boolean {op} :{param}", {param: value}
    if isinstance(value, (int, float)):
        return f"(data->>'{field_name}')::double precision {op} :{param}", {param: float(value)}
    return f"data->>'{field_name}' {op} :{param}", {param: str(value)}


class _PostgresTransaction(Transaction):
    def __init__(self, store: PostgresDocumentStore) -> None:
        super().__init__()
        self._store = store

    async def _read(self, collection: str, doc_id: str) -> tuple[dict[str, Any] | None, Any]:
        try:
            async with self._store.engine.connect() as conn:
                row = (await conn.execute(_SELECT_SQL, {"c": collection, "d": doc_id})).mappings().first()
        except SQLAlchemyError as exc:
            raise TransientStoreError("Document read failed", context={"collection": collection}) from exc
        if row is None:
            return None, None
        return _load(row["data"]), row["version"]


class PostgresDocumentStore(DocumentStore):
    """SQLAlchemy async engine over a single JSONB documents table."""

    def __init__(
        self,
        database_url: str | None = None,
        engine: AsyncEngine | None = None,
        max_attempts: int = TX_MAX_ATTEMPTS,
    ) -> None:
        super().__init__(max_attempts=max_attempts)
        if engine is None:
            if database_url is None:
                msg = "database_url or engine is required"
                raise ValueError(msg)
            engine = create_async_engine(database_url, echo=False, pool_size=10, max_overflow=20)
            log.info("database_engine_created", host=database_url.split("@")[-1].split("?")[0])
        self.engine = engine

    async def init_schema(self) -> None:
        """Create the documents table and its version sequence."""
        async with self.engine.begin() as conn:
            await conn.execute(text("CREATE SEQUENCE IF NOT EXISTS document_versions"))
            await conn.run_sync(metadata.create_all)
        log.info("schema_initialized")

    async def close(self) -> None:
        await self.engine.dispose()
        log.info("database_engine_closed")

    # ── Plain Operations ─────────────────────────────────────────

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        try:
            async with self.engine.connect() as conn:
                row = (await conn.execute(_SELECT_SQL, {"c": collection, "d": doc_id})).mappings().first()
        except SQLAlchemyError as exc:
            raise TransientStoreError("Document read failed", context={"collection": collection}) from exc
        return _load(row["data"]) if row else None

    async def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        sql = _MERGE_SQL if merge else _UPSERT_SQL
        try:
            async with self.engine.begin() as conn:
                await conn.execute(sql, {"c": collection, "d": doc_id, "data": json.dumps(data)})
        except SQLAlchemyError as exc:
            raise TransientStoreError("Document write failed", context={"collection": collection}) from exc

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = str(uuid7())
        await self.set(collection, doc_id, data)
        return doc_id

    async def delete(self, collection: str, doc_id: str) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.execute(_DELETE_SQL, {"c": collection, "d": doc_id})
        except SQLAlchemyError as exc:
            raise TransientStoreError("Document delete failed", context={"collection": collection}) from exc

    async def query(
        self,
        collection: str,
        filters: list[Filter] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[tuple[str, dict[str, Any]]]:
        validate_filters(filters, order_by)
        clauses = ["collection = :c"]
        params: dict[str, Any] = {"c": collection}
        for i, (field_name, op, value) in enumerate(filters or []):
            clause, extra = _filter_clause(i, field_name, op, value)
            clauses.append(clause)
            params.update(extra)

        sql = f"SELECT doc_id, data FROM documents WHERE {' AND '.join(clauses)}"
        if order_by is not None:
            sql += f" AND data->>'{order_by}' IS NOT NULL ORDER BY data->>'{order_by}' {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = limit

        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(text(sql), params)
                return [(row["doc_id"], _load(row["data"])) for row in result.mappings().all()]
        except SQLAlchemyError as exc:
            raise TransientStoreError("Document query failed", context={"collection": collection}) from exc

    async def list_ids(self, collection: str) -> list[str]:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    text("SELECT doc_id FROM documents WHERE collection = :c ORDER BY doc_id"),
                    {"c": collection},
                )
                return [row[0] for row in result.all()]
        except SQLAlchemyError as exc:
            raise TransientStoreError("Document listing failed", context={"collection": collection}) from exc

    # ── Transactions ─────────────────────────────────────────────

    def _new_transaction(self) -> Transaction:
        return _PostgresTransaction(self)

    async def _commit(self, tx: Transaction) -> bool:
        try:
            async with self.engine.begin() as conn:
                await self._apply(conn, tx)
        except _Conflict:
            return False
        except SQLAlchemyError as exc:
            raise TransientStoreError("Transaction commit failed") from exc
        return True

    async def _apply(self, conn: AsyncConnection, tx: Transaction) -> None:
        absent: set[tuple[str, str]] = set()
        # Lock in key order so concurrent commits cannot deadlock
        for key in sorted(tx.reads):
            collection, doc_id = key
            seen_version = tx.reads[key][1]
            row = (await conn.execute(_LOCK_SQL, {"c": collection, "d": doc_id})).first()
            current_version = row[0] if row else None
            if current_version != seen_version:
                raise _Conflict
            if current_version is None:
                absent.add(key)

        for op, collection, doc_id, data in tx.writes:
            key = (collection, doc_id)
            params = {"c": collection, "d": doc_id, "data": json.dumps(data or {})}
            if op == OP_DELETE:
                await conn.execute(_DELETE_SQL, params)
            elif key in absent:
                # Another writer may have created the row since our read
                result = await conn.execute(_INSERT_IF_ABSENT_SQL, params)
                if result.rowcount == 0:
                    raise _Conflict
                absent.discard(key)
            elif op == OP_MERGE:
                await conn.execute(_MERGE_SQL, params)
            else:
                await conn.execute(_UPSERT_SQL, params)
