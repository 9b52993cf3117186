"""
Document Store Abstraction

This module defines the DocumentStore interface and provides two implementations:
- InMemoryDocumentStore: For development and testing
- PostgresDocumentStore: For production (asyncpg, JSONB documents)

The DocumentStore is responsible for:
- Keyed get / create / update / query per collection
- Optimistic concurrency (every document carries a `version`)
- Unique constraints on a few natural keys
- Atomic named sequences (case numbers, audit ordering)

The repositories retain responsibility for:
- Converting documents to and from schema models
- Business rules and authorization

There are NO cross-key transactions. A write touches one document.

CONCURRENCY CONTRACT:
    doc = await store.get("cases", case_id)
    await store.update("cases", case_id, {"status": "closed"},
                       expected_version=doc["version"])

If another writer got there first, update() raises ConcurrencyError
and nothing is written.
"""

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID


def _to_json(obj):
    # Documents are stored as JSON; these are the non-JSON types models hand us
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"{type(obj).__name__} is not storable in a document")


# ============================================================
# COLLECTIONS & CONSTRAINTS
# ============================================================

ACTORS = "actors"
CASEWORKERS = "caseworkers"
CASES = "cases"
CASE_UPDATES = "case_updates"
DOCUMENT_REFS = "document_refs"

# Natural keys that must be unique within a collection.
# PostgresDocumentStore enforces the same set through partial unique
# indexes in schema.sql.
UNIQUE_FIELDS: dict[str, tuple[str, ...]] = {
    ACTORS: ("wallet_address",),
    CASEWORKERS: ("actor_id", "badge"),
    CASES: ("case_number",),
}


# ============================================================
# EXCEPTIONS
# ============================================================

class DocumentStoreError(Exception):
    """Base exception for document store errors (generally transient)."""
    pass


class DocumentNotFoundError(DocumentStoreError):
    """Raised when updating a document that does not exist."""
    pass


class ConcurrencyError(DocumentStoreError):
    """Raised when a conditional update sees a different version."""

    def __init__(self, collection: str, doc_id: str, expected: int, actual: int):
        super().__init__(
            f"{collection}/{doc_id}: expected version {expected}, found {actual}"
        )
        self.collection = collection
        self.doc_id = doc_id
        self.expected = expected
        self.actual = actual


class DuplicateKeyError(DocumentStoreError):
    """Raised when a create would violate a unique constraint."""

    def __init__(self, collection: str, field: str, value: Any):
        super().__init__(f"{collection}.{field} already exists: {value!r}")
        self.collection = collection
        self.field = field
        self.value = value


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class DocumentStore(ABC):
    """
    Abstract base class for document storage.

    Documents are JSON-compatible dicts with a string `id`.
    The store owns the `version` field:
    - create() sets version = 1
    - update() increments it
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: Any) -> Optional[dict]:
        """Fetch a document. Missing key returns None, not an error."""
        pass

    @abstractmethod
    async def create(self, collection: str, doc: dict) -> dict:
        """
        Insert a new document.

        Raises:
            DuplicateKeyError: id or a unique field already exists
        """
        pass

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: Any,
        changes: dict,
        expected_version: Optional[int] = None,
    ) -> dict:
        """
        Apply `changes` to one document.

        Args:
            expected_version: If given, the write only happens when the
                stored version matches.

        Returns:
            The updated document (with incremented version)

        Raises:
            DocumentNotFoundError: no such document
            ConcurrencyError: version mismatch
        """
        pass

    @abstractmethod
    async def query(self, collection: str, **filters: Any) -> list[dict]:
        """Return documents whose top-level fields equal all `filters`. Unordered."""
        pass

    @abstractmethod
    async def next_sequence(self, name: str) -> int:
        """Atomically increment and return a named counter (first value is 1)."""
        pass

    async def list_all(self, collection: str) -> list[dict]:
        return await self.query(collection)

    async def ping(self) -> None:
        """Raise if the store is unreachable."""
        return None

    async def close(self) -> None:
        return None


def _prepare_new(doc: dict) -> dict:
    data = json.loads(json.dumps(doc, default=_to_json))
    if "id" not in data:
        raise DocumentStoreError("Documents must carry an 'id'")
    data["id"] = str(data["id"])
    data["version"] = 1
    return data


def _normalize_filters(filters: dict) -> dict:
    return json.loads(json.dumps(filters, default=_to_json))


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store guarded by one asyncio.Lock.

    Returns deep copies so callers never alias stored state. Used by the
    tests and by single-process development runs; nothing survives a restart.
    """

    def __init__(self):
        self._collections: dict[str, dict[str, dict]] = {}
        self._sequences: dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _bucket(self, collection: str) -> dict[str, dict]:
        return self._collections.setdefault(collection, {})

    async def get(self, collection: str, doc_id: Any) -> Optional[dict]:
        doc = self._bucket(collection).get(str(doc_id))
        return copy.deepcopy(doc) if doc is not None else None

    async def create(self, collection: str, doc: dict) -> dict:
        data = _prepare_new(doc)
        async with self._lock:
            bucket = self._bucket(collection)
            if data["id"] in bucket:
                raise DuplicateKeyError(collection, "id", data["id"])
            for field in UNIQUE_FIELDS.get(collection, ()):
                value = data.get(field)
                if value is None:
                    continue
                if any(existing.get(field) == value for existing in bucket.values()):
                    raise DuplicateKeyError(collection, field, value)
            bucket[data["id"]] = data
            return copy.deepcopy(data)

    async def update(
        self,
        collection: str,
        doc_id: Any,
        changes: dict,
        expected_version: Optional[int] = None,
    ) -> dict:
        key = str(doc_id)
        patch = _normalize_filters(changes)
        async with self._lock:
            bucket = self._bucket(collection)
            current = bucket.get(key)
            if current is None:
                raise DocumentNotFoundError(f"{collection}/{key} does not exist")
            if expected_version is not None and current["version"] != expected_version:
                raise ConcurrencyError(collection, key, expected_version, current["version"])

            updated = {**current, **patch}
            updated["id"] = key
            updated["version"] = current["version"] + 1
            bucket[key] = updated
            return copy.deepcopy(updated)

    async def query(self, collection: str, **filters: Any) -> list[dict]:
        wanted = _normalize_filters(filters)
        return [
            copy.deepcopy(doc)
            for doc in self._bucket(collection).values()
            if all(doc.get(k) == v for k, v in wanted.items())
        ]

    async def next_sequence(self, name: str) -> int:
        async with self._lock:
            value = self._sequences.get(name, 0) + 1
            self._sequences[name] = value
            return value

    def clear(self) -> None:
        """Clear all documents (for testing)."""
        self._collections.clear()
        self._sequences.clear()


# ============================================================
# POSTGRESQL IMPLEMENTATION (ASYNC)
# ============================================================

class PostgresDocumentStore(DocumentStore):
    """
    Documents as JSONB rows in one `documents` table, keyed by
    (collection, id).

    Conditional updates lock the row (SELECT ... FOR UPDATE) and compare
    versions; natural-key uniqueness comes from the partial indexes in
    schema.sql, whose names map back to fields through UNIQUE_INDEXES.
    """

    STATEMENT_TIMEOUT_MS = 10_000

    # Partial unique index name -> (collection, field)
    UNIQUE_INDEXES = {
        "documents_actors_wallet_address_key": (ACTORS, "wallet_address"),
        "documents_caseworkers_actor_id_key": (CASEWORKERS, "actor_id"),
        "documents_caseworkers_badge_key": (CASEWORKERS, "badge"),
        "documents_cases_case_number_key": (CASES, "case_number"),
        "documents_pkey": (None, "id"),
    }

    def __init__(self, pool, statement_timeout_ms: int = STATEMENT_TIMEOUT_MS):
        # pool is an asyncpg.Pool; see connect()
        self._pool = pool
        self._statement_timeout_ms = statement_timeout_ms

    @classmethod
    async def connect(cls, config) -> "PostgresDocumentStore":
        """Create a pool from a DatabaseConfig and wrap it."""
        import asyncpg

        pool = await asyncpg.create_pool(
            dsn=config.to_url(),
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
            timeout=config.pool_timeout,
        )
        return cls(pool)

    @staticmethod
    def _load(body) -> dict:
        # asyncpg returns JSONB as text unless a codec is registered
        return json.loads(body) if isinstance(body, str) else dict(body)

    def _translate(self, e: Exception, collection: str, doc: Optional[dict] = None) -> Exception:
        import asyncpg

        if isinstance(e, asyncpg.UniqueViolationError):
            coll, field = self.UNIQUE_INDEXES.get(
                getattr(e, "constraint_name", None) or "", (collection, "id")
            )
            value = (doc or {}).get(field)
            return DuplicateKeyError(coll or collection, field, value)
        if isinstance(e, asyncpg.QueryCanceledError):
            return DocumentStoreError("Query timed out - statement took too long.")
        return DocumentStoreError(f"Document store failure: {e}")

    async def get(self, collection: str, doc_id: Any) -> Optional[dict]:
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT body FROM documents WHERE collection = $1 AND id = $2",
                    collection, str(doc_id),
                )
        except Exception as e:
            raise self._translate(e, collection) from e
        return self._load(row["body"]) if row else None

    async def create(self, collection: str, doc: dict) -> dict:
        data = _prepare_new(doc)
        try:
            async with self._pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO documents (collection, id, version, body)
                    VALUES ($1, $2, 1, $3::jsonb)
                """, collection, data["id"], json.dumps(data))
        except Exception as e:
            raise self._translate(e, collection, data) from e
        return data

    async def update(
        self,
        collection: str,
        doc_id: Any,
        changes: dict,
        expected_version: Optional[int] = None,
    ) -> dict:
        key = str(doc_id)
        patch = _normalize_filters(changes)
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    # SET LOCAL keeps the timeout transaction-scoped
                    await conn.execute(
                        f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'"
                    )
                    row = await conn.fetchrow("""
                        SELECT version, body FROM documents
                        WHERE collection = $1 AND id = $2
                        FOR UPDATE
                    """, collection, key)
                    if row is None:
                        raise DocumentNotFoundError(f"{collection}/{key} does not exist")
                    if expected_version is not None and row["version"] != expected_version:
                        raise ConcurrencyError(collection, key, expected_version, row["version"])

                    updated = {**self._load(row["body"]), **patch}
                    updated["id"] = key
                    updated["version"] = row["version"] + 1
                    await conn.execute("""
                        UPDATE documents
                        SET body = $3::jsonb, version = $4, updated_at = now()
                        WHERE collection = $1 AND id = $2
                    """, collection, key, json.dumps(updated), updated["version"])
        except DocumentStoreError:
            raise
        except Exception as e:
            raise self._translate(e, collection) from e
        return updated

    async def query(self, collection: str, **filters: Any) -> list[dict]:
        try:
            async with self._pool.acquire() as conn:
                if filters:
                    rows = await conn.fetch("""
                        SELECT body FROM documents
                        WHERE collection = $1 AND body @> $2::jsonb
                    """, collection, json.dumps(_normalize_filters(filters)))
                else:
                    rows = await conn.fetch(
                        "SELECT body FROM documents WHERE collection = $1",
                        collection,
                    )
        except Exception as e:
            raise self._translate(e, collection) from e
        return [self._load(row["body"]) for row in rows]

    async def next_sequence(self, name: str) -> int:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchval("""
                    INSERT INTO sequences (name, value) VALUES ($1, 1)
                    ON CONFLICT (name) DO UPDATE SET value = sequences.value + 1
                    RETURNING value
                """, name)
        except Exception as e:
            raise self._translate(e, "sequences") from e

    async def ping(self) -> None:
        try:
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except Exception as e:
            raise self._translate(e, "documents") from e

    async def close(self) -> None:
        await self._pool.close()
