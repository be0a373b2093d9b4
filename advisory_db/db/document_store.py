"""
Document Store for the Advisory Ingestion Pipeline

BaseDocumentStore is the narrow interface every component talks to: find, create under a
uniqueness constraint, version-guarded update, counter increment and atomic replace.
PostgresDocumentStore implements it on asyncpg with one JSONB table per collection.

Uniqueness constraints are the only cross-writer synchronization; driver errors are
translated at this boundary into the pipeline's exception taxonomy:
- asyncpg UniqueViolationError -> ConstraintViolation
- version mismatch on a guarded update -> ConcurrencyConflict
- guarded update or increment on a missing document -> NoMatchingDocument
- connection/transport failures -> StoreUnavailable

The version of a document guards its content: update_conditional and find_one_and_replace
bump it, counter increments and update_fields touches do not.
"""

import abc
import asyncio
import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

import asyncpg

from ..config.database_config import create_database_pool
from ..sources.base.exceptions import (
    ConcurrencyConflict,
    ConstraintViolation,
    NoMatchingDocument,
    StoreUnavailable,
)
from ..sources.base.models import CREATED_FIELD, META_FIELDS, REF_FIELD, UPDATED_FIELD, VERSION_FIELD
from .schema import COLLECTION_KEYS, SCHEMA_QUERIES

logger = logging.getLogger(__name__)

CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.InterfaceError,
)


def natural_key(collection: str, key: Dict[str, Any]) -> str:
    """Serialize the key fields of a collection into the unique natural_key column value"""
    try:
        fields = COLLECTION_KEYS[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}")
    missing = [f for f in fields if f not in key]
    if missing:
        raise ValueError(f"Key for {collection} is missing fields: {missing}")
    return json.dumps([key[f] for f in fields], separators=(',', ':'))


def strip_meta(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in doc.items() if k not in META_FIELDS}


class BaseDocumentStore(abc.ABC):
    """Abstract document store used by the resolver, upserter and queries"""

    @abc.abstractmethod
    async def find_one(self, collection: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Document for the natural key, or None"""

    @abc.abstractmethod
    async def find_many(self, collection: str, filter: Optional[Dict[str, Any]] = None,
                        order_by: Optional[str] = None, descending: bool = True,
                        limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Documents containing `filter` (JSON containment semantics)"""

    @abc.abstractmethod
    async def count(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        pass

    @abc.abstractmethod
    async def create_unique(self, collection: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new document; ConstraintViolation if its natural key is taken"""

    @abc.abstractmethod
    async def update_conditional(self, collection: str, key: Dict[str, Any], patch: Dict[str, Any],
                                 expected_version: int) -> Dict[str, Any]:
        """Merge `patch` into the document if its version still equals `expected_version`"""

    @abc.abstractmethod
    async def update_fields(self, collection: str, key: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
        """Merge `patch` into the document without a version check"""

    @abc.abstractmethod
    async def increment_counter(self, collection: str, key: Dict[str, Any], field: str,
                                amount: int = 1) -> None:
        pass

    @abc.abstractmethod
    async def find_one_and_replace(self, collection: str, key: Dict[str, Any], doc: Dict[str, Any],
                                   upsert: bool = True) -> Optional[Dict[str, Any]]:
        """Atomically replace the document body, creating it when `upsert` is set"""

    async def close(self):
        pass


class PostgresDocumentStore(BaseDocumentStore):
    """Document store on PostgreSQL JSONB tables through an asyncpg pool"""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @classmethod
    async def connect(cls, config: Dict[str, Any]) -> 'PostgresDocumentStore':
        try:
            pool = await create_database_pool(config)
        except CONNECTION_ERRORS as e:
            logger.error(f"❌ Failed to connect to document store at {config.get('host')}: {e}")
            raise StoreUnavailable(f"Cannot connect to document store: {e}") from e
        logger.info(f"✅ Connected to document store {config.get('database')}@{config.get('host')}")
        return cls(pool)

    async def close(self):
        if self.pool:
            await self.pool.close()
            logger.info("📤 Document store pool closed")

    async def initialize_schema(self):
        """Create collection tables and indexes if they do not exist"""
        with self._translate_errors('schema'):
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    for query in SCHEMA_QUERIES:
                        await conn.execute(query)
        logger.info("✅ Document store schema initialized")

    @contextmanager
    def _translate_errors(self, collection: str, key: Optional[Dict[str, Any]] = None):
        try:
            yield
        except asyncpg.exceptions.UniqueViolationError as e:
            raise ConstraintViolation(f"Unique key already exists in {collection}: {key}",
                                      collection=collection, key=key) from e
        except CONNECTION_ERRORS as e:
            raise StoreUnavailable(f"Document store unavailable during {collection} operation: {e}") from e

    @staticmethod
    def _row_to_document(row) -> Dict[str, Any]:
        doc = dict(row['doc'])
        doc[REF_FIELD] = row['id']
        doc[VERSION_FIELD] = row['version']
        doc[CREATED_FIELD] = row['created_at'].isoformat()
        doc[UPDATED_FIELD] = row['updated_at'].isoformat()
        return doc

    async def find_one(self, collection, key):
        query = f"SELECT id, doc, version, created_at, updated_at FROM {collection} WHERE natural_key = $1"
        with self._translate_errors(collection, key):
            row = await self.pool.fetchrow(query, natural_key(collection, key))
        return self._row_to_document(row) if row else None

    async def find_many(self, collection, filter=None, order_by=None, descending=True, limit=None):
        query = f"SELECT id, doc, version, created_at, updated_at FROM {collection} WHERE doc @> $1::jsonb"
        args: List[Any] = [filter or {}]
        if order_by:
            args.append(order_by)
            query += f" ORDER BY doc -> $2::text {'DESC' if descending else 'ASC'} NULLS LAST, id"
        else:
            query += " ORDER BY id"
        if limit:
            args.append(limit)
            query += f" LIMIT ${len(args)}"
        with self._translate_errors(collection):
            rows = await self.pool.fetch(query, *args)
        return [self._row_to_document(row) for row in rows]

    async def count(self, collection, filter=None):
        query = f"SELECT COUNT(*) FROM {collection} WHERE doc @> $1::jsonb"
        with self._translate_errors(collection):
            return await self.pool.fetchval(query, filter or {})

    async def create_unique(self, collection, doc):
        body = strip_meta(doc)
        key = {f: body.get(f) for f in COLLECTION_KEYS[collection]}
        query = f"""
        INSERT INTO {collection} (natural_key, doc) VALUES ($1, $2::jsonb)
        RETURNING id, doc, version, created_at, updated_at
        """
        with self._translate_errors(collection, key):
            row = await self.pool.fetchrow(query, natural_key(collection, key), body)
        return self._row_to_document(row)

    async def update_conditional(self, collection, key, patch, expected_version):
        update_query = f"""
        UPDATE {collection}
        SET doc = doc || $2::jsonb, version = version + 1, updated_at = CURRENT_TIMESTAMP
        WHERE natural_key = $1 AND version = $3
        RETURNING id, doc, version, created_at, updated_at
        """
        nkey = natural_key(collection, key)
        with self._translate_errors(collection, key):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(update_query, nkey, strip_meta(patch), expected_version)
                if row:
                    return self._row_to_document(row)
                actual = await conn.fetchval(f"SELECT version FROM {collection} WHERE natural_key = $1", nkey)
        if actual is None:
            raise NoMatchingDocument(f"No {collection} document for {key}", collection=collection, key=key)
        raise ConcurrencyConflict(
            f"{collection} document {key} is at version {actual}, expected {expected_version}",
            collection=collection, key=key, expected_version=expected_version, actual_version=actual,
        )

    async def update_fields(self, collection, key, patch):
        query = f"""
        UPDATE {collection}
        SET doc = doc || $2::jsonb, updated_at = CURRENT_TIMESTAMP
        WHERE natural_key = $1
        RETURNING id, doc, version, created_at, updated_at
        """
        with self._translate_errors(collection, key):
            row = await self.pool.fetchrow(query, natural_key(collection, key), strip_meta(patch))
        if row is None:
            raise NoMatchingDocument(f"No {collection} document for {key}", collection=collection, key=key)
        return self._row_to_document(row)

    async def increment_counter(self, collection, key, field, amount=1):
        query = f"""
        UPDATE {collection}
        SET doc = jsonb_set(doc, ARRAY[$2::text], to_jsonb(COALESCE((doc->>$2::text)::bigint, 0) + $3::bigint)),
            updated_at = CURRENT_TIMESTAMP
        WHERE natural_key = $1
        RETURNING id
        """
        with self._translate_errors(collection, key):
            ref = await self.pool.fetchval(query, natural_key(collection, key), field, amount)
        if ref is None:
            raise NoMatchingDocument(f"No {collection} document for {key}", collection=collection, key=key)

    async def find_one_and_replace(self, collection, key, doc, upsert=True):
        body = strip_meta(doc)
        nkey = natural_key(collection, key)
        if upsert:
            query = f"""
            INSERT INTO {collection} (natural_key, doc) VALUES ($1, $2::jsonb)
            ON CONFLICT (natural_key) DO UPDATE SET
                doc = EXCLUDED.doc,
                version = {collection}.version + 1,
                updated_at = CURRENT_TIMESTAMP
            RETURNING id, doc, version, created_at, updated_at
            """
        else:
            query = f"""
            UPDATE {collection}
            SET doc = $2::jsonb, version = version + 1, updated_at = CURRENT_TIMESTAMP
            WHERE natural_key = $1
            RETURNING id, doc, version, created_at, updated_at
            """
        with self._translate_errors(collection, key):
            row = await self.pool.fetchrow(query, nkey, body)
        return self._row_to_document(row) if row else None
