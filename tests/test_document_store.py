"""Tests for the PostgreSQL document store: natural keys and driver error translation."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from advisory_db.db import document_store
from advisory_db.db.document_store import PostgresDocumentStore, natural_key, strip_meta
from advisory_db.db.schema import SCHEMA_QUERIES
from advisory_db.sources.base.exceptions import (
    ConcurrencyConflict,
    ConstraintViolation,
    NoMatchingDocument,
    StoreUnavailable,
)
from advisory_db.sources.base.models import ADVISORIES, OFFERINGS, ORGANIZATIONS

CREATED = datetime(2025, 1, 1, tzinfo=timezone.utc)


def row(doc, id=1, version=1):
    return {'id': id, 'doc': doc, 'version': version, 'created_at': CREATED, 'updated_at': CREATED}


@pytest.fixture
def pool():
    pool = MagicMock()
    pool.fetchrow = AsyncMock()
    pool.fetchval = AsyncMock()
    pool.fetch = AsyncMock(return_value=[])
    return pool


class TestNaturalKey:

    def test_fields_in_key_order(self):
        assert natural_key(OFFERINGS, {'organization_ref': 7, 'name': 'Widget'}) == '["Widget",7]'

    def test_unknown_collection(self):
        with pytest.raises(ValueError):
            natural_key('vendors', {'name': 'Acme'})

    def test_missing_field(self):
        with pytest.raises(ValueError):
            natural_key(OFFERINGS, {'name': 'Widget'})

    def test_strip_meta(self):
        assert strip_meta({'name': 'Acme', '_ref': 1, '_version': 2}) == {'name': 'Acme'}


class TestSchema:

    def test_every_collection_has_a_unique_natural_key(self):
        for table in ('advisories', 'organizations', 'offerings', 'sync_state'):
            assert any(f"CREATE TABLE IF NOT EXISTS {table}" in q and 'UNIQUE (natural_key)' in q
                       for q in SCHEMA_QUERIES)


class TestErrorTranslation:

    @pytest.mark.asyncio
    async def test_find_one_adds_store_fields(self, pool):
        pool.fetchrow.return_value = row({'name': 'Acme'}, id=5, version=3)
        doc = await PostgresDocumentStore(pool).find_one(ORGANIZATIONS, {'name': 'Acme'})
        assert doc['name'] == 'Acme'
        assert (doc['_ref'], doc['_version']) == (5, 3)
        assert doc['_created_at'] == CREATED.isoformat()

    @pytest.mark.asyncio
    async def test_unique_violation_is_constraint_violation(self, pool):
        pool.fetchrow.side_effect = asyncpg.exceptions.UniqueViolationError("duplicate key")
        with pytest.raises(ConstraintViolation) as exc_info:
            await PostgresDocumentStore(pool).create_unique(ORGANIZATIONS, {'name': 'Acme'})
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_connection_error_is_store_unavailable(self, pool):
        pool.fetchrow.side_effect = ConnectionRefusedError("refused")
        with pytest.raises(StoreUnavailable) as exc_info:
            await PostgresDocumentStore(pool).find_one(ADVISORIES, {'advisory_id': 'CVE-2024-0001'})
        assert exc_info.value.fatal_for_run

    @pytest.mark.asyncio
    async def test_increment_on_missing_document(self, pool):
        pool.fetchval.return_value = None
        with pytest.raises(NoMatchingDocument):
            await PostgresDocumentStore(pool).increment_counter(ORGANIZATIONS, {'name': 'Acme'}, 'advisory_count')

    @pytest.mark.asyncio
    async def test_update_fields_on_missing_document(self, pool):
        pool.fetchrow.return_value = None
        with pytest.raises(NoMatchingDocument):
            await PostgresDocumentStore(pool).update_fields(ORGANIZATIONS, {'name': 'Acme'}, {'last_seen_at': None})

    @pytest.mark.asyncio
    @pytest.mark.parametrize('actual, expected_error', [
        (3, ConcurrencyConflict),
        (None, NoMatchingDocument),
    ])
    async def test_guarded_update_miss(self, pool, actual, expected_error):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=None)
        conn.fetchval = AsyncMock(return_value=actual)
        pool.acquire.return_value.__aenter__.return_value = conn
        with pytest.raises(expected_error):
            await PostgresDocumentStore(pool).update_conditional(
                OFFERINGS, {'name': 'Widget', 'organization_ref': 1}, {'versions': []}, expected_version=2)

    @pytest.mark.asyncio
    async def test_guarded_update_hit(self, pool):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value=row({'name': 'Widget', 'organization_ref': 1}, version=3))
        pool.acquire.return_value.__aenter__.return_value = conn
        doc = await PostgresDocumentStore(pool).update_conditional(
            OFFERINGS, {'name': 'Widget', 'organization_ref': 1}, {'versions': [], '_version': 2}, expected_version=2)
        assert doc['_version'] == 3
        args = conn.fetchrow.await_args.args
        assert args[1:] == ('["Widget",1]', {'versions': []}, 2)

    @pytest.mark.asyncio
    async def test_connect_failure_is_store_unavailable(self, monkeypatch):
        monkeypatch.setattr(document_store, 'create_database_pool', AsyncMock(side_effect=OSError("no route")))
        with pytest.raises(StoreUnavailable):
            await PostgresDocumentStore.connect({'host': 'db', 'database': 'advisory_db'})
