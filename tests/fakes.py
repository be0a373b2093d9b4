"""
In-memory collaborators for the ingestion tests

InMemoryDocumentStore follows PostgresDocumentStore semantics: unique natural keys,
store-managed ref/version/timestamps, JSON containment filters and the same exception
translation. Every operation yields to the event loop once before touching state, so tasks
started together with asyncio.gather interleave between reads and writes like they would
against a real database.
"""

import asyncio
import copy
import json
from collections import defaultdict
from typing import Any, Dict, List, Optional

from advisory_db.db.document_store import BaseDocumentStore, natural_key, strip_meta
from advisory_db.db.schema import COLLECTION_KEYS
from advisory_db.sources.base.exceptions import (
    ConcurrencyConflict,
    ConstraintViolation,
    MalformedRecord,
    NoMatchingDocument,
)
from advisory_db.sources.base.models import CREATED_FIELD, REF_FIELD, UPDATED_FIELD, VERSION_FIELD
from advisory_db.sources.cvelist.git_source import BaseCorpusSource


def json_contains(doc: Any, pattern: Any) -> bool:
    """JSONB @> semantics"""
    if isinstance(pattern, dict):
        return isinstance(doc, dict) and all(k in doc and json_contains(doc[k], v) for k, v in pattern.items())
    if isinstance(pattern, list):
        return isinstance(doc, list) and all(any(json_contains(d, p) for d in doc) for p in pattern)
    return doc == pattern


class InMemoryDocumentStore(BaseDocumentStore):
    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.next_id = 1
        self.tick = 0
        self.closed = False
        self.calls: Dict[str, int] = defaultdict(int)
        # operation name -> exceptions raised by the next calls of that operation
        self.faults: Dict[str, List[Exception]] = defaultdict(list)

    def inject(self, operation: str, *errors: Exception):
        self.faults[operation].extend(errors)

    async def _enter(self, operation: str):
        self.calls[operation] += 1
        await asyncio.sleep(0)
        if self.faults[operation]:
            raise self.faults[operation].pop(0)

    def _timestamp(self) -> str:
        self.tick += 1
        return f"2025-01-01T00:00:{self.tick % 60:02d}.{self.tick:06d}+00:00"

    @staticmethod
    def _to_document(row: Dict[str, Any]) -> Dict[str, Any]:
        # JSON round trip: whatever is stored must be serializable, like a JSONB column
        doc = json.loads(json.dumps(row['doc']))
        doc[REF_FIELD] = row['id']
        doc[VERSION_FIELD] = row['version']
        doc[CREATED_FIELD] = row['created_at']
        doc[UPDATED_FIELD] = row['updated_at']
        return doc

    def _insert(self, collection: str, nkey: str, body: Dict[str, Any]) -> Dict[str, Any]:
        now = self._timestamp()
        row = {'id': self.next_id, 'doc': json.loads(json.dumps(body)), 'version': 1,
               'created_at': now, 'updated_at': now}
        self.next_id += 1
        self.tables[collection][nkey] = row
        return row

    def _touch(self, row: Dict[str, Any]):
        row['version'] += 1
        row['updated_at'] = self._timestamp()

    def rows(self, collection: str) -> List[Dict[str, Any]]:
        return [self._to_document(row) for row in sorted(self.tables[collection].values(),
                                                         key=lambda r: r['id'])]

    async def find_one(self, collection, key):
        await self._enter('find_one')
        row = self.tables[collection].get(natural_key(collection, key))
        return self._to_document(row) if row else None

    async def find_many(self, collection, filter=None, order_by=None, descending=True, limit=None):
        await self._enter('find_many')
        docs = [d for d in self.rows(collection) if json_contains(d, filter or {})]
        if order_by:
            present = [d for d in docs if d.get(order_by) is not None]
            absent = [d for d in docs if d.get(order_by) is None]
            present.sort(key=lambda d: d[order_by], reverse=descending)
            docs = present + absent
        return docs[:limit] if limit else docs

    async def count(self, collection, filter=None):
        await self._enter('count')
        return sum(1 for d in self.rows(collection) if json_contains(d, filter or {}))

    async def create_unique(self, collection, doc):
        await self._enter('create_unique')
        body = strip_meta(doc)
        key = {f: body.get(f) for f in COLLECTION_KEYS[collection]}
        nkey = natural_key(collection, key)
        if nkey in self.tables[collection]:
            raise ConstraintViolation(f"Unique key already exists in {collection}: {key}",
                                      collection=collection, key=key)
        return self._to_document(self._insert(collection, nkey, body))

    async def update_conditional(self, collection, key, patch, expected_version):
        await self._enter('update_conditional')
        row = self.tables[collection].get(natural_key(collection, key))
        if row is None:
            raise NoMatchingDocument(f"No {collection} document for {key}", collection=collection, key=key)
        if row['version'] != expected_version:
            raise ConcurrencyConflict(
                f"{collection} document {key} is at version {row['version']}, expected {expected_version}",
                collection=collection, key=key, expected_version=expected_version,
                actual_version=row['version'],
            )
        row['doc'].update(json.loads(json.dumps(strip_meta(patch))))
        self._touch(row)
        return self._to_document(row)

    async def update_fields(self, collection, key, patch):
        await self._enter('update_fields')
        row = self.tables[collection].get(natural_key(collection, key))
        if row is None:
            raise NoMatchingDocument(f"No {collection} document for {key}", collection=collection, key=key)
        row['doc'].update(json.loads(json.dumps(strip_meta(patch))))
        row['updated_at'] = self._timestamp()
        return self._to_document(row)

    async def increment_counter(self, collection, key, field, amount=1):
        await self._enter('increment_counter')
        row = self.tables[collection].get(natural_key(collection, key))
        if row is None:
            raise NoMatchingDocument(f"No {collection} document for {key}", collection=collection, key=key)
        row['doc'][field] = row['doc'].get(field, 0) + amount
        row['updated_at'] = self._timestamp()

    async def find_one_and_replace(self, collection, key, doc, upsert=True):
        await self._enter('find_one_and_replace')
        nkey = natural_key(collection, key)
        body = strip_meta(doc)
        row = self.tables[collection].get(nkey)
        if row is None:
            if not upsert:
                return None
            row = self._insert(collection, nkey, body)
        else:
            row['doc'] = json.loads(json.dumps(body))
            self._touch(row)
        return self._to_document(row)

    async def close(self):
        self.closed = True


class FakeCorpusSource(BaseCorpusSource):
    """Corpus with explicit revisions: commit() records which paths each step touched"""

    def __init__(self, records: Optional[Dict[str, Any]] = None, revision: str = 'a' * 40):
        self.records: Dict[str, Any] = dict(records or {})
        self.revision = revision
        self.known_revisions = {revision}
        self.diffs: Dict[tuple, List[str]] = {}
        self.reads: Dict[str, int] = defaultdict(int)
        self.materialized: List[tuple] = []

    def commit(self, changes: Dict[str, Any], revision: str, deleted: tuple = ()):
        previous = self.revision
        self.records.update(changes)
        for path in deleted:
            self.records.pop(path, None)
        self.diffs[(previous, revision)] = list(changes)
        self.known_revisions.add(revision)
        self.revision = revision

    async def materialize_subtree(self, remote_location, subtree_path):
        self.materialized.append((remote_location, subtree_path))
        return self.revision

    async def current_revision(self):
        return self.revision

    async def has_revision(self, revision):
        return revision in self.known_revisions

    async def diff(self, from_revision, to_revision):
        return list(self.diffs.get((from_revision, to_revision), []))

    async def list_files(self):
        return list(self.records)

    async def read_record(self, location):
        self.reads[location] += 1
        await asyncio.sleep(0)
        if location not in self.records:
            raise MalformedRecord(f"Record file not found: {location}", 'fake', source_locator=location)
        value = self.records[location]
        if isinstance(value, Exception):
            raise value
        return copy.deepcopy(value)


def legacy_record(advisory_id: str, description: str = "Buffer overflow in the parser",
                  affects: Optional[Dict[str, Dict[str, List[tuple]]]] = None,
                  cvss: Any = None, state: str = "PUBLIC") -> Dict[str, Any]:
    """
    CVE JSON 4.0 document

    affects: {vendor: {product: [(version_value, version_affected), ...]}}
    """
    vendor_data = []
    for vendor, products in (affects or {}).items():
        vendor_data.append({
            'vendor_name': vendor,
            'product': {'product_data': [
                {'product_name': product,
                 'version': {'version_data': [
                     {'version_value': label, 'version_affected': op} for label, op in versions
                 ]}}
                for product, versions in products.items()
            ]},
        })
    record = {
        'data_type': 'CVE',
        'data_format': 'MITRE',
        'data_version': '4.0',
        'CVE_data_meta': {
            'ID': advisory_id,
            'ASSIGNER': 'security@example.com',
            'STATE': state,
            'DATE_PUBLIC': '2021-03-04T00:00:00.000Z',
        },
        'affects': {'vendor': {'vendor_data': vendor_data}},
        'description': {'description_data': [{'lang': 'eng', 'value': description}]},
        'problemtype': {'problemtype_data': [
            {'description': [{'lang': 'eng', 'value': 'CWE-787 Out-of-bounds Write'}]}
        ]},
        'references': {'reference_data': [
            {'url': 'https://example.com/advisory', 'name': 'vendor advisory', 'refsource': 'MISC'}
        ]},
    }
    if cvss is not None:
        record['impact'] = {'cvss': cvss}
    return record


def v5_record(advisory_id: str, description: str = "Buffer overflow in the parser",
              affects: Optional[Dict[str, Dict[str, List[tuple]]]] = None,
              cna_metrics: Optional[List[Dict[str, Any]]] = None,
              adp_metrics: Optional[List[List[Dict[str, Any]]]] = None,
              state: str = "PUBLISHED") -> Dict[str, Any]:
    """
    CVE JSON 5.x document

    affects: {vendor: {product: [(version, status), ...]}}
    adp_metrics: one metrics list per adp container
    """
    affected = []
    for vendor, products in (affects or {}).items():
        for product, versions in products.items():
            affected.append({
                'vendor': vendor,
                'product': product,
                'versions': [{'version': label, 'status': status} for label, status in versions],
            })
    record = {
        'dataType': 'CVE_RECORD',
        'dataVersion': '5.1',
        'cveMetadata': {
            'cveId': advisory_id,
            'assignerOrgId': '8254265b-2729-46b6-b9e3-3dfca2d5bfca',
            'assignerShortName': 'mitre',
            'state': state,
            'datePublished': '2021-03-04T00:00:00.000Z',
            'dateUpdated': '2024-08-03T18:00:00.000Z',
        },
        'containers': {
            'cna': {
                'descriptions': [{'lang': 'en', 'value': description}],
                'affected': affected,
                'problemTypes': [{'descriptions': [
                    {'lang': 'en', 'type': 'CWE', 'cweId': 'CWE-787',
                     'description': 'CWE-787 Out-of-bounds Write'}
                ]}],
                'references': [{'url': 'https://example.com/advisory', 'name': 'vendor advisory'}],
            },
        },
    }
    if cna_metrics is not None:
        record['containers']['cna']['metrics'] = cna_metrics
    if adp_metrics is not None:
        record['containers']['adp'] = [{'metrics': metrics} for metrics in adp_metrics]
    return record


def cvss(version: str, score: float, severity: str) -> Dict[str, Any]:
    """One CVE 5.x metrics entry"""
    key = 'cvssV' + version.replace('.', '_')
    return {key: {'version': version, 'baseScore': score, 'baseSeverity': severity}}
