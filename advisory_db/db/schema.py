"""
Document store schema

Each collection is a table holding one JSONB document per row, keyed by a unique
natural_key derived from the collection's key fields. The integer version column backs
optimistic concurrency; created_at/updated_at are managed by the store.
"""

from typing import Dict, List, Tuple

from ..sources.base.models import ADVISORIES, OFFERINGS, ORGANIZATIONS, SYNC_STATE

# Natural key fields per collection, in key order
COLLECTION_KEYS: Dict[str, Tuple[str, ...]] = {
    ADVISORIES: ('advisory_id',),
    ORGANIZATIONS: ('name',),
    OFFERINGS: ('name', 'organization_ref'),
    SYNC_STATE: ('name',),
}

DOCUMENT_TABLE_TEMPLATE = """
CREATE TABLE IF NOT EXISTS {table} (
    id BIGSERIAL PRIMARY KEY,
    natural_key TEXT NOT NULL,
    doc JSONB NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    CONSTRAINT {table}_natural_key_unique UNIQUE (natural_key)
)
"""

DOCUMENT_INDEX_TEMPLATE = "CREATE INDEX IF NOT EXISTS {table}_doc_gin ON {table} USING GIN (doc jsonb_path_ops)"

SECONDARY_INDEXES = [
    f"CREATE INDEX IF NOT EXISTS {ADVISORIES}_published_idx ON {ADVISORIES} ((doc->>'published_at'))",
    f"CREATE INDEX IF NOT EXISTS {ADVISORIES}_severity_idx ON {ADVISORIES} ((doc->>'severity_label'))",
    f"CREATE INDEX IF NOT EXISTS {OFFERINGS}_organization_name_idx ON {OFFERINGS} ((doc->>'organization_name'))",
]


def build_schema_queries() -> List[str]:
    queries = []
    for table in COLLECTION_KEYS:
        queries.append(DOCUMENT_TABLE_TEMPLATE.format(table=table))
        queries.append(DOCUMENT_INDEX_TEMPLATE.format(table=table))
    queries.extend(SECONDARY_INDEXES)
    return queries


SCHEMA_QUERIES = build_schema_queries()
