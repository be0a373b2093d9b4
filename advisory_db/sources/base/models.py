"""
Canonical data model for advisory ingestion

Every record dialect normalizes onto AdvisoryDraft; Organization and Offering are the
secondary entities derived from an advisory's affected list. Each model converts to and
from the plain JSON documents held by the document store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import MalformedRecord

# Store-managed metadata keys merged into every document returned by a store
REF_FIELD = '_ref'
VERSION_FIELD = '_version'
CREATED_FIELD = '_created_at'
UPDATED_FIELD = '_updated_at'
META_FIELDS = (REF_FIELD, VERSION_FIELD, CREATED_FIELD, UPDATED_FIELD)

ADVISORIES = 'advisories'
ORGANIZATIONS = 'organizations'
OFFERINGS = 'offerings'
SYNC_STATE = 'sync_state'


class LifecycleState(Enum):
    PUBLIC = "PUBLIC"
    RESERVED = "RESERVED"
    REJECTED = "REJECTED"
    PUBLISHED = "PUBLISHED"


class Dialect(Enum):
    """Record schema generation, decided once per raw document"""
    LEGACY = "A"
    CVE_V5 = "B"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))


@dataclass
class VersionEntry:
    version_label: str
    affected: bool

    def to_document(self) -> Dict[str, Any]:
        return {'version_label': self.version_label, 'affected': self.affected}

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'VersionEntry':
        return cls(version_label=str(doc['version_label']), affected=bool(doc.get('affected')))


def merge_version_sets(existing: Iterable[VersionEntry],
                       incoming: Iterable[VersionEntry]) -> List[VersionEntry]:
    """Merge by label: incoming flags win, labels absent from incoming are retained"""
    merged: Dict[str, bool] = {}
    for entry in existing:
        merged[entry.version_label] = entry.affected
    for entry in incoming:
        merged[entry.version_label] = entry.affected
    return [VersionEntry(label, affected) for label, affected in merged.items()]


@dataclass
class ProblemType:
    description: Optional[str] = None
    weakness_id: Optional[str] = None


@dataclass
class Reference:
    url: str
    name: Optional[str] = None
    source_tag: Optional[str] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class AffectedEntity:
    """Unresolved organization/offering pair as found in the raw record"""
    organization_name: Optional[str]
    offering_name: Optional[str]
    versions: List[VersionEntry] = field(default_factory=list)


@dataclass
class AffectedEntityRef:
    """Resolved cross-reference embedded in the persisted advisory"""
    organization_ref: Any
    offering_ref: Any
    organization_name: str
    offering_name: str
    versions: List[VersionEntry] = field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        return {
            'organization_ref': self.organization_ref,
            'offering_ref': self.offering_ref,
            'organization_name': self.organization_name,
            'offering_name': self.offering_name,
            'versions': [v.to_document() for v in self.versions],
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'AffectedEntityRef':
        return cls(
            organization_ref=doc.get('organization_ref'),
            offering_ref=doc.get('offering_ref'),
            organization_name=doc.get('organization_name', ''),
            offering_name=doc.get('offering_name', ''),
            versions=[VersionEntry.from_document(v) for v in doc.get('versions') or []],
        )


@dataclass
class AdvisoryDraft:
    advisory_id: str
    source_locator: str
    raw_payload: Dict[str, Any]
    dialect: Dialect
    description: Optional[str] = None
    assigner_id: Optional[str] = None
    lifecycle_state: LifecycleState = LifecycleState.PUBLISHED
    problem_types: List[ProblemType] = field(default_factory=list)
    references: List[Reference] = field(default_factory=list)
    published_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    severity_score: Optional[float] = None
    severity_label: Optional[str] = None
    severity_scheme: Optional[str] = None
    affected_entities: List[AffectedEntity] = field(default_factory=list)

    def validate(self):
        """Reject drafts the advisory collection cannot hold"""
        if not self.description:
            raise MalformedRecord(
                f"Advisory {self.advisory_id} has no English description",
                source_locator=self.source_locator,
                validation_field='description',
            )

    def to_document(self, resolved_refs: Iterable[AffectedEntityRef]) -> Dict[str, Any]:
        return {
            'advisory_id': self.advisory_id,
            'description': self.description,
            'assigner_id': self.assigner_id,
            'lifecycle_state': self.lifecycle_state.value,
            'problem_types': [
                {'description': p.description, 'weakness_id': p.weakness_id}
                for p in self.problem_types
            ],
            'references': [
                {'url': r.url, 'name': r.name, 'source_tag': r.source_tag, 'tags': list(r.tags)}
                for r in self.references
            ],
            'published_at': to_iso(self.published_at),
            'updated_at': to_iso(self.updated_at),
            'severity_score': self.severity_score,
            'severity_label': self.severity_label,
            'severity_scheme': self.severity_scheme,
            'affected_entities': [ref.to_document() for ref in resolved_refs],
            'source_locator': self.source_locator,
            'dialect': self.dialect.value,
            'raw_payload': self.raw_payload,
        }


@dataclass
class PersistedAdvisory:
    advisory_id: str
    ref: Any
    version: int
    document: Dict[str, Any]
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None

    @property
    def affected_refs(self) -> List[AffectedEntityRef]:
        return [AffectedEntityRef.from_document(d)
                for d in self.document.get('affected_entities') or []]

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'PersistedAdvisory':
        body = {k: v for k, v in doc.items() if k not in META_FIELDS}
        return cls(
            advisory_id=doc['advisory_id'],
            ref=doc.get(REF_FIELD),
            version=doc.get(VERSION_FIELD, 1),
            document=body,
            created_at=from_iso(doc.get(CREATED_FIELD)),
            modified_at=from_iso(doc.get(UPDATED_FIELD)),
        )


@dataclass
class Organization:
    name: str
    ref: Any = None
    version: int = 1
    offering_count: int = 0
    advisory_count: int = 0
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    @property
    def key(self) -> Dict[str, Any]:
        return {'name': self.name}

    def to_document(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'offering_count': self.offering_count,
            'advisory_count': self.advisory_count,
            'first_seen_at': to_iso(self.first_seen_at),
            'last_seen_at': to_iso(self.last_seen_at),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Organization':
        return cls(
            name=doc['name'],
            ref=doc.get(REF_FIELD),
            version=doc.get(VERSION_FIELD, 1),
            offering_count=doc.get('offering_count', 0),
            advisory_count=doc.get('advisory_count', 0),
            first_seen_at=from_iso(doc.get('first_seen_at')),
            last_seen_at=from_iso(doc.get('last_seen_at')),
        )


@dataclass
class Offering:
    name: str
    organization_ref: Any
    organization_name: str
    ref: Any = None
    version: int = 1
    versions: List[VersionEntry] = field(default_factory=list)
    advisory_count: int = 0
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    @property
    def key(self) -> Dict[str, Any]:
        return {'name': self.name, 'organization_ref': self.organization_ref}

    @property
    def version_map(self) -> Dict[str, bool]:
        return {v.version_label: v.affected for v in self.versions}

    def to_document(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'organization_ref': self.organization_ref,
            'organization_name': self.organization_name,
            'versions': [v.to_document() for v in self.versions],
            'advisory_count': self.advisory_count,
            'first_seen_at': to_iso(self.first_seen_at),
            'last_seen_at': to_iso(self.last_seen_at),
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> 'Offering':
        return cls(
            name=doc['name'],
            organization_ref=doc.get('organization_ref'),
            organization_name=doc.get('organization_name', ''),
            ref=doc.get(REF_FIELD),
            version=doc.get(VERSION_FIELD, 1),
            versions=[VersionEntry.from_document(v) for v in doc.get('versions') or []],
            advisory_count=doc.get('advisory_count', 0),
            first_seen_at=from_iso(doc.get('first_seen_at')),
            last_seen_at=from_iso(doc.get('last_seen_at')),
        )


@dataclass
class BatchReport:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_locations: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        if not self.started_at or not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'failed_locations': list(self.failed_locations),
            'errors': dict(self.errors),
            'started_at': to_iso(self.started_at),
            'finished_at': to_iso(self.finished_at),
            'duration_seconds': self.duration_seconds,
        }
