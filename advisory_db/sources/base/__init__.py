"""
Base infrastructure for advisory ingestion

The resolver and upserter depend on the document store and are imported from their own
modules.
"""

from .exceptions import (
    AdvisoryIngestException,
    ConcurrencyConflict,
    ConfigException,
    ConstraintViolation,
    ErrorKind,
    MalformedRecord,
    NoMatchingDocument,
    ResolutionFailure,
    SourceUnavailable,
    StoreUnavailable,
    TransientConflict,
)
from .models import (
    AdvisoryDraft,
    AffectedEntity,
    AffectedEntityRef,
    BatchReport,
    Dialect,
    LifecycleState,
    Offering,
    Organization,
    PersistedAdvisory,
    VersionEntry,
)
from .record_normalizer import RecordNormalizer

__all__ = [
    'AdvisoryIngestException', 'ConcurrencyConflict', 'ConfigException', 'ConstraintViolation',
    'ErrorKind', 'MalformedRecord', 'NoMatchingDocument', 'ResolutionFailure',
    'SourceUnavailable', 'StoreUnavailable', 'TransientConflict',
    'AdvisoryDraft', 'AffectedEntity', 'AffectedEntityRef', 'BatchReport', 'Dialect',
    'LifecycleState', 'Offering', 'Organization', 'PersistedAdvisory', 'VersionEntry',
    'RecordNormalizer',
]
