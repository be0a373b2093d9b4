"""
Custom Exceptions for the Advisory Ingestion Pipeline

Purpose: Standardized error handling across normalization, entity resolution and persistence
Usage: Every component raises these; the ingestion coordinator decides retries from `kind`
Related Files: Raised by sources/base/*, db/document_store.py, sources/cvelist/git_source.py

Exception Hierarchy:
- AdvisoryIngestException (base)
  ├── MalformedRecord (unparseable input or missing identifier)
  ├── TransientConflict (store race, safe to retry)
  │   ├── ConstraintViolation (unique key already taken)
  │   ├── ConcurrencyConflict (document changed between read and write)
  │   └── NoMatchingDocument (conditional update matched nothing)
  ├── ResolutionFailure (conflict that survived a guaranteed re-read)
  ├── StoreUnavailable (document store unreachable, fatal for the run)
  ├── SourceUnavailable (corpus source unreachable, fatal for the run)
  └── ConfigException (configuration errors)
"""

from enum import Enum


class ErrorKind(Enum):
    """Structured failure class used for retry and propagation decisions"""
    MALFORMED = "malformed"
    TRANSIENT = "transient"
    RESOLUTION = "resolution"
    UNAVAILABLE = "unavailable"
    CONFIG = "config"


class AdvisoryIngestException(Exception):
    """Base exception for all advisory ingestion operations"""

    kind = ErrorKind.RESOLUTION

    def __init__(self, message: str, source_name: str = None, details: dict = None):
        self.source_name = source_name
        self.details = details or {}
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    @property
    def fatal_for_run(self) -> bool:
        return self.kind is ErrorKind.UNAVAILABLE

    def __str__(self):
        if self.source_name:
            return f"[{self.source_name}] {super().__str__()}"
        return super().__str__()


class MalformedRecord(AdvisoryIngestException):
    """Raised when a raw record cannot be parsed or has no usable identifier"""

    kind = ErrorKind.MALFORMED

    def __init__(self, message: str, source_name: str = None,
                 source_locator: str = None, **kwargs):
        self.source_locator = source_locator
        details = {'source_locator': source_locator, **kwargs}
        super().__init__(message, source_name, details)


class TransientConflict(AdvisoryIngestException):
    """Raised when a concurrent writer got in the way; the operation may be retried"""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, source_name: str = None,
                 collection: str = None, key: dict = None, **kwargs):
        self.collection = collection
        self.key = key
        details = {'collection': collection, 'key': key, **kwargs}
        super().__init__(message, source_name, details)


class ConstraintViolation(TransientConflict):
    """Raised when a create hits an existing unique key"""


class ConcurrencyConflict(TransientConflict):
    """Raised when a version-guarded write finds a newer document version"""

    def __init__(self, message: str, source_name: str = None, collection: str = None,
                 key: dict = None, expected_version: int = None,
                 actual_version: int = None, **kwargs):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(message, source_name, collection, key,
                         expected_version=expected_version,
                         actual_version=actual_version, **kwargs)


class NoMatchingDocument(TransientConflict):
    """Raised when a conditional update or increment matches no document"""


class ResolutionFailure(AdvisoryIngestException):
    """Raised when a conflict cannot be resolved even after re-reading the store"""

    kind = ErrorKind.RESOLUTION


class StoreUnavailable(AdvisoryIngestException):
    """Raised when the document store cannot be reached"""

    kind = ErrorKind.UNAVAILABLE


class SourceUnavailable(AdvisoryIngestException):
    """Raised when the corpus source cannot be reached or queried"""

    kind = ErrorKind.UNAVAILABLE

    def __init__(self, message: str, source_name: str = None,
                 command: str = None, returncode: int = None, **kwargs):
        self.command = command
        self.returncode = returncode
        details = {'command': command, 'returncode': returncode, **kwargs}
        super().__init__(message, source_name, details)


class ConfigException(AdvisoryIngestException):
    """Raised when configuration is invalid"""

    kind = ErrorKind.CONFIG

    def __init__(self, message: str, source_name: str = None,
                 config_key: str = None, **kwargs):
        self.config_key = config_key
        details = {'config_key': config_key, **kwargs}
        super().__init__(message, source_name, details)
