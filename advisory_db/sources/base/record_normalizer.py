"""
Record Normalizer for the Advisory Ingestion Pipeline

Converts one raw advisory JSON document, in either of the two record schema generations
found in the CVE list corpus, into the canonical AdvisoryDraft.

DIALECTS:
- LEGACY (A): 4.x records, CVE_data_meta / description_data / affects.vendor nesting
- CVE_V5 (B): records carrying dataVersion "5.x", cveMetadata / containers.cna / containers.adp

The dialect is decided once per record from its format-version marker; each dialect is a
BaseRecordDialect subclass exposing the same extraction methods, so no optional-field
probing leaks out of this module.

SEVERITY SELECTION:
- CVE_V5: every metrics container (cna and all adp) is scanned, the highest CVSS scheme
  present anywhere wins (2.0 < 3.0 < 3.1 < 4.0); on a tie the cna container wins
- LEGACY: impact.cvss only, 3.1 preferred over 3.0 over anything else; among entries of
  the same 3.x scheme the last one wins, among unranked entries the first one

No I/O happens here.
"""

import abc
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from packaging.version import InvalidVersion, Version

from .exceptions import MalformedRecord
from .models import (
    AdvisoryDraft,
    AffectedEntity,
    Dialect,
    LifecycleState,
    ProblemType,
    Reference,
    VersionEntry,
)

ADVISORY_ID_PATTERN = re.compile(r'^[A-Z]+-\d{4}-\d{4,}$')
WEAKNESS_ID_PATTERN = re.compile(r'CWE-\d+')
PLACEHOLDER_NAMES = {'', 'n/a'}

# Legacy comparison operators that mark a version as affected
LEGACY_AFFECTED_OPERATORS = {'=', '<=', '>='}

# CVE 5.x metric keys and the CVSS scheme they carry
V5_METRIC_SCHEMES = {
    'cvssV2_0': '2.0',
    'cvssV3_0': '3.0',
    'cvssV3_1': '3.1',
    'cvssV4_0': '4.0',
}

LEGACY_SCHEME_RANK = {'3.1': 2, '3.0': 1}

DATE_FORMATS = [
    '%Y-%m-%d',
    '%Y-%m-%dT%H:%M:%S',
    '%Y-%m-%dT%H:%M:%SZ',
    '%Y-%m-%dT%H:%M:%S.%f',
    '%Y-%m-%dT%H:%M:%S.%fZ',
]


def dig(obj: Any, *path: str) -> Any:
    """Follow a key path through nested dicts, None as soon as the shape breaks"""
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def clean_name(value: Any) -> Optional[str]:
    """Trimmed entity name, None for blanks and the literal n/a placeholder"""
    if value is None:
        return None
    name = str(value).strip()
    if name.lower() in PLACEHOLDER_NAMES:
        return None
    return name


def parse_score(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if 0.0 <= score <= 10.0:
        return round(score, 1)
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a record timestamp into an aware UTC datetime"""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    parsed = None
    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        for date_format in DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, date_format)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def scheme_version(scheme: Optional[str]) -> Version:
    try:
        return Version(str(scheme))
    except InvalidVersion:
        return Version('0')


@dataclass
class SeverityCandidate:
    scheme: Optional[str]
    score: float
    label: Optional[str]
    container: str


class BaseRecordDialect(abc.ABC):
    """One arm of the record dialect union; maps a raw document onto canonical fields"""

    dialect: Dialect
    english_tags: Tuple[str, ...] = ()
    default_state: LifecycleState = LifecycleState.PUBLISHED

    def __init__(self):
        self.logger = logging.getLogger(f"normalizer.{self.dialect.name.lower()}")

    @abc.abstractmethod
    def extract_id(self, raw: Dict[str, Any]) -> Optional[str]:
        """Advisory identifier, None when the record carries none"""

    @abc.abstractmethod
    def description_entries(self, raw: Dict[str, Any]) -> List[Dict[str, Any]]:
        pass

    @abc.abstractmethod
    def extract_assigner(self, raw: Dict[str, Any]) -> Optional[str]:
        pass

    @abc.abstractmethod
    def extract_state(self, raw: Dict[str, Any]) -> Optional[str]:
        pass

    @abc.abstractmethod
    def extract_timestamps(self, raw: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
        pass

    @abc.abstractmethod
    def extract_problem_types(self, raw: Dict[str, Any]) -> List[ProblemType]:
        pass

    @abc.abstractmethod
    def extract_references(self, raw: Dict[str, Any]) -> List[Reference]:
        pass

    @abc.abstractmethod
    def severity_candidates(self, raw: Dict[str, Any]) -> List[SeverityCandidate]:
        pass

    @abc.abstractmethod
    def select_severity(self, candidates: List[SeverityCandidate]) -> Optional[SeverityCandidate]:
        pass

    @abc.abstractmethod
    def extract_affected(self, raw: Dict[str, Any]) -> List[AffectedEntity]:
        pass

    def is_english(self, lang: Any) -> bool:
        if not isinstance(lang, str):
            return False
        tag = lang.strip().lower()
        return any(tag == t or tag.startswith(f"{t}-") for t in self.english_tags)

    def extract_description(self, raw: Dict[str, Any]) -> Optional[str]:
        for entry in self.description_entries(raw):
            if isinstance(entry, dict) and self.is_english(entry.get('lang')):
                value = entry.get('value')
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None

    def lifecycle_state(self, raw: Dict[str, Any]) -> LifecycleState:
        state = self.extract_state(raw)
        if not state:
            return self.default_state
        state = str(state).strip().upper()
        if state == 'REJECT':
            return LifecycleState.REJECTED
        try:
            return LifecycleState(state)
        except ValueError:
            self.logger.debug(f"Unknown lifecycle state {state!r}, using {self.default_state.value}")
            return self.default_state

    def _affected_entity(self, organization: Any, offering: Any,
                         versions: List[VersionEntry]) -> Optional[AffectedEntity]:
        organization_name = clean_name(organization)
        offering_name = clean_name(offering)
        if not organization_name or not offering_name:
            return None
        return AffectedEntity(organization_name, offering_name, versions)


class LegacyRecordDialect(BaseRecordDialect):
    """CVE JSON 4.x records"""

    dialect = Dialect.LEGACY
    english_tags = ('eng',)
    default_state = LifecycleState.PUBLIC

    def extract_id(self, raw):
        return dig(raw, 'CVE_data_meta', 'ID')

    def description_entries(self, raw):
        return as_list(dig(raw, 'description', 'description_data'))

    def extract_assigner(self, raw):
        return dig(raw, 'CVE_data_meta', 'ASSIGNER')

    def extract_state(self, raw):
        return dig(raw, 'CVE_data_meta', 'STATE')

    def extract_timestamps(self, raw):
        meta = raw.get('CVE_data_meta') or {}
        return parse_timestamp(dig(meta, 'DATE_PUBLIC')), parse_timestamp(dig(meta, 'DATE_UPDATED'))

    def extract_problem_types(self, raw):
        problem_types = []
        for problem in as_list(dig(raw, 'problemtype', 'problemtype_data')):
            for desc in as_list(dig(problem, 'description')):
                if not isinstance(desc, dict):
                    continue
                value = desc.get('value')
                weakness_id = desc.get('cweId')
                if not weakness_id and isinstance(value, str):
                    match = WEAKNESS_ID_PATTERN.search(value)
                    weakness_id = match.group(0) if match else None
                problem_types.append(ProblemType(description=value, weakness_id=weakness_id))
        return problem_types

    def extract_references(self, raw):
        references = []
        for ref in as_list(dig(raw, 'references', 'reference_data')):
            if isinstance(ref, dict) and ref.get('url'):
                references.append(Reference(
                    url=ref['url'],
                    name=ref.get('name'),
                    source_tag=ref.get('refsource'),
                    tags=[str(t) for t in as_list(ref.get('tags'))],
                ))
        return references

    def severity_candidates(self, raw):
        candidates = []
        entries = []
        # impact.cvss shows up as an object, a list, or a list of lists
        for entry in as_list(dig(raw, 'impact', 'cvss')):
            entries.extend(as_list(entry))
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            score = parse_score(entry.get('baseScore'))
            if score is None:
                continue
            candidates.append(SeverityCandidate(
                scheme=str(entry['version']) if entry.get('version') is not None else None,
                score=score,
                label=entry.get('baseSeverity'),
                container='impact',
            ))
        return candidates

    def select_severity(self, candidates):
        # a later 3.x entry replaces an earlier one of the same scheme; unranked keep the first
        best = None
        for candidate in candidates:
            rank = LEGACY_SCHEME_RANK.get(candidate.scheme, 0)
            best_rank = LEGACY_SCHEME_RANK.get(best.scheme, 0) if best else -1
            if rank > best_rank or (rank == best_rank and rank > 0):
                best = candidate
        return best

    def extract_affected(self, raw):
        affected = []
        for vendor in as_list(dig(raw, 'affects', 'vendor', 'vendor_data')):
            for product in as_list(dig(vendor, 'product', 'product_data')):
                versions = []
                for version in as_list(dig(product, 'version', 'version_data')):
                    label = dig(version, 'version_value')
                    if label is None or str(label).strip() == '':
                        continue
                    versions.append(VersionEntry(
                        version_label=str(label).strip(),
                        affected=version.get('version_affected') in LEGACY_AFFECTED_OPERATORS,
                    ))
                entity = self._affected_entity(dig(vendor, 'vendor_name'),
                                               dig(product, 'product_name'), versions)
                if entity:
                    affected.append(entity)
        return affected


class CveV5RecordDialect(BaseRecordDialect):
    """CVE JSON 5.x records"""

    dialect = Dialect.CVE_V5
    english_tags = ('en',)
    default_state = LifecycleState.PUBLISHED

    def _cna(self, raw) -> Dict[str, Any]:
        cna = dig(raw, 'containers', 'cna')
        return cna if isinstance(cna, dict) else {}

    def _metric_containers(self, raw) -> Iterable[Tuple[str, Dict[str, Any]]]:
        yield 'cna', self._cna(raw)
        for index, adp in enumerate(as_list(dig(raw, 'containers', 'adp'))):
            if isinstance(adp, dict):
                yield f"adp[{index}]", adp

    def extract_id(self, raw):
        return dig(raw, 'cveMetadata', 'cveId')

    def description_entries(self, raw):
        cna = self._cna(raw)
        entries = as_list(cna.get('descriptions'))
        if not entries:
            # Rejected records keep their text in rejectedReasons instead
            entries = as_list(cna.get('rejectedReasons'))
        return entries

    def extract_assigner(self, raw):
        return dig(raw, 'cveMetadata', 'assignerOrgId') or dig(raw, 'cveMetadata', 'assignerShortName')

    def extract_state(self, raw):
        return dig(raw, 'cveMetadata', 'state')

    def extract_timestamps(self, raw):
        meta = raw.get('cveMetadata') or {}
        return parse_timestamp(dig(meta, 'datePublished')), parse_timestamp(dig(meta, 'dateUpdated'))

    def extract_problem_types(self, raw):
        problem_types = []
        for problem in as_list(self._cna(raw).get('problemTypes')):
            for desc in as_list(dig(problem, 'descriptions')):
                if isinstance(desc, dict):
                    problem_types.append(ProblemType(
                        description=desc.get('description'),
                        weakness_id=desc.get('cweId'),
                    ))
        return problem_types

    def extract_references(self, raw):
        references = []
        for ref in as_list(self._cna(raw).get('references')):
            if isinstance(ref, dict) and ref.get('url'):
                references.append(Reference(
                    url=ref['url'],
                    name=ref.get('name'),
                    source_tag=None,
                    tags=[str(t) for t in as_list(ref.get('tags'))],
                ))
        return references

    def severity_candidates(self, raw):
        candidates = []
        for container_name, container in self._metric_containers(raw):
            for metric in as_list(container.get('metrics')):
                if not isinstance(metric, dict):
                    continue
                for key, scheme in V5_METRIC_SCHEMES.items():
                    data = metric.get(key)
                    if not isinstance(data, dict):
                        continue
                    score = parse_score(data.get('baseScore'))
                    if score is None:
                        continue
                    candidates.append(SeverityCandidate(
                        scheme=scheme,
                        score=score,
                        label=data.get('baseSeverity'),
                        container=container_name,
                    ))
        return candidates

    def select_severity(self, candidates):
        # Candidates arrive cna first, so a strictly-greater check keeps cna on ties
        best = None
        for candidate in candidates:
            if best is None or scheme_version(candidate.scheme) > scheme_version(best.scheme):
                best = candidate
        return best

    def extract_affected(self, raw):
        affected = []
        for product in as_list(self._cna(raw).get('affected')):
            if not isinstance(product, dict):
                continue
            versions = []
            for version in as_list(product.get('versions')):
                label = dig(version, 'version')
                if label is None or str(label).strip() == '':
                    continue
                versions.append(VersionEntry(
                    version_label=str(label).strip(),
                    affected=version.get('status') == 'affected',
                ))
            entity = self._affected_entity(product.get('vendor'), product.get('product'), versions)
            if entity:
                affected.append(entity)
        return affected


class RecordNormalizer:
    """Normalizes raw advisory documents of either dialect into AdvisoryDraft"""

    def __init__(self, source_name: str = 'cvelist'):
        self.source_name = source_name
        self.logger = logging.getLogger(f"normalizer.{source_name}")
        self._dialects = {
            Dialect.LEGACY: LegacyRecordDialect(),
            Dialect.CVE_V5: CveV5RecordDialect(),
        }

    @staticmethod
    def detect_dialect(raw: Dict[str, Any]) -> Dialect:
        marker = raw.get('dataVersion', raw.get('data_version'))
        if marker is not None and str(marker).strip().startswith('5'):
            return Dialect.CVE_V5
        return Dialect.LEGACY

    def normalize(self, raw: Any, source_locator: str) -> AdvisoryDraft:
        """
        Normalize one raw advisory document

        Args:
            raw: Parsed JSON document as read from the corpus
            source_locator: Location of the raw record, kept on the draft

        Returns:
            AdvisoryDraft with every canonical field extracted or defaulted

        Raises:
            MalformedRecord: when the document has no usable identifier
        """
        if not isinstance(raw, dict):
            raise MalformedRecord("Record is not a JSON object", self.source_name,
                                  source_locator=source_locator)

        dialect = self.detect_dialect(raw)
        arm = self._dialects[dialect]

        advisory_id = arm.extract_id(raw)
        if not advisory_id or not isinstance(advisory_id, str):
            self.logger.warning(f"Advisory ID missing in {source_locator}, skipping")
            raise MalformedRecord("Advisory ID missing", self.source_name,
                                  source_locator=source_locator)

        advisory_id = advisory_id.strip().upper()
        if not ADVISORY_ID_PATTERN.match(advisory_id):
            raise MalformedRecord(f"Invalid advisory ID format: {advisory_id}", self.source_name,
                                  source_locator=source_locator)

        try:
            published_at, updated_at = arm.extract_timestamps(raw)
            severity = arm.select_severity(arm.severity_candidates(raw))
            draft = AdvisoryDraft(
                advisory_id=advisory_id,
                source_locator=source_locator,
                raw_payload=raw,
                dialect=dialect,
                description=arm.extract_description(raw),
                assigner_id=arm.extract_assigner(raw),
                lifecycle_state=arm.lifecycle_state(raw),
                problem_types=arm.extract_problem_types(raw),
                references=arm.extract_references(raw),
                published_at=published_at,
                updated_at=updated_at,
                severity_score=severity.score if severity else None,
                severity_label=str(severity.label).upper() if severity and severity.label else None,
                severity_scheme=severity.scheme if severity else None,
                affected_entities=arm.extract_affected(raw),
            )
        except (AttributeError, TypeError, ValueError) as e:
            self.logger.error(f"Error normalizing {advisory_id} from {source_locator}: {e}")
            raise MalformedRecord(f"Normalization failed: {e}", self.source_name,
                                  source_locator=source_locator) from e

        self.logger.debug(f"Normalized {advisory_id} ({dialect.name}) with "
                          f"{len(draft.affected_entities)} affected entities")
        return draft
