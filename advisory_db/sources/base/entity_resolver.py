"""
Entity Resolver for the Advisory Ingestion Pipeline

Race-safe find-or-create for the organizations and offerings an advisory references, and
idempotent advisory counters on both.

CONCURRENCY MODEL:
No in-process lock coordinates two tasks resolving the same entity. Correctness relies on
the store's unique keys (organizations.name, offerings.(name, organization_ref)):
1. Read the entity by its natural key
2. Absent -> create it; a ConstraintViolation means a concurrent writer won, so re-read
   and return the winner (an empty re-read is a ResolutionFailure)
3. Present -> refresh last_seen_at; an offering whose version set changes is written
   through a version-guarded update with one re-read and retry on conflict, a second
   conflict is a ResolutionFailure

COUNTERS:
advisory_count moves by one per distinct advisory linking the entity. link_advisory only
resolves entities; commit_advisory_counts is called once the advisory has been stored and
only counts the difference against the refs of the previously stored version, so
re-ingesting unchanged content and retrying a failed write leave counters untouched.
"""

import logging
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple

from ...db.document_store import BaseDocumentStore
from .exceptions import ConcurrencyConflict, ConstraintViolation, MalformedRecord, ResolutionFailure
from .models import (
    OFFERINGS,
    ORGANIZATIONS,
    VERSION_FIELD,
    AdvisoryDraft,
    AffectedEntityRef,
    Offering,
    Organization,
    VersionEntry,
    merge_version_sets,
    to_iso,
    utcnow,
)

ADVISORY_COUNT = 'advisory_count'
OFFERING_COUNT = 'offering_count'


class EntityResolver:
    """Resolves organizations and offerings against the document store"""

    def __init__(self, store: BaseDocumentStore, clock: Callable = utcnow):
        self.store = store
        self.clock = clock
        self.logger = logging.getLogger("resolver.entities")

        self.stats = {
            'organizations_created': 0,
            'offerings_created': 0,
            'creation_races_lost': 0,
            'update_conflicts_retried': 0,
        }

    async def resolve_organization(self, name: str) -> Organization:
        """Find or create the organization with this name"""
        name = (name or '').strip()
        if not name:
            raise MalformedRecord("Organization name is blank", source_name='resolver')

        key = {'name': name}
        existing = await self.store.find_one(ORGANIZATIONS, key)
        if existing:
            doc = await self.store.update_fields(ORGANIZATIONS, key, {'last_seen_at': to_iso(self.clock())})
            return Organization.from_document(doc)

        now = self.clock()
        candidate = Organization(name=name, first_seen_at=now, last_seen_at=now)
        doc = await self._create_or_adopt(ORGANIZATIONS, key, candidate.to_document())
        return Organization.from_document(doc)

    async def resolve_offering(self, name: str, organization_ref: Any, organization_name: str,
                               versions: Sequence[VersionEntry] = ()) -> Offering:
        """
        Find or create an offering under an organization, merging its version set

        Args:
            name: Offering name
            organization_ref: Store reference of the owning organization
            organization_name: Owning organization name, kept denormalized on the offering
            versions: Version entries contributed by the current advisory

        Returns:
            The stored offering after the merge
        """
        name = (name or '').strip()
        if not name:
            raise MalformedRecord("Offering name is blank", source_name='resolver')

        key = {'name': name, 'organization_ref': organization_ref}
        existing = await self.store.find_one(OFFERINGS, key)
        if existing:
            doc = await self._merge_versions(key, existing, versions)
            return Offering.from_document(doc)

        now = self.clock()
        candidate = Offering(
            name=name,
            organization_ref=organization_ref,
            organization_name=organization_name,
            versions=merge_version_sets([], versions),
            first_seen_at=now,
            last_seen_at=now,
        )
        doc, created = await self._create_or_adopt(OFFERINGS, key, candidate.to_document(),
                                                   report_created=True)
        if created:
            await self.store.increment_counter(ORGANIZATIONS, {'name': organization_name}, OFFERING_COUNT, 1)
        elif versions:
            # Lost the creation race: our versions still have to land on the winner
            doc = await self._merge_versions(key, doc, versions)
        return Offering.from_document(doc)

    async def _merge_versions(self, key: Dict[str, Any], current: Dict[str, Any],
                              versions: Sequence[VersionEntry]) -> Dict[str, Any]:
        stored = Offering.from_document(current).versions
        if merge_version_sets(stored, versions) == stored:
            return await self.store.update_fields(OFFERINGS, key, {'last_seen_at': to_iso(self.clock())})

        def merge_patch(latest: Dict[str, Any]) -> Dict[str, Any]:
            merged = merge_version_sets(Offering.from_document(latest).versions, versions)
            return {
                'versions': [v.to_document() for v in merged],
                'last_seen_at': to_iso(self.clock()),
            }

        return await self._update_with_retry(OFFERINGS, key, current, merge_patch)

    async def link_advisory(self, draft: AdvisoryDraft) -> List[AffectedEntityRef]:
        """
        Resolve every affected organization/offering pair of an advisory

        Args:
            draft: Normalized advisory

        Returns:
            AffectedEntityRef list, one per distinct organization/offering pair

        Raises:
            MalformedRecord: when the draft cannot be stored, before any entity is touched
        """
        draft.validate()
        refs: Dict[Tuple[Any, Any], AffectedEntityRef] = {}
        organizations: Dict[str, Organization] = {}

        for entity in draft.affected_entities:
            if not entity.organization_name:
                self.logger.warning(f"Skipping affected entry with no organization in {draft.advisory_id}")
                continue
            if not entity.offering_name:
                self.logger.warning(f"Skipping offering with no name for organization "
                                    f"{entity.organization_name} in {draft.advisory_id}")
                continue

            organization = organizations.get(entity.organization_name)
            if organization is None:
                organization = await self.resolve_organization(entity.organization_name)
                organizations[entity.organization_name] = organization

            offering = await self.resolve_offering(
                entity.offering_name, organization.ref, organization.name, entity.versions,
            )

            pair = (organization.ref, offering.ref)
            if pair in refs:
                refs[pair].versions = merge_version_sets(refs[pair].versions, entity.versions)
            else:
                refs[pair] = AffectedEntityRef(
                    organization_ref=organization.ref,
                    offering_ref=offering.ref,
                    organization_name=organization.name,
                    offering_name=offering.name,
                    versions=list(entity.versions),
                )

        return list(refs.values())

    async def commit_advisory_counts(self, advisory_id: str, previous: Iterable[AffectedEntityRef],
                                     current: Iterable[AffectedEntityRef]):
        """Move advisory_count by the difference between the stored and the new refs"""
        previous, current = list(previous), list(current)
        before_orgs = {r.organization_name for r in previous}
        after_orgs = {r.organization_name for r in current}
        before_offerings = {(r.offering_name, r.organization_ref) for r in previous}
        after_offerings = {(r.offering_name, r.organization_ref) for r in current}

        for name in sorted(after_orgs - before_orgs):
            await self.store.increment_counter(ORGANIZATIONS, {'name': name}, ADVISORY_COUNT, 1)
        for name in sorted(before_orgs - after_orgs):
            await self.store.increment_counter(ORGANIZATIONS, {'name': name}, ADVISORY_COUNT, -1)
        for name, org_ref in after_offerings - before_offerings:
            await self.store.increment_counter(
                OFFERINGS, {'name': name, 'organization_ref': org_ref}, ADVISORY_COUNT, 1)
        for name, org_ref in before_offerings - after_offerings:
            await self.store.increment_counter(
                OFFERINGS, {'name': name, 'organization_ref': org_ref}, ADVISORY_COUNT, -1)

        if after_orgs != before_orgs or after_offerings != before_offerings:
            self.logger.debug(f"{advisory_id}: linked {len(after_offerings)} offerings "
                              f"across {len(after_orgs)} organizations")

    async def _create_or_adopt(self, collection: str, key: Dict[str, Any], doc: Dict[str, Any],
                               report_created: bool = False):
        """Create the document; when a concurrent writer got there first, return theirs"""
        try:
            created = await self.store.create_unique(collection, doc)
            self.stats[f"{collection}_created"] += 1
            self.logger.info(f"Created {collection[:-1]}: {key}")
            return (created, True) if report_created else created
        except ConstraintViolation:
            self.stats['creation_races_lost'] += 1
            self.logger.debug(f"Lost creation race for {collection} {key}, re-reading winner")

        winner = await self.store.find_one(collection, key)
        if winner is None:
            raise ResolutionFailure(
                f"{collection} {key} violated its unique key but cannot be read back",
                source_name='resolver', details={'collection': collection, 'key': key},
            )
        return (winner, False) if report_created else winner

    async def _update_with_retry(self, collection: str, key: Dict[str, Any], current: Dict[str, Any],
                                 build_patch: Callable[[Dict[str, Any]], Dict[str, Any]]) -> Dict[str, Any]:
        """Version-guarded update with one re-read and retry on a concurrency conflict"""
        try:
            return await self.store.update_conditional(collection, key, build_patch(current),
                                                       current[VERSION_FIELD])
        except ConcurrencyConflict:
            self.stats['update_conflicts_retried'] += 1
            self.logger.debug(f"Concurrent update on {collection} {key}, retrying once")

        current = await self.store.find_one(collection, key)
        if current is None:
            raise ResolutionFailure(f"{collection} {key} disappeared during update",
                                    source_name='resolver', details={'collection': collection, 'key': key})
        try:
            return await self.store.update_conditional(collection, key, build_patch(current),
                                                       current[VERSION_FIELD])
        except ConcurrencyConflict as e:
            raise ResolutionFailure(f"Repeated concurrent updates on {collection} {key}",
                                    source_name='resolver',
                                    details={'collection': collection, 'key': key}) from e

    def get_resolution_stats(self) -> Dict[str, int]:
        return self.stats.copy()
