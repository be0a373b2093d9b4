"""
Advisory Upserter - idempotent persistence of one normalized advisory

APPROACH:
1. Validate the draft (description is required by the advisories collection)
2. Build the stored document: every draft field plus the resolved entity refs
3. Atomic find-and-replace keyed by advisory_id with upsert semantics
4. On a unique-key race (two first-time ingestions of the same id) fall back to
   read-then-update-or-create
5. Any other failure propagates to the caller unchanged
"""

import logging
from typing import Dict, Iterable, List, Optional

from ...db.document_store import BaseDocumentStore
from .exceptions import ConstraintViolation
from .models import (
    ADVISORIES,
    VERSION_FIELD,
    AdvisoryDraft,
    AffectedEntityRef,
    PersistedAdvisory,
)


class AdvisoryUpserter:
    """Writes advisories so that re-ingesting an id overwrites instead of duplicating"""

    def __init__(self, store: BaseDocumentStore):
        self.store = store
        self.logger = logging.getLogger("upserter.advisories")

        self.stats = {
            'upserts': 0,
            'race_fallbacks': 0,
        }

    async def fetch(self, advisory_id: str) -> Optional[PersistedAdvisory]:
        doc = await self.store.find_one(ADVISORIES, {'advisory_id': advisory_id})
        return PersistedAdvisory.from_document(doc) if doc else None

    async def previous_refs(self, advisory_id: str) -> List[AffectedEntityRef]:
        """Entity refs of the currently stored version of an advisory, empty when new"""
        existing = await self.fetch(advisory_id)
        return existing.affected_refs if existing else []

    async def upsert(self, draft: AdvisoryDraft,
                     resolved_refs: Iterable[AffectedEntityRef]) -> PersistedAdvisory:
        """
        Persist one advisory, replacing any stored version with the same id

        Args:
            draft: Normalized advisory
            resolved_refs: Entity refs produced by EntityResolver.link_advisory

        Returns:
            The advisory as stored
        """
        draft.validate()
        key = {'advisory_id': draft.advisory_id}
        doc = draft.to_document(resolved_refs)

        try:
            stored = await self.store.find_one_and_replace(ADVISORIES, key, doc, upsert=True)
        except ConstraintViolation:
            self.logger.info(f"Duplicate key while upserting {draft.advisory_id}, "
                             f"trying separate find and update")
            self.stats['race_fallbacks'] += 1
            stored = await self._find_then_write(key, doc)

        self.stats['upserts'] += 1
        return PersistedAdvisory.from_document(stored)

    async def _find_then_write(self, key: Dict[str, str], doc: Dict) -> Dict:
        existing = await self.store.find_one(ADVISORIES, key)
        if existing:
            return await self.store.update_conditional(ADVISORIES, key, doc, existing[VERSION_FIELD])
        return await self.store.create_unique(ADVISORIES, doc)

    def get_upload_stats(self) -> Dict[str, int]:
        return self.stats.copy()
