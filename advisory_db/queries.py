"""
Secondary lookups over the ingested advisories

Read-only helpers for the questions operators ask after a sync: which advisories touch an
organization or offering, which offerings an organization has, who is affected most, and
how advisories split by lifecycle state and severity.
"""

import logging
from typing import Any, Dict, List, Optional

from .db.document_store import BaseDocumentStore
from .sources.base.models import (
    ADVISORIES,
    OFFERINGS,
    ORGANIZATIONS,
    LifecycleState,
    Offering,
    Organization,
    PersistedAdvisory,
)

SEVERITY_LABELS = ['CRITICAL', 'HIGH', 'MEDIUM', 'LOW', 'NONE']

logger = logging.getLogger(__name__)


class AdvisoryQueries:
    """Lookups against a document store populated by the sync pipeline"""

    def __init__(self, store: BaseDocumentStore):
        self.store = store

    async def advisories_by_organization(self, organization_name: str,
                                         limit: Optional[int] = None) -> List[PersistedAdvisory]:
        """Advisories affecting any offering of the organization, newest first"""
        docs = await self.store.find_many(
            ADVISORIES,
            {'affected_entities': [{'organization_name': organization_name}]},
            order_by='published_at', limit=limit,
        )
        return [PersistedAdvisory.from_document(doc) for doc in docs]

    async def advisories_by_offering(self, offering_name: str, organization_name: Optional[str] = None,
                                     limit: Optional[int] = None) -> List[PersistedAdvisory]:
        """
        Advisories affecting an offering, newest first

        Args:
            offering_name: Offering name
            organization_name: Restrict to the offering of this organization
            limit: Maximum number of advisories

        Returns:
            Matching advisories
        """
        match: Dict[str, Any] = {'offering_name': offering_name}
        if organization_name:
            match['organization_name'] = organization_name
        docs = await self.store.find_many(
            ADVISORIES, {'affected_entities': [match]}, order_by='published_at', limit=limit,
        )
        return [PersistedAdvisory.from_document(doc) for doc in docs]

    async def offerings_by_organization(self, organization_name: str) -> List[Offering]:
        docs = await self.store.find_many(OFFERINGS, {'organization_name': organization_name},
                                          order_by='name', descending=False)
        return [Offering.from_document(doc) for doc in docs]

    async def top_organizations(self, limit: int = 10) -> List[Organization]:
        docs = await self.store.find_many(ORGANIZATIONS, order_by='advisory_count', limit=limit)
        return [Organization.from_document(doc) for doc in docs]

    async def top_offerings(self, limit: int = 10) -> List[Offering]:
        docs = await self.store.find_many(OFFERINGS, order_by='advisory_count', limit=limit)
        return [Offering.from_document(doc) for doc in docs]

    async def advisory_stats(self) -> Dict[str, Any]:
        """Advisory totals by lifecycle state and severity label"""
        total = await self.store.count(ADVISORIES)

        by_state = {}
        for state in LifecycleState:
            by_state[state.value] = await self.store.count(ADVISORIES, {'lifecycle_state': state.value})

        by_severity = {}
        for label in SEVERITY_LABELS:
            by_severity[label] = await self.store.count(ADVISORIES, {'severity_label': label})
        by_severity['UNRATED'] = total - sum(by_severity.values())

        stats = {
            'total': total,
            'by_lifecycle_state': by_state,
            'by_severity': by_severity,
            'organizations': await self.store.count(ORGANIZATIONS),
            'offerings': await self.store.count(OFFERINGS),
        }
        logger.debug(f"Advisory stats: {stats}")
        return stats
