"""
CVE List Orchestrator

OBJECTIVE:
One sync run of the CVE list corpus into the document store.

EXECUTION FLOW:
1. Acquire the document store for the duration of the run (async context manager)
2. Materialize the configured corpus subtree (clone or pull)
3. Resolve the change set: every record (full) or records changed since the last
   processed revision (incremental)
4. Run the ingestion coordinator over the change set: normalize, link entities, store the
   advisory, then move the advisory counters
5. Record the processed revision in sync_state
6. Release the store on every exit path
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..config.database_config import get_database_config
from ..config.settings import Settings, settings as default_settings
from ..db.document_store import BaseDocumentStore, PostgresDocumentStore
from ..sources.base.advisory_upserter import AdvisoryUpserter
from ..sources.base.entity_resolver import EntityResolver
from ..sources.base.exceptions import ConfigException
from ..sources.base.models import (
    SYNC_STATE,
    AdvisoryDraft,
    AffectedEntityRef,
    BatchReport,
    PersistedAdvisory,
    to_iso,
    utcnow,
)
from ..sources.base.record_normalizer import RecordNormalizer
from ..sources.cvelist.change_set_resolver import ChangeSetResolver
from ..sources.cvelist.git_source import BaseCorpusSource, GitCorpusSource
from .ingestion_coordinator import IngestionCoordinator

logger = logging.getLogger(__name__)


class SyncMode(Enum):
    """Sync run modes"""
    FULL = "full"
    INCREMENTAL = "incremental"


class CveListOrchestrator:
    """Top-level sync run for the CVE list corpus"""

    SYNC_STATE_NAME = 'cvelist'

    def __init__(self, config: Optional[Settings] = None, store: Optional[BaseDocumentStore] = None,
                 source: Optional[BaseCorpusSource] = None):
        self.settings = config or default_settings
        self.store = store
        self._owns_store = store is None
        self.source = source or GitCorpusSource(self.settings.CORPUS_LOCAL_PATH, self.settings.CORPUS_BRANCH)
        self.component_stats: Dict[str, Dict[str, int]] = {}

    async def __aenter__(self):
        if self.store is None:
            self.store = await PostgresDocumentStore.connect(get_database_config(self.settings))
            if self.settings.DB_INITIALIZE_SCHEMA:
                try:
                    await self.store.initialize_schema()
                except Exception:
                    await self.store.close()
                    self.store = None
                    raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_store and self.store is not None:
            await self.store.close()
            self.store = None

    async def load_last_revision(self) -> Optional[str]:
        state = await self.store.find_one(SYNC_STATE, {'name': self.SYNC_STATE_NAME})
        return state.get('last_revision') if state else None

    async def save_revision(self, revision: str, report: BatchReport):
        await self.store.find_one_and_replace(SYNC_STATE, {'name': self.SYNC_STATE_NAME}, {
            'name': self.SYNC_STATE_NAME,
            'last_revision': revision,
            'last_run_at': to_iso(utcnow()),
            'last_report': {
                'total': report.total,
                'succeeded': report.succeeded,
                'failed': report.failed,
            },
        }, upsert=True)
        logger.info(f"📝 Recorded corpus revision {revision[:7]}")

    async def run(self, mode: Union[SyncMode, str, None] = None) -> BatchReport:
        """
        Execute one sync run

        Args:
            mode: SyncMode or its value, settings.SYNC_MODE when omitted

        Returns:
            BatchReport of the ingestion
        """
        if self.store is None:
            raise RuntimeError("CveListOrchestrator.run() must be called inside 'async with'")

        try:
            mode = SyncMode(mode or self.settings.SYNC_MODE)
        except ValueError as e:
            raise ConfigException(f"Unknown sync mode: {mode}", config_key='SYNC_MODE') from e

        s = self.settings
        logger.info(f"🚀 Starting {mode.value} sync of {s.CORPUS_REPO_URL} ({s.CORPUS_SUBTREE or '/'})")

        revision = await self.source.materialize_subtree(s.CORPUS_REPO_URL, s.CORPUS_SUBTREE)
        change_sets = ChangeSetResolver(self.source, s.CORPUS_SUBTREE, s.RECORD_EXTENSION)
        if mode is SyncMode.FULL:
            locations = await change_sets.resolve_full_sync()
        else:
            locations = await change_sets.resolve_incremental_sync(await self.load_last_revision())

        normalizer = RecordNormalizer(source_name=self.SYNC_STATE_NAME)
        resolver = EntityResolver(self.store)
        upserter = AdvisoryUpserter(self.store)

        async def store_and_count(draft: AdvisoryDraft, refs: List[AffectedEntityRef]) -> PersistedAdvisory:
            # counters move only once the advisory write has landed
            previous = await upserter.previous_refs(draft.advisory_id)
            persisted = await upserter.upsert(draft, refs)
            await resolver.commit_advisory_counts(draft.advisory_id, previous, refs)
            return persisted

        coordinator = IngestionCoordinator(
            self.source,
            window_size=s.BATCH_SIZE,
            max_attempts=s.MAX_ATTEMPTS,
            backoff_seconds=s.RETRY_BACKOFF_SECONDS,
            failure_preview_limit=s.FAILURE_PREVIEW_LIMIT,
            show_progress=s.SHOW_PROGRESS,
        )
        report = await coordinator.run(locations, normalizer.normalize, resolver.link_advisory, store_and_count)

        await self.save_revision(revision, report)

        self.component_stats = {
            'resolver': resolver.get_resolution_stats(),
            'upserter': upserter.get_upload_stats(),
            'coordinator': coordinator.get_ingestion_stats(),
        }
        logger.info(f"✅ {mode.value.capitalize()} sync finished: {report.succeeded}/{report.total} "
                    f"records ingested, {report.failed} failed")
        return report

    def get_run_stats(self) -> Dict[str, Any]:
        return dict(self.component_stats)
