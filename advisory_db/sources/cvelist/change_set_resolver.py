"""
Change Set Resolver - which record files a sync run has to ingest

Full sync: every tracked file under the configured subtree.
Incremental sync: files added or modified between the last processed revision and the
current one. Without a usable last revision the incremental path falls back to a full sync.
"""

import logging
from typing import Iterable, List, Optional

from .git_source import BaseCorpusSource

logger = logging.getLogger(__name__)


class ChangeSetResolver:
    """Turns corpus revisions into an ordered list of record locations"""

    def __init__(self, source: BaseCorpusSource, subtree_path: str, extension: str = ".json"):
        self.source = source
        self.subtree_path = (subtree_path or '').strip('/')
        self.extension = extension

    def filter_locations(self, paths: Iterable[str]) -> List[str]:
        """Keep record files under the subtree, dropping duplicates in first-seen order"""
        prefix = f"{self.subtree_path}/" if self.subtree_path else ''
        seen = set()
        locations = []
        for path in paths:
            if not path.startswith(prefix) or not path.endswith(self.extension):
                continue
            if path in seen:
                continue
            seen.add(path)
            locations.append(path)
        return locations

    async def resolve_full_sync(self) -> List[str]:
        locations = self.filter_locations(await self.source.list_files())
        logger.info(f"Full sync: {len(locations)} record files under {self.subtree_path or '/'}")
        return locations

    async def resolve_incremental_sync(self, last_known_revision: Optional[str]) -> List[str]:
        """
        Record files changed since `last_known_revision`

        Args:
            last_known_revision: Revision processed by the previous run, None on first run

        Returns:
            Changed record locations, empty when the corpus has not moved
        """
        if not last_known_revision:
            logger.info("No previous revision recorded, falling back to full sync")
            return await self.resolve_full_sync()

        current = await self.source.current_revision()
        if current == last_known_revision:
            logger.info(f"✅ Corpus unchanged since {last_known_revision[:7]}, nothing to ingest")
            return []

        if not await self.source.has_revision(last_known_revision):
            logger.warning(f"Revision {last_known_revision[:7]} not present in local history, "
                           f"falling back to full sync")
            return await self.resolve_full_sync()

        changed = await self.source.diff(last_known_revision, current)
        locations = self.filter_locations(changed)
        logger.info(f"Incremental sync {last_known_revision[:7]}..{current[:7]}: "
                    f"{len(changed)} changed files, {len(locations)} record files")
        return locations
