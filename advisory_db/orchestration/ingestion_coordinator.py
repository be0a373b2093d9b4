"""
Ingestion Coordinator

OBJECTIVE:
Drive many record locations through read -> normalize -> resolve/link -> upsert with
bounded concurrency, per-record retry of transient conflicts and per-record failure
isolation.

PROCESSING MODEL:
- Locations are split into windows of `window_size`
- Records inside a window run concurrently; a window settles completely before the next
  one starts
- A record whose pipeline raises a retryable error is restarted from the read, up to
  `max_attempts` attempts, sleeping `backoff_seconds * attempt` in between
- Exhausted retries are reported as ResolutionFailure, any other error fails the record
  immediately
- An unavailable store or source fails the whole run once the current window has settled;
  records already written stay written
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from tqdm import tqdm

from ..sources.base.exceptions import AdvisoryIngestException, ResolutionFailure
from ..sources.base.models import AdvisoryDraft, AffectedEntityRef, BatchReport, utcnow
from ..sources.cvelist.git_source import BaseCorpusSource

NormalizeFn = Callable[[Dict[str, Any], str], AdvisoryDraft]
ResolveFn = Callable[[AdvisoryDraft], Awaitable[List[AffectedEntityRef]]]
UpsertFn = Callable[[AdvisoryDraft, List[AffectedEntityRef]], Awaitable[Any]]


class IngestionCoordinator:
    """Runs the per-record pipeline over a batch of record locations"""

    def __init__(self, reader: BaseCorpusSource, window_size: int = 100, max_attempts: int = 3,
                 backoff_seconds: float = 0.05, failure_preview_limit: int = 50,
                 show_progress: bool = False):
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.reader = reader
        self.window_size = window_size
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.failure_preview_limit = failure_preview_limit
        self.show_progress = show_progress
        self.logger = logging.getLogger("coordinator.ingestion")

        self.stats = {
            'records_processed': 0,
            'retries': 0,
            'windows': 0,
        }
        self.last_report: Optional[BatchReport] = None

    async def run(self, record_locations: Sequence[str], normalize: NormalizeFn,
                  resolve_and_link: ResolveFn, upsert: UpsertFn) -> BatchReport:
        """
        Ingest every location and report the outcome

        Args:
            record_locations: Corpus-relative record paths
            normalize: Raw record + location -> AdvisoryDraft
            resolve_and_link: Draft -> resolved entity refs
            upsert: Draft + refs -> persisted advisory

        Returns:
            BatchReport with totals and a bounded preview of failures

        Raises:
            StoreUnavailable / SourceUnavailable after the window in which they occurred
        """
        locations = list(record_locations)
        report = BatchReport(total=len(locations), started_at=utcnow())
        self.last_report = report

        self.logger.info(f"🚀 Ingesting {report.total} records in windows of {self.window_size}")

        with tqdm(total=report.total, desc="Ingesting records", unit="record",
                  disable=not self.show_progress) as progress:
            for start in range(0, report.total, self.window_size):
                window = locations[start:start + self.window_size]
                results = await asyncio.gather(
                    *[self._process_record(location, normalize, resolve_and_link, upsert)
                      for location in window],
                    return_exceptions=True,
                )
                fatal = self._settle_window(window, results, report)
                self.stats['windows'] += 1
                progress.update(len(window))

                done = start + len(window)
                self.logger.info(f"Window {self.stats['windows']}: {done}/{report.total} processed "
                                 f"({report.succeeded} succeeded, {report.failed} failed)")

                if fatal is not None:
                    report.finished_at = utcnow()
                    self.logger.error(f"❌ Aborting ingestion after {done} records: {fatal}")
                    raise fatal

        report.finished_at = utcnow()
        self._log_summary(report)
        return report

    def _settle_window(self, window: List[str], results: List[Any],
                       report: BatchReport) -> Optional[AdvisoryIngestException]:
        fatal = None
        for location, result in zip(window, results):
            self.stats['records_processed'] += 1
            if result is None:
                report.succeeded += 1
                continue
            if not isinstance(result, Exception):
                # Cancellation and interpreter exits are not record failures
                raise result

            report.failed += 1
            if len(report.failed_locations) < self.failure_preview_limit:
                report.failed_locations.append(location)
                report.errors[location] = str(result)

            if isinstance(result, AdvisoryIngestException) and result.fatal_for_run:
                fatal = fatal or result
            elif isinstance(result, AdvisoryIngestException):
                self.logger.error(f"Failed to ingest {location}: {result}")
            else:
                self.logger.error(f"Unexpected {type(result).__name__} ingesting {location}: {result}")
        return fatal

    async def _process_record(self, location: str, normalize: NormalizeFn,
                              resolve_and_link: ResolveFn, upsert: UpsertFn) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                raw = await self.reader.read_record(location)
                draft = normalize(raw, location)
                refs = await resolve_and_link(draft)
                await upsert(draft, refs)
                return
            except AdvisoryIngestException as e:
                if not e.retryable:
                    raise
                if attempt >= self.max_attempts:
                    raise ResolutionFailure(
                        f"Gave up on {location} after {attempt} attempts: {e}",
                        source_name='coordinator',
                        details={'source_locator': location, 'attempts': attempt},
                    ) from e
                self.stats['retries'] += 1
                self.logger.debug(f"Transient conflict on {location} (attempt {attempt}), retrying: {e}")
                await asyncio.sleep(self.backoff_seconds * attempt)

    def _log_summary(self, report: BatchReport):
        self.logger.info("🎉 Ingestion completed")
        self.logger.info(f"   Total: {report.total}, succeeded: {report.succeeded}, failed: {report.failed}")
        self.logger.info(f"   Duration: {report.duration_seconds:.2f}s, retries: {self.stats['retries']}")
        if report.failed > len(report.failed_locations):
            self.logger.info(f"   Showing {len(report.failed_locations)} of {report.failed} failures")

    def get_ingestion_stats(self) -> Dict[str, int]:
        return self.stats.copy()
