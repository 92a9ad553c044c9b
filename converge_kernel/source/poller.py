"""Cron-scheduled polling of a directory source."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from croniter import croniter

from converge_kernel.clock import utcnow
from converge_kernel.models.source import Revision
from converge_kernel.source.ingest import SourceIngestor
from converge_kernel.source.manifests import DirectorySource

logger = logging.getLogger(__name__)


class SourcePoller:
    """
    Reads the source on a cron schedule and ingests it when its content
    digest changed since the last successful ingestion.
    """

    def __init__(
        self,
        source: DirectorySource,
        ingestor: SourceIngestor,
        schedule: str = "*/3 * * * *",
    ):
        if not croniter.is_valid(schedule):
            raise ValueError(f"Invalid poll schedule: {schedule!r}")
        self.source = source
        self.ingestor = ingestor
        self.schedule = schedule
        self.last_digest: Optional[str] = None
        self.last_polled_at: Optional[datetime] = None
        latest = ingestor.revision_log.latest()
        if latest is not None:
            self.last_digest = latest.digest

    def next_poll_at(self, after: Optional[datetime] = None) -> datetime:
        if after is None:
            after = utcnow()
        return croniter(self.schedule, after).get_next(datetime)

    def is_due(self, current_time: Optional[datetime] = None) -> bool:
        if current_time is None:
            current_time = utcnow()
        if self.last_polled_at is None:
            return True
        return current_time >= self.next_poll_at(self.last_polled_at)

    def poll_once(self, current_time: Optional[datetime] = None) -> Optional[Revision]:
        """Read the source; ingest and return a revision only if it changed."""
        self.last_polled_at = current_time or utcnow()
        documents, digest = self.source.read()
        if digest == self.last_digest:
            logger.debug("Source %s unchanged (%s)", self.source.path, digest[:12])
            return None
        revision = self.ingestor.ingest(documents, commit=digest[:12])
        self.last_digest = digest
        return revision

    async def run_async(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll whenever the schedule fires until stopped."""
        if stop_event is None:
            stop_event = asyncio.Event()

        while not stop_event.is_set():
            now = utcnow()
            if self.is_due(now):
                try:
                    await asyncio.to_thread(self.poll_once, now)
                except Exception as e:
                    logger.error("Polling %s failed: %s", self.source.path, e)
            delay = (self.next_poll_at(self.last_polled_at or now) - utcnow()).total_seconds()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(delay, 1.0))
            except asyncio.TimeoutError:
                continue
