# =============================================================================
# core/ingestion.py  -  URL -> stored Document
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Ties the extraction pipeline to the repository:
#
#       url --> pipeline.check(url)  (bad or unsupported URL, no I/O at all)
#           --> connect (fail fast on missing credentials)
#           --> pipeline.extract(url)
#           --> repository.find_by_url(metadata.url)
#           --> create  (first time, was_update=False)
#               update  (seen before, same id, was_update=True)
#
# KNOWN RACE:
#   The lookup and the write are two separate store calls.  Two ingests of the
#   same URL running at the same time can both miss the lookup and both
#   create, leaving two records with the same metadata.url.  The store has no
#   unique constraint on a JSON path to stop that, so we log when it could
#   have happened and leave deduplication of the rare duplicate to a re-ingest
#   (find_by_url then returns one of them and keeps updating it).
# =============================================================================

import logging

from core.documents import DocumentRepository
from core.extraction import ExtractionPipeline
from core.models import IngestOutcome

logger = logging.getLogger(__name__)


class IngestionService:
    def __init__(self, pipeline: ExtractionPipeline, repository: DocumentRepository):
        self.pipeline = pipeline
        self.repository = repository
        # URLs with an ingest currently between lookup and write.
        self._in_flight: dict[str, int] = {}

    async def ingest(self, url: str) -> IngestOutcome:
        """Extract ``url`` and upsert it by its source URL."""
        # Reject bad URLs before the store sees a login attempt.
        self.pipeline.check(url)
        config, _ = await self.repository.connect()
        result = await self.pipeline.extract(url, timeout=config.fetch_timeout)
        key = result.url

        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        try:
            if self._in_flight[key] > 1:
                logger.warning(f"Concurrent ingest of {key}; duplicate records are possible")
            existing = await self.repository.find_by_url(key)
            if existing is None:
                document = await self.repository.create(result)
                logger.info(f"Created document {document.id} for {key}")
                return IngestOutcome(document=document, was_update=False)
            document = await self.repository.update(existing.id, result)
            logger.info(f"Updated document {document.id} for {key}")
            return IngestOutcome(document=document, was_update=True)
        finally:
            self._in_flight[key] -= 1
            if not self._in_flight[key]:
                del self._in_flight[key]
