"""
Submission surface and analysis job state machine.

A URL record moves queued -> processing -> completed | error. `processing` is
written before any network call so an interrupted crawl stays visible, and
`completed` is written only after the broken-link set and every metric are
stored.
"""
from __future__ import annotations
import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlsplit

from .analyzer import PageAnalyzer
from .config import CrawlerConfig
from .errors import FetchError, ValidationError
from .events import (
    EventBroadcaster,
    STATUS_COMPLETED,
    STATUS_DELETED,
    STATUS_ERROR,
    STATUS_PROCESSING,
    STATUS_QUEUED,
)
from .hashing import canonicalize_url, generate_url_hash
from .models import AnalysisResult, BrokenLink, URLFilter, URLRecord, URLStatus
from .pool import JOB_TYPE_ANALYZE_URL, Job, PoolStats, WorkerPool
from .repository import DuplicateRecord, URLRepository

logger = logging.getLogger(__name__)


def validate_url(url: str) -> None:
    """Reject anything that is not an absolute http(s) URL with a host."""
    if url is None or not url.strip():
        raise ValidationError("URL cannot be empty")
    try:
        parsed = urlsplit(url.strip())
        hostname = parsed.hostname
    except ValueError as e:
        raise ValidationError(f"invalid URL format: {e}") from e
    if parsed.scheme.lower() not in ("http", "https"):
        raise ValidationError("URL must use HTTP or HTTPS protocol")
    if not hostname:
        raise ValidationError("URL must contain a valid host")


def _validate_id(url_id: int) -> None:
    if not isinstance(url_id, int) or isinstance(url_id, bool) or url_id <= 0:
        raise ValidationError(f"invalid URL ID: {url_id!r}")


class CrawlerService:
    def __init__(
        self,
        repository: URLRepository,
        pool: WorkerPool,
        analyzer: Optional[PageAnalyzer] = None,
        config: Optional[CrawlerConfig] = None,
        events: Optional[EventBroadcaster] = None,
    ):
        self.repository = repository
        self.pool = pool
        self.analyzer = analyzer or PageAnalyzer()
        self.config = config or CrawlerConfig()
        self.events = events
        pool.register_handler(JOB_TYPE_ANALYZE_URL, self.handle_analyze_job)

    def _publish(self, url_id: int, status: str, data=None) -> None:
        if self.events is not None:
            self.events.publish(url_id, status, data)

    # ------------------ submission surface ------------------

    async def add_url(self, url: str) -> URLRecord:
        """Store `url` once; equivalent submissions return the existing record."""
        validate_url(url)
        url_hash = generate_url_hash(url)

        existing = await self.repository.find_by_hash(url_hash, timeout=self.config.db_timeout)
        if existing is not None:
            logger.info("URL already exists", extra={"fields": {"url": url, "id": existing.id}})
            return existing

        record = URLRecord(url=canonicalize_url(url), url_hash=url_hash, status=URLStatus.QUEUED)
        try:
            await self.repository.save(record, timeout=self.config.db_timeout)
        except DuplicateRecord:
            # Lost a race with a concurrent submission of the same URL
            existing = await self.repository.find_by_hash(url_hash, timeout=self.config.db_timeout)
            if existing is None:
                raise
            return existing

        logger.info("URL added", extra={"fields": {"url": record.url, "id": record.id}})
        return record

    async def get_url(self, url_id: int) -> URLRecord:
        _validate_id(url_id)
        return await self.repository.find_by_id(url_id, timeout=self.config.db_timeout)

    async def get_urls(self, filter: Optional[URLFilter] = None) -> Tuple[List[URLRecord], int]:
        filter = filter or URLFilter()
        if filter.page < 1:
            filter.page = 1
        if filter.limit < 1 or filter.limit > self.config.max_page_size:
            filter.limit = 10
        return await self.repository.find_all(filter, timeout=self.config.db_list_timeout)

    async def analyze_url(self, url_id: int) -> Job:
        """Queue one analysis of an existing record.

        Raises QueueFull when the pool has no room; the job is not retried.
        """
        _validate_id(url_id)
        await self.repository.find_by_id(url_id, timeout=self.config.db_timeout)

        job = Job(
            id=f"analyze_{url_id}_{uuid.uuid4().hex[:12]}",
            type=JOB_TYPE_ANALYZE_URL,
            payload=url_id,
            max_retry=self.config.retry_attempts,
        )
        self.pool.add_job(job)
        self._publish(url_id, STATUS_QUEUED)
        return job

    async def analyze_urls(self, ids: Sequence[int]) -> Dict[int, str]:
        """Queue several analyses; returns the ids that could not be queued with the reason."""
        failures = {}
        for url_id in ids:
            try:
                await self.analyze_url(url_id)
            except Exception as e:
                logger.error("Failed to queue analysis job",
                             extra={"fields": {"url_id": url_id, "error": str(e)}})
                failures[url_id] = str(e)
        return failures

    async def delete_url(self, url_id: int) -> None:
        _validate_id(url_id)
        await self.repository.delete(url_id, timeout=self.config.db_timeout)
        logger.info("URL deleted", extra={"fields": {"id": url_id}})
        self._publish(url_id, STATUS_DELETED)

    async def delete_urls(self, ids: Sequence[int]) -> None:
        if not ids:
            return
        for url_id in ids:
            _validate_id(url_id)
        await self.repository.delete_batch(list(ids), timeout=self.config.db_list_timeout)
        logger.info("URLs deleted", extra={"fields": {"count": len(ids)}})
        for url_id in ids:
            self._publish(url_id, STATUS_DELETED)

    async def get_broken_links(self, url_id: int) -> List[BrokenLink]:
        _validate_id(url_id)
        return await self.repository.find_broken_links_by_url_id(url_id, timeout=self.config.db_timeout)

    def pool_stats(self) -> PoolStats:
        return self.pool.stats()

    # ------------------ job handling ------------------

    async def handle_analyze_job(self, job: Job) -> URLRecord:
        url_id = job.payload
        _validate_id(url_id)

        record = await self.repository.find_by_id(url_id, timeout=self.config.db_timeout)
        logger.info("Starting URL analysis",
                    extra={"fields": {"url_id": url_id, "job_id": job.id, "retry": job.retry}})

        record.status = URLStatus.PROCESSING
        record.error_message = None
        await self.repository.update(record, timeout=self.config.db_timeout)
        self._publish(url_id, STATUS_PROCESSING)

        try:
            # The analyzer trims link probing to fit the budget; wait_for only
            # fires when the page fetch itself overruns it
            result = await asyncio.wait_for(
                self.analyzer.analyze(record.url, timeout=self.config.analysis_timeout),
                timeout=self.config.analysis_timeout,
            )
        except asyncio.TimeoutError as e:
            error = FetchError(f"analysis timed out after {self.config.analysis_timeout}s", url=record.url)
            await self._mark_error(record, error)
            raise error from e
        except Exception as e:
            await self._mark_error(record, e)
            raise

        await self._store_result(record, result)
        logger.info("URL analysis completed", extra={"fields": {"url_id": url_id}})
        return record

    async def _store_result(self, record: URLRecord, result: AnalysisResult) -> None:
        # The broken-link set is replaced, never merged
        await self.repository.delete_broken_links_by_url_id(record.id, timeout=self.config.db_timeout)
        for link in result.broken_links:
            link.url_id = record.id
            await self.repository.save_broken_link(link, timeout=self.config.db_timeout)

        record.apply_result(result)
        await self.repository.update(record, timeout=self.config.db_timeout)
        self._publish(record.id, STATUS_COMPLETED, {
            "title": record.title,
            "html_version": record.html_version,
            "internal_links_count": record.internal_links_count,
            "external_links_count": record.external_links_count,
            "broken_links_count": record.broken_links_count,
            "has_login_form": record.has_login_form,
        })

    async def _mark_error(self, record: URLRecord, error: BaseException) -> None:
        logger.error("URL analysis failed",
                     extra={"fields": {"url_id": record.id, "error": str(error)}})
        record.clear_metrics()
        record.status = URLStatus.ERROR
        record.error_message = str(error) or error.__class__.__name__
        await self.repository.delete_broken_links_by_url_id(record.id, timeout=self.config.db_timeout)
        await self.repository.update(record, timeout=self.config.db_timeout)
        self._publish(record.id, STATUS_ERROR, {"error": record.error_message})
