import asyncio
import dataclasses

import httpx
import pytest
import pytest_asyncio

from siteprobe.analyzer import PageAnalyzer
from siteprobe.errors import QueueFull, RecordNotFound, ValidationError
from siteprobe.events import EventBroadcaster
from siteprobe.hashing import generate_url_hash
from siteprobe.models import AnalysisResult, URLFilter, URLRecord, URLStatus
from siteprobe.pool import WorkerPool
from siteprobe.probe import PROBE_DEADLINE_EXCEEDED
from siteprobe.service import CrawlerService, validate_url

from conftest import html_response

HOME = "https://example.com/"

PAGE = """<!DOCTYPE html>
<html><head><title>Home</title></head>
<body>
  <h1>Hello</h1><h3>Sub</h3>
  <a href="/ok">ok</a>
  <a href="/missing">missing</a>
  <a href="https://partner.example/">partner</a>
</body></html>"""


def make_pool(pool_config):
    return WorkerPool(
        worker_count=pool_config.workers,
        queue_size=pool_config.queue_size,
        job_timeout=pool_config.job_timeout,
        retry_interval=pool_config.retry_delay,
    )


@pytest.fixture
def events():
    return EventBroadcaster()


@pytest_asyncio.fixture
async def service(repository, pool_config, crawler_config, http_config, fake_web, events):
    pool = make_pool(pool_config)
    svc = CrawlerService(repository, pool, PageAnalyzer(http_config, fake_web.transport),
                         crawler_config, events)
    pool.start()
    yield svc
    await pool.stop()


def drain(queue):
    updates = []
    while not queue.empty():
        updates.append(queue.get_nowait())
    return updates


async def analyze_and_wait(service, url_id):
    await service.analyze_url(url_id)
    await service.pool.join()
    return await service.get_url(url_id)


class TestValidation:
    @pytest.mark.parametrize("url", ["", "   ", "ftp://example.com/", "example.com", "http://", "javascript:alert(1)"])
    def test_rejects(self, url):
        with pytest.raises(ValidationError):
            validate_url(url)

    @pytest.mark.parametrize("url", ["http://example.com", "https://example.com:8443/a?b=c", "HTTPS://EXAMPLE.COM"])
    def test_accepts(self, url):
        validate_url(url)


class TestSubmission:
    @pytest.mark.asyncio
    async def test_add_url_deduplicates(self, service):
        first = await service.add_url("https://Example.com")
        second = await service.add_url("https://example.com:443/#top")

        assert first.id == second.id
        assert first.url == HOME
        assert first.status == URLStatus.QUEUED
        _, total = await service.get_urls()
        assert total == 1

    @pytest.mark.asyncio
    async def test_concurrent_equivalent_submissions_share_a_record(self, service):
        first, second = await asyncio.gather(
            service.add_url("https://Example.com"),
            service.add_url("https://example.com:443/"),
        )

        assert first.id == second.id
        _, total = await service.get_urls()
        assert total == 1

    @pytest.mark.asyncio
    async def test_add_recovers_from_lost_insert_race(self, service, repository, monkeypatch):
        # Another writer stores the same URL between the lookup and the insert
        original_find = repository.find_by_hash
        calls = []

        async def find_after_race(url_hash, timeout=None):
            calls.append(url_hash)
            if len(calls) == 1:
                await repository.save(URLRecord(url=HOME, url_hash=url_hash), timeout=timeout)
                return None
            return await original_find(url_hash, timeout=timeout)

        monkeypatch.setattr(repository, "find_by_hash", find_after_race)
        record = await service.add_url("https://example.com")

        assert len(calls) == 2
        stored = await original_find(generate_url_hash(HOME))
        assert record.id == stored.id
        _, total = await service.get_urls()
        assert total == 1

    @pytest.mark.asyncio
    async def test_add_invalid_url(self, service):
        with pytest.raises(ValidationError):
            await service.add_url("mailto:someone@example.com")

    @pytest.mark.asyncio
    async def test_analyze_unknown_or_invalid_id(self, service):
        with pytest.raises(RecordNotFound):
            await service.analyze_url(404)
        with pytest.raises(ValidationError):
            await service.analyze_url(0)

    @pytest.mark.asyncio
    async def test_get_urls_clamps_paging(self, service):
        for i in range(3):
            await service.add_url(f"https://example.com/{i}")
        records, total = await service.get_urls(URLFilter(page=0, limit=1000))
        assert total == 3 and len(records) == 3

    @pytest.mark.asyncio
    async def test_delete_publishes(self, service, events):
        queue = events.subscribe()
        record = await service.add_url(HOME)
        await service.delete_url(record.id)

        with pytest.raises(RecordNotFound):
            await service.get_url(record.id)
        assert [(u.url_id, u.status) for u in drain(queue)] == [(record.id, "deleted")]

    @pytest.mark.asyncio
    async def test_delete_many(self, service):
        a = await service.add_url("https://a.example/")
        b = await service.add_url("https://b.example/")
        await service.delete_urls([a.id, b.id])
        _, total = await service.get_urls()
        assert total == 0


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_full_queue_is_reported(self, repository, crawler_config, http_config, fake_web):
        pool = WorkerPool(worker_count=1, queue_size=1)
        svc = CrawlerService(repository, pool, PageAnalyzer(http_config, fake_web.transport), crawler_config)
        first = await svc.add_url("https://a.example/")
        second = await svc.add_url("https://b.example/")

        await svc.analyze_url(first.id)
        with pytest.raises(QueueFull):
            await svc.analyze_url(second.id)

        failures = await svc.analyze_urls([second.id, 999])
        assert set(failures) == {second.id, 999}
        assert svc.pool_stats().jobs_in_queue == 1
        await pool.stop()


class TestAnalysisFlow:
    @pytest.mark.asyncio
    async def test_completed(self, service, fake_web, events):
        fake_web.routes.update({
            HOME: html_response(PAGE),
            "https://example.com/ok": html_response("ok"),
            "https://partner.example/": html_response("ok"),
        })
        queue = events.subscribe()
        record = await service.add_url(HOME)

        stored = await analyze_and_wait(service, record.id)

        assert stored.status == URLStatus.COMPLETED
        assert stored.title == "Home"
        assert stored.html_version == "HTML5"
        assert (stored.h1_count, stored.h3_count) == (1, 1)
        assert (stored.internal_links_count, stored.external_links_count) == (2, 1)
        assert stored.broken_links_count == 1
        assert stored.error_message is None

        broken = await service.get_broken_links(record.id)
        assert [(b.link_url, b.status_code) for b in broken] == [("https://example.com/missing", 404)]

        updates = drain(queue)
        assert [u.status for u in updates] == ["queued", "processing", "completed"]
        assert updates[-1].data["broken_links_count"] == 1

    @pytest.mark.asyncio
    async def test_fetch_failure_marks_error(self, service, fake_web, events):
        fake_web.routes[HOME] = html_response("boom", status=500)
        queue = events.subscribe()
        record = await service.add_url(HOME)

        stored = await analyze_and_wait(service, record.id)

        assert stored.status == URLStatus.ERROR
        assert "500" in stored.error_message
        assert stored.title is None
        assert await service.get_broken_links(record.id) == []
        assert [u.status for u in drain(queue)] == ["queued", "processing", "error"]

    @pytest.mark.asyncio
    async def test_retry_recovers(self, repository, pool_config, crawler_config, http_config, fake_web):
        attempts = []

        def flaky(request):
            attempts.append(request.url)
            if len(attempts) == 1:
                return html_response("unavailable", status=503)
            return html_response("<title>Back</title>")

        fake_web.routes[("GET", HOME)] = flaky
        pool = make_pool(pool_config)
        svc = CrawlerService(repository, pool, PageAnalyzer(http_config, fake_web.transport),
                             dataclasses.replace(crawler_config, retry_attempts=2))
        async with pool:
            record = await svc.add_url(HOME)
            stored = await analyze_and_wait(svc, record.id)

        assert len(attempts) == 2
        assert stored.status == URLStatus.COMPLETED
        assert stored.title == "Back"

    @pytest.mark.asyncio
    async def test_reanalysis_replaces_broken_links(self, service, fake_web):
        fake_web.routes[HOME] = html_response('<a href="/gone">gone</a>')
        record = await service.add_url(HOME)
        stored = await analyze_and_wait(service, record.id)
        assert stored.broken_links_count == 1

        fake_web.routes[HOME] = html_response("<p>no links any more</p>")
        stored = await analyze_and_wait(service, record.id)

        assert stored.status == URLStatus.COMPLETED
        assert stored.broken_links_count == 0
        assert await service.get_broken_links(record.id) == []

    @pytest.mark.asyncio
    async def test_failed_reanalysis_clears_previous_results(self, service, fake_web):
        fake_web.routes[HOME] = html_response('<title>First</title><a href="/gone">gone</a>')
        record = await service.add_url(HOME)
        stored = await analyze_and_wait(service, record.id)
        assert stored.title == "First"

        fake_web.routes[HOME] = html_response("down", status=502)
        stored = await analyze_and_wait(service, record.id)

        assert stored.status == URLStatus.ERROR
        assert stored.title is None
        assert stored.broken_links_count == 0
        assert await service.get_broken_links(record.id) == []

    @pytest.mark.asyncio
    async def test_analysis_timeout_marks_error(self, repository, pool_config, crawler_config):
        class StalledAnalyzer:
            async def analyze(self, url, timeout=None):
                await asyncio.sleep(5)
                return AnalysisResult()

        pool = make_pool(pool_config)
        svc = CrawlerService(repository, pool, StalledAnalyzer(),
                             dataclasses.replace(crawler_config, analysis_timeout=0.05))
        async with pool:
            record = await svc.add_url(HOME)
            stored = await analyze_and_wait(svc, record.id)

        assert stored.status == URLStatus.ERROR
        assert "timed out" in stored.error_message

    @pytest.mark.asyncio
    async def test_malformed_links_do_not_fail_the_page(self, service, fake_web):
        fake_web.routes.update({
            HOME: html_response('<title>Home</title><a href="/ok">ok</a><a href="http://">bad</a>'
                                '<a href="http://xn--a.com/">bad host</a>'),
            "https://example.com/ok": html_response("ok"),
        })
        record = await service.add_url(HOME)

        stored = await analyze_and_wait(service, record.id)

        assert stored.status == URLStatus.COMPLETED
        assert stored.title == "Home"
        assert stored.broken_links_count == 2
        broken = await service.get_broken_links(record.id)
        assert [(b.link_url, b.status_code) for b in broken] == [("http://", 0), ("http://xn--a.com/", 0)]

    @pytest.mark.asyncio
    async def test_slow_links_do_not_fail_the_page(self, repository, pool_config, crawler_config,
                                                   http_config, fake_web):
        async def dead_link(request):
            await asyncio.sleep(0.2)
            raise httpx.ConnectTimeout("timed out", request=request)

        dead = [f"https://example.com/dead-{i}" for i in range(12)]
        fake_web.routes.update({url: dead_link for url in dead})
        fake_web.routes[HOME] = html_response(
            "<title>Slow</title>" + "".join(f'<a href="{url}">x</a>' for url in dead))

        pool = make_pool(pool_config)
        svc = CrawlerService(repository, pool,
                             PageAnalyzer(dataclasses.replace(http_config, probe_concurrency=2), fake_web.transport),
                             dataclasses.replace(crawler_config, analysis_timeout=1.0))
        async with pool:
            record = await svc.add_url(HOME)
            stored = await analyze_and_wait(svc, record.id)

        assert stored.status == URLStatus.COMPLETED
        assert stored.title == "Slow"
        assert stored.internal_links_count == 12
        assert stored.broken_links_count == 12
        broken = await svc.get_broken_links(record.id)
        assert [b.link_url for b in broken] == dead
        assert all(b.status_code == 0 for b in broken)
        assert broken[-1].error_message == PROBE_DEADLINE_EXCEEDED


class TestEvents:
    def test_overflow_is_dropped_not_blocking(self):
        events = EventBroadcaster(subscriber_queue_size=1)
        queue = events.subscribe()
        events.publish(1, "queued")
        events.publish(1, "processing")

        assert events.dropped == 1
        assert queue.get_nowait().status == "queued"

    def test_unsubscribe(self):
        events = EventBroadcaster()
        queue = events.subscribe()
        events.unsubscribe(queue)
        events.publish(1, "queued")
        assert queue.empty()
