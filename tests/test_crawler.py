"""Tests for the crawl loop: worker scheduling, failure handling and run modes."""

import asyncio

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from webclone.crawler import Crawler
from webclone.errors import PageStatusError
from webclone.scheduler import START_SCORE
from webclone.video import ToolResult


class FakePipeline:
    """Stands in for the page pipeline; fails a URL a set number of times."""

    def __init__(self, state, failures=None, links=None):
        self.state = state
        self.failures = dict(failures or {})
        self.links = links or {}
        self.crawled = []
        self.started_at = []

    async def crawl_page(self, browser, job):
        self.started_at.append(asyncio.get_running_loop().time())
        await asyncio.sleep(0)
        if self.failures.get(job.url):
            self.failures[job.url] -= 1
            raise RuntimeError("net::ERR_CONNECTION_RESET")
        self.crawled.append(job.url)
        for link in self.links.get(job.url, []):
            self.state.scheduler.enqueue(link, job.depth + 1)


@pytest.fixture
def crawler(settings):
    c = Crawler(settings)
    yield c
    c.executor.shutdown(wait=False)


def seed(crawler, *urls):
    for u in urls:
        crawler.state.scheduler.enqueue(u, 0, START_SCORE, is_start=True)


def job_for(crawler, url):
    seed(crawler, url)
    return crawler.state.scheduler.pop()


class TestHandleFailure:
    """Classification of page failures."""

    def test_permanent_status_not_retried(self, crawler):
        job = job_for(crawler, "https://example.com/gone")
        stop = asyncio.run(crawler.handle_failure(1, job, PageStatusError(404, job.url)))
        assert stop is False
        assert not crawler.state.scheduler
        assert crawler.state.stats.consecutive_failures == 1

    def test_transient_failure_requeued(self, crawler):
        job = job_for(crawler, "https://example.com/flaky")
        asyncio.run(crawler.handle_failure(1, job, RuntimeError("net::ERR_FAILED")))
        requeued = crawler.state.scheduler.pop()
        assert requeued.url == job.url
        assert requeued.retries == 1

    def test_gives_up_after_max_retries(self, crawler):
        crawler.settings.max_retries = 1
        job = job_for(crawler, "https://example.com/flaky")
        job.retries = 1
        asyncio.run(crawler.handle_failure(1, job, RuntimeError("net::ERR_FAILED")))
        assert not crawler.state.scheduler

    def test_timeout_activates_cooldown(self, crawler):
        crawler.state.cooldown.default_backoff_ms = (5000, 5000)
        job = job_for(crawler, "https://example.com/slow")
        asyncio.run(crawler.handle_failure(1, job, PlaywrightTimeoutError("Timeout 60000ms exceeded.")))
        assert crawler.state.cooldown.remaining() > 4

    def test_timeout_classified_by_type(self, crawler):
        crawler.state.cooldown.default_backoff_ms = (5000, 5000)
        job = job_for(crawler, "https://example.com/timeout")
        asyncio.run(crawler.handle_failure(1, job, PageStatusError(500, job.url)))
        assert crawler.state.cooldown.remaining() == 0

    def test_consecutive_ceiling_shuts_down(self, crawler):
        crawler.settings.max_consecutive_failures = 2
        first = job_for(crawler, "https://example.com/a")
        second = job_for(crawler, "https://example.com/b")

        async def scenario():
            assert await crawler.handle_failure(1, first, RuntimeError("boom")) is False
            return await crawler.handle_failure(2, second, RuntimeError("boom"))

        assert asyncio.run(scenario()) is True
        assert crawler.state.shutting_down
        assert crawler.shutdown.reason == "Max consecutive failures"
        assert crawler.shutdown.exit_code == 1

    def test_browser_lost_stops_worker(self, crawler):
        job = job_for(crawler, "https://example.com/a")
        err = RuntimeError("Target page, context or browser has been closed")
        assert asyncio.run(crawler.handle_failure(1, job, err)) is True
        assert crawler.browser_lost
        assert not crawler.state.shutting_down

    def test_failures_during_shutdown_are_not_retried(self, crawler):
        job = job_for(crawler, "https://example.com/a")
        crawler.state.shutting_down = True
        assert asyncio.run(crawler.handle_failure(1, job, RuntimeError("boom"))) is True
        assert not crawler.state.scheduler


class TestWorker:
    """The worker loop against a fake page pipeline."""

    def test_cooldown_started_during_delay_is_honored(self, crawler):
        crawler.settings.random_delay_ms = (100, 100)
        crawler.state.cooldown.default_backoff_ms = (300, 300)
        crawler.pipeline = FakePipeline(crawler.state)
        job = job_for(crawler, "https://example.com/a")

        async def rate_limited_elsewhere():
            await asyncio.sleep(0.02)
            crawler.state.cooldown.activate({}, "https://example.com/b")

        async def scenario():
            start = asyncio.get_running_loop().time()
            await asyncio.gather(crawler.run_job(1, job), rate_limited_elsewhere())
            return crawler.pipeline.started_at[0] - start

        assert asyncio.run(scenario()) >= 0.3

    def test_shutdown_before_navigation_skips_page(self, crawler):
        crawler.pipeline = FakePipeline(crawler.state)
        job = job_for(crawler, "https://example.com/a")
        crawler.state.shutting_down = True
        assert asyncio.run(crawler.run_job(1, job)) is True
        assert crawler.pipeline.crawled == []
        assert not crawler.state.scheduler.is_visited(job.url)

    def test_page_limit(self, crawler):
        crawler.settings.max_pages = 2
        crawler.pipeline = FakePipeline(crawler.state)
        seed(crawler, "https://example.com/a", "https://example.com/b", "https://example.com/c")
        asyncio.run(crawler.worker(1))
        assert len(crawler.pipeline.crawled) == 2
        assert crawler.state.stats.pages_crawled == 2
        assert len(crawler.state.scheduler) == 1

    def test_retry_then_success_resets_failures(self, crawler):
        crawler.settings.max_pages = 1
        crawler.pipeline = FakePipeline(crawler.state, failures={"https://example.com/a": 1})
        seed(crawler, "https://example.com/a")
        asyncio.run(crawler.worker(1))
        assert crawler.pipeline.crawled == ["https://example.com/a"]
        assert crawler.state.scheduler.is_visited("https://example.com/a")
        assert crawler.state.stats.consecutive_failures == 0
        assert crawler.state.stats.active_workers == 0

    def test_monitor_detects_completion(self, crawler):
        crawler.settings.monitor_interval = 0.02
        crawler.pipeline = FakePipeline(
            crawler.state, links={"https://example.com/": ["https://example.com/next"]}
        )
        seed(crawler, "https://example.com/")

        async def scenario():
            await asyncio.gather(crawler.worker(1), crawler.worker(2), crawler.monitor())

        asyncio.run(scenario())
        assert sorted(crawler.pipeline.crawled) == ["https://example.com/", "https://example.com/next"]
        assert crawler.shutdown.reason == "Crawl Complete"
        assert crawler.shutdown.exit_code == 0

    def test_stall_timeout(self, crawler):
        crawler.settings.monitor_interval = 0.01
        crawler.settings.stall_timeout = 0.0001
        seed(crawler, "https://example.com/")
        crawler.state.stats.last_progress_time -= 60
        asyncio.run(crawler.monitor())
        assert crawler.shutdown.reason == "Stall timeout"
        assert crawler.shutdown.exit_code == 1


class TestRun:
    """End-to-end run modes that need no browser."""

    def test_video_only_mode(self, settings, tmp_path):
        settings.start_urls = ["https://www.youtube.com/watch?v=abc123"]
        crawler = Crawler(settings)
        final = tmp_path / "Clip.mp4"
        results = [
            ToolResult(0, "2024.08.06\n", ""),
            ToolResult(0, f"[download] Destination: {final}\n", ""),
        ]

        async def fake_tool(args, timeout, track=False):
            return results.pop(0)

        crawler.videos._run_tool = fake_tool
        assert asyncio.run(crawler.run()) == 0
        assert crawler.shutdown.reason == "Video downloads complete"
        assert list(crawler.state.video_url_map.values()) == [final]
        assert crawler.state.browser is None

    def test_missing_cookie_file_is_a_startup_failure(self, settings, tmp_path):
        settings.cookies_path = str(tmp_path / "nope.json")
        crawler = Crawler(settings)
        assert asyncio.run(crawler.run()) == 1
        assert crawler.shutdown.reason == "Startup failure"
