import asyncio
import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

import requests
from playwright.async_api import Playwright, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .browser import interactive_login, is_browser_lost, launch_browser
from .capture import build_session
from .cookies import load_cookies
from .errors import PageStatusError, StartupError
from .pipeline import PagePipeline
from .scheduler import START_SCORE, CrawlJob
from .settings import PERMANENT_ERROR_STATUS_CODES, Settings
from .shutdown import ShutdownCoordinator
from .state import CrawlState
from .urls import is_direct_video_url
from .video import VideoOrchestrator

# -------------------- Crawl --------------------


class Crawler:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.state = CrawlState.create(settings)
        self.videos = VideoOrchestrator(self.state)
        self.shutdown = ShutdownCoordinator(self.state, self.videos)
        self.executor = ThreadPoolExecutor(max_workers=max(1, settings.io_workers))
        self.cookies: List[Dict[str, Any]] = []
        self.session: Optional[requests.Session] = None
        self.pipeline: Optional[PagePipeline] = None
        self.browser_lost = False

    async def run(self) -> int:
        self.shutdown.install_signal_handlers(asyncio.get_running_loop())
        try:
            await self._run()
        except StartupError as e:
            logging.critical("%s", e)
            await self.shutdown.shutdown("Startup failure", 1)
        except Exception:
            logging.exception("a critical error occurred in the main process")
            await self.shutdown.shutdown("Unhandled error", 1)
        finally:
            if self.state.shutting_down:
                await self.shutdown.done.wait()
            self.executor.shutdown(wait=False)
            if self.session is not None:
                self.session.close()
        return self.shutdown.exit_code

    async def start_playwright(self) -> Playwright:
        if self.shutdown.playwright is None:
            self.shutdown.playwright = await async_playwright().start()
        return self.shutdown.playwright

    async def load_session(self) -> List[Dict[str, Any]]:
        s = self.settings
        cookies: List[Dict[str, Any]] = []
        if s.interactive_login:
            cookies = await interactive_login(await self.start_playwright(), s)
        if not cookies and s.cookies_path:
            cookies = load_cookies(s.cookies_path)
        elif cookies:
            logging.info("proceeding with the captured session from the interactive login")
        else:
            logging.info("proceeding without a pre-loaded session")
        return cookies

    def wants_video(self, url: str) -> bool:
        mode = self.settings.videos
        return mode == "all" or (mode == "auto" and is_direct_video_url(url))

    async def _run(self) -> None:
        s = self.settings
        st = self.state
        logging.info("starting webclone")
        logging.info("using configuration: %s", s.summary())
        logging.info(
            "crawl scope initialized scope=%s hosts=%s base_domains=%s",
            s.crawl_scope,
            sorted(st.scope.initial_hosts),
            sorted(st.scope.initial_base_domains),
        )

        self.cookies = await self.load_session()
        self.videos.cookies = self.cookies
        self.session = build_session(s.user_agent, self.cookies)
        self.pipeline = PagePipeline(st, self.videos, self.session, self.executor, self.cookies)

        video_starts = [u for u in s.start_urls if self.wants_video(u)]
        if video_starts or s.videos == "all":
            await self.videos.check_available()

        initial: List[asyncio.Task] = []
        for url in s.start_urls:
            if url in video_starts:
                task = self.videos.schedule_start_url(url)
                if task is not None:
                    initial.append(task)
            else:
                st.scheduler.enqueue(url, 0, START_SCORE, is_start=True)

        if not st.scheduler:
            logging.info("no pages to crawl, running in video-only download mode")
            try:
                await asyncio.gather(*initial)
            finally:
                await self.shutdown.shutdown("Video downloads complete", 0)
            return

        logging.info("pages detected in queue, starting full crawl mode")
        s.out_root.mkdir(parents=True, exist_ok=True)
        st.browser = await launch_browser(await self.start_playwright(), s)
        logging.info("browser launched successfully")

        workers = [asyncio.ensure_future(self.worker(i + 1)) for i in range(s.concurrency)]
        monitor = asyncio.ensure_future(self.monitor())
        results = await asyncio.gather(*workers, return_exceptions=True)
        for i, res in enumerate(results, 1):
            if isinstance(res, BaseException) and not isinstance(res, asyncio.CancelledError):
                logging.error("[worker %d] crashed: %r", i, res)

        if not st.shutting_down:
            if self.browser_lost:
                await self.shutdown.shutdown("Browser connection lost", 1)
            else:
                await self.shutdown.shutdown("Crawl Complete", 0)
        await self.shutdown.done.wait()
        monitor.cancel()

    # -------------------- Workers --------------------

    async def worker(self, worker_id: int) -> None:
        s = self.settings
        st = self.state
        logging.info("[worker %d] started", worker_id)
        while not st.shutting_down:
            if len(st.scheduler.visited) >= s.max_pages:
                logging.info("[worker %d] page limit reached (%d)", worker_id, s.max_pages)
                break
            if st.cooldown.remaining() > 0:
                await st.cooldown.wait(lambda: st.shutting_down)
                continue

            job = st.scheduler.pop()
            if job is None:
                await asyncio.sleep(s.idle_wait)
                continue
            if job.depth > s.max_depth:
                logging.debug("skipping page url=%s depth=%d: max depth exceeded", job.url, job.depth)
                continue
            if st.scheduler.is_visited(job.url):
                continue

            logging.info("[worker %d] starting job url=%s crawl_id=%s", worker_id, job.url, job.crawl_id)
            st.stats.active_workers += 1
            try:
                stop = await self.run_job(worker_id, job)
            finally:
                st.stats.active_workers -= 1
            if stop:
                break
        logging.info("[worker %d] finished", worker_id)

    async def run_job(self, worker_id: int, job: CrawlJob) -> bool:
        """Crawl one page. Returns True when this worker must stop."""
        st = self.state
        try:
            await asyncio.sleep(random.randint(*self.settings.random_delay_ms) / 1000.0)
            await st.cooldown.wait(lambda: st.shutting_down)
            if st.shutting_down:
                return True
            await self.pipeline.crawl_page(st.browser, job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self.handle_failure(worker_id, job, e)

        st.scheduler.mark_visited(job.url)
        st.stats.pages_crawled += 1
        st.stats.last_progress_time = time.monotonic()
        st.stats.consecutive_failures = 0
        logging.info("[worker %d] job finished successfully url=%s crawl_id=%s", worker_id, job.url, job.crawl_id)
        return False

    async def handle_failure(self, worker_id: int, job: CrawlJob, err: Exception) -> bool:
        s = self.settings
        st = self.state
        st.stats.consecutive_failures += 1

        if st.shutting_down:
            logging.info("[worker %d] abandoning job during shutdown url=%s", worker_id, job.url)
            return True
        if is_browser_lost(err):
            logging.critical(
                "browser connection lost worker=%d url=%s crawl_id=%s: %s",
                worker_id,
                job.url,
                job.crawl_id,
                err,
            )
            self.browser_lost = True
            return True

        if isinstance(err, (PlaywrightTimeoutError, asyncio.TimeoutError)):
            logging.warning("navigation timeout url=%s, activating cool-down as a precaution", job.url)
            st.cooldown.activate({}, job.url)

        if isinstance(err, PageStatusError) and err.status in PERMANENT_ERROR_STATUS_CODES:
            logging.error("permanent error, giving up on url=%s status=%d", job.url, err.status)
            return False

        logging.warning("crawl failed for page worker=%d url=%s crawl_id=%s: %s", worker_id, job.url, job.crawl_id, err)

        if st.stats.consecutive_failures >= s.max_consecutive_failures:
            logging.critical(
                "max consecutive failures reached count=%d, shutting down",
                st.stats.consecutive_failures,
            )
            await self.shutdown.shutdown("Max consecutive failures", 1)
            return True

        if job.retries < s.max_retries:
            logging.info(
                "[worker %d] re-queueing url=%s attempt=%d/%d",
                worker_id,
                job.url,
                job.retries + 1,
                s.max_retries,
            )
            st.scheduler.requeue(job)
        else:
            logging.error("max retries reached, giving up on url=%s crawl_id=%s", job.url, job.crawl_id)
        return False

    # -------------------- Monitor --------------------

    async def monitor(self) -> None:
        s = self.settings
        st = self.state
        while not st.shutting_down:
            await asyncio.sleep(s.monitor_interval)
            if st.shutting_down:
                return
            now = time.monotonic()
            if s.global_timeout_s > 0 and now - st.stats.start_time > s.global_timeout_s:
                logging.warning("global timeout reached, forcing shutdown")
                await self.shutdown.shutdown("Global timeout", 1)
                return
            if (
                s.stall_timeout_s > 0
                and now - st.stats.last_progress_time > s.stall_timeout_s
                and st.stats.active_workers == 0
                and st.scheduler
            ):
                logging.warning("stall timeout reached, no progress has been made, forcing shutdown")
                await self.shutdown.shutdown("Stall timeout", 1)
                return
            if not st.scheduler and st.stats.active_workers == 0 and self.videos.active_downloads == 0:
                logging.info("queue is empty and all workers are idle, crawl is complete")
                await self.shutdown.shutdown("Crawl Complete", 0)
                return


def run_crawler(settings: Settings) -> int:
    return asyncio.run(Crawler(settings).run())
