import asyncio
import logging
import signal
import time
from typing import Any, List, Optional

from playwright.async_api import Error as PlaywrightError

from .state import CrawlState
from .video import VideoOrchestrator

# -------------------- Shutdown --------------------

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownCoordinator:
    """Runs the shutdown sequence once, whoever asks first.

    Entry points are normal completion, SIGINT/SIGTERM, the monitor's
    timeouts and fatal worker errors. Later calls return immediately.
    """

    def __init__(
        self,
        state: CrawlState,
        videos: VideoOrchestrator,
        kill_grace: float = 1.0,
        browser_close_timeout: float = 5.0,
    ):
        self.state = state
        self.videos = videos
        self.kill_grace = kill_grace
        self.browser_close_timeout = browser_close_timeout
        self.playwright: Optional[Any] = None
        self.reason: Optional[str] = None
        self.exit_code = 0
        self.done = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed: List[signal.Signals] = []

    # ---- signals ----

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        for sig in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                continue
            self._installed.append(sig)

    def remove_signal_handlers(self) -> None:
        if self._loop is None:
            return
        for sig in self._installed:
            self._loop.remove_signal_handler(sig)
        self._installed = []

    def _on_signal(self, sig: signal.Signals) -> None:
        logging.info("%s received, shutting down gracefully", sig.name)
        asyncio.ensure_future(self.shutdown(sig.name, 1))

    # ---- sequence ----

    async def shutdown(self, reason: str, exit_code: int = 0) -> None:
        if self.state.shutting_down:
            logging.info("shutdown is already in progress reason=%s", reason)
            return
        self.state.shutting_down = True
        self.reason = reason
        self.exit_code = exit_code
        logging.info("initiating shutdown reason=%s", reason)
        self.remove_signal_handlers()
        try:
            if exit_code:
                await self.videos.terminate_processes(self.kill_grace)
            await self.drain_videos()
            await self.close_browser()
        finally:
            self.log_summary()
            logging.info("shutdown procedure complete exit_code=%d", exit_code)
            self.done.set()

    async def drain_videos(self) -> None:
        if self.videos.active_downloads <= 0:
            return
        logging.info("waiting for %d video(s) to finish downloading", self.videos.active_downloads)
        timeout = self.state.settings.video_drain_timeout
        if await self.videos.wait_idle(timeout):
            logging.info("all background downloads complete")
            return
        logging.error(
            "timeout waiting for downloads to complete after %.0fs, some videos may not be saved",
            timeout,
        )
        self.videos.cancel_all()
        await self.videos.terminate_processes(self.kill_grace)

    async def close_browser(self) -> None:
        browser = self.state.browser
        self.state.browser = None
        if browser is not None:
            logging.info("terminating browser instance")
            try:
                await asyncio.wait_for(browser.close(), self.browser_close_timeout)
                logging.info("browser instance terminated")
            except asyncio.TimeoutError:
                logging.error("browser did not close within %.0fs", self.browser_close_timeout)
            except PlaywrightError as e:
                logging.error("error during browser termination: %s", e)
        pw = self.playwright
        self.playwright = None
        if pw is not None:
            try:
                await asyncio.wait_for(pw.stop(), self.browser_close_timeout)
            except (asyncio.TimeoutError, PlaywrightError) as e:
                logging.warning("could not stop playwright cleanly: %s", e)

    def log_summary(self) -> None:
        stats = self.state.stats
        duration = time.monotonic() - stats.start_time
        total_mb = stats.total_bytes / (1024 * 1024)
        logging.info("----------------------------------------")
        logging.info("           Crawl Complete")
        logging.info("----------------------------------------")
        logging.info("  Pages Crawled:    %d", stats.pages_crawled)
        logging.info("  Assets Saved:     %d", stats.assets_saved)
        logging.info("  Total Size:       %.2f MB", total_mb)
        logging.info("  Failed Resources: %d", stats.failed_resources)
        logging.info("  Duration:         %.2fs", duration)
        logging.info("----------------------------------------")
