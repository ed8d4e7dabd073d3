import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import requests
from playwright.async_api import Error as PlaywrightError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .cookies import cookie_header
from .errors import AssetAbortError
from .rewrite import parse_css_for_urls
from .settings import RETRYABLE_STATUS_CODES
from .state import CrawlState
from .urls import normalize_url

# -------------------- Capture --------------------

EVICTED_MARKERS = ("evicted from inspector cache", "No resource with given identifier")
QUIET_BUFFER_ERRORS = ("Target closed", "has been closed", "No data found for resource")
CHUNK_SIZE = 64 * 1024


@dataclass
class CapturedResponse:
    url: str
    body: Optional[bytes]
    content_type: str
    status: int
    saved_via_stream: bool = False


def is_css(content_type: str, url: str) -> bool:
    return "text/css" in (content_type or "") or url.lower().endswith(".css")


def is_text_asset(content_type: str) -> bool:
    ct = (content_type or "").lower()
    return ct.startswith("text/") or "javascript" in ct or "json" in ct


def is_evicted_error(err: BaseException) -> bool:
    msg = str(err)
    return any(m in msg for m in EVICTED_MARKERS)


# -------------------- HTTP fallback --------------------


def build_session(
    user_agent: str, cookies: Optional[List[Dict[str, Any]]] = None
) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=3,
        backoff_factor=0.5,
        status_forcelist=sorted(RETRYABLE_STATUS_CODES),
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers["User-Agent"] = user_agent
    if cookies:
        s.headers["Cookie"] = cookie_header(cookies)
    return s


def fetch_evicted(
    session: requests.Session,
    url: str,
    dest: Optional[Path],
    timeout: Tuple[float, float],
) -> Tuple[int, Optional[bytes], int]:
    """GET `url` outside the browser.

    With no `dest` the body is returned in memory. Otherwise it is streamed
    into `dest`, which must not exist yet (FileExistsError if it does).
    Returns (status, body, bytes written).
    """
    with session.get(url, timeout=timeout, stream=dest is not None) as resp:
        resp.raise_for_status()
        if dest is None:
            return resp.status_code, resp.content, len(resp.content)
        dest.parent.mkdir(parents=True, exist_ok=True)
        written = 0
        with open(dest, "xb") as f:
            try:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
            except (requests.RequestException, OSError):
                f.close()
                dest.unlink(missing_ok=True)
                raise
        return resp.status_code, None, written


# -------------------- Response collector --------------------


class ResponseCollector:
    """Buffers every response one page receives.

    Browser events are pushed onto a channel; a single drain task dedupes
    them by URL and starts one buffering task per accepted URL. The first
    fatal condition (a rate-limited asset) is kept in `error` for the page
    pipeline to raise at its next checkpoint.
    """

    def __init__(
        self,
        state: CrawlState,
        page_url: str,
        depth: int,
        session: requests.Session,
        executor: Executor,
    ):
        self.state = state
        self.settings = state.settings
        self.page_url = page_url
        self.depth = depth
        self.session = session
        self.executor = executor
        self.channel: asyncio.Queue = asyncio.Queue()
        self.seen: Set[str] = set()
        self.tasks: Dict[str, asyncio.Task] = {}
        self.css_urls: List[str] = []
        self.error: Optional[Exception] = None
        self._drain_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._drain_task = asyncio.ensure_future(self._drain())

    def on_response(self, response) -> None:
        self.channel.put_nowait(response)

    def has(self, url: str) -> bool:
        return normalize_url(url) in self.seen

    def set_error(self, err: Exception) -> None:
        if self.error is None:
            self.error = err

    def raise_if_failed(self) -> None:
        if self.error is not None:
            raise self.error

    async def _drain(self) -> None:
        while True:
            response = await self.channel.get()
            try:
                self._accept(response)
            except Exception as e:
                logging.warning("could not handle response url=%s: %s", getattr(response, "url", "?"), e)
            finally:
                self.channel.task_done()

    def _accept(self, response) -> None:
        url = normalize_url(response.url)
        if not url or url in self.seen or self.state.shutting_down:
            return
        self.seen.add(url)
        status = response.status
        ok = 200 <= status < 300

        if status in RETRYABLE_STATUS_CODES:
            self.state.cooldown.activate(response.headers, url)
            self.set_error(AssetAbortError(url, status))
            return

        if ok and self.settings.follow_iframes and response.request.resource_type == "document":
            self.state.scheduler.enqueue(url, self.depth + 1)

        if 300 <= status < 400:
            return
        if not ok and not self.settings.save_failed_responses:
            self.state.stats.failed_resources += 1
            return

        content_type = response.headers.get("content-type", "")
        self.tasks[url] = asyncio.ensure_future(self._buffer(response, url, content_type, status, ok))

    async def _buffer(
        self, response, url: str, content_type: str, status: int, ok: bool
    ) -> Optional[CapturedResponse]:
        if not ok:
            return CapturedResponse(url, str(status).encode(), content_type, status)
        try:
            try:
                body = await asyncio.wait_for(response.body(), self.settings.asset_timeout)
            except PlaywrightError as e:
                if is_evicted_error(e):
                    return await self.recover_evicted(url, content_type)
                raise
        except asyncio.TimeoutError:
            logging.warning(
                "asset buffering timed out url=%s after=%.0fs", url, self.settings.asset_timeout
            )
            return None
        except PlaywrightError as e:
            if not self.state.shutting_down and not any(m in str(e) for m in QUIET_BUFFER_ERRORS):
                logging.warning("could not buffer response url=%s: %s", url, e)
            return None

        if is_css(content_type, url):
            found = parse_css_for_urls(body.decode("utf-8", errors="replace"), url)
            self.css_urls.extend(sorted(found))
        return CapturedResponse(url, body, content_type, status)

    async def recover_evicted(self, url: str, content_type: str) -> Optional[CapturedResponse]:
        logging.warning("content evicted from browser cache, fetching directly url=%s", url)
        dest: Optional[Path] = None
        if not is_text_asset(content_type):
            rec = self.state.records.predict(url, False, self.page_url)
            if rec is None:
                logging.error("could not predict a file path for evicted asset url=%s", url)
                return None
            dest = rec.local_path

        timeout = (self.settings.nav_timeout_ms / 1000.0, self.settings.asset_timeout)
        loop = asyncio.get_running_loop()
        try:
            status, body, nbytes = await loop.run_in_executor(
                self.executor, fetch_evicted, self.session, url, dest, timeout
            )
        except FileExistsError:
            logging.info("evicted asset already saved by another page url=%s", url)
            return CapturedResponse(url, None, content_type, 200, saved_via_stream=True)
        except (requests.RequestException, OSError) as e:
            logging.error("evicted asset fallback failed url=%s: %s", url, e)
            return None

        if dest is None:
            logging.info("evicted text asset buffered via fallback url=%s", url)
            return CapturedResponse(url, body, content_type, status)
        logging.info("evicted asset streamed to disk url=%s path=%s", url, dest)
        self.state.records.finalize(url, dest, content_type, status, False, self.page_url)
        self.state.stats.add_saved(nbytes)
        return CapturedResponse(url, None, content_type, status, saved_via_stream=True)

    async def settle(self) -> Dict[str, CapturedResponse]:
        """Wait for every accepted response; drop failures and streamed assets."""
        await self.channel.join()
        urls = list(self.tasks)
        results = await asyncio.gather(*(self.tasks[u] for u in urls))
        return {
            u: r for u, r in zip(urls, results) if r is not None and not r.saved_via_stream
        }

    async def close(self) -> None:
        pending = [t for t in self.tasks.values() if not t.done()]
        if self._drain_task is not None:
            pending.append(self._drain_task)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
