import asyncio
import logging
from concurrent.futures import Executor
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests
from playwright.async_api import Browser
from playwright.async_api import Error as PlaywrightError

from .browser import auto_scroll, discover_links, fetch_in_page, open_page
from .capture import CapturedResponse, ResponseCollector, is_css
from .errors import NavigationError, PageStatusError
from .rewrite import make_relativizer, rewrite_css_urls, rewrite_html, rewrite_manifest
from .scheduler import CrawlJob
from .settings import RETRYABLE_STATUS_CODES
from .state import CrawlState
from .urls import (
    context_rank,
    is_direct_video_url,
    link_score,
    looks_navigable,
    make_absolutizer,
    normalize_url,
)
from .video import VideoOrchestrator

# -------------------- Helpers --------------------


def is_likely_html(content_type: str) -> bool:
    ct = (content_type or "").lower()
    return "text/html" in ct or "application/xhtml+xml" in ct


def is_manifest(content_type: str, url: str) -> bool:
    lower = url.lower()
    return (
        "application/manifest+json" in (content_type or "")
        or lower.endswith(".webmanifest")
        or lower.endswith("manifest.json")
    )


def dedupe_links(links: List[Dict[str, str]]) -> Dict[str, str]:
    """Canonical URL -> best structural context it was seen in."""
    unique: Dict[str, str] = {}
    for link in links:
        url = normalize_url(link.get("url"))
        if not url:
            continue
        context = link.get("context") or "body"
        if url not in unique or context_rank(context) > context_rank(unique[url]):
            unique[url] = context
    return unique


def write_new_file(path: Path, data: bytes) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "xb") as f:
        f.write(data)
    return len(data)


# -------------------- Page pipeline --------------------


class PagePipeline:
    def __init__(
        self,
        state: CrawlState,
        videos: VideoOrchestrator,
        session: requests.Session,
        executor: Executor,
        cookies: Optional[List[Dict[str, Any]]] = None,
    ):
        self.state = state
        self.settings = state.settings
        self.videos = videos
        self.session = session
        self.executor = executor
        self.cookies = cookies or []

    async def crawl_page(self, browser: Browser, job: CrawlJob) -> None:
        url = job.url
        logging.info("crawling page url=%s depth=%d crawl_id=%s", url, job.depth, job.crawl_id)
        context, page = await open_page(browser, self.settings, self.cookies)
        collector = ResponseCollector(self.state, url, job.depth, self.session, self.executor)
        collector.start()
        page.on("response", collector.on_response)
        try:
            response = await page.goto(url, wait_until=self.settings.wait_until)
            if response is None:
                raise NavigationError("main page navigation failed: no response received")
            if not 200 <= response.status < 300:
                if response.status in RETRYABLE_STATUS_CODES:
                    self.state.cooldown.activate(response.headers, url)
                raise PageStatusError(response.status, url)

            await auto_scroll(page, self.settings)
            collector.raise_if_failed()

            logging.debug("discovering links and assets crawl_id=%s", job.crawl_id)
            links = await discover_links(page)
            links.extend({"url": u, "context": "body"} for u in collector.css_urls)
            unique = dedupe_links(links)
            logging.debug("discovery complete crawl_id=%s count=%d", job.crawl_id, len(unique))
            self.route_links(unique, job)
            collector.raise_if_failed()

            missing = [u for u in unique if not looks_navigable(u) and not collector.has(u)]
            await fetch_in_page(page, missing, int(self.settings.asset_timeout * 1000))
            captured = await collector.settle()
            collector.raise_if_failed()

            html = await page.content()
            await self.archive_page_and_assets(html, url, captured)
            logging.info(
                "page processing complete url=%s assets=%d crawl_id=%s",
                url,
                len(captured),
                job.crawl_id,
            )
        finally:
            page.remove_listener("response", collector.on_response)
            await collector.close()
            try:
                await context.close()
            except PlaywrightError as e:
                logging.debug("closing page context failed url=%s: %s", url, e)

    def route_links(self, unique: Dict[str, str], job: CrawlJob) -> None:
        for link_url, context in unique.items():
            navigable = looks_navigable(link_url)
            if is_direct_video_url(link_url):
                if self.settings.videos != "none":
                    self.videos.schedule_discovered(link_url, job.url)
                    continue
                if navigable:
                    continue
            if navigable:
                self.state.scheduler.enqueue(link_url, job.depth + 1, link_score(link_url, context))
            else:
                self.state.records.predict(link_url, False, job.url)

    # -------------------- Archiving --------------------

    def transform_asset(self, url: str, asset_file: Path, resp: CapturedResponse) -> bytes:
        body = resp.body or b""
        if self.settings.rewrite_css and is_css(resp.content_type, url):
            try:
                css = body.decode("utf-8")
                to_relative = make_relativizer(asset_file, self.state.records, self.state.video_url_map)
                return rewrite_css_urls(css, make_absolutizer(url), to_relative).encode("utf-8")
            except UnicodeDecodeError as e:
                logging.warning("in-memory CSS rewrite failed path=%s: %s", asset_file, e)
        elif is_manifest(resp.content_type, url):
            try:
                to_relative = make_relativizer(asset_file, self.state.records, self.state.video_url_map)
                text = rewrite_manifest(body.decode("utf-8"), make_absolutizer(url), to_relative)
                return text.encode("utf-8")
            except ValueError as e:
                logging.warning("manifest JSON rewrite failed path=%s: %s", asset_file, e)
        return body

    async def save(
        self,
        path: Path,
        url: str,
        body: bytes,
        content_type: str,
        status: int,
        is_page: bool,
        found_on: str,
    ) -> bool:
        loop = asyncio.get_running_loop()
        records = self.state.records
        try:
            nbytes = await loop.run_in_executor(self.executor, write_new_file, path, body)
        except FileExistsError:
            # another page got there first; its bytes stand
            records.finalize(url, path, content_type, status, is_page, found_on)
            return False
        except OSError as e:
            logging.error("failed to save file url=%s path=%s: %s", url, path, e)
            return False
        records.finalize(url, path, content_type, status, is_page, found_on)
        self.state.stats.add_saved(nbytes)
        return True

    async def archive_page_and_assets(
        self, html: str, page_url: str, captured: Dict[str, CapturedResponse]
    ) -> None:
        records = self.state.records
        page_rec = records.get(page_url) or records.predict(page_url, True)
        page_file = page_rec.local_path

        to_save: Dict[Path, Tuple[str, bytes, CapturedResponse]] = {}
        for asset_url, resp in captured.items():
            if is_likely_html(resp.content_type):
                if asset_url == normalize_url(page_url):
                    continue
                # frames and redirects that are crawled as pages of their own
                if asset_url in self.state.scheduler.enqueued:
                    continue
            rec = records.get(asset_url) or records.predict(asset_url, False, page_url)
            if rec is None:
                continue
            body = self.transform_asset(asset_url, rec.local_path, resp)
            to_save[rec.local_path] = (asset_url, body, resp)

        rewritten = rewrite_html(
            html,
            page_url,
            page_file,
            records,
            self.state.video_url_map,
            self.settings.rewrite_css,
        )

        await asyncio.gather(
            *(
                self.save(path, u, body, resp.content_type, resp.status, False, page_url)
                for path, (u, body, resp) in to_save.items()
            )
        )
        await self.save(
            page_file, page_url, rewritten.encode("utf-8"), "text/html", 200, True, page_url
        )
