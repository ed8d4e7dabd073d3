import asyncio
import logging
import os
import random
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Dict, List, Optional, Set
from urllib.parse import parse_qs, urlsplit

from .cookies import write_netscape_cookie_file
from .errors import FilenameTooLongError, StartupError, VideoDownloadError
from .state import CrawlState
from .urls import normalize_url

# -------------------- Video downloads --------------------

TITLE_TEMPLATE = "%(title)s.%(ext)s"
ID_TEMPLATE = "%(id)s.%(ext)s"

FILENAME_TOO_LONG = "File name too long"
OUTDATED_SIGNATURES = ("Cannot parse data", "please report this issue")

MERGER_RE = re.compile(r'\[Merger\] Merging formats into "(.*)"')
DESTINATION_RE = re.compile(r"\[download\] Destination: (.*)")
ALREADY_DOWNLOADED_RE = re.compile(r"\[download\] (.*) has already been downloaded")
VIDEO_TITLE_RE = re.compile(
    r"\[info\] (?:(?:NA|Downloading)\s+page|Extracting\s+data|Resolving\s+extractor"
    r"|Downloading\s+m3u8)\s+for\s+\"([^\"]+)\""
)


@dataclass
class ToolResult:
    returncode: int
    stdout: str
    stderr: str


def format_selector(max_height: Optional[int]) -> str:
    if not max_height:
        return "best[ext=mp4]/best/bestvideo+bestaudio"
    h = int(max_height)
    return "/".join(
        [
            f"best[height<={h}][ext=mp4]",
            f"best[height<={h}]",
            f"worstvideo[height>{h}]+bestaudio",
            "bestvideo+bestaudio/best",
        ]
    )


def transform_video_url(url: str) -> str:
    """Facebook watch links are handed to the extractor as reels."""
    try:
        p = urlsplit(url)
    except ValueError:
        return url
    host = (p.hostname or "").lower()
    if "facebook.com" in host and "/watch" in p.path:
        video_id = (parse_qs(p.query).get("v") or [""])[0]
        if video_id:
            new_url = f"https://www.facebook.com/reel/{video_id}"
            logging.info("transforming Facebook watch url=%s -> %s", url, new_url)
            return new_url
    return url


def video_output_dir(out_root: Path, video_url: str) -> Path:
    host = (urlsplit(video_url).hostname or "video").lower()
    if host.startswith("www."):
        host = host[4:]
    return Path(out_root) / host


def parse_final_path(stdout: str) -> Optional[str]:
    for regex in (MERGER_RE, DESTINATION_RE, ALREADY_DOWNLOADED_RE):
        matches = regex.findall(stdout)
        if matches:
            return matches[-1].strip()
    return None


class VideoOrchestrator:
    def __init__(self, state: CrawlState, cookies: Optional[List[Dict[str, Any]]] = None):
        self.state = state
        self.settings = state.settings
        self.cookies = cookies or []
        self.processed: Set[str] = set()
        self.live_processes: Set[Any] = set()
        self.tasks: Set[asyncio.Task] = set()
        self.active_downloads = 0

    # ---- subprocess plumbing ----

    async def _run_tool(self, args: List[str], timeout: float, track: bool = False) -> ToolResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.settings.yt_dlp_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise VideoDownloadError(f"failed to start yt-dlp process: {e}")
        if track:
            self.live_processes.add(proc)
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            if proc.returncode is None:
                proc.kill()
            raise VideoDownloadError(f"yt-dlp timed out after {timeout:.0f}s")
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        finally:
            self.live_processes.discard(proc)
        return ToolResult(
            proc.returncode if proc.returncode is not None else -1,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
        )

    async def _invoke(self, args: List[str], track: bool = False) -> ToolResult:
        cookie_file: Optional[Path] = None
        if self.cookies:
            cookie_file = write_netscape_cookie_file(self.cookies)
            args = [*args, "--cookies", str(cookie_file)]
        try:
            return await self._run_tool(args, self.settings.video_download_timeout, track)
        finally:
            if cookie_file is not None:
                try:
                    cookie_file.unlink(missing_ok=True)
                except OSError as e:
                    logging.warning("could not delete temporary cookie file %s: %s", cookie_file, e)

    async def check_available(self) -> None:
        try:
            result = await self._run_tool(["--version"], 30.0)
        except VideoDownloadError as e:
            raise StartupError(
                f"failed to execute '{self.settings.yt_dlp_path}' ({e}); "
                "install yt-dlp or pass --yt-dlp-path"
            )
        if result.returncode != 0:
            raise StartupError(f"yt-dlp version check failed with code {result.returncode}")
        logging.info("using yt-dlp %s", result.stdout.strip())

    # ---- path negotiation ----

    def output_dir(self, video_url: str) -> Path:
        return video_output_dir(self.settings.out_root, video_url)

    async def _get_filename(self, video_url: str, template: Path, referer: Optional[str]) -> Path:
        # must resolve with the same flags the download uses
        args = [*self.download_args(video_url, template, referer), "--get-filename"]
        result = await self._invoke(args)
        if result.returncode == 0:
            lines = [ln for ln in result.stdout.splitlines() if ln.strip()]
            if lines:
                return Path(lines[-1].strip())
            raise VideoDownloadError("yt-dlp --get-filename printed no file name")
        if FILENAME_TOO_LONG in result.stderr:
            raise FilenameTooLongError()
        raise VideoDownloadError(f"yt-dlp --get-filename failed: {result.stderr.strip()}")

    async def negotiate_path(self, video_url: str, referer: Optional[str] = None) -> Path:
        url = transform_video_url(video_url)
        out_dir = self.output_dir(url)
        try:
            return await self._get_filename(url, out_dir / TITLE_TEMPLATE, referer)
        except FilenameTooLongError:
            logging.warning("filename from title too long, using video id url=%s", video_url)
            return await self._get_filename(url, out_dir / ID_TEMPLATE, referer)

    # ---- download ----

    def download_args(self, video_url: str, template: Path, referer: Optional[str]) -> List[str]:
        if not referer:
            p = urlsplit(video_url)
            referer = f"{p.scheme}://{p.netloc}"
        return [
            video_url,
            "--no-playlist",
            "-o",
            str(template),
            "--no-cache-dir",
            "--referer",
            referer,
            "--user-agent",
            self.settings.user_agent,
            "-f",
            format_selector(self.settings.video_resolution),
        ]

    def _add_size(self, path: Path) -> None:
        try:
            self.state.stats.total_bytes += os.path.getsize(path)
        except OSError as e:
            logging.warning("could not stat downloaded video %s: %s", path, e)

    def _find_by_title(self, out_dir: Path, title: str) -> Optional[Path]:
        try:
            names = sorted(os.listdir(out_dir))
        except OSError as e:
            raise VideoDownloadError(f"could not read output directory {out_dir}: {e}")
        for name in names:
            if title in name:
                return out_dir / name
        return None

    def _resolve_final_path(self, result: ToolResult, out_dir: Path, video_url: str) -> Path:
        final = parse_final_path(result.stdout)
        if final:
            path = Path(final)
            logging.info("video download complete url=%s path=%s", video_url, path)
            self._add_size(path)
            return path
        m = VIDEO_TITLE_RE.search(result.stdout)
        if not m:
            raise VideoDownloadError(
                f"yt-dlp succeeded, but failed to parse final file path. Stdout: {result.stdout}"
            )
        found = self._find_by_title(out_dir, m.group(1))
        if found is None:
            raise VideoDownloadError(
                f"yt-dlp succeeded, but no file matching {m.group(1)!r} in {out_dir}"
            )
        logging.info("located pre-existing video download url=%s path=%s", video_url, found)
        self._add_size(found)
        return found

    async def attempt_single_download(self, video_url: str, referer: Optional[str] = None) -> Path:
        out_dir = self.output_dir(video_url)
        for template in (TITLE_TEMPLATE, ID_TEMPLATE):
            if template == ID_TEMPLATE:
                logging.info("retrying download with video id as filename url=%s", video_url)
            args = self.download_args(video_url, out_dir / template, referer)
            logging.info("spawning yt-dlp url=%s", video_url)
            logging.debug("yt-dlp args: %s", args)
            result = await self._invoke(args, track=True)
            if result.returncode == 0:
                return self._resolve_final_path(result, out_dir, video_url)
            if FILENAME_TOO_LONG in result.stderr:
                if template == TITLE_TEMPLATE:
                    continue
                raise FilenameTooLongError()
            msg = f"yt-dlp exited with code {result.returncode}. Stderr: {result.stderr.strip()}"
            if any(sig in result.stderr for sig in OUTDATED_SIGNATURES):
                msg += "\nHint: yt-dlp may be outdated, try updating it with 'yt-dlp -U'"
            raise VideoDownloadError(msg)
        raise VideoDownloadError("video download failed with both title and id filenames")

    async def download(self, video_url: str, referer: Optional[str] = None) -> Path:
        url = transform_video_url(video_url)
        retries = self.settings.video_max_retries
        last_error: Optional[Exception] = None
        for attempt in range(1, retries + 1):
            try:
                logging.info("downloading video url=%s attempt=%d/%d", url, attempt, retries)
                return await self.attempt_single_download(url, referer)
            except (VideoDownloadError, OSError) as e:
                last_error = e
                logging.warning("video download attempt failed url=%s attempt=%d: %s", url, attempt, e)
            if self.state.shutting_down:
                break
            if attempt < retries:
                await asyncio.sleep(random.randint(*self.settings.random_delay_ms) / 1000.0)
        logging.error("all video download attempts failed url=%s", url)
        raise last_error or VideoDownloadError(f"video download failed: {url}")

    # ---- background tasks ----

    def claim(self, video_url: str) -> Optional[str]:
        norm = normalize_url(video_url)
        if not norm or norm in self.processed:
            return None
        self.processed.add(norm)
        return norm

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        self.active_downloads += 1
        task = asyncio.ensure_future(coro)
        self.tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self.tasks.discard(task)
        self.active_downloads = max(0, self.active_downloads - 1)

    async def _negotiate_then_download(self, url: str, referer: Optional[str]) -> Optional[Path]:
        try:
            path = await self.negotiate_path(url, referer)
        except (VideoDownloadError, OSError) as e:
            logging.error("failed to get video file path url=%s: %s", url, e)
            return None
        self.state.video_url_map[url] = path
        final: Optional[Path] = None
        try:
            final = await self.download(url, referer)
        except (VideoDownloadError, OSError) as e:
            logging.error("video download failed permanently url=%s: %s", url, e)
            return None
        finally:
            if final is None:
                self.state.video_url_map.pop(url, None)
        self.state.video_url_map[url] = final
        return final

    async def _download_and_register(self, url: str, referer: Optional[str]) -> Optional[Path]:
        try:
            final = await self.download(url, referer)
        except (VideoDownloadError, OSError) as e:
            logging.error("initial video download failed url=%s: %s", url, e)
            self.state.video_url_map.pop(url, None)
            return None
        self.state.video_url_map[url] = final
        return final

    def schedule_discovered(self, video_url: str, referer: Optional[str]) -> Optional[asyncio.Task]:
        norm = self.claim(video_url)
        if norm is None:
            return None
        return self._spawn(self._negotiate_then_download(norm, referer))

    def schedule_start_url(self, video_url: str) -> Optional[asyncio.Task]:
        norm = self.claim(video_url)
        if norm is None:
            return None
        return self._spawn(self._download_and_register(norm, video_url))

    # ---- cancellation ----

    async def terminate_processes(self, grace: float = 1.0) -> None:
        procs = list(self.live_processes)
        if not procs:
            return
        logging.info("terminating %d active download process(es)", len(procs))
        for proc in procs:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
        await asyncio.sleep(grace)
        for proc in procs:
            if proc.returncode is None:
                logging.warning("process %s did not terminate gracefully, killing", proc.pid)
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            self.live_processes.discard(proc)

    async def wait_idle(self, timeout: float, interval: float = 0.1) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.active_downloads > 0:
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(interval)
        return True

    def cancel_all(self) -> None:
        for task in list(self.tasks):
            task.cancel()
        self.active_downloads = 0
