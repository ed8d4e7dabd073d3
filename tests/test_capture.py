"""Tests for response capture: acceptance rules, buffering and the eviction fallback."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest
import requests
from playwright.async_api import Error as PlaywrightError

from webclone.capture import (
    ResponseCollector,
    build_session,
    fetch_evicted,
    is_css,
    is_evicted_error,
    is_text_asset,
)
from webclone.errors import AssetAbortError

PAGE = "https://example.com/"
EVICTED = "Protocol error (Network.getResponseBody): No resource with given identifier found"


class FakeRequest:
    def __init__(self, resource_type):
        self.resource_type = resource_type


class FakeResponse:
    """The slice of a Playwright response the collector touches."""

    def __init__(self, url, status=200, content_type="image/png", body=b"data",
                 resource_type="image", headers=None, error=None, delay=0.0):
        self.url = url
        self.status = status
        self.headers = {"content-type": content_type, **(headers or {})}
        self.request = FakeRequest(resource_type)
        self._body = body
        self._error = error
        self._delay = delay
        self.body_calls = 0

    async def body(self):
        self.body_calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._body


class FakeHTTPResponse:
    def __init__(self, status=200, content=b"", chunks=None):
        self.status_code = status
        self.content = content
        self.chunks = chunks if chunks is not None else [content]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def iter_content(self, chunk_size=1):
        return iter(self.chunks)


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.requested = []

    def get(self, url, timeout=None, stream=False):
        self.requested.append((url, stream))
        return self.response


@pytest.fixture
def executor():
    with ThreadPoolExecutor(max_workers=2) as pool:
        yield pool


def collect(state, executor, responses, session=None):
    """Feed responses through a collector and return (collector, settled captures)."""

    async def scenario():
        collector = ResponseCollector(state, PAGE, 0, session or FakeSession(None), executor)
        collector.start()
        try:
            for resp in responses:
                collector.on_response(resp)
            captured = await collector.settle()
        finally:
            await collector.close()
        return collector, captured

    return asyncio.run(scenario())


class TestHelpers:
    def test_classifiers(self):
        assert is_css("text/css; charset=utf-8", "https://a.com/x")
        assert is_css("", "https://a.com/site.CSS")
        assert is_text_asset("application/javascript")
        assert is_text_asset("application/manifest+json")
        assert not is_text_asset("image/png")
        assert is_evicted_error(PlaywrightError(EVICTED))
        assert not is_evicted_error(PlaywrightError("Target closed"))

    def test_session_headers(self):
        s = build_session("agent/1.0", [{"name": "sid", "value": "1", "domain": "a.com"}])
        assert s.headers["User-Agent"] == "agent/1.0"
        assert s.headers["Cookie"] == "sid=1"
        assert "Cookie" not in build_session("agent/1.0").headers

    def test_fetch_evicted_in_memory(self):
        session = FakeSession(FakeHTTPResponse(content=b"body{}"))
        assert fetch_evicted(session, "https://a.com/s.css", None, (1, 1)) == (200, b"body{}", 6)
        assert session.requested == [("https://a.com/s.css", False)]

    def test_fetch_evicted_streams_to_new_file(self, tmp_path):
        dest = tmp_path / "deep" / "v.bin"
        session = FakeSession(FakeHTTPResponse(chunks=[b"ab", b"", b"cd"]))
        assert fetch_evicted(session, "https://a.com/v.bin", dest, (1, 1)) == (200, None, 4)
        assert dest.read_bytes() == b"abcd"
        with pytest.raises(FileExistsError):
            fetch_evicted(session, "https://a.com/v.bin", dest, (1, 1))

    def test_fetch_evicted_http_error(self, tmp_path):
        session = FakeSession(FakeHTTPResponse(status=500))
        with pytest.raises(requests.HTTPError):
            fetch_evicted(session, "https://a.com/v.bin", tmp_path / "v.bin", (1, 1))
        assert not (tmp_path / "v.bin").exists()


class TestAcceptance:
    """Which responses are kept, and what side effects they have."""

    def test_buffers_successful_assets_once(self, state, executor):
        first = FakeResponse("https://example.com/img/a.png", body=b"png")
        again = FakeResponse("https://example.com/img/a.png#x", body=b"other")
        collector, captured = collect(state, executor, [first, again])
        assert list(captured) == ["https://example.com/img/a.png"]
        assert captured["https://example.com/img/a.png"].body == b"png"
        assert again.body_calls == 0
        assert collector.has("https://example.com/img/a.png")

    def test_failed_response_counted(self, state, executor):
        _, captured = collect(state, executor, [FakeResponse("https://example.com/gone.png", status=404)])
        assert captured == {}
        assert state.stats.failed_resources == 1

    def test_failed_response_saved_when_asked(self, state, executor):
        state.settings.save_failed_responses = True
        _, captured = collect(state, executor, [FakeResponse("https://example.com/gone.png", status=404)])
        assert captured["https://example.com/gone.png"].body == b"404"
        assert state.stats.failed_resources == 0

    def test_redirects_ignored(self, state, executor):
        _, captured = collect(state, executor, [FakeResponse("https://example.com/old", status=301)])
        assert captured == {}
        assert state.stats.failed_resources == 0

    def test_rate_limited_asset_aborts_page(self, state, executor):
        resp = FakeResponse("https://example.com/api", status=429, headers={"Retry-After": "30"})
        collector, captured = collect(state, executor, [resp])
        assert captured == {}
        with pytest.raises(AssetAbortError) as exc:
            collector.raise_if_failed()
        assert exc.value.status == 429
        assert 25 < state.cooldown.remaining() <= 30

    def test_frames_enqueued_as_pages(self, state, executor):
        frame = FakeResponse(
            "https://example.com/frame", content_type="text/html", resource_type="document"
        )
        _, captured = collect(state, executor, [frame])
        assert "https://example.com/frame" in state.scheduler.enqueued
        assert "https://example.com/frame" in captured

    def test_frames_not_followed_when_disabled(self, state, executor):
        state.settings.follow_iframes = False
        frame = FakeResponse(
            "https://example.com/frame", content_type="text/html", resource_type="document"
        )
        collect(state, executor, [frame])
        assert "https://example.com/frame" not in state.scheduler.enqueued

    def test_css_references_discovered(self, state, executor):
        css = FakeResponse(
            "https://example.com/css/site.css",
            content_type="text/css",
            body=b"body{background:url(../img/bg.png)}",
        )
        collector, _ = collect(state, executor, [css])
        assert collector.css_urls == ["https://example.com/img/bg.png"]

    def test_slow_body_dropped(self, state, executor):
        state.settings.asset_timeout = 0.05
        slow = FakeResponse("https://example.com/slow.png", delay=1.0)
        _, captured = collect(state, executor, [slow])
        assert captured == {}

    def test_ignored_during_shutdown(self, state, executor):
        state.shutting_down = True
        _, captured = collect(state, executor, [FakeResponse("https://example.com/a.png")])
        assert captured == {}


class TestEvictionFallback:
    """Bodies the browser no longer holds are fetched over HTTP."""

    def test_binary_asset_streamed_to_disk(self, state, executor):
        url = "https://example.com/media/clip.bin"
        session = FakeSession(FakeHTTPResponse(chunks=[b"12", b"34"]))
        resp = FakeResponse(url, content_type="application/zip", error=PlaywrightError(EVICTED))
        _, captured = collect(state, executor, [resp], session)
        assert captured == {}
        rec = state.records.get(url)
        assert not rec.predicted
        assert rec.local_path.read_bytes() == b"1234"
        assert state.stats.assets_saved == 1
        assert state.stats.total_bytes == 4
        assert session.requested == [(url, True)]

    def test_text_asset_buffered_in_memory(self, state, executor):
        url = "https://example.com/css/site.css"
        session = FakeSession(FakeHTTPResponse(content=b"body{}"))
        resp = FakeResponse(url, content_type="text/css", error=PlaywrightError(EVICTED))
        _, captured = collect(state, executor, [resp], session)
        assert captured[url].body == b"body{}"
        assert state.stats.assets_saved == 0

    def test_existing_file_is_left_alone(self, state, executor):
        url = "https://example.com/media/clip.bin"
        dest = state.records.predict(url).local_path
        dest.parent.mkdir(parents=True)
        dest.write_bytes(b"first")
        session = FakeSession(FakeHTTPResponse(chunks=[b"second"]))
        resp = FakeResponse(url, content_type="application/zip", error=PlaywrightError(EVICTED))
        _, captured = collect(state, executor, [resp], session)
        assert captured == {}
        assert dest.read_bytes() == b"first"
        assert state.stats.assets_saved == 0

    def test_fallback_http_failure_drops_asset(self, state, executor):
        url = "https://example.com/media/clip.bin"
        session = FakeSession(FakeHTTPResponse(status=503))
        resp = FakeResponse(url, content_type="application/zip", error=PlaywrightError(EVICTED))
        _, captured = collect(state, executor, [resp], session)
        assert captured == {}
        assert not state.records.get(url).local_path.exists()
