import pytest

from webclone.settings import Settings
from webclone.state import CrawlState


@pytest.fixture
def settings(tmp_path):
    return Settings(
        start_urls=["https://example.com/"],
        out_dir=str(tmp_path / "archive"),
        random_delay_ms=(0, 0),
        default_backoff_ms=(0, 0),
        idle_wait=0.01,
        video_drain_timeout=0.05,
    )


@pytest.fixture
def state(settings):
    return CrawlState.create(settings)
