import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .cooldown import CooldownManager
from .records import RecordStore
from .scheduler import Scheduler
from .settings import Settings
from .urls import ScopeClassifier


@dataclass
class CrawlStats:
    pages_crawled: int = 0
    assets_saved: int = 0
    total_bytes: int = 0
    failed_resources: int = 0
    start_time: float = field(default_factory=time.monotonic)
    last_progress_time: float = field(default_factory=time.monotonic)
    consecutive_failures: int = 0
    active_workers: int = 0

    def add_saved(self, nbytes: int) -> None:
        self.assets_saved += 1
        self.total_bytes += nbytes


@dataclass
class CrawlState:
    """Everything one run mutates, handed by reference to every task."""

    settings: Settings
    scope: ScopeClassifier
    records: RecordStore
    scheduler: Scheduler
    cooldown: CooldownManager
    stats: CrawlStats = field(default_factory=CrawlStats)
    video_url_map: Dict[str, Path] = field(default_factory=dict)
    shutting_down: bool = False
    browser: Optional[object] = None

    @classmethod
    def create(cls, settings: Settings) -> "CrawlState":
        scope = ScopeClassifier(settings.crawl_scope)
        scope.add_start_urls(settings.start_urls)
        records = RecordStore(settings.out_root)
        return cls(
            settings=settings,
            scope=scope,
            records=records,
            scheduler=Scheduler(scope, records, settings.max_depth),
            cooldown=CooldownManager(settings.default_backoff_ms),
        )
