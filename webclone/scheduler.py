import bisect
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from .layout import md5_hex
from .records import RecordStore
from .urls import ScopeClassifier, normalize_url

# -------------------- Crawl queue --------------------

START_SCORE = math.inf
DEFAULT_SCORE = 5.0


@dataclass
class CrawlJob:
    url: str
    depth: int
    retries: int = 0
    score: float = DEFAULT_SCORE
    crawl_id: str = ""


def _order_key(job: CrawlJob) -> Tuple[float, int]:
    # ascending score, then descending depth: the best job sits at the tail
    return (job.score, -job.depth)


class Scheduler:
    def __init__(
        self,
        scope: ScopeClassifier,
        records: RecordStore,
        max_depth: int,
    ):
        self.scope = scope
        self.records = records
        self.max_depth = max_depth
        self.enqueued: Set[str] = set()
        self.visited: Set[str] = set()
        self._queue: List[CrawlJob] = []

    def __len__(self) -> int:
        return len(self._queue)

    def __bool__(self) -> bool:
        return bool(self._queue)

    def jobs(self) -> List[CrawlJob]:
        return list(self._queue)

    def enqueue(
        self,
        url: str,
        depth: int,
        score: float = DEFAULT_SCORE,
        is_start: bool = False,
    ) -> Optional[CrawlJob]:
        norm = normalize_url(url)
        if not norm or norm in self.enqueued or norm in self.visited:
            return None
        if depth > self.max_depth:
            logging.debug("skip url=%s depth=%d: max depth exceeded", norm, depth)
            return None
        if not is_start and not self.scope.in_scope(norm):
            logging.debug("skip url=%s scope=%s: out of scope", norm, self.scope.policy)
            return None

        self.enqueued.add(norm)
        job = CrawlJob(url=norm, depth=depth, score=score, crawl_id=md5_hex(norm)[:8])
        bisect.insort_right(self._queue, job, key=_order_key)
        self.records.predict(norm, True)
        return job

    def requeue(self, job: CrawlJob) -> CrawlJob:
        job.retries += 1
        bisect.insort_right(self._queue, job, key=_order_key)
        return job

    def pop(self) -> Optional[CrawlJob]:
        if not self._queue:
            return None
        return self._queue.pop()

    def mark_visited(self, url: str) -> None:
        self.visited.add(normalize_url(url) or url)

    def is_visited(self, url: str) -> bool:
        return (normalize_url(url) or url) in self.visited
