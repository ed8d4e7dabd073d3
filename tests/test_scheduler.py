"""Tests for the crawl queue."""

import math
import random

from webclone.records import RecordStore
from webclone.scheduler import START_SCORE, Scheduler
from webclone.urls import ScopeClassifier


def make_scheduler(tmp_path, policy="cross-domains", max_depth=5):
    scope = ScopeClassifier(policy)
    scope.add_start_urls(["https://example.com/"])
    records = RecordStore(tmp_path)
    return Scheduler(scope, records, max_depth), records


class TestEnqueue:
    """Tests for the enqueue guards."""

    def test_idempotent_enqueue(self, tmp_path):
        """The same canonical URL yields one job and one predicted record."""
        sched, records = make_scheduler(tmp_path)
        first = sched.enqueue("https://example.com/about/", 1)
        second = sched.enqueue("https://EXAMPLE.com/about#team", 1)
        assert first is not None
        assert second is None
        assert len(sched) == 1
        assert len(records) == 1
        rec = records.get("https://example.com/about")
        assert rec.predicted and rec.is_page

    def test_rejects_invalid_url(self, tmp_path):
        sched, records = make_scheduler(tmp_path)
        assert sched.enqueue("mailto:someone@example.com", 1) is None
        assert len(sched) == 0 and len(records) == 0

    def test_rejects_too_deep(self, tmp_path):
        sched, _ = make_scheduler(tmp_path, max_depth=2)
        assert sched.enqueue("https://example.com/deep", 3) is None
        assert sched.enqueue("https://example.com/ok", 2) is not None

    def test_rejects_out_of_scope_but_not_start_urls(self, tmp_path):
        sched, _ = make_scheduler(tmp_path, policy="same-domain")
        assert sched.enqueue("https://other.org/", 1) is None
        assert sched.enqueue("https://other.org/", 0, START_SCORE, is_start=True) is not None

    def test_rejects_visited(self, tmp_path):
        sched, _ = make_scheduler(tmp_path)
        sched.mark_visited("https://example.com/done/")
        assert sched.is_visited("https://example.com/done")
        assert sched.enqueue("https://example.com/done", 1) is None

    def test_crawl_id(self, tmp_path):
        sched, _ = make_scheduler(tmp_path)
        job = sched.enqueue("https://example.com/x", 1)
        assert len(job.crawl_id) == 8


class TestOrdering:
    """Pop order: highest score first, then shallowest."""

    def test_pop_order(self, tmp_path):
        sched, _ = make_scheduler(tmp_path)
        specs = [(s, d) for s in (1, 2, 5, 8, 10) for d in (1, 2, 3)]
        random.Random(7).shuffle(specs)
        for i, (score, depth) in enumerate(specs):
            sched.enqueue(f"https://example.com/p{i}", depth, score)

        popped = []
        while sched:
            popped.append(sched.pop())
        assert len(popped) == len(specs)
        for prev, cur in zip(popped, popped[1:]):
            assert prev.score >= cur.score
            if prev.score == cur.score:
                assert prev.depth <= cur.depth

    def test_start_urls_first(self, tmp_path):
        sched, _ = make_scheduler(tmp_path)
        sched.enqueue("https://example.com/nav", 1, 10)
        sched.enqueue("https://example.com/", 0, START_SCORE, is_start=True)
        job = sched.pop()
        assert job.url == "https://example.com/"
        assert math.isinf(job.score)

    def test_empty_pop(self, tmp_path):
        sched, _ = make_scheduler(tmp_path)
        assert sched.pop() is None

    def test_requeue_increments_retries(self, tmp_path):
        sched, _ = make_scheduler(tmp_path)
        sched.enqueue("https://example.com/a", 1, 5)
        job = sched.pop()
        sched.requeue(job)
        again = sched.pop()
        assert again is job
        assert again.retries == 1
