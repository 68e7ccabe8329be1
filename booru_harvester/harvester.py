"""Core harvesting logic – orchestrates listing → storage → DB for a tag."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from .api import ListingAPI
from .config import HarvesterConfig
from .db import Database, StoreResult
from .errors import HarvesterError
from .limiter import Limiter, TaskFailure, TaskGroup
from .models import RemotePost
from .storage import DiskStorageService, ExponentialBackoff, extension_from_url

logger = logging.getLogger("booru.core")

STAT_KEYS = ("pages", "posts", "linked", "skipped", "errors")


@dataclass
class CrawlReport:
    """Counters and collected failures of one crawl run."""

    tag: str
    stats: dict[str, int] = field(default_factory=lambda: dict.fromkeys(STAT_KEYS, 0))
    failures: list[TaskFailure] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def bump(self, key: str) -> None:
        with self._lock:
            self.stats[key] += 1


@dataclass
class _Run:
    """Per-run state handed to every task the run spawns."""

    report: CrawlReport
    limiter: Limiter
    group: TaskGroup
    backoff: ExponentialBackoff


def total_pages(count: int, page_size: int) -> int:
    """Number of listing pages crawled for ``count`` results.

    The trailing partial page is not included.
    """
    return count // page_size


class Harvester:
    """Orchestrates the full listing → disk → database import pipeline."""

    def __init__(
        self,
        cfg: HarvesterConfig | None = None,
        *,
        api: ListingAPI | None = None,
        storage: DiskStorageService | None = None,
        db: Database | None = None,
    ) -> None:
        self.cfg = cfg or HarvesterConfig()
        self.api = api or ListingAPI(self.cfg.listing)
        self.storage = storage or DiskStorageService(self.cfg.storage)
        self.db = db or Database(self.cfg.db)

    def _start_run(self, tag: str) -> _Run:
        return _Run(
            report=CrawlReport(tag),
            limiter=Limiter(self.cfg.limiter),
            group=TaskGroup(),
            backoff=ExponentialBackoff(self.cfg.backoff),
        )

    def _finish_run(self, run: _Run) -> CrawlReport:
        run.group.join()
        run.limiter.drain()
        run.limiter.close()
        # close the connections opened by the run's worker threads
        self.db.close()
        run.report.failures = list(run.group.failures)
        logger.info(
            "Crawl of %r complete: %s (%d failures)",
            run.report.tag, run.report.stats, len(run.report.failures),
        )
        return run.report

    # ── ingestion ────────────────────────────────────────────────

    def _ingest_post(self, run: _Run, post: RemotePost) -> None:
        try:
            if self.db.crawl_info_exists(post.file_url):
                logger.debug("%s already crawled, skipping", post.file_url)
                run.report.bump("skipped")
                return

            asset = self.storage.store(
                post.file_url, extension_from_url(post.file_url), backoff=run.backoff
            )
            result = self.db.store_post(
                post, asset.hash, site=self.cfg.listing.site, account=self.cfg.crawler_account
            )
        except HarvesterError:
            run.report.bump("errors")
            raise

        if result is StoreResult.CREATED:
            run.report.bump("posts")
        elif result is StoreResult.LINKED:
            logger.debug("Post %d shares content %s with an existing post", post.id, asset.hash[:12])
            run.report.bump("linked")
        else:
            run.report.bump("skipped")

    def _submit_posts(self, run: _Run, posts: Iterable[RemotePost]) -> None:
        for post in posts:
            run.group.spawn(run.limiter.ingest, f"ingest {post.file_url}", self._ingest_post, run, post)

    def _crawl_listing_page(self, run: _Run, url: str) -> None:
        try:
            page = self.api.fetch_page(url)
        except HarvesterError:
            run.report.bump("errors")
            raise
        run.report.bump("pages")
        self._submit_posts(run, page.posts)

    # ── public entry points ──────────────────────────────────────

    def crawl(self, tag: str) -> CrawlReport:
        """Crawl every full listing page for ``tag``.

        Page 0 is fetched synchronously; a failure there aborts the run and
        propagates.  Everything after that is logged and collected on the
        returned report.
        """
        url = self.api.listing_url(tag)
        first = self.api.fetch_page(url)

        run = self._start_run(tag)
        run.report.bump("pages")
        run.group.spawn(run.limiter.listing, f"page 0 of {tag}", self._submit_posts, run, first.posts)

        pages = total_pages(first.count, self.cfg.listing.page_size)
        logger.info("Tag %r: %d results, crawling %d pages", tag, first.count, max(pages, 1))
        for i in range(1, pages):
            page_url = self.api.listing_url(tag, i)
            run.group.spawn(run.limiter.listing, f"page {i} of {tag}", self._crawl_listing_page, run, page_url)

        return self._finish_run(run)

    def crawl_page(self, tag: str, page: int) -> CrawlReport:
        """Crawl a single listing page of ``tag``."""
        listing = self.api.fetch_page(self.api.listing_url(tag, page))
        run = self._start_run(tag)
        run.report.bump("pages")
        self._submit_posts(run, listing.posts)
        return self._finish_run(run)

    def crawl_tags(self, tags: Iterable[str]) -> dict[str, CrawlReport | None]:
        """Crawl several tags sequentially.  Aborted tags map to None."""
        results: dict[str, CrawlReport | None] = {}
        for tag in tags:
            logger.info("Starting crawl of %r", tag)
            try:
                results[tag] = self.crawl(tag)
            except HarvesterError as exc:
                logger.error("Crawl of %r aborted: %s", tag, exc)
                results[tag] = None
        return results

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self.api.close()
        self.storage.close()
        self.db.close()

    def __enter__(self) -> Harvester:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
