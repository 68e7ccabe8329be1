"""Database operations – persist crawled posts, tags and crawl payloads."""

from __future__ import annotations

import enum
import logging
import threading
from importlib import resources

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from .config import DatabaseConfig
from .errors import PersistenceError
from .models import RemotePost

logger = logging.getLogger("booru.db")


class StoreResult(enum.Enum):
    CREATED = "created"      # new post row
    LINKED = "linked"        # hash already had a post; crawl info and tags added
    DUPLICATE = "duplicate"  # url was recorded by a concurrent writer


class Database:
    """Postgres interface for the harvester.

    Each thread gets its own connection so transactions never interleave.
    """

    def __init__(self, cfg: DatabaseConfig | None = None) -> None:
        self.cfg = cfg or DatabaseConfig.from_env()
        self._local = threading.local()
        self._lock = threading.Lock()
        self._conns: list[psycopg.Connection] = []

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(self.cfg.dsn, row_factory=dict_row, autocommit=False)

    @property
    def conn(self) -> psycopg.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None or conn.closed:
            conn = self._connect()
            self._local.conn = conn
            with self._lock:
                self._conns.append(conn)
        return conn

    # ── schema ───────────────────────────────────────────────────

    def apply_schema(self, account: str = "crawler") -> None:
        """Create the tables if missing and ensure the crawler account."""
        sql = resources.files("booru_harvester").joinpath("schema.sql").read_text(encoding="utf-8")
        self.conn.execute(sql)
        self.conn.execute(
            "INSERT INTO users (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
            (account,),
        )
        self.conn.commit()
        logger.info("Schema applied, account %r ready", account)

    # ── crawl info ───────────────────────────────────────────────

    def crawl_info_exists(self, url: str) -> bool:
        """Best-effort check that ``url`` was already ingested."""
        conn = self.conn
        try:
            row = conn.execute(
                "SELECT 1 FROM post_crawl_info WHERE url = %s", (url,)
            ).fetchone()
            # end the read-only transaction
            conn.commit()
        except psycopg.Error as exc:
            conn.rollback()
            raise PersistenceError(f"checking {url} failed: {exc}") from exc
        return row is not None

    # ── post ingestion ───────────────────────────────────────────

    def store_post(
        self,
        post: RemotePost,
        content_hash: str,
        *,
        site: str,
        account: str = "crawler",
    ) -> StoreResult:
        """Write crawl info, post, tags and tag links in one transaction."""
        conn = self.conn
        try:
            row = conn.execute(
                """INSERT INTO post_crawl_info (site, url, data)
                   VALUES (%s, %s, %s)
                   ON CONFLICT (url) DO NOTHING
                   RETURNING id""",
                (site, post.file_url, Jsonb(post.to_payload())),
            ).fetchone()
            if row is None:
                conn.rollback()
                logger.debug("Crawl info for %s written concurrently, skipping", post.file_url)
                return StoreResult.DUPLICATE
            crawl_info_id = row["id"]

            cur = conn.execute(
                """INSERT INTO post (uploader, hash, crawl_info, source)
                   VALUES ((SELECT id FROM users WHERE name = %s), %s, %s, %s)
                   ON CONFLICT (hash) DO NOTHING""",
                (account, content_hash, crawl_info_id, post.source or None),
            )
            created = cur.rowcount == 1

            # lock tag rows in one global order
            for tag in sorted(set(post.tag_names())):
                conn.execute(
                    "INSERT INTO tag (name) VALUES (%s) ON CONFLICT (name) DO NOTHING",
                    (tag,),
                )
                conn.execute(
                    """INSERT INTO post_tag (post, tag, assigned_by)
                       VALUES (
                           (SELECT id FROM post WHERE hash = %s),
                           (SELECT id FROM tag WHERE name = %s),
                           (SELECT id FROM users WHERE name = %s)
                       )
                       ON CONFLICT (post, tag) DO NOTHING""",
                    (content_hash, tag, account),
                )
            conn.commit()
        except psycopg.Error as exc:
            conn.rollback()
            raise PersistenceError(f"storing {post.file_url} failed: {exc}") from exc

        return StoreResult.CREATED if created else StoreResult.LINKED

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        with self._lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            if not conn.closed:
                conn.close()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
