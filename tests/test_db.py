from __future__ import annotations

import os
import threading
from collections.abc import Iterator
from typing import Any

import psycopg
from psycopg.rows import dict_row
import pytest

from booru_harvester.db import Database, StoreResult
from booru_harvester.errors import PersistenceError
from booru_harvester.models import RemotePost

POST = RemotePost(id=1, file_url="https://img.test/1.png", tags="  red  blue ", source="")


class FakeCursor:
    def __init__(self, row: dict | None = None, rowcount: int = 1) -> None:
        self._row = row
        self.rowcount = rowcount

    def fetchone(self) -> dict | None:
        return self._row


class RecordingConnection:
    """Records statements; answers the few result shapes store_post reads."""

    def __init__(self, crawl_info_id: int | None = 7, post_rowcount: int = 1, fail_on: str | None = None) -> None:
        self.crawl_info_id = crawl_info_id
        self.post_rowcount = post_rowcount
        self.fail_on = fail_on
        self.statements: list[tuple[str, Any]] = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def execute(self, sql: str, params: Any = None) -> FakeCursor:
        normalized = " ".join(sql.split())
        if self.fail_on and self.fail_on in normalized:
            raise psycopg.OperationalError("connection lost")
        self.statements.append((normalized, params))
        if normalized.startswith("INSERT INTO post_crawl_info"):
            row = {"id": self.crawl_info_id} if self.crawl_info_id is not None else None
            return FakeCursor(row)
        if normalized.startswith("INSERT INTO post "):
            return FakeCursor(rowcount=self.post_rowcount)
        if normalized.startswith("SELECT 1 FROM post_crawl_info"):
            return FakeCursor({"?column?": 1} if params[0] == "https://img.test/known.png" else None)
        return FakeCursor()

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = True


class RecordingDatabase(Database):
    def __init__(self, conn: RecordingConnection) -> None:
        super().__init__()
        self.fake = conn

    def _connect(self) -> RecordingConnection:  # type: ignore[override]
        return self.fake


def test_store_post_writes_every_row_in_one_transaction() -> None:
    conn = RecordingConnection()
    db = RecordingDatabase(conn)

    result = db.store_post(POST, "HASH=", site="booru.test", account="crawler")

    assert result is StoreResult.CREATED
    assert conn.commits == 1
    assert conn.rollbacks == 0
    sql = [s for s, _ in conn.statements]
    assert sql[0].startswith("INSERT INTO post_crawl_info")
    assert sql[1].startswith("INSERT INTO post ")
    assert [p for s, p in conn.statements if s.startswith("INSERT INTO tag ")] == [("blue",), ("red",)]
    links = [p for s, p in conn.statements if s.startswith("INSERT INTO post_tag")]
    assert links == [("HASH=", "blue", "crawler"), ("HASH=", "red", "crawler")]
    assert all("ON CONFLICT" in s for s in sql)


def test_store_post_normalizes_empty_source_and_links_crawl_info() -> None:
    conn = RecordingConnection(crawl_info_id=42)
    db = RecordingDatabase(conn)

    db.store_post(POST, "HASH=", site="booru.test")

    site, url, payload = conn.statements[0][1]
    assert (site, url) == ("booru.test", POST.file_url)
    assert payload.obj["file_url"] == POST.file_url
    assert conn.statements[1][1] == ("crawler", "HASH=", 42, None)


def test_store_post_inserts_tags_once_in_sorted_order() -> None:
    conn = RecordingConnection()
    post = RemotePost(id=2, file_url="https://img.test/2.png", tags="zeta alpha zeta mid alpha")

    RecordingDatabase(conn).store_post(post, "HASH=", site="booru.test")

    tags = [p for s, p in conn.statements if s.startswith("INSERT INTO tag ")]
    assert tags == [("alpha",), ("mid",), ("zeta",)]
    links = [p[1] for s, p in conn.statements if s.startswith("INSERT INTO post_tag")]
    assert links == ["alpha", "mid", "zeta"]


def test_store_post_existing_hash_is_linked() -> None:
    conn = RecordingConnection(post_rowcount=0)

    assert RecordingDatabase(conn).store_post(POST, "HASH=", site="booru.test") is StoreResult.LINKED
    assert conn.commits == 1


def test_store_post_concurrent_url_rolls_back() -> None:
    conn = RecordingConnection(crawl_info_id=None)

    result = RecordingDatabase(conn).store_post(POST, "HASH=", site="booru.test")

    assert result is StoreResult.DUPLICATE
    assert conn.rollbacks == 1
    assert conn.commits == 0
    assert len(conn.statements) == 1


@pytest.mark.parametrize("failing", ["INSERT INTO post (", "INSERT INTO tag", "INSERT INTO post_tag"])
def test_store_post_failure_rolls_back_everything(failing: str) -> None:
    conn = RecordingConnection(fail_on=failing)

    with pytest.raises(PersistenceError):
        RecordingDatabase(conn).store_post(POST, "HASH=", site="booru.test")

    assert conn.rollbacks == 1
    assert conn.commits == 0


def test_crawl_info_exists() -> None:
    conn = RecordingConnection()
    db = RecordingDatabase(conn)

    assert db.crawl_info_exists("https://img.test/known.png")
    assert not db.crawl_info_exists("https://img.test/new.png")
    assert conn.commits == 2


def test_crawl_info_check_failure_is_persistence_error() -> None:
    conn = RecordingConnection(fail_on="SELECT 1")

    with pytest.raises(PersistenceError):
        RecordingDatabase(conn).crawl_info_exists("https://img.test/new.png")

    assert conn.rollbacks == 1


def test_connections_are_per_thread() -> None:
    opened: list[RecordingConnection] = []

    class PerThread(Database):
        def _connect(self) -> RecordingConnection:  # type: ignore[override]
            conn = RecordingConnection()
            opened.append(conn)
            return conn

    db = PerThread()
    main_conn = db.conn
    assert db.conn is main_conn

    other: list[Any] = []
    worker = threading.Thread(target=lambda: other.append(db.conn))
    worker.start()
    worker.join()

    assert other[0] is not main_conn
    db.close()
    assert all(conn.closed for conn in opened)


# ── live database ────────────────────────────────────────────────

LIVE_DSN = os.getenv("BOORU_TEST_DSN")


class LiveDatabase(Database):
    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(LIVE_DSN, row_factory=dict_row, autocommit=False)


@pytest.fixture
def live_db() -> Iterator[Database]:
    if not LIVE_DSN:
        pytest.skip("BOORU_TEST_DSN not set")
    db = LiveDatabase()
    db.apply_schema()
    db.conn.execute("TRUNCATE post_tag, post, tag, post_crawl_info RESTART IDENTITY")
    db.conn.commit()
    yield db
    db.close()


def test_live_store_post_is_idempotent(live_db: Database) -> None:
    assert live_db.store_post(POST, "HASH=", site="booru.test") is StoreResult.CREATED
    assert live_db.crawl_info_exists(POST.file_url)
    assert live_db.store_post(POST, "HASH=", site="booru.test") is StoreResult.DUPLICATE

    other = RemotePost(id=2, file_url="https://mirror.test/2.png", tags="red green", source="https://src.test")
    assert live_db.store_post(other, "HASH=", site="booru.test") is StoreResult.LINKED

    conn = live_db.conn
    assert conn.execute("SELECT count(*) AS n FROM post").fetchone()["n"] == 1
    assert conn.execute("SELECT source FROM post").fetchone()["source"] is None
    assert conn.execute("SELECT count(*) AS n FROM post_crawl_info").fetchone()["n"] == 2
    assert conn.execute("SELECT count(*) AS n FROM tag").fetchone()["n"] == 3
    assert conn.execute("SELECT count(*) AS n FROM post_tag").fetchone()["n"] == 3
    conn.rollback()
