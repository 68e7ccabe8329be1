from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from booru_harvester.db import StoreResult
from booru_harvester.errors import PersistenceError
from booru_harvester.models import RemotePost


def listing_xml(count: int, posts: list[dict[str, str]], offset: int = 0) -> str:
    def _post(attrs: dict[str, str]) -> str:
        rendered = " ".join(f'{k}="{v}"' for k, v in attrs.items())
        return f"<post {rendered}/>"

    body = "".join(_post(p) for p in posts)
    return f'<?xml version="1.0" encoding="UTF-8"?><posts count="{count}" offset="{offset}">{body}</posts>'


def post_attrs(post_id: int, file_url: str, tags: str = "a b") -> dict[str, str]:
    return {
        "id": str(post_id),
        "file_url": file_url,
        "tags": tags,
        "height": "10",
        "width": "20",
        "rating": "s",
        "has_children": "false",
        "has_notes": "false",
        "has_comments": "true",
        "source": "",
    }


def page_of(url: str) -> int:
    pid = parse_qs(urlparse(url).query).get("pid")
    return int(pid[0]) if pid else 0


@dataclass
class FakeDatabase:
    """In-memory stand-in for Database honouring its uniqueness rules."""

    crawl_info: dict[str, dict] = field(default_factory=dict)
    posts: dict[str, dict] = field(default_factory=dict)
    tags: set[str] = field(default_factory=set)
    links: set[tuple[str, str]] = field(default_factory=set)
    fail_urls: set[str] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def crawl_info_exists(self, url: str) -> bool:
        with self._lock:
            return url in self.crawl_info

    def store_post(self, post: RemotePost, content_hash: str, *, site: str, account: str = "crawler") -> StoreResult:
        if post.file_url in self.fail_urls:
            raise PersistenceError(f"storing {post.file_url} failed")
        with self._lock:
            if post.file_url in self.crawl_info:
                return StoreResult.DUPLICATE
            self.crawl_info[post.file_url] = {"site": site, "data": post.to_payload()}
            created = content_hash not in self.posts
            if created:
                self.posts[content_hash] = {"crawl_info": post.file_url, "source": post.source or None}
            for tag in post.tag_names():
                self.tags.add(tag)
                self.links.add((content_hash, tag))
        return StoreResult.CREATED if created else StoreResult.LINKED

    def close(self) -> None:
        pass


@pytest.fixture
def fake_db() -> FakeDatabase:
    return FakeDatabase()


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))
