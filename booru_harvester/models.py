"""Value types shared by the listing client, storage and database layers."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class RemotePost:
    """One ``<post>`` element of a listing page, as the remote reported it."""

    id: int
    file_url: str
    tags: str = ""
    height: int = 0
    width: int = 0
    score: int = 0
    parent_id: int = 0
    sample_url: str = ""
    sample_width: str = ""
    sample_height: str = ""
    preview_url: str = ""
    preview_width: int = 0
    preview_height: int = 0
    rating: str = ""
    change: str = ""
    md5: str = ""
    creator_id: int = 0
    has_children: bool = False
    created_at: str = ""
    status: str = ""
    source: str | None = None
    has_notes: bool = False
    has_comments: bool = False

    def tag_names(self) -> list[str]:
        return self.tags.split()

    def to_payload(self) -> dict[str, Any]:
        """Raw crawl payload stored alongside the post."""
        return asdict(self)


@dataclass(frozen=True)
class ListingPage:
    count: int
    offset: int
    posts: tuple[RemotePost, ...] = ()


@dataclass(frozen=True)
class StoredAsset:
    hash: str
    extension: str
    path: Path
