"""Listing API client – fetches and decodes pages of remote post metadata."""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ElementTree
from urllib.parse import quote

import httpx

from .config import ListingConfig
from .errors import MalformedResponseError, TransientNetworkError
from .models import ListingPage, RemotePost

logger = logging.getLogger("booru.api")

_INT_ATTRS = (
    "height", "width", "score", "parent_id", "preview_width",
    "preview_height", "id", "creator_id",
)
_STR_ATTRS = (
    "file_url", "tags", "sample_url", "sample_width", "sample_height",
    "preview_url", "rating", "change", "md5", "created_at", "status",
)
_BOOL_ATTRS = ("has_children", "has_notes", "has_comments")

_TRUE = {"1", "t", "true"}
_FALSE = {"", "0", "f", "false"}


def _parse_int(name: str, value: str | None) -> int:
    if not value:
        return 0
    try:
        return int(value)
    except ValueError:
        raise MalformedResponseError(f"attribute {name}={value!r} is not an integer") from None


def _parse_bool(name: str, value: str | None) -> bool:
    lowered = (value or "").strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise MalformedResponseError(f"attribute {name}={value!r} is not a boolean")


def _parse_post(element: ElementTree.Element) -> RemotePost:
    attrs = element.attrib
    fields: dict[str, object] = {}
    for name in _INT_ATTRS:
        fields[name] = _parse_int(name, attrs.get(name))
    for name in _STR_ATTRS:
        fields[name] = attrs.get(name, "")
    for name in _BOOL_ATTRS:
        fields[name] = _parse_bool(name, attrs.get(name))
    fields["source"] = attrs.get("source")
    return RemotePost(**fields)  # type: ignore[arg-type]


def parse_listing(body: bytes | str) -> ListingPage:
    """Decode a ``<posts count=".." offset="..">`` document."""
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError as exc:
        raise MalformedResponseError(f"listing is not valid XML: {exc}") from exc
    if root.tag != "posts":
        raise MalformedResponseError(f"unexpected root element <{root.tag}>")
    return ListingPage(
        count=_parse_int("count", root.get("count")),
        offset=_parse_int("offset", root.get("offset")),
        posts=tuple(_parse_post(el) for el in root.iter("post")),
    )


class ListingAPI:
    """Thin wrapper around the remote listing endpoint.  Never retries."""

    def __init__(self, cfg: ListingConfig | None = None, *, client: httpx.Client | None = None) -> None:
        self.cfg = cfg or ListingConfig()
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=self.cfg.timeout,
            headers={"User-Agent": self.cfg.user_agent},
            follow_redirects=True,
        )

    def listing_url(self, tag: str, page: int | None = None) -> str:
        url = f"{self.cfg.endpoint}&tags={quote(tag, safe='')}"
        if page is not None:
            url = f"{url}&pid={page}"
        return url

    def fetch_page(self, url: str) -> ListingPage:
        """GET one listing page and decode it.

        Raises TransientNetworkError for transport failures and non-200
        responses, MalformedResponseError for bodies that do not decode.
        """
        try:
            resp = self._client.get(url, timeout=self.cfg.timeout)
        except httpx.RequestError as exc:
            logger.error("Listing fetch failed for %s: %s", url, exc)
            raise TransientNetworkError(f"{url}: {exc}") from exc
        if resp.status_code != 200:
            logger.error("Listing %s responded with %d", url, resp.status_code)
            raise TransientNetworkError(f"{url} responded with {resp.status_code}")
        try:
            page = parse_listing(resp.content)
        except MalformedResponseError as exc:
            logger.error("Could not decode listing %s: %s", url, exc)
            raise
        logger.debug("Fetched %s: %d posts (count=%d)", url, len(page.posts), page.count)
        return page

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ListingAPI:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
