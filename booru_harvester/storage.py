"""Disk storage layer – content-addressed asset downloads."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import random
import tempfile
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import httpx

from .config import BackoffConfig, StorageConfig
from .errors import PermanentIOError, TransientNetworkError
from .models import StoredAsset

logger = logging.getLogger("booru.storage")

CHUNK_SIZE = 64 * 1024


def extension_from_url(url: str) -> str:
    """Return the suffix after the final ``.`` of a file URL."""
    ext = url.rsplit(".", 1)[-1]
    if not ext or "/" in ext:
        return "bin"
    return ext


def content_hash(data: bytes) -> str:
    """BLAKE2s-256 digest, URL-safe base64 encoded."""
    return _encode_digest(hashlib.blake2s(data, digest_size=32).digest())


def _encode_digest(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii")


class ExponentialBackoff:
    """Backoff policy.  Every call to :meth:`delays` starts a new sequence."""

    def __init__(self, cfg: BackoffConfig | None = None) -> None:
        self.cfg = cfg or BackoffConfig()

    def _randomize(self, interval: float) -> float:
        spread = interval * self.cfg.randomization
        return random.uniform(interval - spread, interval + spread)

    def delays(self) -> Iterator[float]:
        """Jittered exponential delays, never shorter than the one before."""
        interval = self.cfg.initial_interval
        previous = 0.0
        for _ in range(self.cfg.max_retries):
            previous = max(self._randomize(interval), previous)
            yield previous
            interval = min(interval * self.cfg.multiplier, self.cfg.max_interval)


class DiskStorageService:
    """Download assets into a directory, named by the hash of their bytes."""

    def __init__(
        self,
        cfg: StorageConfig | None = None,
        *,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = cfg or StorageConfig.from_env()
        self.root = Path(self.cfg.root)
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.Client(follow_redirects=True)
        self._ensure_root()

    def _ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Could not ensure storage directory %s exists: %s", self.root, exc)

    def path_for(self, digest: str, ext: str) -> Path:
        return self.root / f"{digest}.{ext}"

    # ── download ─────────────────────────────────────────────────

    def store(self, url: str, ext: str, *, backoff: ExponentialBackoff) -> StoredAsset:
        """Download ``url`` and commit it under its content hash.

        Transient failures are retried following a fresh delay sequence from
        ``backoff``; PermanentIOError propagates on the first occurrence.
        """
        delays = backoff.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._download(url, ext)
            except TransientNetworkError as exc:
                delay = next(delays, None)
                if delay is None:
                    logger.error("Giving up on %s after %d attempts: %s", url, attempt, exc)
                    raise
                logger.warning("Attempt %d failed for %s: %s (retrying in %.2fs)", attempt, url, exc, delay)
                self._sleep(delay)

    def _download(self, url: str, ext: str) -> StoredAsset:
        try:
            with self._client.stream("GET", url) as resp:
                if resp.status_code != 200:
                    raise TransientNetworkError(f"{url} responded with {resp.status_code}")
                tmp_path, digest = self._stream_to_temp(resp)
        except httpx.RequestError as exc:
            raise TransientNetworkError(f"{url}: {exc}") from exc

        final = self.path_for(digest, ext)
        try:
            os.replace(tmp_path, final)
        except OSError as exc:
            self._discard(tmp_path)
            raise PermanentIOError(f"could not rename {tmp_path} to {final}: {exc}") from exc
        logger.debug("Stored %s as %s", url, final.name)
        return StoredAsset(hash=digest, extension=ext, path=final)

    def _stream_to_temp(self, resp: httpx.Response) -> tuple[Path, str]:
        """Write the body to a temp file in ``root`` while hashing it."""
        try:
            fd, name = tempfile.mkstemp(prefix="tmp-", dir=self.root)
        except OSError as exc:
            raise PermanentIOError(f"creating a temp file in {self.root} failed: {exc}") from exc
        tmp_path = Path(name)
        try:
            hasher = hashlib.blake2s(digest_size=32)
        except ValueError as exc:
            os.close(fd)
            self._discard(tmp_path)
            raise PermanentIOError(f"could not initialise hash: {exc}") from exc

        try:
            with os.fdopen(fd, "wb") as fh:
                for chunk in resp.iter_bytes(CHUNK_SIZE):
                    hasher.update(chunk)
                    fh.write(chunk)
        except httpx.RequestError:
            self._discard(tmp_path)
            raise
        except OSError as exc:
            self._discard(tmp_path)
            raise PermanentIOError(f"writing {tmp_path} failed: {exc}") from exc

        digest = _encode_digest(hasher.digest())
        return tmp_path, digest

    @staticmethod
    def _discard(path: Path) -> None:
        path.unlink(missing_ok=True)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
