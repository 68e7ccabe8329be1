"""Configuration and environment settings for the harvester."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class DatabaseConfig:
    host: str = "localhost"
    port: int = 5432
    dbname: str = "booru"
    user: str = "booru"
    password: str = "booru"

    @property
    def dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.dbname}"

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            dbname=os.getenv("DB_NAME", "booru"),
            user=os.getenv("DB_USER", "booru"),
            password=os.getenv("DB_PASSWORD", "booru"),
        )


@dataclass(frozen=True)
class StorageConfig:
    root: Path = Path("images")

    @classmethod
    def from_env(cls) -> StorageConfig:
        return cls(root=Path(os.getenv("IMAGE_PATH", "images")))


@dataclass(frozen=True)
class ListingConfig:
    """Listing endpoint configuration.  One page holds ``page_size`` posts."""
    endpoint: str = "https://rule34.xxx/index.php?page=dapi&s=post&q=index"
    site: str = "rule34.xxx"
    page_size: int = 100
    timeout: float = 20.0
    user_agent: str = "booru-harvester/1.0"


@dataclass(frozen=True)
class BackoffConfig:
    """Exponential backoff for asset downloads."""
    initial_interval: float = 0.5  # seconds
    multiplier: float = 1.5
    max_interval: float = 60.0
    randomization: float = 0.5
    max_retries: int = 5


@dataclass(frozen=True)
class LimiterConfig:
    listing_capacity: int = 10
    ingest_capacity: int = 15


@dataclass
class HarvesterConfig:
    db: DatabaseConfig = field(default_factory=DatabaseConfig.from_env)
    storage: StorageConfig = field(default_factory=StorageConfig.from_env)
    listing: ListingConfig = field(default_factory=ListingConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    limiter: LimiterConfig = field(default_factory=LimiterConfig)
    crawler_account: str = "crawler"
