"""Pydantic-settings configuration for datavault."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------


class ObjectStorageConfig(BaseModel):
    """Object-storage backend configuration."""

    backend: Literal["filesystem", "s3"] = "filesystem"
    # Filesystem
    local_dir: str = "data/objects"
    public_base_url: str = "http://localhost:9000/objects"
    signing_secret: str = Field(
        default="",
        description="HMAC secret for filesystem signed URLs.",
    )
    # S3-compatible
    bucket: str = ""
    prefix: str = "datasets/"
    endpoint_url: str = ""
    access_key: str = ""
    secret_key: str = ""
    region: str = "eu-west-1"


class TransferConfig(BaseModel):
    """Chunked-transfer tuning: chunking, concurrency, retry/backoff."""

    chunk_size_bytes: int = Field(default=5 * 1024 * 1024, gt=0)
    max_concurrency: int = Field(
        default=5,
        gt=0,
        description="Maximum simultaneously in-flight chunk operations.",
    )
    max_attempts: int = Field(default=3, gt=0)
    initial_delay_seconds: float = Field(default=1.0, ge=0.0)
    max_delay_seconds: float = Field(default=10.0, ge=0.0)
    cleanup_attempts: int = Field(default=3, gt=0)
    batch_concurrency: int = Field(default=5, gt=0)


class SignedUrlConfig(BaseModel):
    """Signed transfer URL lifetime and local cache margin."""

    expires_seconds: int = 3600
    cache_margin_seconds: int = Field(
        default=100,
        description="Cached URLs expire this many seconds before the URL itself.",
    )


class RepositoryConfig(BaseModel):
    """Version-repository backend configuration."""

    base_dir: str = "data/repositories"
    tracked_extensions: list[str] = Field(
        default_factory=lambda: [
            "parquet",
            "arrow",
            "bin",
            "zip",
            "gz",
            "tar",
            "pdf",
        ],
    )


class DatasetLimits(BaseModel):
    """Input limits applied to dataset and file declarations."""

    max_file_size_bytes: int = 5 * 1024 * 1024 * 1024
    max_title_length: int = 100
    max_description_length: int = 1000
    max_tags: int = 10
    max_tag_length: int = 30


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class DatavaultSettings(BaseSettings):
    """Central configuration for datavault.

    All values can be overridden via environment variables prefixed
    with ``DATAVAULT_``.  Nested models use ``__`` as a delimiter,
    e.g. ``DATAVAULT_STORAGE__BUCKET``.
    """

    model_config = SettingsConfigDict(
        env_prefix="DATAVAULT_",
        env_nested_delimiter="__",
    )

    database_url: str = "sqlite+aiosqlite:///data/datavault.db"
    log_level: str = "INFO"

    storage: ObjectStorageConfig = Field(default_factory=ObjectStorageConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    signed_urls: SignedUrlConfig = Field(default_factory=SignedUrlConfig)
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    limits: DatasetLimits = Field(default_factory=DatasetLimits)

    reconcile_after_seconds: float = Field(
        default=300.0,
        description="Pending operation intents older than this are reconciled.",
    )
