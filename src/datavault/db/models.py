"""SQLAlchemy 2.0 ORM models for the datavault metadata store."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Declarative base for all datavault models."""


# Dataset lifecycle states.  Readers only ever see ``active`` datasets.
DATASET_PENDING = "pending"
DATASET_ACTIVE = "active"
DATASET_FAILED = "failed"

# Operation intent states.
INTENT_PENDING = "pending"
INTENT_COMPLETED = "completed"
INTENT_FAILED = "failed"


# ------------------------------------------------------------------
# 1. DatasetRecord
# ------------------------------------------------------------------


class DatasetRecord(Base):
    """A dataset owned by one account, pointing at its current version."""

    __tablename__ = "datasets"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
    )
    owner_id: Mapped[str] = mapped_column(String(255), index=True)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(
        Text,
        default="",
    )
    tags: Mapped[list] = mapped_column(  # type: ignore[type-arg]
        JSON,
        default=list,
    )
    accessibility: Mapped[str] = mapped_column(
        String(20),
        default="public",
    )
    current_version: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=DATASET_PENDING,
    )
    forked_from_dataset_id: Mapped[str | None] = mapped_column(
        String(36),
        nullable=True,
    )
    forked_from_version: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )


# ------------------------------------------------------------------
# 2. DatasetFileRecord
# ------------------------------------------------------------------


class DatasetFileRecord(Base):
    """Manifest entry: one file introduced or changed by one version."""

    __tablename__ = "dataset_files"
    __table_args__ = (
        UniqueConstraint("dataset_id", "version", "name", name="uq_dataset_file_version"),
    )

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    dataset_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("datasets.id"),
        index=True,
    )
    version: Mapped[str] = mapped_column(String(100))
    name: Mapped[str] = mapped_column(String(255))
    size_bytes: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
    )
    content_type: Mapped[str] = mapped_column(
        String(255),
        default="application/octet-stream",
    )
    # Not unique: rollbacks and forks reference existing objects.
    storage_key: Mapped[str] = mapped_column(String(1024), index=True)
    checksum: Mapped[str] = mapped_column(String(128))
    tracked: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
    )


# ------------------------------------------------------------------
# 3. OperationIntentRecord
# ------------------------------------------------------------------


class OperationIntentRecord(Base):
    """Outbox entry for an operation spanning store, repository and storage.

    Written before any side effect, completed after the final metadata
    transaction.  Entries left ``pending`` are picked up by
    reconciliation.
    """

    __tablename__ = "operation_intents"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
    )
    kind: Mapped[str] = mapped_column(String(50))
    dataset_id: Mapped[str] = mapped_column(String(36), index=True)
    owner_id: Mapped[str] = mapped_column(String(255))
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
    )
    payload: Mapped[dict] = mapped_column(  # type: ignore[type-arg]
        JSON,
        default=dict,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=INTENT_PENDING,
        index=True,
    )
    error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )
