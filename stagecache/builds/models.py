"""Build and cache ORM models.

This module defines the cache index tables (layer entries and mount
cache slots) and the build history tables (one BuildRecord per platform
build, one StepRecord per step resolved in it).
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stagecache.db import Base
from stagecache.types import BuildStatus, EntryKind, StepStatus


class CacheEntryRecord(Base):
    """ORM model for a stored step layer.

    Attributes:
        id: Primary key.
        platform: Platform namespace.
        identity: Step identity.
        kind: Entry kind (layer, empty).
        blob_path: Path of the layer archive (None for empty entries).
        size_bytes: Archive size in bytes.
        sha256: SHA-256 of the archive.
        created_at: When the entry was stored.
        last_used_at: When the entry was last stored or read.
    """

    __tablename__ = "cache_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(100), nullable=False)
    identity: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EntryKind.LAYER.value
    )
    blob_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    last_used_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), index=True
    )

    __table_args__ = (
        UniqueConstraint("platform", "identity", name="uq_cache_entries_key"),
    )

    def __repr__(self) -> str:
        """Return string representation of CacheEntryRecord."""
        return (
            f"<CacheEntryRecord(platform='{self.platform}', "
            f"identity='{self.identity[:16]}...', kind='{self.kind}')>"
        )


class MountCacheRecord(Base):
    """ORM model for a persistent mount cache slot.

    Attributes:
        id: Primary key.
        platform: Platform namespace.
        name: Mount cache name.
        path: Directory holding the cache content.
        created_at: When the slot was created.
        last_used_at: When a step last attached the slot.
    """

    __tablename__ = "mount_caches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    last_used_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("platform", "name", name="uq_mount_caches_slot"),
    )

    def __repr__(self) -> str:
        """Return string representation of MountCacheRecord."""
        return f"<MountCacheRecord(platform='{self.platform}', name='{self.name}')>"


class BuildRecord(Base):
    """ORM model for one platform build.

    Attributes:
        id: Primary key.
        graph_digest: Digest of the stage graph description.
        platform: Target platform.
        target_stage: Stage whose filesystem is the result.
        status: Build status.
        requested_at: Timestamp when the build was requested.
        started_at: Timestamp when the build started executing.
        finished_at: Timestamp when the build finished.
        result_digest: Digest of the result filesystem archive.
        cache_hits: Steps resolved from cache.
        executed_steps: Steps run by the executor.
        error_type: Type of error if the build failed.
        error_message: Error message if the build failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    graph_digest: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(100), nullable=False)
    target_stage: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    result_digest: Mapped[str | None] = mapped_column(String(128), nullable=True)
    cache_hits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    executed_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    steps: Mapped[list["StepRecord"]] = relationship(
        "StepRecord",
        back_populates="build",
        cascade="all, delete-orphan",
        order_by="StepRecord.id",
    )

    __table_args__ = (Index("ix_build_records_platform_status", "platform", "status"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, platform='{self.platform}', "
            f"status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self, result_digest: str) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()
        self.result_digest = result_digest

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def mark_cancelled(self) -> None:
        """Mark this build as cancelled."""
        self.status = BuildStatus.CANCELLED.value
        self.finished_at = datetime.now()

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


class StepRecord(Base):
    """ORM model for one step resolved within a platform build.

    Attributes:
        id: Primary key.
        build_id: Foreign key to BuildRecord.
        stage: Stage name.
        step_index: Position of the step within its stage.
        identity: Step identity.
        command: Printable command.
        status: Step status (hit, executed, failed, cancelled).
        duration_seconds: Time spent resolving the step.
    """

    __tablename__ = "step_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    build_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_records.id"), nullable=False, index=True
    )
    stage: Mapped[str] = mapped_column(String(128), nullable=False)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    identity: Mapped[str] = mapped_column(String(128), nullable=False)
    command: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StepStatus.PENDING.value
    )
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)

    build: Mapped["BuildRecord"] = relationship("BuildRecord", back_populates="steps")

    def __repr__(self) -> str:
        """Return string representation of StepRecord."""
        return (
            f"<StepRecord(stage='{self.stage}', index={self.step_index}, "
            f"status='{self.status}')>"
        )


__all__ = ["BuildRecord", "CacheEntryRecord", "MountCacheRecord", "StepRecord"]
