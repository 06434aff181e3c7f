import uuid
from datetime import datetime
from typing import Any
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import Integer, String, Text, DateTime, JSON, Index, TypeDecorator
from sqlalchemy.dialects.postgresql import JSONB

from .lifecycle import DerivativeType, ReadingStatus
from .utils import BatchWindow, ensure_utc, utcnow

JSONDocument = JSON().with_variant(JSONB, "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return ensure_utc(value)


class Base(DeclarativeBase):
    pass


class Device(Base):
    __tablename__ = "devices"
    device_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)
    sensor_types: Mapped[list] = mapped_column(JSONDocument, default=list, nullable=False)
    location: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class Reading(Base):
    __tablename__ = "readings"
    reading_id: Mapped[str] = mapped_column(String(160), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    owner_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)

    window_start: Mapped[datetime] = mapped_column(UTCDateTime, index=True, nullable=False)
    window_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    hour_index: Mapped[int] = mapped_column(Integer, nullable=False)

    sensor_data: Mapped[dict] = mapped_column(JSONDocument, nullable=False)

    location: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    ingestion_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_ingestion: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    data_points_count: Mapped[dict] = mapped_column(JSONDocument, nullable=False)

    status: Mapped[str] = mapped_column(String(32), default=ReadingStatus.PENDING.value, index=True, nullable=False)

    picked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    picked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    merkle_root: Mapped[str | None] = mapped_column(String(64), nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    storage_uri: Mapped[str | None] = mapped_column(String(255), nullable=True)
    storage_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    ai_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    retry_count: Mapped[int | None] = mapped_column(Integer, default=0, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    derivative_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def batch_window(self) -> BatchWindow:
        return BatchWindow(start=self.window_start, end=self.window_end, hour_index=self.hour_index)

    @property
    def meta(self) -> dict[str, Any]:
        return {
            "location": self.location,
            "ingestion_count": self.ingestion_count,
            "last_ingestion": self.last_ingestion,
            "data_points_count": dict(self.data_points_count or {}),
        }

    @property
    def processing(self) -> dict[str, Any]:
        return {
            "picked_at": self.picked_at,
            "picked_by": self.picked_by,
            "merkle_root": self.merkle_root,
            "content_hash": self.content_hash,
            "storage_uri": self.storage_uri,
            "storage_id": self.storage_id,
            "verified_at": self.verified_at,
            "ai_started_at": self.ai_started_at,
            "retry_count": self.retry_count or 0,
            "error": self.error,
            "failed_at": self.failed_at,
            "derivative_id": self.derivative_id,
        }


Index("ix_readings_status_window_end", Reading.status, Reading.window_end)
Index("ix_readings_device_status", Reading.device_id, Reading.status)
Index("ix_readings_owner_status", Reading.owner_id, Reading.status)


def new_derivative_id() -> str:
    return f"deriv_{uuid.uuid4()}"


class Derivative(Base):
    __tablename__ = "derivatives"
    derivative_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_derivative_id)
    type: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, index=True, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    location: Mapped[str | None] = mapped_column(String(160), nullable=True)

    parent_data_ids: Mapped[list] = mapped_column(JSONDocument, default=list, nullable=False)
    child_derivative_ids: Mapped[list | None] = mapped_column(JSONDocument, nullable=True)
    meta_parent_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)

    content: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)

    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    merkle_root: Mapped[str | None] = mapped_column(String(64), nullable=True)
    storage_uri: Mapped[str | None] = mapped_column(String(255), nullable=True)
    storage_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    llm_metadata: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_daily(self) -> bool:
        return self.type == DerivativeType.DAILY.value

    @property
    def processing(self) -> dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "merkle_root": self.merkle_root,
            "storage_uri": self.storage_uri,
            "storage_id": self.storage_id,
            "processed_at": self.processed_at,
        }


class ProcessedFile(Base):
    """Station CSV files already loaded by the backfill stage."""

    __tablename__ = "processed_files"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_path: Mapped[str] = mapped_column(String(512), unique=True, index=True, nullable=False)
    station_id: Mapped[str] = mapped_column(String(160), index=True, nullable=False)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    batches_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batches_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_rows: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


Index("ix_processed_files_station_processed", ProcessedFile.station_id, ProcessedFile.processed_at)
