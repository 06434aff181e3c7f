from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class IngestIn(BaseModel):
    device_id: str = Field(min_length=1)
    sensor_data: dict[str, Any] = Field(validation_alias=AliasChoices("sensor_data", "sensorData", "readings"))
    timestamp: Any = None


class BatchWindowOut(BaseModel):
    start: datetime
    end: datetime
    hour_index: int
    model_config = ConfigDict(from_attributes=True)


class ReadingMetaOut(BaseModel):
    location: Optional[dict[str, Any]] = None
    ingestion_count: int
    last_ingestion: datetime
    data_points_count: dict[str, int]


class ReadingProcessingOut(BaseModel):
    picked_at: Optional[datetime] = None
    picked_by: Optional[str] = None
    merkle_root: Optional[str] = None
    content_hash: Optional[str] = None
    storage_uri: Optional[str] = None
    storage_id: Optional[str] = None
    verified_at: Optional[datetime] = None
    ai_started_at: Optional[datetime] = None
    retry_count: int = 0
    error: Optional[str] = None
    failed_at: Optional[datetime] = None
    derivative_id: Optional[str] = None


class ReadingOut(BaseModel):
    reading_id: str
    device_id: str
    owner_id: str
    batch_window: BatchWindowOut
    sensor_data: dict[str, list[float]]
    meta: ReadingMetaOut
    status: str
    processing: ReadingProcessingOut
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class IngestOut(BaseModel):
    success: bool = True
    reading_id: str
    status: str
    ingestion_count: int
    batch_window: BatchWindowOut


class DerivativeProcessingOut(BaseModel):
    content_hash: Optional[str] = None
    merkle_root: Optional[str] = None
    storage_uri: Optional[str] = None
    storage_id: Optional[str] = None
    processed_at: Optional[datetime] = None


class DerivativeOut(BaseModel):
    derivative_id: str
    type: str
    period_start: datetime
    period_end: datetime
    location: Optional[str] = None
    parent_data_ids: list[str]
    child_derivative_ids: Optional[list[str]] = None
    meta_parent_id: Optional[str] = None
    content: str
    summary: Optional[dict[str, Any]] = None
    processing: DerivativeProcessingOut
    llm_metadata: Optional[dict[str, Any]] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class LineageOut(BaseModel):
    derivative_id: str
    type: str
    meta_parent_id: Optional[str] = None
    daily_ids: list[str] = []
    reading_ids: list[str] = []
    proof_chain_valid: bool
