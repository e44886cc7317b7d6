"""Pydantic schemas for visitor counting domain."""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Direction(str, Enum):
    """Movement direction the model is asked to count."""
    ENTERING = "entering"
    EXITING = "exiting"


class UploadSource(str, Enum):
    """Ingestion path that produced a record."""
    UI = "ui"
    API = "api"


class CamelModel(BaseModel):
    """Base schema serialized with camelCase field names."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


class ModelCountOutput(CamelModel):
    """Structured JSON the model must return."""
    visitor_count: int = Field(ge=0, strict=True)
    counted_direction: Direction


class CountResult(CamelModel):
    """Validated model result plus the direction that was requested."""
    visitor_count: int = Field(ge=0)
    counted_direction: Direction
    requested_direction: Direction
    direction_mismatch: bool = False


class JsonUploadSchema(CamelModel):
    """Schema for JSON upload requests carrying a base64 data URI."""
    video_data_uri: str
    direction: Direction
    video_file_name: Optional[str] = None
    recording_timestamp: Optional[str] = None
    recording_date: Optional[str] = None
    recording_time: Optional[str] = None
    upload_source: UploadSource = UploadSource.API
    location_name: Optional[str] = None


class VisitorLogResponseSchema(CamelModel):
    """Schema for a persisted visitor log record."""
    id: int
    visitor_count: int
    counted_direction: Direction
    requested_direction: Direction
    direction_mismatch: bool
    video_file_name: str
    processing_timestamp: datetime
    recording_start_date_time: Optional[datetime] = None
    upload_source: UploadSource
    location_name: str


class VisitorLogListResponseSchema(CamelModel):
    """Schema for the ordered history response."""
    records: List[VisitorLogResponseSchema]
