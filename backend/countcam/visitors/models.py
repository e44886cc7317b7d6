"""Database models for visitor counting domain."""
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
)
from sqlalchemy.types import TypeDecorator

from countcam.models import Base


class IsoDateTime(TypeDecorator):
    """Datetime stored as ISO-8601 text so naive and offset values survive unchanged."""

    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return value.isoformat()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return datetime.fromisoformat(value)


class VisitorLog(Base):
    """One processed video and the visitor count the model returned for it."""

    __tablename__ = "visitor_logs"
    __table_args__ = (
        CheckConstraint("visitor_count >= 0", name="ck_visitor_logs_count_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    visitor_count = Column(Integer, nullable=False)
    counted_direction = Column(String(16), nullable=False)
    requested_direction = Column(String(16), nullable=False)
    direction_mismatch = Column(Boolean, nullable=False, default=False)
    video_file_name = Column(String(255), nullable=False)
    recording_start_date_time = Column(IsoDateTime, nullable=True)
    processing_timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    upload_source = Column(String(8), nullable=False)
    location_name = Column(String(255), nullable=False)
