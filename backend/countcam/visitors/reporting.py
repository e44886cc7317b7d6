"""CSV exports of the visitor log history."""
import csv
import io
from collections import defaultdict
from enum import Enum
from typing import Dict, Iterable

from countcam.visitors.models import VisitorLog
from countcam.visitors.schemas import Direction

RECORDS_HEADER = [
    "ID",
    "Processing Timestamp",
    "Recording Start",
    "Video File",
    "Direction",
    "Visitor Count",
    "Upload Source",
    "Location",
]
HOURLY_HEADER = ["Date", "Time Slot", "Entering Visitors", "Exiting Visitors"]

HourlyAggregate = Dict[str, Dict[int, Dict[str, int]]]


class ExportVariant(str, Enum):
    RECORDS = "records"
    HOURLY = "hourly"


def _isoformat(value) -> str:
    return value.isoformat() if value is not None else ""


def _write_csv(header, rows) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue()


def records_to_csv(records: Iterable[VisitorLog]) -> str:
    """Flat export: one row per record, in the order given."""
    rows = (
        [
            record.id,
            _isoformat(record.processing_timestamp),
            _isoformat(record.recording_start_date_time),
            record.video_file_name,
            record.counted_direction,
            record.visitor_count,
            record.upload_source,
            record.location_name,
        ]
        for record in records
    )
    return _write_csv(RECORDS_HEADER, rows)


def aggregate_hourly(records: Iterable[VisitorLog]) -> HourlyAggregate:
    """Sum visitor counts by recording date and hour, split by direction.

    Records without a recording start time are skipped. Buckets use the
    recording time's own wall clock.
    """
    aggregated: HourlyAggregate = defaultdict(
        lambda: defaultdict(lambda: {d.value: 0 for d in Direction})
    )
    for record in records:
        recorded_at = record.recording_start_date_time
        if recorded_at is None:
            continue
        bucket = aggregated[recorded_at.strftime("%Y-%m-%d")][recorded_at.hour]
        if record.counted_direction in bucket:
            bucket[record.counted_direction] += record.visitor_count
    return {date: dict(hours) for date, hours in aggregated.items()}


def time_slot(hour: int) -> str:
    return f"{hour:02d}:00 - {hour:02d}:59"


def hourly_report_csv(records: Iterable[VisitorLog]) -> str:
    """Hourly export with dates ascending and hours ascending within each date."""
    aggregated = aggregate_hourly(records)
    rows = []
    for date in sorted(aggregated):
        hours = aggregated[date]
        for hour in sorted(hours):
            counts = hours[hour]
            rows.append([
                date,
                time_slot(hour),
                counts[Direction.ENTERING.value],
                counts[Direction.EXITING.value],
            ])
    return _write_csv(HOURLY_HEADER, rows)


def export_csv(records: Iterable[VisitorLog], variant: ExportVariant) -> str:
    if variant == ExportVariant.HOURLY:
        return hourly_report_csv(records)
    return records_to_csv(records)
