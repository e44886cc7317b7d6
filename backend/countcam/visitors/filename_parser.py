"""Recording timestamp extraction from camera export filenames."""
import logging
import re
from datetime import datetime
from typing import NamedTuple, Optional, Tuple

logger = logging.getLogger(__name__)

# Priority order: first pattern whose digits form a valid date/time wins.
FILENAME_TIMESTAMP_PATTERNS = (
    re.compile(r"(\d{4})[-_]?(\d{2})[-_]?(\d{2})[-_ ]?(\d{2})[-_:]?(\d{2})[-_:]?(\d{2})"),
    re.compile(r"(\d{4})(\d{2})(\d{2})_(\d{2})(\d{2})(\d{2})"),
    re.compile(r"(\d{4})-(\d{2})-(\d{2})_(\d{2})-(\d{2})-(\d{2})"),
)

DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M"


class ParsedTimestamp(NamedTuple):
    date: str
    time: str


def _to_datetime(groups: Tuple[str, ...]) -> Optional[datetime]:
    year, month, day, hour, minute, second = (int(g) for g in groups)
    try:
        return datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None


def parse_filename_timestamp(filename: str) -> Optional[ParsedTimestamp]:
    """Extract a ``(date, time)`` pair from a video filename.

    Returns ``None`` when no pattern yields a calendar-valid timestamp.
    """
    for pattern in FILENAME_TIMESTAMP_PATTERNS:
        match = pattern.search(filename)
        if not match:
            continue
        parsed = _to_datetime(match.groups())
        if parsed is None:
            logger.debug(f"Discarding out-of-range timestamp {match.group(0)!r} in {filename!r}")
            continue
        return ParsedTimestamp(parsed.strftime(DATE_FORMAT), parsed.strftime(TIME_FORMAT))
    return None


def resolve_recording_timestamp(
    filename: str,
    fallback_date: Optional[str] = None,
    fallback_time: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """Prefer the filename timestamp, otherwise use the form fallback values."""
    parsed = parse_filename_timestamp(filename)
    if parsed is not None:
        return parsed.date, parsed.time
    return fallback_date or None, fallback_time or None
