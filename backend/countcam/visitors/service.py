"""Business logic for the upload-and-persist pipeline."""
import logging
import mimetypes
import re
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Request
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.datastructures import UploadFile

from countcam.config import settings
from countcam.database import HistoryStore
from countcam.visitors.counter import VisitorCounter, build_data_uri, parse_data_uri
from countcam.visitors.exceptions import (
    FileTooLargeError,
    InvalidRequestError,
    ModelInvocationError,
    ModelNotConfiguredError,
    ModelOutputError,
    StorageWriteError,
    UnsupportedContentTypeError,
)
from countcam.visitors.models import VisitorLog
from countcam.visitors.schemas import (
    Direction,
    JsonUploadSchema,
    UploadSource,
    VisitorLogResponseSchema,
)

logger = logging.getLogger(__name__)

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_RE = re.compile(r"^\d{2}:\d{2}(:\d{2})?$")
DEFAULT_VIDEO_FILE_NAME = "uploaded_video"
READ_CHUNK_SIZE = 1024 * 1024


class UploadRequest:
    """Validated upload ready for counting."""

    def __init__(
        self,
        video_data_uri: str,
        direction: Direction,
        video_file_name: str,
        recording_start_date_time: Optional[datetime],
        upload_source: UploadSource,
        location_name: str,
    ):
        self.video_data_uri = video_data_uri
        self.direction = direction
        self.video_file_name = video_file_name
        self.recording_start_date_time = recording_start_date_time
        self.upload_source = upload_source
        self.location_name = location_name


def get_visitor_counter(request: Request) -> VisitorCounter:
    """Dependency returning the lifespan-owned model client."""
    counter = getattr(request.app.state, "visitor_counter", None)
    if counter is None:
        raise ModelNotConfiguredError()
    return counter


def parse_recording_timestamp(
    recording_timestamp: Optional[str] = None,
    recording_date: Optional[str] = None,
    recording_time: Optional[str] = None,
) -> Optional[datetime]:
    """Turn the recording time fields into a datetime.

    A combined ISO-8601 ``recording_timestamp`` takes priority over the
    separate date/time fields. Offsets are preserved; values without an
    offset stay naive wall-clock times.
    """
    if recording_timestamp:
        try:
            return datetime.fromisoformat(recording_timestamp.strip().replace("Z", "+00:00"))
        except ValueError:
            raise InvalidRequestError(
                f"Invalid recordingTimestamp '{recording_timestamp}'. Use ISO-8601, "
                "e.g. 2024-07-12T14:30:00+09:00."
            )

    if not recording_date and not recording_time:
        return None
    if not (recording_date and recording_time):
        raise InvalidRequestError("recordingDate and recordingTime must be supplied together.")
    if not DATE_RE.match(recording_date) or not TIME_RE.match(recording_time):
        raise InvalidRequestError(
            "Invalid recordingDate or recordingTime format. Use YYYY-MM-DD and HH:MM."
        )

    time_format = "%H:%M:%S" if recording_time.count(":") == 2 else "%H:%M"
    try:
        return datetime.strptime(f"{recording_date} {recording_time}", f"%Y-%m-%d {time_format}")
    except ValueError:
        raise InvalidRequestError(
            f"recordingDate '{recording_date}' and recordingTime '{recording_time}' "
            "do not form a valid calendar date and time."
        )


def _parse_direction(value: Optional[str]) -> Direction:
    if not value:
        raise InvalidRequestError('No direction specified. Please use field name "direction".')
    try:
        return Direction(value)
    except ValueError:
        allowed = ", ".join(f"'{d.value}'" for d in Direction)
        raise InvalidRequestError(f"Invalid direction value: {value}. Must be one of {allowed}.")


def _parse_upload_source(value: Optional[str]) -> UploadSource:
    if not value:
        return UploadSource.API
    try:
        return UploadSource(value)
    except ValueError:
        allowed = ", ".join(f"'{s.value}'" for s in UploadSource)
        raise InvalidRequestError(f"Invalid uploadSource value: {value}. Must be one of {allowed}.")


def _location_name(value: Optional[str]) -> str:
    return (value or "").strip() or settings.DEFAULT_LOCATION_NAME


def _video_mime_type(upload: UploadFile) -> Optional[str]:
    # Drop parameters such as "; codecs=avc1"
    mime_type = (upload.content_type or "").split(";")[0].strip().lower()
    if not mime_type or mime_type == "application/octet-stream":
        mime_type, _ = mimetypes.guess_type(upload.filename or "")
    return mime_type


def _form_text(form: Any, name: str) -> Optional[str]:
    value = form.get(name)
    if value is not None and not isinstance(value, str):
        raise InvalidRequestError(f'Form field "{name}" must be a text value, not a file.')
    return value


async def _read_capped(upload: UploadFile, max_bytes: int) -> bytes:
    """Read an uploaded file, failing as soon as it exceeds ``max_bytes``."""
    chunks = []
    total = 0
    while chunk := await upload.read(READ_CHUNK_SIZE):
        total += len(chunk)
        if total > max_bytes:
            raise FileTooLargeError(settings.MAX_UPLOAD_SIZE_MB)
        chunks.append(chunk)
    return b"".join(chunks)


async def parse_multipart_upload(request: Request) -> UploadRequest:
    form = await request.form()
    try:
        upload = form.get("videoFile")
        if not isinstance(upload, UploadFile):
            raise InvalidRequestError(
                'No video file found in form data. Please use field name "videoFile".'
            )

        direction = _parse_direction(_form_text(form, "direction"))
        upload_source = _parse_upload_source(_form_text(form, "uploadSource"))
        recording_start = parse_recording_timestamp(
            _form_text(form, "recordingTimestamp"),
            _form_text(form, "recordingDate"),
            _form_text(form, "recordingTime"),
        )

        mime_type = _video_mime_type(upload)
        if not mime_type or not mime_type.startswith("video/"):
            raise InvalidRequestError(
                "Uploaded file is not a video or its MIME type could not be determined as video.",
                {"content_type": upload.content_type},
            )
        if upload.size is not None and upload.size > settings.MAX_UPLOAD_SIZE_BYTES:
            raise FileTooLargeError(settings.MAX_UPLOAD_SIZE_MB)

        data = await _read_capped(upload, settings.MAX_UPLOAD_SIZE_BYTES)
        if not data:
            raise InvalidRequestError("Uploaded video file is empty.")

        return UploadRequest(
            video_data_uri=build_data_uri(mime_type, data),
            direction=direction,
            video_file_name=upload.filename or DEFAULT_VIDEO_FILE_NAME,
            recording_start_date_time=recording_start,
            upload_source=upload_source,
            location_name=_location_name(_form_text(form, "locationName")),
        )
    finally:
        await form.close()


async def parse_json_upload(request: Request) -> UploadRequest:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequestError("Request body is not valid JSON.")

    try:
        payload = JsonUploadSchema.model_validate(body)
    except ValidationError as e:
        raise InvalidRequestError(
            "Invalid JSON request body.",
            e.errors(include_url=False, include_context=False, include_input=False),
        )

    if not payload.video_data_uri.startswith("data:video/"):
        raise InvalidRequestError(
            "videoDataUri must be a valid video data URI with base64 encoding."
        )
    try:
        _, data = parse_data_uri(payload.video_data_uri)
    except ValueError as e:
        raise InvalidRequestError(f"videoDataUri could not be decoded: {e}")
    if not data:
        raise InvalidRequestError("videoDataUri carries no video data.")
    if len(data) > settings.MAX_UPLOAD_SIZE_BYTES:
        raise FileTooLargeError(settings.MAX_UPLOAD_SIZE_MB)

    return UploadRequest(
        video_data_uri=payload.video_data_uri,
        direction=payload.direction,
        video_file_name=payload.video_file_name or DEFAULT_VIDEO_FILE_NAME,
        recording_start_date_time=parse_recording_timestamp(
            payload.recording_timestamp,
            payload.recording_date,
            payload.recording_time,
        ),
        upload_source=payload.upload_source,
        location_name=_location_name(payload.location_name),
    )


async def parse_upload_request(request: Request) -> UploadRequest:
    """Validate an upload request in either of its two wire forms."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        return await parse_multipart_upload(request)
    if content_type.startswith("application/json"):
        return await parse_json_upload(request)
    raise UnsupportedContentTypeError(content_type)


async def process_upload(
    upload: UploadRequest,
    counter: VisitorCounter,
    store: HistoryStore,
) -> VisitorLog:
    """Count visitors in one video and persist the result.

    Nothing is written when the model call fails, and a storage failure is
    reported as an error rather than an unpersisted success.
    """
    logger.info(
        f"Processing {upload.video_file_name} ({upload.direction.value}, "
        f"source={upload.upload_source.value})"
    )
    try:
        result = await counter.count_visitors(upload.video_data_uri, upload.direction)
    except ModelOutputError as e:
        logger.error(f"Counting failed for {upload.video_file_name}: {e.message}")
        raise ModelInvocationError(e)

    record_data: Dict[str, Any] = {
        "visitor_count": result.visitor_count,
        "counted_direction": result.counted_direction.value,
        "requested_direction": result.requested_direction.value,
        "direction_mismatch": result.direction_mismatch,
        "video_file_name": upload.video_file_name,
        "recording_start_date_time": upload.recording_start_date_time,
        "upload_source": upload.upload_source.value,
        "location_name": upload.location_name,
    }
    try:
        return store.append(record_data)
    except SQLAlchemyError as e:
        logger.exception(f"Error writing visitor log for {upload.video_file_name}: {e}")
        raise StorageWriteError(str(e))


def serialize_record(record: VisitorLog) -> Dict[str, Any]:
    """JSON-ready camelCase dict for one record."""
    return VisitorLogResponseSchema.model_validate(record).model_dump(
        mode="json", by_alias=True
    )
