#!/usr/bin/env python3
"""
CountCam Batch Uploader
=======================

Uploads entrance videos to a CountCam server one at a time and reports a
success/failure tally at the end.

Usage:
    # Local development
    countcam-upload clips/*.mp4 --direction entering

    # Fallback recording time for files whose names carry no timestamp
    countcam-upload lobby.mp4 --direction exiting --date 2024-07-12 --time 14:30

    # Against a deployed server
    countcam-upload clips/*.mp4 --direction entering --url https://countcam.example.org
"""
import argparse
import logging
import mimetypes
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import httpx

from countcam.visitors.filename_parser import resolve_recording_timestamp

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://localhost:8000"
MAX_FILE_SIZE_MB = 50
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024
# Video counting can take minutes per clip
UPLOAD_TIMEOUT_SECONDS = 600


@dataclass
class SelectedFile:
    path: Path
    mime_type: str


@dataclass
class FileResult:
    file_name: str
    success: bool
    record: Optional[dict] = None
    error: Optional[str] = None


@dataclass
class BatchSummary:
    succeeded: int = 0
    failed: int = 0
    results: List[FileResult] = field(default_factory=list)


def select_files(paths: Sequence[Path]):
    """Split candidate paths into uploadable videos and skipped ``(path, reason)`` pairs."""
    selected: List[SelectedFile] = []
    skipped = []
    for path in paths:
        if not path.is_file():
            skipped.append((path, "file not found"))
            continue
        if path.stat().st_size > MAX_FILE_SIZE_BYTES:
            skipped.append((path, f"file is too large (max {MAX_FILE_SIZE_MB}MB)"))
            continue
        mime_type, _ = mimetypes.guess_type(path.name)
        if not mime_type or not mime_type.startswith("video/"):
            skipped.append((path, "not a video file (recommended: MP4, MOV, AVI)"))
            continue
        selected.append(SelectedFile(path=path, mime_type=mime_type))
    return selected, skipped


class BatchUploader:
    """Submits selected files to ``POST /upload`` strictly one after another.

    A failed file never stops the batch. ``progress`` and ``current_index``
    can be read at any time, and ``on_progress`` is called after every file.
    """

    def __init__(
        self,
        http_client: httpx.Client,
        on_progress: Optional[Callable[["BatchUploader", FileResult], None]] = None,
    ):
        self.http_client = http_client
        self.on_progress = on_progress
        self.selected: List[SelectedFile] = []
        self.current_index: Optional[int] = None
        self.completed = 0

    @property
    def total(self) -> int:
        return len(self.selected)

    @property
    def progress(self) -> float:
        if not self.total:
            return 0.0
        return self.completed / self.total

    def select(self, files: Sequence[SelectedFile]) -> None:
        self.selected = list(files)
        self.completed = 0
        self.current_index = None

    def upload_one(
        self,
        selected: SelectedFile,
        direction: str,
        recording_date: Optional[str],
        recording_time: Optional[str],
        location_name: Optional[str],
    ) -> FileResult:
        file_name = selected.path.name
        data = {"direction": direction, "uploadSource": "ui"}
        if recording_date and recording_time:
            data["recordingDate"] = recording_date
            data["recordingTime"] = recording_time
        if location_name:
            data["locationName"] = location_name

        try:
            with selected.path.open("rb") as f:
                resp = self.http_client.post(
                    "/upload",
                    files={"videoFile": (file_name, f, selected.mime_type)},
                    data=data,
                )
        except (OSError, httpx.HTTPError) as e:
            logger.error(f"Error uploading {file_name}: {e}")
            return FileResult(file_name=file_name, success=False, error=str(e))

        if resp.status_code != 200:
            try:
                body = resp.json()
            except ValueError:
                body = None
            message = body.get("error") if isinstance(body, dict) else None
            message = message or f"API request failed with status {resp.status_code}"
            logger.error(f"Failed to count visitors for {file_name}: {message}")
            return FileResult(file_name=file_name, success=False, error=message)

        try:
            record = resp.json()
        except ValueError:
            message = f"Unexpected non-JSON response (status {resp.status_code})"
            logger.error(f"Failed to count visitors for {file_name}: {message}")
            return FileResult(file_name=file_name, success=False, error=message)
        if not isinstance(record, dict):
            message = "Unexpected response body"
            logger.error(f"Failed to count visitors for {file_name}: {message}")
            return FileResult(file_name=file_name, success=False, error=message)

        logger.info(
            f"Visitor count for {file_name} ({record.get('countedDirection')}) "
            f"is {record.get('visitorCount')}"
        )
        return FileResult(file_name=file_name, success=True, record=record)

    def run(
        self,
        direction: str,
        fallback_date: Optional[str] = None,
        fallback_time: Optional[str] = None,
        location_name: Optional[str] = None,
    ) -> BatchSummary:
        """Upload every selected file in order, then clear the selection."""
        summary = BatchSummary()
        self.completed = 0
        for index, selected in enumerate(self.selected):
            self.current_index = index
            recording_date, recording_time = resolve_recording_timestamp(
                selected.path.name, fallback_date, fallback_time
            )
            result = self.upload_one(
                selected, direction, recording_date, recording_time, location_name
            )
            summary.results.append(result)
            if result.success:
                summary.succeeded += 1
            else:
                summary.failed += 1
            self.completed = index + 1
            if self.on_progress is not None:
                self.on_progress(self, result)

        self.current_index = None
        self.selected = []
        return summary


def _print_progress(uploader: BatchUploader, result: FileResult) -> None:
    status = "ok" if result.success else f"failed: {result.error}"
    count = f" -> {result.record.get('visitorCount')}" if result.success else ""
    print(f"  [{uploader.progress * 100:5.1f}%] {result.file_name}{count} ({status})")


def main(argv: Optional[Sequence[str]] = None) -> int:
    p = argparse.ArgumentParser(description="CountCam batch video uploader")
    p.add_argument("videos", nargs="+", type=Path, help="Video files to upload")
    p.add_argument("--direction", required=True, choices=["entering", "exiting"],
                   help="Direction of movement to count")
    p.add_argument("--url", default=DEFAULT_URL, help="API base URL")
    p.add_argument("--date", help="Fallback recording date (YYYY-MM-DD)")
    p.add_argument("--time", help="Fallback recording time (HH:MM)")
    p.add_argument("--location", help="Location name stored with each record")
    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.WARNING, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    selected, skipped = select_files(args.videos)
    for path, reason in skipped:
        print(f"Skipping {path}: {reason}")
    if not selected:
        print("No valid files selected.")
        return 1

    print(f"Uploading {len(selected)} file(s) to {args.url} ...")
    with httpx.Client(base_url=args.url, timeout=UPLOAD_TIMEOUT_SECONDS) as http_client:
        uploader = BatchUploader(http_client, on_progress=_print_progress)
        uploader.select(selected)
        summary = uploader.run(args.direction, args.date, args.time, args.location)

    print(f"{summary.succeeded} file(s) processed successfully, {summary.failed} file(s) failed.")
    return 0 if summary.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
