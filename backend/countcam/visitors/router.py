"""API router for visitor counting domain."""
import asyncio
import json
import logging
import queue
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response, StreamingResponse

from countcam.database import HistoryStore, get_history_store
from countcam.visitors.counter import VisitorCounter
from countcam.visitors.exceptions import RecordNotFoundError
from countcam.visitors.reporting import ExportVariant, export_csv
from countcam.visitors.schemas import (
    UploadSource,
    VisitorLogListResponseSchema,
    VisitorLogResponseSchema,
)
from countcam.visitors.service import (
    get_visitor_counter,
    parse_upload_request,
    process_upload,
    serialize_record,
)

logger = logging.getLogger(__name__)

router = APIRouter()

SSE_KEEPALIVE_SECONDS = 15


@router.post("/upload", response_model=VisitorLogResponseSchema)
async def upload(
    request: Request,
    counter: VisitorCounter = Depends(get_visitor_counter),
    store: HistoryStore = Depends(get_history_store),
):
    """Count visitors in one uploaded video and persist the result."""
    upload_request = await parse_upload_request(request)
    return await process_upload(upload_request, counter, store)


@router.get("/history", response_model=VisitorLogListResponseSchema)
async def get_history(
    upload_source: Optional[UploadSource] = Query(default=None, alias="uploadSource"),
    store: HistoryStore = Depends(get_history_store),
):
    """All records, newest first."""
    source = upload_source.value if upload_source else None
    return {"records": store.list_records(upload_source=source)}


@router.get("/history/export")
async def export_history(
    variant: ExportVariant = ExportVariant.HOURLY,
    upload_source: Optional[UploadSource] = Query(default=None, alias="uploadSource"),
    store: HistoryStore = Depends(get_history_store),
):
    """CSV export of the current history snapshot."""
    source = upload_source.value if upload_source else None
    content = export_csv(store.list_records(upload_source=source), variant)
    label = "HourlyVisitorReport" if variant == ExportVariant.HOURLY else "VisitorLog"
    filename = f"CountCam_{label}_{datetime.now(timezone.utc):%Y%m%d}.csv"
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/history/stream")
async def stream_history(
    request: Request,
    store: HistoryStore = Depends(get_history_store),
):
    """Server-Sent Events stream pushing the ordered history on every change."""
    subscriber_queue = store.subscribe()

    async def event_generator():
        try:
            while not await request.is_disconnected():
                try:
                    snapshot = await asyncio.to_thread(
                        subscriber_queue.get, True, SSE_KEEPALIVE_SECONDS
                    )
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                payload = {"records": [serialize_record(r) for r in snapshot]}
                yield f"data: {json.dumps(payload)}\n\n"
        except asyncio.CancelledError:
            # Client disconnected
            pass
        finally:
            store.unsubscribe(subscriber_queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/history/{record_id}", response_model=VisitorLogResponseSchema)
async def get_history_record(
    record_id: int,
    store: HistoryStore = Depends(get_history_store),
):
    """Get a specific record."""
    record = store.get_record(record_id)
    if record is None:
        raise RecordNotFoundError(record_id)
    return record


@router.get("/health")
async def health(request: Request):
    """Liveness plus store and model readiness."""
    store: Optional[HistoryStore] = getattr(request.app.state, "history_store", None)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": bool(store and store.is_initialized),
        "model_configured": getattr(request.app.state, "visitor_counter", None) is not None,
        "history_subscribers": store.subscriber_count if store else 0,
    }
