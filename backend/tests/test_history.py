"""
History Store Tests
===================
Append-only persistence, ordered reads, live snapshots, and history routes.
"""
import json
import queue
import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from countcam.visitors.router import stream_history


def record_data(**overrides):
    data = {
        "visitor_count": 3,
        "counted_direction": "entering",
        "requested_direction": "entering",
        "direction_mismatch": False,
        "video_file_name": "clip.mp4",
        "recording_start_date_time": datetime(2024, 7, 12, 14, 30),
        "upload_source": "api",
        "location_name": "N/A",
    }
    data.update(overrides)
    return data


class DisconnectingRequest:
    """Request stand-in that reports a disconnect after ``connected_polls`` checks."""

    def __init__(self, connected_polls):
        self.connected_polls = connected_polls

    async def is_disconnected(self):
        if self.connected_polls > 0:
            self.connected_polls -= 1
            return False
        return True


def drain(subscriber):
    snapshots = []
    while True:
        try:
            snapshots.append(subscriber.get_nowait())
        except queue.Empty:
            return snapshots


class TestHistoryStore:

    def test_append_assigns_id_and_processing_timestamp(self, store):
        before = datetime.now(timezone.utc)
        record = store.append(record_data())

        assert record.id is not None
        assert record.processing_timestamp.tzinfo is not None
        assert record.processing_timestamp >= before

    def test_list_is_newest_first(self, store):
        ids = [store.append(record_data(video_file_name=f"{i}.mp4")).id for i in range(3)]
        assert [r.id for r in store.list_records()] == list(reversed(ids))

    def test_list_filters_by_upload_source(self, store):
        store.append(record_data(upload_source="ui"))
        api_record = store.append(record_data(upload_source="api"))

        assert [r.id for r in store.list_records(upload_source="api")] == [api_record.id]
        assert len(store.list_records()) == 2

    @pytest.mark.parametrize("recorded", [
        datetime(2024, 7, 12, 14, 30),
        datetime(2024, 7, 12, 14, 30, tzinfo=timezone(timedelta(hours=9))),
        datetime(2024, 7, 12, 5, 30, tzinfo=timezone.utc),
        None,
    ])
    def test_recording_time_round_trips(self, store, recorded):
        record = store.append(record_data(recording_start_date_time=recorded))
        loaded = store.get_record(record.id)

        assert loaded.recording_start_date_time == recorded
        if recorded is not None:
            assert loaded.recording_start_date_time.utcoffset() == recorded.utcoffset()

    def test_get_missing_record(self, store):
        assert store.get_record(12345) is None

    def test_negative_count_rejected_by_database(self, store):
        with pytest.raises(IntegrityError):
            store.append(record_data(visitor_count=-1))
        assert store.list_records() == []

    def test_subscriber_gets_current_snapshot_immediately(self, store):
        existing = store.append(record_data())
        subscriber = store.subscribe()

        snapshot = subscriber.get_nowait()
        assert [r.id for r in snapshot] == [existing.id]

    def test_append_pushes_ordered_snapshot(self, store):
        subscriber = store.subscribe()
        assert subscriber.get_nowait() == []

        first = store.append(record_data())
        second = store.append(record_data())

        assert [r.id for r in subscriber.get_nowait()] == [first.id]
        assert [r.id for r in subscriber.get_nowait()] == [second.id, first.id]

    def test_unsubscribed_queue_receives_nothing(self, store):
        subscriber = store.subscribe()
        subscriber.get_nowait()
        store.unsubscribe(subscriber)
        store.append(record_data())

        with pytest.raises(queue.Empty):
            subscriber.get_nowait()
        assert store.subscriber_count == 0

    def test_slow_subscriber_keeps_latest_snapshot(self, store, monkeypatch):
        monkeypatch.setattr("countcam.database.SUBSCRIBER_QUEUE_MAXSIZE", 2)
        subscriber = store.subscribe()
        for _ in range(4):
            store.append(record_data())

        snapshots = [subscriber.get_nowait(), subscriber.get_nowait()]
        assert len(snapshots[-1]) == 4
        with pytest.raises(queue.Empty):
            subscriber.get_nowait()

    def test_append_while_subscribing_is_delivered(self, store, monkeypatch):
        real_list_records = store.list_records
        writer = {}

        def list_then_write(*args, **kwargs):
            records = real_list_records(*args, **kwargs)
            if "thread" not in writer:
                # Another request commits right after the initial read
                writer["thread"] = threading.Thread(target=store.append, args=(record_data(),))
                writer["thread"].start()
                writer["thread"].join(timeout=0.2)
            return records

        monkeypatch.setattr(store, "list_records", list_then_write)
        subscriber = store.subscribe()
        writer["thread"].join()

        snapshots = drain(subscriber)
        assert snapshots[0] == []
        assert len(snapshots[-1]) == 1

    def test_shutdown_closes_store(self, store):
        store.shutdown()
        assert not store.is_initialized
        with pytest.raises(RuntimeError):
            store.list_records()


class TestHistoryRoutes:

    @pytest.mark.asyncio
    async def test_history_lists_records(self, client, store):
        first = store.append(record_data(upload_source="ui"))
        second = store.append(record_data(upload_source="api", visitor_count=9))

        response = await client.get("/history")
        assert response.status_code == 200
        records = response.json()["records"]
        assert [r["id"] for r in records] == [second.id, first.id]
        assert records[0]["visitorCount"] == 9

    @pytest.mark.asyncio
    async def test_history_filter(self, client, store):
        ui_record = store.append(record_data(upload_source="ui"))
        store.append(record_data(upload_source="api"))

        response = await client.get("/history", params={"uploadSource": "ui"})
        assert [r["id"] for r in response.json()["records"]] == [ui_record.id]

    @pytest.mark.asyncio
    async def test_history_invalid_filter(self, client):
        response = await client.get("/history", params={"uploadSource": "cron"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_get_record(self, client, store):
        record = store.append(record_data(
            recording_start_date_time=datetime(2024, 7, 12, 14, 30, tzinfo=timezone(timedelta(hours=9)))
        ))
        response = await client.get(f"/history/{record.id}")

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == record.id
        assert body["recordingStartDateTime"] == "2024-07-12T14:30:00+09:00"

    @pytest.mark.asyncio
    async def test_get_missing_record(self, client):
        response = await client.get("/history/999")
        assert response.status_code == 404
        assert response.json()["errorCode"] == "RECORD_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_export_hourly(self, client, store):
        store.append(record_data(visitor_count=4, recording_start_date_time=datetime(2024, 7, 12, 14, 5)))
        store.append(record_data(visitor_count=2, counted_direction="exiting",
                                 recording_start_date_time=datetime(2024, 7, 12, 14, 45)))

        response = await client.get("/history/export", params={"variant": "hourly"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "CountCam_HourlyVisitorReport_" in response.headers["content-disposition"]
        assert response.text == (
            "Date,Time Slot,Entering Visitors,Exiting Visitors\n"
            "2024-07-12,14:00 - 14:59,4,2\n"
        )

    @pytest.mark.asyncio
    async def test_export_records(self, client, store):
        record = store.append(record_data())
        response = await client.get("/history/export", params={"variant": "records"})

        lines = response.text.splitlines()
        assert lines[0].startswith("ID,Processing Timestamp")
        assert lines[1].startswith(f"{record.id},")

    @pytest.mark.asyncio
    async def test_stream_sends_snapshot_then_unsubscribes(self, store):
        record = store.append(record_data(visitor_count=6))
        response = await stream_history(DisconnectingRequest(connected_polls=1), store=store)

        assert response.media_type == "text/event-stream"
        assert store.subscriber_count == 1
        events = [event async for event in response.body_iterator]

        assert len(events) == 1
        assert events[0].startswith("data: ") and events[0].endswith("\n\n")
        payload = json.loads(events[0][len("data: "):])
        assert [r["id"] for r in payload["records"]] == [record.id]
        assert payload["records"][0]["visitorCount"] == 6
        assert store.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_stream_keep_alive_when_idle(self, store, monkeypatch):
        monkeypatch.setattr("countcam.visitors.router.SSE_KEEPALIVE_SECONDS", 0.01)
        response = await stream_history(DisconnectingRequest(connected_polls=2), store=store)

        events = [event async for event in response.body_iterator]

        assert events == ['data: {"records": []}\n\n', ": keep-alive\n\n"]
        assert store.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
