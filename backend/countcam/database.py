"""Visitor log history store: database connection, appends, and live snapshots."""
import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from countcam.models import Base
from countcam.visitors.exceptions import DatabaseNotConfiguredError
from countcam.visitors.models import VisitorLog

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_MAXSIZE = 10


class HistoryStore:
    """Append-only store of visitor log records with live snapshot subscribers.

    Owned by the application lifespan: call :meth:`init` before use and
    :meth:`shutdown` when the process exits.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._subscribers: List[queue.Queue] = []
        self._subscribers_lock = threading.Lock()
        self._publish_lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    def init(self) -> None:
        """Create the engine and verify tables."""
        if self._engine is not None:
            return
        connect_args = {}
        if self.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self._engine = create_engine(
            self.database_url, pool_pre_ping=True, connect_args=connect_args
        )
        Base.metadata.create_all(self._engine)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        logger.info("Database connection successful and tables verified.")

    def shutdown(self) -> None:
        """Dispose of the engine and drop all subscribers."""
        with self._subscribers_lock:
            self._subscribers.clear()
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed.")

    def session(self) -> Session:
        if self._session_factory is None:
            raise RuntimeError("History store is not initialized")
        return self._session_factory()

    def append(self, record_data: Dict[str, Any]) -> VisitorLog:
        """Insert one record, stamping ``processing_timestamp`` at write time."""
        record = VisitorLog(
            processing_timestamp=datetime.now(timezone.utc),
            **record_data,
        )
        session = self.session()
        try:
            session.add(record)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        _ensure_utc(record)
        logger.info(f"Visitor log written to database with ID: {record.id}")
        try:
            self._publish_snapshot()
        except Exception as e:
            logger.exception(f"Error broadcasting history snapshot: {e}")
        return record

    def list_records(self, upload_source: Optional[str] = None) -> List[VisitorLog]:
        """All records, newest ``processing_timestamp`` first."""
        session = self.session()
        try:
            records = (
                session.query(VisitorLog)
                .order_by(VisitorLog.processing_timestamp.desc(), VisitorLog.id.desc())
                .all()
            )
        finally:
            session.close()

        for record in records:
            _ensure_utc(record)
        if upload_source is not None:
            records = [r for r in records if r.upload_source == upload_source]
        return records

    def get_record(self, record_id: int) -> Optional[VisitorLog]:
        session = self.session()
        try:
            record = session.get(VisitorLog, record_id)
        finally:
            session.close()
        if record is not None:
            _ensure_utc(record)
        return record

    def subscribe(self) -> queue.Queue:
        """Register a live subscriber; it immediately receives the current snapshot."""
        subscriber_queue: queue.Queue = queue.Queue(maxsize=SUBSCRIBER_QUEUE_MAXSIZE)
        # Holding the publish lock keeps a concurrent append's snapshot after this one
        with self._publish_lock:
            with self._subscribers_lock:
                self._subscribers.append(subscriber_queue)
            subscriber_queue.put_nowait(self.list_records())
        return subscriber_queue

    def unsubscribe(self, subscriber_queue: queue.Queue) -> None:
        with self._subscribers_lock:
            try:
                self._subscribers.remove(subscriber_queue)
            except ValueError:
                pass

    @property
    def subscriber_count(self) -> int:
        with self._subscribers_lock:
            return len(self._subscribers)

    def _publish_snapshot(self) -> None:
        """Push the ordered snapshot to every subscriber without blocking."""
        with self._publish_lock:
            with self._subscribers_lock:
                subscribers = list(self._subscribers)
            if not subscribers:
                return

            snapshot = self.list_records()
            for subscriber_queue in subscribers:
                _offer(subscriber_queue, snapshot)


def _offer(subscriber_queue: queue.Queue, snapshot: List[VisitorLog]) -> None:
    try:
        subscriber_queue.put_nowait(snapshot)
    except queue.Full:
        # Slow subscriber: the newest snapshot supersedes the oldest pending one
        try:
            subscriber_queue.get_nowait()
        except queue.Empty:
            pass
        try:
            subscriber_queue.put_nowait(snapshot)
        except queue.Full:
            logger.warning("Dropping history snapshot for a slow subscriber")


def _ensure_utc(record: VisitorLog) -> None:
    # SQLite drops tzinfo on DateTime(timezone=True) columns
    if record.processing_timestamp is not None and record.processing_timestamp.tzinfo is None:
        record.processing_timestamp = record.processing_timestamp.replace(tzinfo=timezone.utc)


def get_history_store(request: Request) -> HistoryStore:
    """Dependency returning the lifespan-owned history store."""
    store = getattr(request.app.state, "history_store", None)
    if store is None or not store.is_initialized:
        logger.error("History store requested before initialization")
        raise DatabaseNotConfiguredError()
    return store
