"""
SQLite event store.

One shared EventStore serves every request for the lifetime of the
process. The engine runs SQLite in write-ahead-log mode with a bounded
busy timeout. Batch writes start with BEGIN IMMEDIATE so a writer takes
the write lock up front and waits for it instead of failing on the first
conflict. Reads use a plain deferred BEGIN and never wait on a writer.

Lifecycle: UNOPENED -> OPENING -> READY -> CLOSED. A failure while
opening leaves the store FAILED.
"""
import threading
from enum import Enum
from pathlib import Path
from typing import Iterable

import orjson
import structlog
from sqlalchemy import (
    CheckConstraint,
    Column,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    create_engine,
    event,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .errors import StoreOpenError, ValidationError, WriteError
from .event_models import ALLOWED_EVENT_TYPES, Batch, Event, EventType

log = structlog.get_logger()

DEFAULT_BUSY_TIMEOUT_MS = 5000

# Execution option that makes a connection's transactions BEGIN IMMEDIATE
IMMEDIATE_OPTION = "sqlite_immediate"

metadata = MetaData()

_allowed_sql = ", ".join(f"'{t.value}'" for t in EventType)

events_table = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("ts_utc", Integer, nullable=False),
    Column("ts_iso", Text, nullable=False),
    Column("url", Text, nullable=False),
    Column("title", Text, nullable=True),
    Column("type", Text, nullable=False),
    Column("data_json", Text, nullable=False),
    CheckConstraint(f"type IN ({_allowed_sql})", name="ck_events_type"),
    CheckConstraint("json_valid(data_json)", name="ck_events_data_json"),
    Index("idx_events_ts", "ts_utc"),
    Index("idx_events_type", "type"),
    Index("idx_events_url", "url"),
    # ids are never reused
    sqlite_autoincrement=True,
)


class StoreState(str, Enum):
    UNOPENED = "unopened"
    OPENING = "opening"
    READY = "ready"
    CLOSED = "closed"
    FAILED = "failed"


def validate_event(event: Event) -> None:
    """
    Check an event against the domain rules.

    Checks run in order and stop at the first failure: URL non-empty,
    type non-empty, type in the allowed set, timestamp strictly positive.

    Raises:
        ValidationError: with ``reason`` naming the failed check.
    """
    if not event.url:
        raise ValidationError("empty_url", "URL cannot be empty")
    if not event.event_type:
        raise ValidationError("empty_type", "Type cannot be empty")
    if event.event_type not in ALLOWED_EVENT_TYPES:
        raise ValidationError("unknown_type", f"invalid event type: {event.event_type}")
    if event.timestamp_epoch_ms <= 0:
        raise ValidationError("non_positive_timestamp", "timestamp must be positive")


def _configure_sqlite(engine: Engine, busy_timeout_ms: int) -> None:
    """Apply WAL, busy timeout and explicit transaction control to every connection."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Hand transaction control to SQLAlchemy; the driver would
        # otherwise issue its own deferred BEGIN.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        finally:
            cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(IMMEDIATE_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


class EventStore:
    """
    Thread-safe owner of the events database.

    Use ``EventStore.open(path)`` rather than the constructor.
    """

    def __init__(self, path: str | Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS):
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self._engine: Engine | None = None
        self._state = StoreState.UNOPENED
        self._lock = threading.RLock()

    @classmethod
    def open(cls, path: str | Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> "EventStore":
        """
        Open (creating if needed) the database at ``path``.

        Raises:
            StoreOpenError: the file, engine or schema could not be set up.
        """
        store = cls(path, busy_timeout_ms=busy_timeout_ms)
        store._open()
        return store

    def _open(self) -> None:
        with self._lock:
            if self._state is not StoreState.UNOPENED:
                raise StoreOpenError(f"store cannot be opened from state {self._state.value}")
            self._state = StoreState.OPENING

            engine = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                engine = create_engine(
                    f"sqlite:///{self.path}",
                    connect_args={
                        "timeout": self.busy_timeout_ms / 1000,
                        "check_same_thread": False,
                    },
                )
                _configure_sqlite(engine, self.busy_timeout_ms)
                metadata.create_all(engine, checkfirst=True)
            except (SQLAlchemyError, OSError) as exc:
                if engine is not None:
                    engine.dispose()
                self._state = StoreState.FAILED
                log.error("store.open_failed", path=str(self.path), error=str(exc))
                raise StoreOpenError(f"failed to open database at {self.path}: {exc}") from exc

            self._engine = engine
            self._state = StoreState.READY

        log.info("store.opened", path=str(self.path), busy_timeout_ms=self.busy_timeout_ms)

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def engine(self) -> Engine:
        """Underlying engine, for collaborators that read the table directly."""
        return self._require_ready()

    def _require_ready(self) -> Engine:
        with self._lock:
            if self._state is not StoreState.READY or self._engine is None:
                raise WriteError("use store", f"store is {self._state.value}")
            return self._engine

    def validate(self, event: Event) -> None:
        validate_event(event)

    def insert_batch(self, batch: Batch | Iterable[Event]) -> list[int]:
        """
        Persist all events in one transaction, or none of them.

        Events are validated and inserted in order. The first failure rolls
        the whole transaction back and is raised.

        Returns:
            Row ids assigned to the events, in batch order.

        Raises:
            ValidationError: an event failed validation.
            WriteError: the transaction failed at some stage.
        """
        events = batch.events if isinstance(batch, Batch) else list(batch)
        engine = self._require_ready()

        ids: list[int] = []
        stage = "begin transaction"
        try:
            with engine.connect() as conn:
                conn.execution_options(**{IMMEDIATE_OPTION: True})
                with conn.begin():
                    for position, evt in enumerate(events):
                        try:
                            validate_event(evt)
                        except ValidationError as exc:
                            log.warning(
                                "store.event_rejected",
                                position=position,
                                reason=exc.reason,
                                batch_size=len(events),
                            )
                            raise

                        stage = "marshal event data"
                        data_json = orjson.dumps(evt.data).decode()

                        stage = "execute statement"
                        result = conn.execute(
                            insert(events_table).values(
                                ts_utc=evt.timestamp_epoch_ms,
                                ts_iso=evt.timestamp_iso,
                                url=evt.url,
                                title=evt.title,
                                type=evt.event_type,
                                # json() makes SQLite re-check well-formedness
                                data_json=func.json(data_json),
                            )
                        )
                        ids.append(result.inserted_primary_key[0])
                    stage = "commit transaction"
        except orjson.JSONEncodeError as exc:
            raise WriteError(stage, str(exc)) from exc
        except SQLAlchemyError as exc:
            raise WriteError(stage, str(exc)) from exc
        except OverflowError as exc:
            # sqlite3 raises this unwrapped when binding an oversized integer
            raise WriteError(stage, str(exc)) from exc

        log.debug("store.batch_committed", count=len(ids))
        return ids

    def count(self) -> int:
        """Number of stored events."""
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(events_table)).scalar_one()

    def close(self) -> None:
        """Release the database handle. Safe to call more than once."""
        with self._lock:
            if self._state is StoreState.CLOSED:
                return
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None
            self._state = StoreState.CLOSED
        log.info("store.closed", path=str(self.path))
