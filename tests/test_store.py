"""
Tests for the SQLite event store.

Tests cover:
- Validation rules and their order
- Schema creation and idempotent reopen
- WAL and busy timeout configuration
- Ordered, atomic batch inserts
- Schema constraints as a second line of defense
- Lifecycle and close idempotency
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import orjson
import pytest
from sqlalchemy import insert, select, text
from sqlalchemy.exc import IntegrityError

from browsetrace.errors import StoreOpenError, ValidationError, WriteError
from browsetrace.event_models import ALLOWED_EVENT_TYPES, Batch, Event
from browsetrace.store import IMMEDIATE_OPTION, EventStore, StoreState, events_table, validate_event


def make_event(**overrides) -> Event:
    fields = {
        "ts_utc": 1234567890,
        "ts_iso": "2009-02-13T23:31:30Z",
        "url": "https://example.com",
        "title": "Test",
        "type": "navigate",
        "data": {},
    }
    fields.update(overrides)
    return Event(**fields)


@pytest.fixture
def store(tmp_path):
    s = EventStore.open(tmp_path / "test.db")
    yield s
    s.close()


def fetch_rows(store):
    with store.engine.connect() as conn:
        return conn.execute(select(events_table).order_by(events_table.c.id)).mappings().all()


class TestValidation:
    """Domain rules applied before any write"""

    def test_valid_event(self):
        validate_event(make_event())

    @pytest.mark.parametrize("event_type", sorted(ALLOWED_EVENT_TYPES))
    def test_all_event_types_accepted(self, event_type):
        validate_event(make_event(type=event_type))

    @pytest.mark.parametrize(
        "overrides,reason",
        [
            ({"url": ""}, "empty_url"),
            ({"type": ""}, "empty_type"),
            ({"type": "hover"}, "unknown_type"),
            ({"type": "Navigate"}, "unknown_type"),
            ({"ts_utc": 0}, "non_positive_timestamp"),
            ({"ts_utc": -1}, "non_positive_timestamp"),
        ],
    )
    def test_invalid_events(self, overrides, reason):
        with pytest.raises(ValidationError) as exc_info:
            validate_event(make_event(**overrides))
        assert exc_info.value.reason == reason

    @pytest.mark.parametrize(
        "overrides,reason",
        [
            ({"url": "", "type": "", "ts_utc": 0}, "empty_url"),
            ({"type": "", "ts_utc": -5}, "empty_type"),
            ({"type": "hover", "ts_utc": 0}, "unknown_type"),
        ],
    )
    def test_first_failing_check_wins(self, overrides, reason):
        """Checks short-circuit in order: url, type, type membership, timestamp."""
        with pytest.raises(ValidationError) as exc_info:
            validate_event(make_event(**overrides))
        assert exc_info.value.reason == reason

    def test_iso_timestamp_not_cross_checked(self):
        validate_event(make_event(ts_iso="not a date"))

    def test_store_exposes_validate(self, store):
        with pytest.raises(ValidationError):
            store.validate(make_event(url=""))


class TestOpen:
    """Opening, schema and engine configuration"""

    def test_open_creates_parent_directories(self, tmp_path):
        path = tmp_path / "a" / "b" / "events.db"
        store = EventStore.open(path)
        try:
            assert path.exists()
            assert store.state is StoreState.READY
        finally:
            store.close()

    def test_wal_and_busy_timeout(self, store):
        with store.engine.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
            assert conn.exec_driver_sql("PRAGMA busy_timeout").scalar() == 5000

    def test_custom_busy_timeout(self, tmp_path):
        store = EventStore.open(tmp_path / "t.db", busy_timeout_ms=1500)
        try:
            with store.engine.connect() as conn:
                assert conn.exec_driver_sql("PRAGMA busy_timeout").scalar() == 1500
        finally:
            store.close()

    def test_schema_objects(self, store):
        with store.engine.connect() as conn:
            indexes = conn.execute(
                text(
                    "SELECT name FROM sqlite_master "
                    "WHERE type = 'index' AND tbl_name = 'events' AND name LIKE 'idx_%'"
                )
            ).scalars().all()
        assert sorted(indexes) == ["idx_events_ts", "idx_events_type", "idx_events_url"]

    def test_reopen_is_idempotent(self, tmp_path):
        """Reopening an existing database keeps data and does not duplicate schema."""
        path = tmp_path / "events.db"
        first = EventStore.open(path)
        first.insert_batch([make_event()])
        first.close()

        second = EventStore.open(path)
        try:
            assert second.count() == 1
            with second.engine.connect() as conn:
                objects = conn.execute(
                    text("SELECT COUNT(*) FROM sqlite_master WHERE tbl_name = 'events'")
                ).scalar()
            # table + three indexes
            assert objects == 4
        finally:
            second.close()

    def test_open_failure_raises(self, tmp_path):
        # A directory cannot be opened as a database file
        with pytest.raises(StoreOpenError):
            EventStore.open(tmp_path)


class TestInsertBatch:
    """Ordered, all-or-nothing batch writes"""

    def test_single_event(self, store):
        ids = store.insert_batch(Batch(events=[make_event(title=None)]))

        rows = fetch_rows(store)
        assert len(rows) == 1
        assert rows[0]["id"] == ids[0]
        assert rows[0]["title"] is None
        assert rows[0]["type"] == "navigate"
        assert rows[0]["ts_utc"] == 1234567890
        assert orjson.loads(rows[0]["data_json"]) == {}

    def test_order_and_increasing_ids(self, store):
        events = [make_event(url=f"https://example.com/{i}", ts_utc=1000 + i) for i in range(5)]

        ids = store.insert_batch(events)

        assert ids == sorted(ids)
        assert len(set(ids)) == 5
        rows = fetch_rows(store)
        assert [r["url"] for r in rows] == [e.url for e in events]
        assert [r["id"] for r in rows] == ids

    def test_ids_never_reused_across_batches(self, store):
        first = store.insert_batch([make_event(), make_event()])
        second = store.insert_batch([make_event()])
        assert min(second) > max(first)

    def test_empty_batch_is_noop(self, store):
        assert store.insert_batch(Batch()) == []
        assert store.count() == 0

    @pytest.mark.parametrize("position", [0, 1, 2, 3, 4])
    def test_invalid_event_rolls_back_whole_batch(self, store, position):
        """One invalid event at any position leaves no rows from the batch."""
        store.insert_batch([make_event(url="https://before.example")])
        events = [make_event(url=f"https://example.com/{i}") for i in range(5)]
        events[position] = make_event(url="")

        with pytest.raises(ValidationError):
            store.insert_batch(events)

        assert store.count() == 1

    def test_complex_data_stored_as_json(self, store):
        data = {"field": "email", "value": "test@example.com", "nested": {"foo": "bar", "baz": 123}}
        store.insert_batch([make_event(type="input", data=data)])

        assert orjson.loads(fetch_rows(store)[0]["data_json"]) == data

    def test_unserializable_data_is_write_error(self, store):
        with pytest.raises(WriteError) as exc_info:
            store.insert_batch([make_event(), make_event(data={"obj": object()})])
        assert exc_info.value.stage == "marshal event data"
        assert store.count() == 0

    def test_storage_failure_is_write_error(self, store):
        with store.engine.begin() as conn:
            conn.exec_driver_sql("DROP TABLE events")

        with pytest.raises(WriteError) as exc_info:
            store.insert_batch([make_event()])
        assert exc_info.value.stage == "execute statement"

    def test_oversized_timestamp_is_write_error(self, store):
        """Driver overflow on bind is reported as a write failure, not raised raw."""
        oversized = Event.model_construct(
            timestamp_epoch_ms=2**63,
            timestamp_iso="x",
            url="https://example.com",
            title=None,
            event_type="navigate",
            data={},
        )

        with pytest.raises(WriteError) as exc_info:
            store.insert_batch([make_event(), oversized])
        assert exc_info.value.stage == "execute statement"
        assert store.count() == 0

    def test_concurrent_batches(self, store):
        """Concurrent writers are serialized; each batch lands contiguously."""
        barrier = threading.Barrier(8)

        def write(n):
            barrier.wait()
            return store.insert_batch([make_event(url=f"https://example.com/{n}/{i}") for i in range(10)])

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(write, range(8)))

        assert store.count() == 80
        for ids in results:
            assert ids == list(range(ids[0], ids[0] + 10))


class TestLocking:
    """Readers and writers under WAL"""

    @pytest.fixture
    def store(self, tmp_path):
        s = EventStore.open(tmp_path / "test.db", busy_timeout_ms=200)
        yield s
        s.close()

    def _open_write_transaction(self, conn):
        conn.execution_options(**{IMMEDIATE_OPTION: True})
        return conn.begin()

    def test_read_during_open_write_transaction(self, store):
        """A reader sees the last committed state while a writer holds the lock."""
        store.insert_batch([make_event()])

        with store.engine.connect() as writer:
            with self._open_write_transaction(writer):
                writer.execute(
                    insert(events_table).values(
                        ts_utc=1, ts_iso="x", url="https://example.com", type="click", data_json="{}"
                    )
                )
                assert store.count() == 1
                assert len(fetch_rows(store)) == 1

        assert store.count() == 2

    def test_batch_waits_for_write_lock_then_fails(self, store):
        """A batch cannot start while another writer holds the lock past the busy timeout."""
        with store.engine.connect() as writer:
            with self._open_write_transaction(writer):
                with pytest.raises(WriteError) as exc_info:
                    store.insert_batch([make_event()])

        assert exc_info.value.stage == "begin transaction"
        assert store.count() == 0

    def test_batch_proceeds_after_writer_commits(self, store):
        with store.engine.connect() as writer:
            with self._open_write_transaction(writer):
                pass

        assert len(store.insert_batch([make_event()])) == 1


class TestSchemaConstraints:
    """Constraints enforced by SQLite independently of the validator"""

    def _raw_insert(self, store, **overrides):
        values = {
            "ts_utc": 1,
            "ts_iso": "x",
            "url": "https://example.com",
            "title": None,
            "type": "click",
            "data_json": "{}",
        }
        values.update(overrides)
        with store.engine.begin() as conn:
            conn.execute(insert(events_table).values(**values))

    def test_valid_raw_insert(self, store):
        self._raw_insert(store)
        assert store.count() == 1

    def test_unknown_type_rejected(self, store):
        with pytest.raises(IntegrityError):
            self._raw_insert(store, type="hover")

    def test_invalid_json_rejected(self, store):
        with pytest.raises(IntegrityError):
            self._raw_insert(store, data_json="{not json")

    def test_required_columns(self, store):
        with pytest.raises(IntegrityError):
            self._raw_insert(store, url=None)


class TestLifecycle:
    def test_close_is_idempotent(self, tmp_path):
        store = EventStore.open(tmp_path / "test.db")
        store.close()
        store.close()
        assert store.state is StoreState.CLOSED

    def test_write_after_close_fails(self, tmp_path):
        store = EventStore.open(tmp_path / "test.db")
        store.close()
        with pytest.raises(WriteError):
            store.insert_batch([make_event()])

    def test_unopened_store_rejects_writes(self, tmp_path):
        store = EventStore(tmp_path / "test.db")
        assert store.state is StoreState.UNOPENED
        with pytest.raises(WriteError):
            store.insert_batch([make_event()])
