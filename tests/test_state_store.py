from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from fakes import crash_record
from testflight_pm.store import JsonFileStateBackend, PersistedState, SQLiteStateBackend, StateStore


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def test_processed_ids_survive_a_reload(tmp_path) -> None:
    path = tmp_path / "state" / "processed.json"
    clock = Clock(START)

    store = StateStore(JsonFileStateBackend(str(path)), clock=clock)
    store.mark_as_processed(["fb-1", "fb-2"], run_id="run-7")
    assert store.dirty
    store.save_state()
    assert not store.dirty

    reloaded = StateStore(JsonFileStateBackend(str(path)), clock=clock)

    assert reloaded.is_processed("fb-1")
    assert reloaded.is_processed("fb-2")
    assert not reloaded.is_processed("fb-3")
    stats = reloaded.get_stats()
    assert stats.total_processed == 2
    assert stats.currently_cached == 2
    assert stats.action_run_id == "run-7"
    assert stats.last_processed_at == START


def test_state_document_layout(tmp_path) -> None:
    path = tmp_path / "processed.json"
    store = StateStore(JsonFileStateBackend(str(path)), clock=Clock(START))
    store.mark_as_processed(["fb-1"], run_id="42")
    store.save_state()

    payload = json.loads(path.read_text(encoding="utf-8"))

    assert payload["processed_ids"] == ["fb-1"]
    assert payload["total_processed"] == 1
    assert payload["action_run_id"] == "42"
    assert payload["created_at"] == "2026-03-01T09:00:00Z"
    assert payload["version"] == "1.0.0"


def test_oldest_ids_are_evicted_first(tmp_path) -> None:
    store = StateStore(JsonFileStateBackend(str(tmp_path / "s.json")), max_retained_ids=3, clock=Clock(START))

    store.mark_as_processed(["a", "b", "c"])
    store.mark_as_processed(["d", "e"])

    assert [store.is_processed(item) for item in "abcde"] == [False, False, True, True, True]
    assert store.get_stats().total_processed == 5
    assert store.get_stats().currently_cached == 3


def test_expired_state_starts_fresh(tmp_path) -> None:
    path = tmp_path / "s.json"
    clock = Clock(START)
    store = StateStore(JsonFileStateBackend(str(path)), cache_expiry_hours=24, clock=clock)
    store.mark_as_processed(["fb-1"])
    store.save_state()

    clock.now = START + timedelta(hours=25)
    reloaded = StateStore(JsonFileStateBackend(str(path)), cache_expiry_hours=24, clock=clock)

    assert not reloaded.is_processed("fb-1")
    assert reloaded.get_stats().total_processed == 0


@pytest.mark.parametrize("content", ["{not json", json.dumps({"processed_ids": "nope"}), json.dumps([1, 2])])
def test_unreadable_state_file_starts_fresh(tmp_path, content: str) -> None:
    path = tmp_path / "s.json"
    path.write_text(content, encoding="utf-8")

    store = StateStore(JsonFileStateBackend(str(path)), clock=Clock(START))

    assert store.get_stats().currently_cached == 0
    store.mark_as_processed(["fb-1"])
    store.save_state()
    assert json.loads(path.read_text(encoding="utf-8"))["processed_ids"] == ["fb-1"]


def test_filter_unprocessed_skips_known_and_idless_records(tmp_path) -> None:
    store = StateStore(JsonFileStateBackend(str(tmp_path / "s.json")), clock=Clock(START))
    store.mark_as_processed(["fb-1"])

    records = [crash_record("fb-1"), crash_record("fb-2"), crash_record("  ")]

    assert [record.id for record in store.filter_unprocessed(records)] == ["fb-2"]


def test_mark_as_processed_ignores_repeats_and_blanks(tmp_path) -> None:
    store = StateStore(JsonFileStateBackend(str(tmp_path / "s.json")), clock=Clock(START))

    store.mark_as_processed(["fb-1", "fb-1", ""])
    store.mark_as_processed([])

    assert store.get_stats().total_processed == 1


def test_autosave_writes_on_every_mark(tmp_path) -> None:
    path = tmp_path / "s.json"
    store = StateStore(JsonFileStateBackend(str(path)), autosave=True, clock=Clock(START))

    store.mark_as_processed(["fb-1"])

    assert not store.dirty
    assert json.loads(path.read_text(encoding="utf-8"))["processed_ids"] == ["fb-1"]


def test_clear_state_removes_the_document(tmp_path) -> None:
    path = tmp_path / "s.json"
    store = StateStore(JsonFileStateBackend(str(path)), clock=Clock(START))
    store.mark_as_processed(["fb-1"])
    store.save_state()

    store.clear_state()

    assert not path.exists()
    assert not store.is_processed("fb-1")


def test_sqlite_backend_round_trips_state(tmp_path) -> None:
    backend = SQLiteStateBackend(str(tmp_path / "state.sqlite"))
    assert backend.load() is None

    backend.init_db()
    backend.save(PersistedState(created_at=START, processed_ids=["fb-1", "fb-2"], total_processed=2))
    loaded = backend.load()

    assert loaded is not None
    assert loaded.processed_ids == ["fb-1", "fb-2"]
    assert loaded.created_at == START

    backend.clear()
    assert backend.load() is None


def test_max_retained_ids_must_be_positive(tmp_path) -> None:
    with pytest.raises(ValueError):
        StateStore(JsonFileStateBackend(str(tmp_path / "s.json")), max_retained_ids=0)
