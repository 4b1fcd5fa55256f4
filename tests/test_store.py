import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from sqlalchemy import BigInteger
from sqlalchemy.exc import OperationalError

from lesson_progress.application.use_cases.track_progress import ProgressTracker
from lesson_progress.domain.entities import FieldOp, ProgressPatch
from lesson_progress.domain.exceptions import NotFound, StorageFailure
from lesson_progress.infrastructure.models import ProgressORM
from lesson_progress.infrastructure.repositories import SqlAlchemyProgressStore


def test_upsert_merge_creates_with_defaults(store):
    record = store.upsert_merge("u1", "intro", ProgressPatch())
    assert record.current_step == 0
    assert record.completed_steps == frozenset()
    assert (record.time_spent_secs, record.hints_used, record.attempts) == (0, 0, 0)
    assert record.started_at == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert len(record.id) == 36


def test_upsert_merge_keeps_identity(store):
    """id и started_at не меняются после создания"""
    first = store.upsert_merge("u1", "intro", ProgressPatch(attempts=FieldOp.increment(1)))
    second = store.upsert_merge("u1", "intro", ProgressPatch(current_step=FieldOp.replace(4)))
    assert second.id == first.id
    assert second.started_at == first.started_at
    assert second.attempts == 1
    assert second.current_step == 4


def test_upsert_merge_increments_counters(store):
    patch = ProgressPatch(time_spent_secs=FieldOp.increment(10),
                          hints_used=FieldOp.increment(1),
                          attempts=FieldOp.increment(2))
    store.upsert_merge("u1", "intro", patch)
    record = store.upsert_merge("u1", "intro", patch)
    assert (record.time_spent_secs, record.hints_used, record.attempts) == (20, 2, 4)


def test_upsert_merge_empty_patch_returns_existing(store):
    created = store.upsert_merge("u1", "intro", ProgressPatch(hints_used=FieldOp.increment(3)))
    assert store.upsert_merge("u1", "intro", ProgressPatch()) == created


def test_one_record_per_key(store):
    for _ in range(3):
        store.upsert_merge("u1", "intro", ProgressPatch(attempts=FieldOp.increment(1)))
    store.upsert_merge("u1", "other", ProgressPatch())
    store.upsert_merge("u2", "intro", ProgressPatch())
    assert len(store.get_all("u1")) == 2
    assert len(store.get_all("u2")) == 1
    assert store.get("u1", "intro").attempts == 3


def test_set_completed_at_missing(store):
    with pytest.raises(NotFound):
        store.set_completed_at("u1", "intro", datetime(2025, 2, 1, tzinfo=timezone.utc))
    assert store.get("u1", "intro") is None


def test_set_completed_at_is_immutable(store):
    store.upsert_merge("u1", "intro", ProgressPatch())
    first = datetime(2025, 2, 1, tzinfo=timezone.utc)
    store.set_completed_at("u1", "intro", first)
    record = store.set_completed_at("u1", "intro", datetime(2025, 1, 1, tzinfo=timezone.utc))
    assert record.completed_at == first


def test_completed_steps_stored_sorted(sql_store, engine):
    sql_store.upsert_merge("u1", "intro", ProgressPatch(completed_steps=FieldOp.replace({7, 2, 5})))
    from sqlalchemy.orm import Session
    with Session(engine) as db:
        row = db.query(ProgressORM).filter(ProgressORM.user_id == "u1").one()
        assert row.completed_steps == [2, 5, 7]


def _broken_session_factory():
    db = MagicMock()
    db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("database is down"))
    return MagicMock(return_value=db), db


def test_storage_failure_wraps_sqlalchemy_error():
    """Ошибка БД превращается в StorageFailure с операцией и ключом"""
    factory, db = _broken_session_factory()
    store = SqlAlchemyProgressStore(factory)

    with pytest.raises(StorageFailure) as exc_info:
        store.get("u1", "intro")
    err = exc_info.value
    assert err.operation == "get"
    assert err.user_id == "u1"
    assert err.lesson_id == "intro"
    assert isinstance(err.__cause__, OperationalError)
    assert db.close.called


def test_tracker_propagates_storage_failure():
    factory, _ = _broken_session_factory()
    tracker = ProgressTracker(SqlAlchemyProgressStore(factory))

    with pytest.raises(StorageFailure) as exc_info:
        tracker.add_time_spent("u1", "intro", 5)
    assert exc_info.value.operation == "upsert_merge"

    with pytest.raises(StorageFailure) as exc_info:
        tracker.get_stats("u1")
    assert exc_info.value.operation == "get_all"
    assert exc_info.value.lesson_id is None


def test_failed_write_leaves_record_unchanged(sql_store, engine, monkeypatch):
    """Если транзакция оборвалась, частичных изменений не остаётся"""
    sql_store.upsert_merge("u1", "intro", ProgressPatch(time_spent_secs=FieldOp.increment(10)))
    before = sql_store.get("u1", "intro")

    real_factory = sql_store.session_factory

    def failing_factory():
        db = real_factory()
        def fail_commit():
            raise OperationalError("COMMIT", {}, Exception("connection reset"))
        db.commit = fail_commit
        return db

    monkeypatch.setattr(sql_store, "session_factory", failing_factory)
    with pytest.raises(StorageFailure):
        sql_store.upsert_merge("u1", "intro", ProgressPatch(time_spent_secs=FieldOp.increment(5),
                                                            current_step=FieldOp.replace(9)))
    monkeypatch.setattr(sql_store, "session_factory", real_factory)
    assert sql_store.get("u1", "intro") == before


def test_upsert_merge_union_and_max(store):
    """Шаги объединяются с сохранёнными, курсор не уменьшается"""
    store.upsert_merge("u1", "intro", ProgressPatch(current_step=FieldOp.max(6),
                                                    completed_steps=FieldOp.union({5})))
    record = store.upsert_merge("u1", "intro", ProgressPatch(current_step=FieldOp.max(2),
                                                             completed_steps=FieldOp.union({1}),
                                                             attempts=FieldOp.increment(1)))
    assert record.completed_steps == {1, 5}
    assert record.current_step == 6
    assert record.attempts == 1


def test_merge_retries_when_record_changes_underneath(sql_store, monkeypatch):
    """Шаг, записанный между чтением и записью, не теряется и курсор не откатывается"""
    tracker = ProgressTracker(sql_store)
    tracker.mark_step_complete("u1", "intro", 1)

    merged_values = ProgressPatch.merged_values
    injected = []

    def merged_values_with_concurrent_write(self, record):
        if not injected:
            injected.append(True)
            tracker.mark_step_complete("u1", "intro", 5)
        return merged_values(self, record)

    monkeypatch.setattr(ProgressPatch, "merged_values", merged_values_with_concurrent_write)
    record = tracker.mark_step_complete("u1", "intro", 3)

    assert record.completed_steps == {1, 3, 5}
    assert record.current_step == 6
    assert record.attempts == 3
    assert sql_store.get("u1", "intro") == record


def test_merge_gives_up_after_max_retries(engine, clock, monkeypatch):
    from lesson_progress.infrastructure.db import make_session_factory
    store = SqlAlchemyProgressStore(make_session_factory(engine), clock=clock, max_retries=3)
    other = SqlAlchemyProgressStore(make_session_factory(engine), clock=clock)
    store.upsert_merge("u1", "intro", ProgressPatch(current_step=FieldOp.replace(1)))

    merged_values = ProgressPatch.merged_values
    writes = []

    def merged_values_always_stale(self, record):
        writes.append(True)
        other.upsert_merge("u1", "intro", ProgressPatch(current_step=FieldOp.replace(10 + len(writes))))
        return merged_values(self, record)

    monkeypatch.setattr(ProgressPatch, "merged_values", merged_values_always_stale)
    with pytest.raises(StorageFailure) as exc_info:
        store.upsert_merge("u1", "intro", ProgressPatch(completed_steps=FieldOp.union({2}),
                                                        attempts=FieldOp.increment(1)))
    assert exc_info.value.operation == "upsert_merge"
    assert len(writes) == 3

    record = store.get("u1", "intro")
    assert record.completed_steps == frozenset()
    assert record.attempts == 0
    assert record.current_step == 13


def test_counter_columns_are_64_bit(sql_store):
    columns = ProgressORM.__table__.c
    for name in ("current_step", "time_spent_secs", "hints_used", "attempts"):
        assert isinstance(columns[name].type, BigInteger)

    big = 2 ** 40
    patch = ProgressPatch(time_spent_secs=FieldOp.increment(big),
                          hints_used=FieldOp.increment(big),
                          attempts=FieldOp.increment(big))
    sql_store.upsert_merge("u1", "intro", patch)
    record = sql_store.upsert_merge("u1", "intro", patch)
    assert (record.time_spent_secs, record.hints_used, record.attempts) == (2 * big, 2 * big, 2 * big)


def test_memory_store_missing_completion_leaves_no_lock(memory_store):
    """Неудачное завершение несуществующих записей не копит блокировки"""
    for i in range(5):
        with pytest.raises(NotFound):
            memory_store.set_completed_at("u1", f"lesson-{i}", datetime(2025, 2, 1, tzinfo=timezone.utc))
    assert memory_store._locks == {}
    memory_store.upsert_merge("u1", "intro", ProgressPatch())
    assert list(memory_store._locks) == [("u1", "intro")]
