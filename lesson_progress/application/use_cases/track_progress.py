from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable

import structlog

from ...domain.entities import FieldOp, ProgressPatch, ProgressRecord, ProgressStats
from ...domain.exceptions import NotFound, StorageFailure
from ...domain.validators import ensure_identifier, ensure_non_negative
from ..dto import UpsertProgressInput

logger = structlog.get_logger(__name__)


class IProgressStore:
    def get(self, user_id: str, lesson_id: str) -> ProgressRecord | None: ...
    def get_all(self, user_id: str, limit: int | None = None, offset: int = 0) -> list[ProgressRecord]: ...
    def upsert_merge(self, user_id: str, lesson_id: str, patch: ProgressPatch) -> ProgressRecord: ...
    def set_completed_at(self, user_id: str, lesson_id: str, timestamp: datetime) -> ProgressRecord: ...


class IStatsCache:
    def generation(self, user_id: str) -> int | None: ...
    def get(self, user_id: str) -> ProgressStats | None: ...
    def put(self, user_id: str, stats: ProgressStats, generation: int) -> bool: ...
    def invalidate(self, user_id: str) -> bool: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _reported(operation: str, user_id: str, lesson_id: str | None = None):
    try:
        yield
    except StorageFailure as e:
        logger.error("progress_store_failure", operation=operation,
                     user_id=user_id, lesson_id=lesson_id, error=str(e))
        raise


class ProgressTracker:
    """Операции над прогрессом пользователя по урокам.

    Своего состояния у трекера нет: каждый вызов проверяет аргументы, затем
    читает и пишет через хранилище. Атомарность по ключу обеспечивает
    хранилище (см. ``IProgressStore.upsert_merge``).
    """

    def __init__(self, store: IProgressStore, stats_cache: IStatsCache | None = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.stats_cache = stats_cache
        self.clock = clock

    def get_progress(self, user_id: str, lesson_id: str) -> ProgressRecord | None:
        ensure_identifier("user_id", user_id)
        ensure_identifier("lesson_id", lesson_id)
        with _reported("get_progress", user_id, lesson_id):
            return self.store.get(user_id, lesson_id)

    def get_all_progress(self, user_id: str, limit: int | None = None,
                         offset: int = 0) -> list[ProgressRecord]:
        ensure_identifier("user_id", user_id)
        if limit is not None:
            ensure_non_negative("limit", limit)
        ensure_non_negative("offset", offset)
        with _reported("get_all_progress", user_id):
            return self.store.get_all(user_id, limit=limit, offset=offset)

    def upsert_progress(self, data: UpsertProgressInput) -> ProgressRecord:
        ensure_identifier("user_id", data.user_id)
        ensure_identifier("lesson_id", data.lesson_id)
        patch = ProgressPatch(
            current_step=_maybe(FieldOp.replace, data.current_step),
            completed_steps=_maybe(FieldOp.replace, data.completed_steps),
            time_spent_secs=_maybe(FieldOp.increment, data.time_spent_secs),
            hints_used=_maybe(FieldOp.increment, data.hints_used),
            attempts=_maybe(FieldOp.increment, data.attempts),
        )
        with _reported("upsert_progress", data.user_id, data.lesson_id):
            record = self.store.upsert_merge(data.user_id, data.lesson_id, patch)
        self._invalidate_stats(data.user_id)
        logger.debug("progress_upserted", user_id=data.user_id, lesson_id=data.lesson_id,
                     fields=sorted(patch.ops()))
        return record

    def mark_step_complete(self, user_id: str, lesson_id: str, step_number: int) -> ProgressRecord:
        ensure_identifier("user_id", user_id)
        ensure_identifier("lesson_id", lesson_id)
        ensure_non_negative("step_number", step_number)

        # объединение шагов и сдвиг курсора считает хранилище внутри своей
        # атомарной секции; повтор шага их не меняет, а попытки считаются всегда
        patch = ProgressPatch(
            current_step=FieldOp.max(step_number + 1),
            completed_steps=FieldOp.union({step_number}),
            attempts=FieldOp.increment(1),
        )
        with _reported("mark_step_complete", user_id, lesson_id):
            record = self.store.upsert_merge(user_id, lesson_id, patch)
        self._invalidate_stats(user_id)
        logger.debug("step_completed", user_id=user_id, lesson_id=lesson_id,
                     step_number=step_number, attempts=record.attempts)
        return record

    def add_time_spent(self, user_id: str, lesson_id: str, seconds: int) -> None:
        self._increment("add_time_spent", user_id, lesson_id, time_spent_secs=seconds)

    def add_hints_used(self, user_id: str, lesson_id: str, count: int = 1) -> None:
        self._increment("add_hints_used", user_id, lesson_id, hints_used=count)

    def mark_lesson_complete(self, user_id: str, lesson_id: str) -> ProgressRecord:
        ensure_identifier("user_id", user_id)
        ensure_identifier("lesson_id", lesson_id)
        try:
            with _reported("mark_lesson_complete", user_id, lesson_id):
                record = self.store.set_completed_at(user_id, lesson_id, self.clock())
        except NotFound:
            logger.warning("lesson_complete_without_progress", user_id=user_id, lesson_id=lesson_id)
            raise
        self._invalidate_stats(user_id)
        logger.info("lesson_completed", user_id=user_id, lesson_id=lesson_id,
                    completed_at=record.completed_at.isoformat())
        return record

    def get_stats(self, user_id: str) -> ProgressStats:
        ensure_identifier("user_id", user_id)
        generation = None
        if self.stats_cache is not None:
            cached = self.stats_cache.get(user_id)
            if cached is not None:
                return cached
            # поколение читается до хранилища, иначе можно закэшировать устаревшее
            generation = self.stats_cache.generation(user_id)
        with _reported("get_stats", user_id):
            stats = ProgressStats.from_records(self.store.get_all(user_id))
        if self.stats_cache is not None and generation is not None:
            self.stats_cache.put(user_id, stats, generation)
        return stats

    def _increment(self, operation: str, user_id: str, lesson_id: str, **deltas: int) -> None:
        ensure_identifier("user_id", user_id)
        ensure_identifier("lesson_id", lesson_id)
        patch = ProgressPatch(**{name: FieldOp.increment(value) for name, value in deltas.items()})
        with _reported(operation, user_id, lesson_id):
            self.store.upsert_merge(user_id, lesson_id, patch)
        self._invalidate_stats(user_id)
        logger.debug("progress_incremented", operation=operation, user_id=user_id,
                     lesson_id=lesson_id, **deltas)

    def _invalidate_stats(self, user_id: str) -> None:
        if self.stats_cache is not None:
            self.stats_cache.invalidate(user_id)


def _maybe(make: Callable[..., FieldOp], value) -> FieldOp | None:
    return None if value is None else make(value)
