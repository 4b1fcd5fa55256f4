import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable

from .metrics import track_operation
from ..domain.entities import ProgressPatch, ProgressRecord
from ..domain.exceptions import NotFound
from ..application.use_cases.track_progress import IProgressStore, utcnow


class InMemoryProgressStore(IProgressStore):
    """Хранилище прогресса в памяти процесса.

    Записи неизменяемые, индекс: пользователь, затем урок. Каждая запись держит
    блокировку своего ключа (user_id, lesson_id) на всё время read-modify-write,
    записи по разным ключам друг друга не ждут. Блокировка ключа появляется
    только вместе с его записью.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._records: dict[str, dict[str, ProgressRecord]] = {}
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, user_id: str, lesson_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault((user_id, lesson_id), threading.Lock())

    def _find(self, user_id: str, lesson_id: str) -> ProgressRecord | None:
        with self._locks_guard:
            return self._records.get(user_id, {}).get(lesson_id)

    def get(self, user_id: str, lesson_id: str) -> ProgressRecord | None:
        with track_operation("get"):
            return self._find(user_id, lesson_id)

    def get_all(self, user_id: str, limit: int | None = None, offset: int = 0) -> list[ProgressRecord]:
        with track_operation("get_all"):
            with self._locks_guard:
                records = list(self._records.get(user_id, {}).values())
            records.sort(key=lambda r: (r.started_at, r.id), reverse=True)
            end = None if limit is None else offset + limit
            return records[offset:end]

    def upsert_merge(self, user_id: str, lesson_id: str, patch: ProgressPatch) -> ProgressRecord:
        with track_operation("upsert_merge"), self._lock_for(user_id, lesson_id):
            existing = self._find(user_id, lesson_id)
            if existing is None:
                record = ProgressRecord(id=str(uuid.uuid4()), user_id=user_id, lesson_id=lesson_id,
                                        started_at=self.clock(), **patch.initial_values())
            else:
                record = replace(existing, **patch.merged_values(existing))
            self._store(record)
            return record

    def set_completed_at(self, user_id: str, lesson_id: str, timestamp: datetime) -> ProgressRecord:
        with track_operation("set_completed_at"):
            # записи не удаляются: если её нет сейчас, блокировка не нужна
            if self._find(user_id, lesson_id) is None:
                raise NotFound(user_id, lesson_id)
            with self._lock_for(user_id, lesson_id):
                existing = self._find(user_id, lesson_id)
                if existing.completed_at is not None:
                    return existing
                record = replace(existing, completed_at=timestamp)
                self._store(record)
                return record

    def _store(self, record: ProgressRecord) -> None:
        with self._locks_guard:
            self._records.setdefault(record.user_id, {})[record.lesson_id] = record
