import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .models import ProgressORM
from .metrics import track_operation
from ..domain.entities import OpKind, ProgressPatch, ProgressRecord
from ..domain.exceptions import NotFound, StorageFailure
from ..application.use_cases.track_progress import IProgressStore, utcnow

logger = structlog.get_logger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite возвращает naive datetime даже для TIMESTAMP(timezone=True)
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_domain(p: ProgressORM) -> ProgressRecord:
    return ProgressRecord(
        id=p.id,
        user_id=p.user_id,
        lesson_id=p.lesson_id,
        started_at=_aware(p.started_at),
        completed_steps=frozenset(p.completed_steps or ()),
        current_step=p.current_step,
        completed_at=_aware(p.completed_at),
        time_spent_secs=p.time_spent_secs,
        hints_used=p.hints_used,
        attempts=p.attempts,
    )


def _column_value(name: str, value):
    if name == "completed_steps":
        return sorted(value)
    return value


class SqlAlchemyProgressStore(IProgressStore):
    """Реляционное хранилище прогресса.

    Счётчики пишутся как ``SET col = col + :delta``, поэтому параллельные
    слияния по одному ключу не теряют приращений. Объединение шагов и сдвиг
    курсора зависят от прочитанного значения: они пишутся условным UPDATE по
    колонке ``version`` и повторяются, если курсор или шаги успели изменить. Гонку при
    создании решает ограничение ``uq_user_lesson``.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow,
                 max_retries: int = 50):
        self.session_factory = session_factory
        self.clock = clock
        self.max_retries = max_retries

    @contextmanager
    def _session(self, operation: str, user_id: str, lesson_id: str | None = None):
        db: Session = self.session_factory()
        try:
            with track_operation(operation):
                try:
                    yield db
                except SQLAlchemyError as e:
                    raise StorageFailure(operation, user_id, lesson_id, str(e)) from e
        finally:
            # откатывает всё, что не было закоммичено
            db.close()

    @staticmethod
    def _key(user_id: str, lesson_id: str):
        return (ProgressORM.user_id == user_id, ProgressORM.lesson_id == lesson_id)

    def get(self, user_id: str, lesson_id: str) -> ProgressRecord | None:
        with self._session("get", user_id, lesson_id) as db:
            row = db.execute(select(ProgressORM).where(*self._key(user_id, lesson_id))).scalar_one_or_none()
            return to_domain(row) if row else None

    def get_all(self, user_id: str, limit: int | None = None, offset: int = 0) -> list[ProgressRecord]:
        q = (select(ProgressORM)
             .where(ProgressORM.user_id == user_id)
             .order_by(ProgressORM.started_at.desc(), ProgressORM.id.desc())
             .offset(offset))
        if limit is not None:
            q = q.limit(limit)
        with self._session("get_all", user_id) as db:
            return [to_domain(row) for row in db.execute(q).scalars().all()]

    def _apply(self, db: Session, user_id: str, lesson_id: str, patch: ProgressPatch) -> int:
        values = {}
        for name, op in patch.ops().items():
            column = getattr(ProgressORM, name)
            if op.kind == OpKind.INCREMENT:
                values[name] = column + op.value
            else:
                values[name] = _column_value(name, op.value)
        if any(op.kind != OpKind.INCREMENT for op in patch.ops().values()):
            values["version"] = ProgressORM.version + 1
        if not values:
            return db.execute(
                select(func.count()).select_from(ProgressORM).where(*self._key(user_id, lesson_id))
            ).scalar_one()
        stmt = (update(ProgressORM)
                .where(*self._key(user_id, lesson_id))
                .values(**values)
                .execution_options(synchronize_session=False))
        return db.execute(stmt).rowcount

    def upsert_merge(self, user_id: str, lesson_id: str, patch: ProgressPatch) -> ProgressRecord:
        if not patch.needs_current_values():
            return self._merge_atomic(user_id, lesson_id, patch)
        for _ in range(self.max_retries):
            record = self._merge_checked(user_id, lesson_id, patch)
            if record is not None:
                return record
            logger.debug("progress_merge_conflict", user_id=user_id, lesson_id=lesson_id)
        raise StorageFailure("upsert_merge", user_id, lesson_id,
                             f"record kept changing, gave up after {self.max_retries} attempts")

    def _merge_atomic(self, user_id: str, lesson_id: str, patch: ProgressPatch) -> ProgressRecord:
        with self._session("upsert_merge", user_id, lesson_id) as db:
            if not self._apply(db, user_id, lesson_id, patch):
                initial = {name: _column_value(name, value) for name, value in patch.initial_values().items()}
                db.add(ProgressORM(id=str(uuid.uuid4()), user_id=user_id, lesson_id=lesson_id,
                                   started_at=self.clock(), **initial))
                try:
                    db.flush()
                except IntegrityError:
                    # запись успел создать другой писатель, сливаемся с ней
                    db.rollback()
                    self._apply(db, user_id, lesson_id, patch)
            row = db.execute(select(ProgressORM).where(*self._key(user_id, lesson_id))).scalar_one()
            record = to_domain(row)
            db.commit()
            return record

    def _merge_checked(self, user_id: str, lesson_id: str, patch: ProgressPatch) -> ProgressRecord | None:
        """Одна попытка read-modify-write. None, если запись изменили между чтением и записью."""
        key = self._key(user_id, lesson_id)
        with self._session("upsert_merge", user_id, lesson_id) as db:
            row = db.execute(select(ProgressORM).where(*key).with_for_update()).scalar_one_or_none()
            if row is None:
                initial = {name: _column_value(name, value) for name, value in patch.initial_values().items()}
                row = ProgressORM(id=str(uuid.uuid4()), user_id=user_id, lesson_id=lesson_id,
                                  started_at=self.clock(), version=0, **initial)
                db.add(row)
                try:
                    db.flush()
                except IntegrityError:
                    return None
            else:
                values = {name: _column_value(name, value)
                          for name, value in patch.merged_values(to_domain(row)).items()}
                # счётчики прибавляются в самой БД, версия их не охраняет
                for name, op in patch.ops().items():
                    if op.kind == OpKind.INCREMENT:
                        values[name] = getattr(ProgressORM, name) + op.value
                stmt = (update(ProgressORM)
                        .where(*key, ProgressORM.version == row.version)
                        .values(version=ProgressORM.version + 1, **values)
                        .execution_options(synchronize_session=False))
                if db.execute(stmt).rowcount == 0:
                    return None
                row = db.execute(
                    select(ProgressORM).where(*key).execution_options(populate_existing=True)
                ).scalar_one()
            record = to_domain(row)
            db.commit()
            return record

    def set_completed_at(self, user_id: str, lesson_id: str, timestamp: datetime) -> ProgressRecord:
        with self._session("set_completed_at", user_id, lesson_id) as db:
            # побеждает первое завершение, повторные вызовы время не меняют
            db.execute(update(ProgressORM)
                       .where(*self._key(user_id, lesson_id), ProgressORM.completed_at.is_(None))
                       .values(completed_at=timestamp, version=ProgressORM.version + 1)
                       .execution_options(synchronize_session=False))
            row = db.execute(select(ProgressORM).where(*self._key(user_id, lesson_id))).scalar_one_or_none()
            if row is None:
                raise NotFound(user_id, lesson_id)
            record = to_domain(row)
            db.commit()
            return record
