from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .exceptions import InvalidInput
from .validators import ensure_non_negative, ensure_steps

COUNTER_FIELDS = ("time_spent_secs", "hints_used", "attempts")
CURSOR_FIELDS = ("current_step", "completed_steps")


@dataclass(frozen=True)
class ProgressRecord:
    id: str
    user_id: str
    lesson_id: str
    started_at: datetime
    completed_steps: frozenset[int] = field(default_factory=frozenset)
    current_step: int = 0
    completed_at: datetime | None = None
    time_spent_secs: int = 0
    hints_used: int = 0
    attempts: int = 0

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


@dataclass(frozen=True)
class ProgressStats:
    total_lessons: int = 0
    completed_lessons: int = 0
    total_time_spent: int = 0
    total_hints_used: int = 0

    @classmethod
    def from_records(cls, records) -> "ProgressStats":
        records = list(records)
        return cls(
            total_lessons=len(records),
            completed_lessons=sum(1 for r in records if r.completed_at is not None),
            total_time_spent=sum(r.time_spent_secs for r in records),
            total_hints_used=sum(r.hints_used for r in records),
        )

    def to_dict(self) -> dict:
        return {
            "total_lessons": self.total_lessons,
            "completed_lessons": self.completed_lessons,
            "total_time_spent": self.total_time_spent,
            "total_hints_used": self.total_hints_used,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProgressStats":
        return cls(**{k: int(data[k]) for k in cls().to_dict()})


class OpKind(str, Enum):
    REPLACE = "replace"
    INCREMENT = "increment"
    UNION = "union"
    MAX = "max"


# какие операции допустимы для каждого поля
ALLOWED_OPS = {
    "current_step": (OpKind.REPLACE, OpKind.MAX),
    "completed_steps": (OpKind.REPLACE, OpKind.UNION),
    "time_spent_secs": (OpKind.INCREMENT,),
    "hints_used": (OpKind.INCREMENT,),
    "attempts": (OpKind.INCREMENT,),
}


@dataclass(frozen=True)
class FieldOp:
    kind: OpKind
    value: Any

    @classmethod
    def replace(cls, value: Any) -> "FieldOp":
        return cls(OpKind.REPLACE, value)

    @classmethod
    def increment(cls, value: int) -> "FieldOp":
        return cls(OpKind.INCREMENT, value)

    @classmethod
    def union(cls, value) -> "FieldOp":
        return cls(OpKind.UNION, value)

    @classmethod
    def max(cls, value: int) -> "FieldOp":
        return cls(OpKind.MAX, value)


@dataclass(frozen=True)
class ProgressPatch:
    """Частичное обновление записи прогресса.

    Каждое поле либо отсутствует (``None``), либо задано :class:`FieldOp`.
    Счётчики только прибавляются, ``current_step`` заменяется или сдвигается
    до максимума, ``completed_steps`` заменяется или объединяется. Значения
    проверяются при создании патча, в хранилище попадает только валидный патч.
    """

    current_step: FieldOp | None = None
    completed_steps: FieldOp | None = None
    time_spent_secs: FieldOp | None = None
    hints_used: FieldOp | None = None
    attempts: FieldOp | None = None

    def __post_init__(self):
        for name in CURSOR_FIELDS + COUNTER_FIELDS:
            op = getattr(self, name)
            if op is None:
                continue
            if not isinstance(op, FieldOp):
                raise InvalidInput(name, "expected a FieldOp")
            allowed = ALLOWED_OPS[name]
            if op.kind not in allowed:
                raise InvalidInput(name, "only " + " or ".join(k.value for k in allowed) + " is allowed")
            if name == "completed_steps":
                object.__setattr__(self, name, FieldOp(op.kind, ensure_steps(name, op.value)))
            else:
                ensure_non_negative(name, op.value)

    def ops(self) -> dict[str, FieldOp]:
        return {
            name: getattr(self, name)
            for name in CURSOR_FIELDS + COUNTER_FIELDS
            if getattr(self, name) is not None
        }

    def is_empty(self) -> bool:
        return not self.ops()

    def needs_current_values(self) -> bool:
        """Есть ли операции, результат которых зависит от сохранённого значения
        (кроме счётчиков, которые хранилище прибавляет само)."""
        return any(op.kind in (OpKind.UNION, OpKind.MAX) for op in self.ops().values())

    def initial_values(self) -> dict[str, Any]:
        """Значения полей для записи, создаваемой этим патчем"""
        values: dict[str, Any] = {
            "current_step": 0,
            "completed_steps": frozenset(),
            "time_spent_secs": 0,
            "hints_used": 0,
            "attempts": 0,
        }
        for name, op in self.ops().items():
            values[name] = op.value
        return values

    def merged_values(self, record: ProgressRecord) -> dict[str, Any]:
        """Значения полей после применения патча поверх ``record``"""
        values = {}
        for name, op in self.ops().items():
            current = getattr(record, name)
            if op.kind == OpKind.INCREMENT:
                values[name] = current + op.value
            elif op.kind == OpKind.UNION:
                values[name] = current | op.value
            elif op.kind == OpKind.MAX:
                values[name] = max(current, op.value)
            else:
                values[name] = op.value
        return values
