from dataclasses import dataclass
from typing import Iterable


@dataclass
class UpsertProgressInput:
    """Частичное обновление прогресса от слоя контента.

    ``current_step`` и ``completed_steps`` заменяют сохранённые значения, три
    счётчика прибавляются к сохранённым. ``None`` оставляет поле как есть.
    """
    user_id: str
    lesson_id: str
    current_step: int | None = None
    completed_steps: Iterable[int] | None = None
    time_spent_secs: int | None = None
    hints_used: int | None = None
    attempts: int | None = None
