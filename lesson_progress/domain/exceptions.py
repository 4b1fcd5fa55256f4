class ProgressError(Exception):
    """Базовое исключение учёта прогресса"""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)


class NotFound(ProgressError, LookupError):
    """Операции нужна существующая запись прогресса, а её нет"""

    def __init__(self, user_id: str, lesson_id: str) -> None:
        self.user_id = user_id
        self.lesson_id = lesson_id
        super().__init__(f"Progress for user {user_id} on lesson {lesson_id} not found")


class InvalidInput(ProgressError, ValueError):
    """Аргумент непригоден; выбрасывается до обращения к хранилищу"""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class StorageFailure(ProgressError):
    """Ошибка слоя хранения.

    Исходное исключение доступно как ``__cause__``.
    """

    def __init__(self, operation: str, user_id: str, lesson_id: str | None, detail: str) -> None:
        self.operation = operation
        self.user_id = user_id
        self.lesson_id = lesson_id
        key = f"{user_id}/{lesson_id}" if lesson_id is not None else user_id
        super().__init__(f"{operation} failed for {key}: {detail}")
