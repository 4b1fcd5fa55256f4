from .exceptions import InvalidInput


def ensure_identifier(field: str, value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(field, "must be a non-empty string")
    return value


def ensure_non_negative(field: str, value: int) -> int:
    # bool - подкласс int, но True не бывает ни шагом, ни счётчиком
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(field, f"expected an integer, got {type(value).__name__}")
    if value < 0:
        raise InvalidInput(field, f"must be >= 0, got {value}")
    return value


def ensure_steps(field: str, steps) -> frozenset[int]:
    if isinstance(steps, (str, bytes)):
        raise InvalidInput(field, "expected a collection of step numbers")
    try:
        items = list(steps)
    except TypeError:
        raise InvalidInput(field, "expected a collection of step numbers") from None
    return frozenset(ensure_non_negative(field, step) for step in items)
