from __future__ import annotations

from collections.abc import Callable
from typing import Any


def coerce_bool(value: Any, *, default: bool, label: str, error_factory: Callable[[str], Exception]) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise error_factory(f"{label} must be a boolean.")


def parse_positive_number(
    value: Any,
    *,
    default: float,
    label: str,
    error_factory: Callable[[str], Exception],
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise error_factory(f"{label} must be a positive number.")
    if value <= 0:
        raise error_factory(f"{label} must be a positive number.")
    return float(value)


def parse_port(value: Any, *, default: int, label: str, error_factory: Callable[[str], Exception]) -> int:
    if value is None:
        return int(default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise error_factory(f"{label} must be an integer port.")
    if value <= 0 or value > 65535:
        raise error_factory(f"{label} must be between 1 and 65535.")
    return value


def normalize_str_list(
    value: Any,
    *,
    default: tuple[str, ...],
    label: str,
    error_factory: Callable[[str], Exception],
) -> tuple[str, ...]:
    if value is None:
        return tuple(default)
    if not isinstance(value, (list, tuple)):
        raise error_factory(f"{label} must be a list of strings.")
    items: list[str] = []
    for raw in value:
        if not isinstance(raw, str):
            raise error_factory(f"{label} must be a list of strings.")
        token = raw.strip()
        if token and token not in items:
            items.append(token)
    return tuple(items)


def env_value(env: Any, key: str) -> str:
    """Return a stripped environment value, treating blanks as unset."""
    if env is None:
        return ""
    return str(env.get(key) or "").strip()
