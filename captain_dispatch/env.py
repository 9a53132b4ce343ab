"""Typed readers for the service's environment variables.

Unset or blank variables fall back to the default. A variable that is set
but does not parse, or falls below ``minimum``, raises ``ValueError`` naming
the variable.
"""
from __future__ import annotations

import os
from typing import Callable, Iterable, List, TypeVar

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

N = TypeVar("N", int, float)


def _raw(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _number(name: str, default: N, cast: Callable[[str], N], minimum: N | None) -> N:
    raw = _raw(name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(f"Invalid {cast.__name__} for {name!r}: {raw!r}") from None
    if minimum is not None and value < minimum:
        raise ValueError(f"{name!r} must be at least {minimum}, got {raw!r}")
    return value


def env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    return _number(name, default, int, minimum)


def env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    return _number(name, default, float, minimum)


def env_bool(name: str, *, default: bool = False) -> bool:
    raw = _raw(name)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {name!r}: {raw!r}")


def env_list(name: str, *, default: Iterable[str] | None = None, separator: str = ",") -> List[str]:
    """Split a delimited variable, dropping empty items."""
    raw = _raw(name)
    if raw is None:
        return list(default or [])
    return [item.strip() for item in raw.split(separator) if item.strip()]


__all__ = ["env_bool", "env_float", "env_int", "env_list"]
