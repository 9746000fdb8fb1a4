"""Environment helpers shared across runtime modules."""

from __future__ import annotations

from typing import Mapping, MutableMapping
import os

TRUTHY = {"1", "true", "yes", "on"}
FALSY = {"0", "false", "no", "off"}


def _normalize(value: str | None) -> str:
    return (value or "").strip().lower()


def env_flag(value: str | None, *, default: bool = False) -> bool:
    token = _normalize(value)
    if not token:
        return default
    if token in TRUTHY:
        return True
    if token in FALSY:
        return False
    return default


def fixture_mode_enabled(
    env: Mapping[str, str] | MutableMapping[str, str] | None = None,
    *,
    default: bool = False,
) -> bool:
    """Return True when fixture collaborators should stand in for remote services."""

    data = os.environ if env is None else env
    return env_flag(data.get("UGC_USE_FIXTURE"), default=default)


def env_float(
    env: Mapping[str, str] | MutableMapping[str, str],
    key: str,
    default: float,
) -> float:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid numeric value for {key}: {raw!r}") from exc


def env_int(
    env: Mapping[str, str] | MutableMapping[str, str],
    key: str,
    default: int,
) -> int:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid integer value for {key}: {raw!r}") from exc


__all__ = [
    "TRUTHY",
    "FALSY",
    "env_flag",
    "env_float",
    "env_int",
    "fixture_mode_enabled",
]
