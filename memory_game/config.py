from __future__ import annotations

from dataclasses import dataclass
import os


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"invalid_env_{name.lower()}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"invalid_env_{name.lower()}") from None


def env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class SessionSettings:
    # Pause between seeing both tiles face up and resolving them.
    resolve_delay: float = 1.0
    turn_seconds: float = 10.0
    create_timeout: float = 10.0
    write_timeout: float = 10.0
    joinable_limit: int = 50
    backoff_initial: float = 0.5
    backoff_max: float = 30.0

    @classmethod
    def from_env(cls) -> "SessionSettings":
        return cls(
            resolve_delay=_env_float("MEMORY_RESOLVE_DELAY", cls.resolve_delay),
            turn_seconds=_env_float("MEMORY_TURN_SECONDS", cls.turn_seconds),
            create_timeout=_env_float("MEMORY_CREATE_TIMEOUT", cls.create_timeout),
            write_timeout=_env_float("MEMORY_WRITE_TIMEOUT", cls.write_timeout),
            joinable_limit=_env_int("MEMORY_JOINABLE_LIMIT", cls.joinable_limit),
            backoff_initial=_env_float("MEMORY_BACKOFF_INITIAL", cls.backoff_initial),
            backoff_max=_env_float("MEMORY_BACKOFF_MAX", cls.backoff_max),
        )
