from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path


def _read_env_file(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    if not path.exists():
        return values
    for line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = line.strip().partition("=")
        if not sep or key.startswith("#"):
            continue
        key, value = key.strip(), value.strip().strip("'\"")
        if key and value:
            values[key] = value
    return values


def _load_dotenv() -> None:
    """Fill unset variables from ``intake/.env``; the real environment wins."""
    for key, value in _read_env_file(Path(__file__).with_name(".env")).items():
        os.environ.setdefault(key, value)


def _split(raw: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    backend_url: str = "http://127.0.0.1:5000/api"
    redis_url: str | None = None
    cache_namespace: str = "onboarding"
    cache_retention_days: int = 7
    resync_delay_seconds: float = 1.0
    remote_timeout_seconds: float = 10.0
    placeholder_prefixes: tuple[str, ...] = field(default=("mock-user",))

    @classmethod
    def from_env(cls) -> "Settings":
        _load_dotenv()
        return cls(
            backend_url=os.getenv("INTAKE_BACKEND_URL", cls.backend_url).rstrip("/"),
            redis_url=os.getenv("REDIS_URL") or None,
            cache_namespace=os.getenv("INTAKE_CACHE_NAMESPACE", cls.cache_namespace),
            cache_retention_days=int(os.getenv("INTAKE_CACHE_RETENTION_DAYS", str(cls.cache_retention_days))),
            resync_delay_seconds=float(os.getenv("INTAKE_RESYNC_DELAY_SECONDS", str(cls.resync_delay_seconds))),
            remote_timeout_seconds=float(
                os.getenv("INTAKE_REMOTE_TIMEOUT_SECONDS", str(cls.remote_timeout_seconds))
            ),
            placeholder_prefixes=_split(os.getenv("INTAKE_PLACEHOLDER_PREFIXES", "mock-user")),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
