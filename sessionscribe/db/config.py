"""Database configuration helpers."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from ..config import get_settings


@dataclass(frozen=True)
class DatabaseSettings:
    """Resolved database configuration for the application."""

    url: str
    echo: bool = False

    def engine_options(self) -> Dict[str, object]:
        """Return keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo}
        connect_args: Dict[str, object] = {}
        pool_size = _get_int_env("DB_POOL_SIZE")
        if pool_size is not None and not self.is_sqlite:
            options["pool_size"] = pool_size
        pool_timeout = _get_int_env("DB_POOL_TIMEOUT")
        if pool_timeout is not None and not self.is_sqlite:
            options["pool_timeout"] = pool_timeout
        if self.is_sqlite:
            # Pipeline stages write from worker threads.
            connect_args["check_same_thread"] = False
        if connect_args:
            options["connect_args"] = connect_args
        return options

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


def _default_sqlite_path() -> Path:
    data_dir = get_settings().data_dir
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "sessionscribe.db"


def _get_int_env(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except ValueError as exc:  # pragma: no cover - clearly surface misconfiguration
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Return the active database settings derived from the environment."""

    url = os.getenv("SESSIONSCRIBE_DATABASE_URL") or os.getenv("DATABASE_URL")
    echo = os.getenv("DB_ECHO", "").lower() in {"1", "true", "yes"}
    if url:
        return DatabaseSettings(url=url, echo=echo)
    return DatabaseSettings(url=f"sqlite:///{_default_sqlite_path()}", echo=echo)
