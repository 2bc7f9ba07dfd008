"""Runtime configuration resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from platformdirs import user_data_dir

APP_NAME = "SessionScribe"

DEFAULT_NOTE_API_BASE = "https://api.deepseek.com/v1"
DEFAULT_NOTE_MODEL = "deepseek-chat"
DEFAULT_WHISPER_MODEL = "whisper-1"
# Whisper rejects files above 25MB.
DEFAULT_MAX_AUDIO_BYTES = 25 * 1024 * 1024

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number; got {raw!r}") from exc


def _get_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _default_data_dir() -> Path:
    override = os.getenv("SESSIONSCRIBE_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path(user_data_dir(APP_NAME, APP_NAME))


@dataclass(frozen=True)
class Settings:
    """Resolved settings for the capture client, API and pipeline."""

    data_dir: Path
    openai_api_key: Optional[str] = None
    note_api_key: Optional[str] = None
    note_api_base: str = DEFAULT_NOTE_API_BASE
    note_model: str = DEFAULT_NOTE_MODEL
    note_temperature: float = 0.3
    whisper_model: str = DEFAULT_WHISPER_MODEL
    transcribe_language: str = "en"
    transcribe_prompt: str = (
        "This is a therapy session recording. The conversation is between a therapist and a client."
    )
    provider_timeout_seconds: float = 120.0
    provider_concurrency: int = 4
    provider_max_retries: int = 0
    upload_url: str = "http://localhost:8000/api/session-notes/upload-audio"
    upload_timeout_seconds: float = 300.0
    max_audio_bytes: int = DEFAULT_MAX_AUDIO_BYTES
    auto_process: bool = True
    phi_region: str = "ng"
    recorder_interval_seconds: float = 1.0
    join_start_delay_seconds: float = 1.0
    participant_start_delay_seconds: float = 0.5
    run_stale_after_seconds: float = 1800.0

    @property
    def recordings_dir(self) -> Path:
        return self.data_dir / "recordings"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return settings derived from the environment (and ``.env`` when present)."""

    load_dotenv()
    openai_key = os.getenv("OPENAI_API_KEY") or None
    return Settings(
        data_dir=_default_data_dir(),
        openai_api_key=openai_key,
        note_api_key=os.getenv("DEEPSEEK_API_KEY") or os.getenv("NOTE_API_KEY") or None,
        note_api_base=os.getenv("NOTE_API_BASE", DEFAULT_NOTE_API_BASE),
        note_model=os.getenv("NOTE_MODEL", DEFAULT_NOTE_MODEL),
        note_temperature=_get_float_env("NOTE_TEMPERATURE", 0.3),
        whisper_model=os.getenv("WHISPER_API_MODEL", DEFAULT_WHISPER_MODEL),
        transcribe_language=os.getenv("TRANSCRIBE_LANGUAGE", "en"),
        provider_timeout_seconds=_get_float_env("PROVIDER_TIMEOUT_SECONDS", 120.0),
        provider_concurrency=max(1, _get_int_env("PROVIDER_CONCURRENCY", 4)),
        provider_max_retries=max(0, _get_int_env("PROVIDER_MAX_RETRIES", 0)),
        upload_url=os.getenv("UPLOAD_URL", "http://localhost:8000/api/session-notes/upload-audio"),
        upload_timeout_seconds=_get_float_env("UPLOAD_TIMEOUT_SECONDS", 300.0),
        max_audio_bytes=_get_int_env("MAX_AUDIO_BYTES", DEFAULT_MAX_AUDIO_BYTES),
        auto_process=_get_flag("AUTO_PROCESS", True),
        phi_region=os.getenv("PHI_REGION", "ng").strip().lower() or "ng",
        recorder_interval_seconds=_get_float_env("RECORDER_INTERVAL_SECONDS", 1.0),
        join_start_delay_seconds=_get_float_env("JOIN_START_DELAY_SECONDS", 1.0),
        participant_start_delay_seconds=_get_float_env("PARTICIPANT_START_DELAY_SECONDS", 0.5),
        run_stale_after_seconds=_get_float_env("RUN_STALE_AFTER_SECONDS", 1800.0),
    )


__all__ = ["APP_NAME", "Settings", "get_settings"]
