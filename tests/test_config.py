from pathlib import Path

import pytest

from sessionscribe.config import DEFAULT_MAX_AUDIO_BYTES, get_settings
from sessionscribe.db.config import get_database_settings


def test_defaults(tmp_path):
    settings = get_settings()
    assert settings.data_dir == tmp_path / "data"
    assert settings.recordings_dir == tmp_path / "data" / "recordings"
    assert settings.openai_api_key is None
    assert settings.max_audio_bytes == DEFAULT_MAX_AUDIO_BYTES
    assert settings.provider_max_retries == 0
    assert settings.phi_region == "ng"


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("NOTE_API_KEY", "note-env")
    monkeypatch.setenv("PROVIDER_CONCURRENCY", "0")
    monkeypatch.setenv("AUTO_PROCESS", "off")
    monkeypatch.setenv("PHI_REGION", " US ")
    monkeypatch.setenv("NOTE_TEMPERATURE", "0.1")
    settings = get_settings()
    assert settings.openai_api_key == "sk-env"
    assert settings.note_api_key == "note-env"
    assert settings.provider_concurrency == 1
    assert settings.auto_process is False
    assert settings.phi_region == "us"
    assert settings.note_temperature == 0.1


def test_invalid_integer_is_rejected(monkeypatch):
    monkeypatch.setenv("MAX_AUDIO_BYTES", "lots")
    with pytest.raises(ValueError, match="MAX_AUDIO_BYTES"):
        get_settings()


def test_database_url_defaults_to_sqlite_in_data_dir(tmp_path):
    db = get_database_settings()
    assert db.is_sqlite
    assert db.url.endswith("sessionscribe.db")
    assert Path(db.url.split("sqlite:///", 1)[1]).parent == tmp_path / "data"
    assert db.engine_options()["connect_args"] == {"check_same_thread": False}


def test_database_url_override(monkeypatch):
    monkeypatch.setenv("SESSIONSCRIBE_DATABASE_URL", "postgresql+psycopg://u:p@db/notes")
    db = get_database_settings()
    assert not db.is_sqlite
    assert db.url == "postgresql+psycopg://u:p@db/notes"
