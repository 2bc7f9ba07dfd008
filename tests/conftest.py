import os
import sys

import pytest
from sqlalchemy import create_engine

# Ensure the repository root is on sys.path so tests can import the package
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sessionscribe import config as config_module
from sessionscribe.config import Settings
from sessionscribe.db import config as db_config
from sessionscribe.storage import RecordingStorage
from sessionscribe.store import SessionNoteStore

_ENV_KEYS = (
    'OPENAI_API_KEY',
    'DEEPSEEK_API_KEY',
    'NOTE_API_KEY',
    'NOTE_API_BASE',
    'UPLOAD_URL',
    'RECORDING_STORAGE_URL',
    'ALLOWED_EGRESS_HOSTS',
    'SESSIONSCRIBE_DATABASE_URL',
    'DATABASE_URL',
    'SESSIONSCRIBE_PROMPT_DIR',
)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv('SESSIONSCRIBE_DATA_DIR', str(tmp_path / 'data'))
    config_module.get_settings.cache_clear()
    db_config.get_database_settings.cache_clear()
    yield
    config_module.get_settings.cache_clear()
    db_config.get_database_settings.cache_clear()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path / 'data',
        openai_api_key='test-openai-key',
        note_api_key='test-note-key',
        join_start_delay_seconds=0.01,
        participant_start_delay_seconds=0.01,
        recorder_interval_seconds=0.01,
    )


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'sessionscribe-test.db'}",
        connect_args={'check_same_thread': False},
    )
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    repo = SessionNoteStore(engine)
    repo.initialise()
    return repo


@pytest.fixture
def storage(settings):
    return RecordingStorage(settings.recordings_dir)
