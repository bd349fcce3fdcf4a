import pytest

from singleschedule.config import Settings

_ENV_VARS = (
    "SINGLESCHEDULE_HOME",
    "SINGLESCHEDULE_REGISTRY",
    "SINGLESCHEDULE_PID_FILE",
    "SINGLESCHEDULE_HISTORY_FILE",
    "SINGLESCHEDULE_LOG_DIR",
    "SINGLESCHEDULE_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep a developer's own installation out of the tests."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path):
    settings = Settings(home=str(tmp_path))
    settings.ensure_dirs()
    return settings
