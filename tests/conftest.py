"""Shared fixtures for the agent test suite."""

import pytest

from kidsafe_agent import common, config, timekeeper

ENV_KEYS = [
    "KIDSAFE_FAMILY_ID",
    "KIDSAFE_USER_EMAIL",
    "KIDSAFE_DATABASE_URL",
    "KIDSAFE_AUTH_TOKEN",
    "KIDSAFE_HOSTS_PATH",
    "KIDSAFE_DB_PATH",
    "KIDSAFE_PATH_TEMPLATES",
    "KIDSAFE_TIME_RULE_TEMPLATES",
    "POLL_BASE_INTERVAL",
    "POLL_MAX_INTERVAL",
    "POLL_BACKOFF_FACTOR",
    "WRITE_TIMEOUT",
    "API_TIMEOUT",
    "API_RETRIES",
    "STATUS_INTERVAL",
]


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Keep audit logs and state files out of the real user data directory."""
    data_dir = tmp_path / "data"
    for module in (common, config, timekeeper):
        monkeypatch.setattr(module, "get_data_dir", lambda: data_dir)
    return data_dir


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test without agent settings; values a .env file exports are undone."""
    for key in ENV_KEYS:
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
