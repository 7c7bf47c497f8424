"""Configuration loading and validation for the KidSafe agent."""

import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

from platformdirs import user_config_dir

from .common import (
    APP_NAME,
    default_hosts_path,
    get_data_dir,
    parse_env_value,
    safe_float,
    safe_int,
)
from .exceptions import ConfigurationError
from .identity import DEFAULT_BLOCKED_URL_TEMPLATES, DEFAULT_TIME_RULE_TEMPLATES

# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_TIMEOUT = 10
DEFAULT_RETRIES = 3
DEFAULT_WRITE_TIMEOUT = 15
DEFAULT_STATUS_INTERVAL = 30
DEFAULT_POLL_BASE_INTERVAL = 2.0
DEFAULT_POLL_MAX_INTERVAL = 30.0
DEFAULT_POLL_BACKOFF_FACTOR = 1.2
DB_FILE_NAME = "parental_control.db"

# Firebase keys may not contain . $ # [ ] /
FAMILY_ID_PATTERN = re.compile(r"^[^.$#\[\]/\s]{1,128}$")
URL_PATTERN = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)

logger = logging.getLogger(__name__)


# =============================================================================
# VALIDATION
# =============================================================================

def validate_family_id(family_id: str) -> bool:
    if not family_id or not isinstance(family_id, str):
        return False
    return FAMILY_ID_PATTERN.match(family_id.strip()) is not None


def validate_url(url: str) -> bool:
    if not url or not isinstance(url, str):
        return False
    return URL_PATTERN.match(url.strip()) is not None


def parse_templates(value: Optional[str], default: list[str]) -> list[str]:
    """Split a comma-separated template list; empty input means the default."""
    if not value:
        return list(default)
    templates = [item.strip().strip("/") for item in value.split(",")]
    templates = [item for item in templates if item]
    return templates or list(default)


# =============================================================================
# DIRECTORIES
# =============================================================================

def get_config_dir(override: Optional[Path] = None) -> Path:
    """
    Get the configuration directory path.

    Resolution order:
    1. Override path if provided
    2. Current working directory if it holds a .env file
    3. Platform config directory (~/.config/kidsafe-agent on Linux)
    """
    if override:
        return Path(override)

    cwd = Path.cwd()
    if (cwd / ".env").exists():
        return cwd

    return Path(user_config_dir(APP_NAME))


def load_env_file(env_file: Path) -> None:
    """Export KEY=VALUE lines of a .env file into the process environment."""
    with open(env_file, encoding="utf-8-sig") as f:  # utf-8-sig handles BOM
        for line_num, line in enumerate(f, 1):
            line = line.strip()

            if not line or line.startswith("#"):
                continue

            if "=" not in line:
                logger.warning(f".env line {line_num}: missing '=' separator, skipping")
                continue

            key, value = line.split("=", 1)
            key = key.strip()

            if not key:
                logger.warning(f".env line {line_num}: empty key, skipping")
                continue

            os.environ[key] = parse_env_value(value)


def load_config(config_dir: Optional[Path] = None) -> dict[str, Any]:
    """
    Load configuration from .env file and environment variables.

    Remote sync is enabled only when KIDSAFE_FAMILY_ID is set; it then
    also needs KIDSAFE_DATABASE_URL.

    Args:
        config_dir: Optional directory containing .env file

    Returns:
        Configuration dictionary with all settings

    Raises:
        ConfigurationError: If a value is missing or invalid
    """
    config_dir = get_config_dir(config_dir)
    env_file = config_dir / ".env"
    if env_file.exists():
        load_env_file(env_file)

    hosts_path = os.getenv("KIDSAFE_HOSTS_PATH")
    db_path = os.getenv("KIDSAFE_DB_PATH")

    config: dict[str, Any] = {
        "family_id": os.getenv("KIDSAFE_FAMILY_ID") or None,
        "user_email": os.getenv("KIDSAFE_USER_EMAIL") or None,
        "database_url": os.getenv("KIDSAFE_DATABASE_URL") or None,
        "auth_token": os.getenv("KIDSAFE_AUTH_TOKEN") or None,
        "hosts_path": Path(hosts_path) if hosts_path else default_hosts_path(),
        "db_path": Path(db_path) if db_path else get_data_dir() / DB_FILE_NAME,
        "path_templates": parse_templates(
            os.getenv("KIDSAFE_PATH_TEMPLATES"), DEFAULT_BLOCKED_URL_TEMPLATES
        ),
        "time_rule_templates": parse_templates(
            os.getenv("KIDSAFE_TIME_RULE_TEMPLATES"), DEFAULT_TIME_RULE_TEMPLATES
        ),
        "poll_base_interval": safe_float(
            os.getenv("POLL_BASE_INTERVAL"), DEFAULT_POLL_BASE_INTERVAL, "POLL_BASE_INTERVAL"
        ),
        "poll_max_interval": safe_float(
            os.getenv("POLL_MAX_INTERVAL"), DEFAULT_POLL_MAX_INTERVAL, "POLL_MAX_INTERVAL"
        ),
        "poll_backoff_factor": safe_float(
            os.getenv("POLL_BACKOFF_FACTOR"), DEFAULT_POLL_BACKOFF_FACTOR, "POLL_BACKOFF_FACTOR"
        ),
        "write_timeout": safe_int(os.getenv("WRITE_TIMEOUT"), DEFAULT_WRITE_TIMEOUT, "WRITE_TIMEOUT"),
        "timeout": safe_int(os.getenv("API_TIMEOUT"), DEFAULT_TIMEOUT, "API_TIMEOUT"),
        "retries": safe_int(os.getenv("API_RETRIES"), DEFAULT_RETRIES, "API_RETRIES"),
        "status_interval": safe_int(
            os.getenv("STATUS_INTERVAL"), DEFAULT_STATUS_INTERVAL, "STATUS_INTERVAL"
        ),
        "config_dir": str(config_dir),
    }

    if config["poll_base_interval"] <= 0:
        raise ConfigurationError("POLL_BASE_INTERVAL must be greater than 0")
    if config["poll_max_interval"] < config["poll_base_interval"]:
        raise ConfigurationError("POLL_MAX_INTERVAL must not be below POLL_BASE_INTERVAL")
    if config["poll_backoff_factor"] < 1:
        raise ConfigurationError("POLL_BACKOFF_FACTOR must be at least 1")
    if config["write_timeout"] == 0:
        raise ConfigurationError("WRITE_TIMEOUT must be greater than 0")

    if config["family_id"]:
        if not validate_family_id(config["family_id"]):
            raise ConfigurationError(
                "Invalid KIDSAFE_FAMILY_ID. It may not contain whitespace or any of . $ # [ ] /"
            )
        if not config["database_url"]:
            raise ConfigurationError("Missing KIDSAFE_DATABASE_URL in .env or environment")

    if config["database_url"] and not validate_url(config["database_url"]):
        raise ConfigurationError(
            f"Invalid KIDSAFE_DATABASE_URL '{config['database_url']}'. "
            f"Must be a valid http:// or https:// URL"
        )

    return config


def remote_sync_enabled(config: dict[str, Any]) -> bool:
    return bool(config.get("family_id") and config.get("database_url"))
