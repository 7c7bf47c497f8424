"""Common utilities shared between KidSafe agent modules."""

import os
import platform
import stat
from datetime import datetime
from pathlib import Path
from typing import Optional

from platformdirs import user_data_dir

try:
    import fcntl
except ImportError:  # Windows has no fcntl; audit writes go unlocked there
    fcntl = None  # type: ignore[assignment]


# =============================================================================
# SHARED CONSTANTS
# =============================================================================

APP_NAME = "kidsafe-agent"

# Secure file permissions (owner read/write only)
SECURE_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0o600

WINDOWS_HOSTS_PATH = r"C:\Windows\System32\drivers\etc\hosts"
POSIX_HOSTS_PATH = "/etc/hosts"

# Redirect target for blocked domains
BLOCKED_IP = "127.0.0.1"

# Category owned by the remote reconciler
FIREBASE_SYNC_CATEGORY = "firebase-sync"
FIREBASE_SYNC_REASON = "Synced from Android app"
DEFAULT_PROFILE_ID = 1


# =============================================================================
# DIRECTORY MANAGEMENT
# =============================================================================

def get_data_dir() -> Path:
    """Get the data directory path for logs, database and state files."""
    return Path(user_data_dir(APP_NAME))


def get_log_dir() -> Path:
    """Get the log directory path (data_dir/logs)."""
    return get_data_dir() / "logs"


def get_audit_log_file() -> Path:
    """Get the audit log file path."""
    return get_log_dir() / "audit.log"


def ensure_log_dir() -> None:
    """Ensure log directory exists. Called lazily when needed."""
    get_log_dir().mkdir(parents=True, exist_ok=True)


def is_windows() -> bool:
    return platform.system().lower() == "windows"


def is_macos() -> bool:
    return platform.system().lower() == "darwin"


def default_hosts_path() -> Path:
    """Return the system hosts file location for the running OS."""
    if is_windows():
        return Path(WINDOWS_HOSTS_PATH)
    return Path(POSIX_HOSTS_PATH)


# =============================================================================
# PARSING FUNCTIONS
# =============================================================================

def parse_env_value(value: str) -> str:
    """
    Parse .env value, handling quotes and whitespace.

    Args:
        value: Raw value from .env file

    Returns:
        Cleaned value with quotes removed
    """
    value = value.strip()
    if len(value) >= 2:
        if (value.startswith('"') and value.endswith('"')) or \
           (value.startswith("'") and value.endswith("'")):
            value = value[1:-1]
    return value


def safe_int(value: Optional[str], default: int, name: str = "value") -> int:
    """
    Safely convert a string to int with validation.

    Args:
        value: String value to convert (can be None)
        default: Default value if value is None
        name: Name of the value for error messages

    Returns:
        Converted integer or default value

    Raises:
        ConfigurationError: If value is not a valid positive integer
    """
    from .exceptions import ConfigurationError

    if value is None:
        return default

    try:
        result = int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a valid integer, got: {value}")
    if result < 0:
        raise ConfigurationError(f"{name} must be a positive integer, got: {value}")
    return result


def safe_float(value: Optional[str], default: float, name: str = "value") -> float:
    """Float counterpart of safe_int; rejects negative and non-numeric values."""
    from .exceptions import ConfigurationError

    if value is None:
        return default

    try:
        result = float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got: {value}")
    if result < 0:
        raise ConfigurationError(f"{name} must be a positive number, got: {value}")
    return result


# =============================================================================
# FILE I/O FUNCTIONS
# =============================================================================

def _lock(f, exclusive: bool) -> None:
    if fcntl is not None:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)


def _unlock(f) -> None:
    if fcntl is not None:
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)


def audit_log(action: str, detail: str = "", prefix: str = "") -> None:
    """
    Log an action to the audit log file with secure permissions and file locking.

    Args:
        action: The action being logged (e.g., 'BLOCK', 'UNBLOCK', 'SYNC')
        detail: Additional details about the action
        prefix: Optional prefix for the log entry (e.g., 'SYNC' for the reconciler)
    """
    audit_file = get_audit_log_file()
    try:
        ensure_log_dir()

        # Create file with secure permissions if it doesn't exist
        if not audit_file.exists():
            audit_file.touch(mode=SECURE_FILE_MODE)

        parts = [datetime.now().isoformat()]
        if prefix:
            parts.append(prefix)
        parts.extend([action, detail])
        log_entry = " | ".join(parts) + "\n"

        # Write with exclusive lock to prevent corruption from concurrent writes
        with open(audit_file, "a", encoding="utf-8") as f:
            _lock(f, exclusive=True)
            try:
                f.write(log_entry)
            finally:
                _unlock(f)

    except OSError:
        pass  # Fail silently for audit logging


def write_secure_file(path: Path, content: str) -> None:
    """
    Write content to a file with secure permissions (0o600).

    Args:
        path: Path to the file
        content: Content to write
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.exists():
        os.chmod(path, SECURE_FILE_MODE)

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, SECURE_FILE_MODE)
    fd_owned = False
    try:
        f = os.fdopen(fd, "w", encoding="utf-8")
        fd_owned = True  # os.fdopen now owns the fd, don't close manually
        _lock(f, exclusive=True)
        try:
            f.write(content)
        finally:
            _unlock(f)
        f.close()
    except Exception:
        if not fd_owned:
            os.close(fd)
        raise


def read_secure_file(path: Path) -> Optional[str]:
    """
    Read content from a file with shared lock.

    Args:
        path: Path to the file

    Returns:
        File content or None if file doesn't exist or read fails
    """
    if not path.exists():
        return None

    try:
        with open(path, "r", encoding="utf-8") as f:
            _lock(f, exclusive=False)
            try:
                return f.read().strip()
            finally:
                _unlock(f)
    except OSError:
        return None
