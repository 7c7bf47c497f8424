"""KidSafe PC agent - hosts file blocking synced from the family's companion app."""

__version__ = "1.0.0"

from .config import load_config
from .exceptions import (
    KidSafeError,
    ConfigurationError,
    DomainValidationError,
    HostsReadError,
    HostsWriteError,
    RemoteStoreError,
    RuleStoreError,
)
from .hosts_manager import HostsManager
from .normalizer import normalize_domain
from .service import AgentService

__all__ = [
    "__version__",
    "AgentService",
    "HostsManager",
    "load_config",
    "normalize_domain",
    "KidSafeError",
    "ConfigurationError",
    "DomainValidationError",
    "HostsReadError",
    "HostsWriteError",
    "RemoteStoreError",
    "RuleStoreError",
]
