"""Custom exceptions for the KidSafe PC agent."""

from typing import Optional


class KidSafeError(Exception):
    """Base exception for all agent errors."""
    pass


class ConfigurationError(KidSafeError):
    """Raised when configuration is missing or invalid."""
    pass


class DomainValidationError(KidSafeError):
    """Raised when a domain cannot be normalized into a usable hostname."""
    pass


class HostsReadError(KidSafeError):
    """Raised when the hosts file cannot be read at startup."""
    pass


class HostsWriteError(KidSafeError):
    """Raised when every hosts file write strategy has failed."""

    def __init__(self, message: str, failures: Optional[list[tuple[str, str]]] = None) -> None:
        super().__init__(message)
        self.failures = failures or []


class RemoteStoreError(KidSafeError):
    """Raised when the remote key-value store cannot be reached or read."""
    pass


class RuleStoreError(KidSafeError):
    """Raised when the local rule store rejects an operation."""
    pass


class AgentStoppedError(KidSafeError):
    """Raised when a change arrives after the agent began shutting down."""
    pass
