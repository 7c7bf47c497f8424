"""Lock-guarded owner of the blocked domain set and the managed hosts section."""

import logging
import socket
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from .common import BLOCKED_IP, audit_log
from .exceptions import DomainValidationError, HostsReadError
from .hosts_section import (
    compute_desired_content,
    has_managed_section,
    parse_managed_section,
    strip_managed_section,
)
from .hosts_writer import HOSTS_ENCODING, HOSTS_ERRORS, HostsWriter
from .normalizer import normalize_all, normalize_domain, require_domain

BACKUP_SUFFIX = ".kidSafe_backup"

logger = logging.getLogger(__name__)


# =============================================================================
# READ/WRITE LOCK
# =============================================================================

class ReadWriteLock:
    """Many concurrent readers or one writer. Not reentrant."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


def resolve_host(domain: str) -> str:
    """Resolve a hostname through the system resolver, which honours the hosts file."""
    return socket.gethostbyname(domain)


# =============================================================================
# HOSTS MANAGER
# =============================================================================

class HostsManager:
    """
    Owns the set of blocked domains and keeps the hosts file in step with it.

    The in-memory set only changes after the hosts file was written
    successfully, so a failed write leaves both the set and the file as
    they were.
    """

    def __init__(
        self,
        hosts_path: Path,
        writer: Optional[HostsWriter] = None,
        resolver: Callable[[str], str] = resolve_host,
    ) -> None:
        """
        Initialize the manager.

        Args:
            hosts_path: Hosts file location
            writer: Writer used to persist content (defaults to the full chain)
            resolver: Hostname to IPv4 address lookup used by test_domain_blocking
        """
        self.hosts_path = Path(hosts_path)
        self.backup_path = self.hosts_path.with_name(self.hosts_path.name + BACKUP_SUFFIX)
        self.writer = writer or HostsWriter(self.hosts_path)
        self.resolver = resolver
        self._lock = ReadWriteLock()
        self._domains: set[str] = set()
        self._original = ""
        self._initialized = False

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Snapshot the current hosts file and write the on-disk backup.

        A managed section left behind by an earlier run is not part of the
        snapshot. Backup failures are logged only.

        Raises:
            HostsReadError: If the hosts file cannot be read
        """
        with self._lock.write_locked():
            logger.info(f"Initializing hosts manager for {self.hosts_path}")
            content = self._read()
            if has_managed_section(content):
                logger.warning("Found a managed section from a previous run, excluding it from backup")
                content = strip_managed_section(content) + "\n"
            self._original = content

            try:
                self.backup_path.write_text(content, encoding=HOSTS_ENCODING, errors=HOSTS_ERRORS)
            except OSError as e:
                logger.warning(f"Failed to create hosts backup {self.backup_path}: {e}")

            self._initialized = True

    @property
    def initialized(self) -> bool:
        return self._initialized

    # -------------------------------------------------------------------------
    # MUTATIONS
    # -------------------------------------------------------------------------

    def add_domain(self, raw: str) -> str:
        """
        Block a domain and rewrite the managed section.

        Returns:
            The normalized domain that was added

        Raises:
            DomainValidationError: If the input does not normalize to a domain
            HostsWriteError: If the hosts file could not be written
        """
        domain = require_domain(raw)
        with self._lock.write_locked():
            self._apply(self._domains | {domain})
        logger.info(f"Blocked domain: {domain}")
        audit_log("BLOCK", domain)
        return domain

    def remove_domain(self, raw: str) -> str:
        """
        Unblock a domain and rewrite the managed section.

        Returns:
            The normalized domain that was removed

        Raises:
            DomainValidationError: If the input does not normalize to a domain
            HostsWriteError: If the hosts file could not be written
        """
        domain = require_domain(raw)
        with self._lock.write_locked():
            self._apply(self._domains - {domain})
        logger.info(f"Unblocked domain: {domain}")
        audit_log("UNBLOCK", domain)
        return domain

    def replace_all(self, domains: Iterable[str]) -> set[str]:
        """
        Replace the whole blocked set; unusable entries are dropped.

        Returns:
            The normalized set now applied

        Raises:
            HostsWriteError: If the hosts file could not be written
        """
        new_domains = normalize_all(domains)
        with self._lock.write_locked():
            self._apply(new_domains)
        logger.info(f"Applied blocked domain set: {len(new_domains)} domains")
        return set(new_domains)

    def restore_original(self) -> None:
        """
        Put back the pre-agent hosts file and clear the blocked set.

        The on-disk backup wins over the startup snapshot; it is removed
        once restored.

        Raises:
            HostsWriteError: If the hosts file could not be written
        """
        with self._lock.write_locked():
            logger.info("Restoring original hosts file")
            content = self._original
            from_backup = False
            if self.backup_path.exists():
                try:
                    content = self.backup_path.read_text(encoding=HOSTS_ENCODING, errors=HOSTS_ERRORS)
                    from_backup = True
                except OSError as e:
                    logger.warning(f"Could not read hosts backup, using snapshot: {e}")
            if not from_backup and not self._initialized:
                # No snapshot was taken in this process; drop only our section
                content = strip_managed_section(self._read()) + "\n"

            self.writer.write(content)
            if from_backup:
                self._remove_backup()
            self._domains = set()
        audit_log("RESTORE", "backup" if from_backup else "snapshot")

    def cleanup(self) -> None:
        """
        Remove the managed section and the backup, leaving other lines alone.

        Raises:
            HostsReadError: If the hosts file cannot be read
            HostsWriteError: If the hosts file could not be written
        """
        with self._lock.write_locked():
            logger.info("Cleaning up hosts file modifications")
            content = self._read()
            if has_managed_section(content):
                self.writer.write(strip_managed_section(content) + "\n")
            self._remove_backup()
            self._domains = set()
        audit_log("CLEANUP", str(self.hosts_path))

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    def get_blocked_domains(self) -> list[str]:
        with self._lock.read_locked():
            return sorted(self._domains)

    def is_blocked(self, raw: str) -> bool:
        domain = normalize_domain(raw)
        with self._lock.read_locked():
            return bool(domain) and domain in self._domains

    def verify_hosts_file(self) -> dict[str, bool]:
        """
        Report every hostname in the managed section on disk.

        Returns:
            Mapping of hostname to whether it points at the block address

        Raises:
            HostsReadError: If the hosts file cannot be read
        """
        with self._lock.read_locked():
            content = self._read()
        found = {}
        for ip, hostname in parse_managed_section(content):
            found[hostname] = ip == BLOCKED_IP
        logger.debug(f"Managed section holds {len(found)} entries")
        return found

    def test_domain_blocking(self, raw: str) -> bool:
        """Check whether a domain currently resolves to the block address."""
        domain = normalize_domain(raw)
        if not domain:
            raise DomainValidationError(f"Invalid domain: {raw!r}")
        try:
            address = self.resolver(domain)
        except OSError as e:
            logger.info(f"Lookup failed for {domain}: {e}")
            return False
        logger.debug(f"{domain} resolves to {address}")
        return address == BLOCKED_IP

    # -------------------------------------------------------------------------
    # INTERNALS
    # -------------------------------------------------------------------------

    def _read(self) -> str:
        try:
            return self.hosts_path.read_text(encoding=HOSTS_ENCODING, errors=HOSTS_ERRORS)
        except OSError as e:
            raise HostsReadError(f"Failed to read hosts file {self.hosts_path}: {e}")

    def _apply(self, domains: set[str]) -> None:
        """Write the managed section for domains; caller holds the write lock."""
        try:
            current = self._read()
        except HostsReadError as e:
            logger.warning(f"{e}; using startup snapshot")
            current = self._original
        self.writer.write(compute_desired_content(current, domains))
        self._domains = set(domains)

    def _remove_backup(self) -> None:
        try:
            self.backup_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove hosts backup {self.backup_path}: {e}")
