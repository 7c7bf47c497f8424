"""Privileged hosts file writer with an ordered fallback chain and DNS flush."""

import logging
import os
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from .common import is_macos, is_windows
from .exceptions import HostsWriteError

# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_WRITE_TIMEOUT = 15  # seconds per subprocess call

# Bytes that are not valid UTF-8 survive a read/write round trip as surrogates
HOSTS_ENCODING = "utf-8"
HOSTS_ERRORS = "surrogateescape"

# robocopy reports success with exit codes below 8
ROBOCOPY_FAILURE_THRESHOLD = 8
ROBOCOPY_TEMP_NAME = "hosts_temp"

WINDOWS_FLUSH_COMMANDS = [
    ["ipconfig", "/flushdns"],
    ["powershell", "-Command", "Clear-DnsClientCache"],
]
MACOS_FLUSH_COMMANDS = [
    ["dscacheutil", "-flushcache"],
    ["killall", "-HUP", "mDNSResponder"],
]
LINUX_FLUSH_COMMANDS = [
    ["resolvectl", "flush-caches"],
]

logger = logging.getLogger(__name__)


# =============================================================================
# COMMAND RUNNER
# =============================================================================

class CommandRunner:
    """Runs external commands with a bounded timeout and captured output."""

    def __init__(self, timeout: int = DEFAULT_WRITE_TIMEOUT) -> None:
        self.timeout = timeout

    def run(self, args: Sequence[str]) -> subprocess.CompletedProcess:
        """
        Run a command.

        Raises:
            OSError: If the executable cannot be started
            subprocess.TimeoutExpired: If the command exceeds the timeout
        """
        kwargs = {}
        if is_windows():
            kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)
        return subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            timeout=self.timeout,
            **kwargs,
        )


def _describe(result: subprocess.CompletedProcess) -> str:
    output = (result.stderr or result.stdout or "").strip()
    if output:
        return f"exit code {result.returncode}: {output[:200]}"
    return f"exit code {result.returncode}"


# =============================================================================
# WRITE STRATEGIES
# =============================================================================

class WriteStrategy:
    """
    One way of replacing the hosts file content.

    Subclasses implement write() and raise on failure; the message becomes
    the failure reason reported by HostsWriter.
    """

    name = "base"
    requires_windows = False

    def write(self, path: Path, content: str, runner: CommandRunner) -> None:
        raise NotImplementedError


class DirectWrite(WriteStrategy):
    name = "direct"

    def write(self, path: Path, content: str, runner: CommandRunner) -> None:
        path.write_text(content, encoding=HOSTS_ENCODING, errors=HOSTS_ERRORS)


class AtomicRename(WriteStrategy):
    """Write <hosts>.tmp next to the target and rename it into place."""

    name = "atomic-rename"

    def write(self, path: Path, content: str, runner: CommandRunner) -> None:
        temp_path = path.with_name(path.name + ".tmp")
        try:
            temp_path.write_text(content, encoding=HOSTS_ENCODING, errors=HOSTS_ERRORS)
            os.replace(temp_path, path)
        except OSError:
            try:
                temp_path.unlink()
            except OSError:
                pass
            raise


def escape_powershell_literal(value: str) -> str:
    """Escape a value for a single-quoted PowerShell string."""
    return value.replace("'", "''")


class PowerShellElevated(WriteStrategy):
    """
    Write through an elevated PowerShell Out-File call.

    The content travels verbatim in a single-quoted here-string, which
    takes quotes literally but ends at any line starting with '@.
    """

    name = "powershell"
    requires_windows = True

    def build_command(self, path: Path, content: str) -> list[str]:
        """
        Build the powershell command line.

        Raises:
            RuntimeError: If the content cannot travel in a here-string
        """
        if any(line.startswith("'@") for line in content.splitlines()):
            raise RuntimeError("content has a line starting with '@ and cannot be embedded")
        try:
            content.encode(HOSTS_ENCODING)
        except UnicodeEncodeError:
            raise RuntimeError("content holds bytes that are not valid UTF-8")

        script = (
            "$content = @'\n"
            f"{content}\n"
            "'@; "
            f"$content | Out-File -FilePath '{escape_powershell_literal(str(path))}' "
            "-Encoding UTF8 -Force"
        )
        return ["powershell", "-NoProfile", "-ExecutionPolicy", "Bypass", "-Command", script]

    def write(self, path: Path, content: str, runner: CommandRunner) -> None:
        result = runner.run(self.build_command(path, content))
        if result.returncode != 0:
            raise RuntimeError(f"powershell failed with {_describe(result)}")


class RobocopyCopy(WriteStrategy):
    """Stage the content in the temp dir and copy it over with robocopy."""

    name = "robocopy"
    requires_windows = True

    def write(self, path: Path, content: str, runner: CommandRunner) -> None:
        temp_dir = Path(tempfile.gettempdir())
        staged = temp_dir / ROBOCOPY_TEMP_NAME
        staged.write_text(content, encoding=HOSTS_ENCODING, errors=HOSTS_ERRORS)
        try:
            result = runner.run([
                "robocopy", str(temp_dir), str(path.parent),
                ROBOCOPY_TEMP_NAME, path.name, "/Y", "/R:3", "/W:1",
            ])
        finally:
            try:
                staged.unlink()
            except OSError:
                pass
        if result.returncode >= ROBOCOPY_FAILURE_THRESHOLD:
            raise RuntimeError(f"robocopy failed with {_describe(result)}")


class TakeOwnershipIcacls(WriteStrategy):
    """Take ownership, grant full access, retry a direct write, then reset ACLs."""

    name = "takeown-icacls"
    requires_windows = True

    def write(self, path: Path, content: str, runner: CommandRunner) -> None:
        target = str(path)
        for args in (["takeown", "/f", target], ["icacls", target, "/grant", "Everyone:F"]):
            try:
                result = runner.run(args)
                if result.returncode != 0:
                    logger.warning(f"{args[0]} returned {_describe(result)}")
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning(f"{args[0]} failed: {e}")

        try:
            path.write_text(content, encoding=HOSTS_ENCODING, errors=HOSTS_ERRORS)
        finally:
            try:
                runner.run(["icacls", target, "/reset"])
            except (OSError, subprocess.SubprocessError) as e:
                logger.warning(f"icacls /reset failed: {e}")


def default_strategies() -> list[WriteStrategy]:
    return [
        DirectWrite(),
        AtomicRename(),
        PowerShellElevated(),
        RobocopyCopy(),
        TakeOwnershipIcacls(),
    ]


# =============================================================================
# DNS FLUSH
# =============================================================================

def flush_commands() -> list[list[str]]:
    """Return the DNS cache flush commands for the running OS."""
    if is_windows():
        return WINDOWS_FLUSH_COMMANDS
    if is_macos():
        return MACOS_FLUSH_COMMANDS
    return LINUX_FLUSH_COMMANDS


def flush_dns_cache(runner: CommandRunner, commands: Optional[Iterable[Sequence[str]]] = None) -> int:
    """
    Run every DNS flush command, logging failures without raising.

    Returns:
        Number of commands that succeeded
    """
    succeeded = 0
    for args in commands if commands is not None else flush_commands():
        try:
            result = runner.run(args)
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"DNS flush command {args[0]} unavailable: {e}")
            continue
        if result.returncode == 0:
            succeeded += 1
            logger.debug(f"DNS flush ok: {' '.join(args)}")
        else:
            logger.debug(f"DNS flush command {args[0]} returned {_describe(result)}")
    return succeeded


# =============================================================================
# HOSTS WRITER
# =============================================================================

class HostsWriter:
    """Persists hosts file content using the first strategy that succeeds."""

    def __init__(
        self,
        path: Path,
        strategies: Optional[list[WriteStrategy]] = None,
        runner: Optional[CommandRunner] = None,
        timeout: int = DEFAULT_WRITE_TIMEOUT,
        flush_dns: bool = True,
        platform_check: Optional[Callable[[], bool]] = None,
    ) -> None:
        """
        Initialize the writer.

        Args:
            path: Hosts file location
            strategies: Ordered write strategies (defaults to the full chain)
            runner: Command runner used by shell strategies and DNS flush
            timeout: Timeout for each subprocess call in seconds
            flush_dns: Flush the DNS cache in the background after a write
            platform_check: Returns True when shell strategies may run
        """
        self.path = Path(path)
        self.strategies = strategies if strategies is not None else default_strategies()
        self.runner = runner or CommandRunner(timeout)
        self.flush_dns = flush_dns
        self._is_windows = platform_check or is_windows
        self.last_strategy: Optional[str] = None

    def write(self, content: str) -> str:
        """
        Write the hosts file, falling back through the strategy chain.

        Args:
            content: Full new hosts file content

        Returns:
            Name of the strategy that succeeded

        Raises:
            HostsWriteError: If every strategy failed
        """
        failures: list[tuple[str, str]] = []
        logger.debug(f"Writing hosts file {self.path} ({len(content)} bytes)")

        for strategy in self.strategies:
            if strategy.requires_windows and not self._is_windows():
                failures.append((strategy.name, "not supported on this platform"))
                continue
            try:
                strategy.write(self.path, content, self.runner)
            except (OSError, RuntimeError, subprocess.SubprocessError) as e:
                logger.warning(f"Hosts write strategy '{strategy.name}' failed: {e}")
                failures.append((strategy.name, str(e)))
                continue

            logger.info(f"Hosts file written using '{strategy.name}'")
            self.last_strategy = strategy.name
            if self.flush_dns:
                self.schedule_dns_flush()
            return strategy.name

        summary = "; ".join(f"{name}: {reason}" for name, reason in failures)
        raise HostsWriteError(
            f"All hosts file write strategies failed ({summary}). "
            "Check administrator permissions and antivirus settings.",
            failures,
        )

    def schedule_dns_flush(self) -> threading.Thread:
        """Flush the DNS cache on a daemon thread."""
        thread = threading.Thread(
            target=flush_dns_cache, args=(self.runner,), name="dns-flush", daemon=True
        )
        thread.start()
        return thread
