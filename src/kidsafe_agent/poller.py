"""Adaptive multi-path polling of the remote store."""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .exceptions import KidSafeError

DEFAULT_BASE_INTERVAL = 2.0
DEFAULT_MAX_INTERVAL = 30.0
DEFAULT_BACKOFF_FACTOR = 1.2
DEFAULT_GRACE_CYCLES = 5

logger = logging.getLogger(__name__)

# fetch(path) -> raw payload; parse(payload) -> records (empty means no data);
# handle(path, records) -> True if the records differed from the last seen set
Fetcher = Callable[[str], Any]
Parser = Callable[[Any], dict]
Handler = Callable[[str, dict], bool]


class BackoffPolicy:
    """
    Poll interval that slows down while nothing changes.

    After more than grace_cycles consecutive quiet cycles the interval is
    multiplied by factor on each further quiet cycle, capped at
    max_interval. Any change resets it to base_interval.
    """

    def __init__(
        self,
        base_interval: float = DEFAULT_BASE_INTERVAL,
        max_interval: float = DEFAULT_MAX_INTERVAL,
        factor: float = DEFAULT_BACKOFF_FACTOR,
        grace_cycles: int = DEFAULT_GRACE_CYCLES,
    ) -> None:
        if base_interval <= 0:
            raise ValueError("base_interval must be positive")
        if max_interval < base_interval:
            raise ValueError("max_interval must not be below base_interval")
        if factor < 1:
            raise ValueError("factor must be at least 1")
        self.base_interval = base_interval
        self.max_interval = max_interval
        self.factor = factor
        self.grace_cycles = grace_cycles
        self.interval = base_interval
        self.quiet_cycles = 0

    def on_change(self) -> float:
        self.quiet_cycles = 0
        self.interval = self.base_interval
        return self.interval

    def on_quiet(self) -> float:
        self.quiet_cycles += 1
        if self.quiet_cycles > self.grace_cycles and self.interval < self.max_interval:
            self.interval = min(self.interval * self.factor, self.max_interval)
            logger.debug(f"Poll interval raised to {self.interval:.1f}s")
        return self.interval


@dataclass
class ProbeResult:
    path: str
    records: dict


class AdaptivePoller:
    """
    Polls an ordered list of candidate paths until one returns data.

    The path that last returned data is probed first on the next cycle.
    A cycle where every path errors or is empty does not call the
    handler at all, so the consumer's state is left untouched.
    """

    def __init__(
        self,
        name: str,
        paths: list[str],
        fetch: Fetcher,
        parse: Parser,
        handle: Handler,
        policy: Optional[BackoffPolicy] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Initialize the poller.

        Args:
            name: Label used in logs and as the thread name
            paths: Candidate paths in priority order
            fetch: Reads the raw payload stored at a path
            parse: Turns a payload into records; empty means no data
            handle: Consumes records, returns True when they changed
            policy: Backoff policy (defaults to 2s base, x1.2, 30s max)
            stop_event: Shared cancellation signal
        """
        self.name = name
        self.paths = list(paths)
        self.fetch = fetch
        self.parse = parse
        self.handle = handle
        self.policy = policy or BackoffPolicy()
        self.stop_event = stop_event or threading.Event()
        self.preferred_path: Optional[str] = None
        self.cycles = 0
        self.last_error: Optional[str] = None
        self._thread: Optional[threading.Thread] = None

    def ordered_paths(self) -> list[str]:
        if self.preferred_path in self.paths:
            return [self.preferred_path] + [p for p in self.paths if p != self.preferred_path]
        return list(self.paths)

    def probe(self) -> Optional[ProbeResult]:
        """Return the records of the first path holding data, or None."""
        for path in self.ordered_paths():
            if self.stop_event.is_set():
                return None
            try:
                records = self.parse(self.fetch(path))
            except KidSafeError as e:
                logger.warning(f"[{self.name}] Error checking path {path}: {e}")
                self.last_error = str(e)
                continue
            if records:
                if path != self.preferred_path:
                    logger.info(f"[{self.name}] Found data at path {path} ({len(records)} records)")
                    self.preferred_path = path
                return ProbeResult(path, records)
        logger.debug(f"[{self.name}] No data found in any path (checked {len(self.paths)})")
        return None

    def run_cycle(self) -> bool:
        """
        Run one probe and hand any data to the handler.

        Returns:
            True if the handler reported a change
        """
        self.cycles += 1
        result = self.probe()
        if result is None:
            self.policy.on_quiet()
            return False

        changed = self.handle(result.path, result.records)
        if changed:
            self.policy.on_change()
        else:
            self.policy.on_quiet()
        return changed

    def run(self) -> None:
        """Poll until the stop event is set; nothing raised by a cycle escapes."""
        logger.info(f"[{self.name}] Polling {len(self.paths)} candidate paths")
        while not self.stop_event.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"[{self.name}] Poll cycle failed: {e}", exc_info=True)
                self.last_error = str(e)
                self.policy.on_quiet()
            self.stop_event.wait(self.policy.interval)
        logger.info(f"[{self.name}] Poller stopped")

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name=f"poll-{self.name}", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
