"""Converges the local blocking state to the remote blocked URL list."""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from .common import FIREBASE_SYNC_CATEGORY, FIREBASE_SYNC_REASON, audit_log
from .events import HOSTS_WRITE_FAILED, SYNC_APPLIED, EventBus
from .exceptions import AgentStoppedError, HostsWriteError, RemoteStoreError, RuleStoreError
from .hosts_manager import HostsManager
from .normalizer import normalize_all
from .poller import AdaptivePoller
from .remote import BlockedUrl
from .rule_store import RuleStore

logger = logging.getLogger(__name__)


def diff_records(
    old: Dict[str, BlockedUrl], new: Dict[str, BlockedUrl]
) -> tuple[set[str], set[str], set[str]]:
    """
    Compare two remote snapshots key by key on url and status.

    Returns:
        (added, modified, removed) key sets
    """
    added = set(new) - set(old)
    removed = set(old) - set(new)
    modified = {
        key for key in set(new) & set(old)
        if new[key].url != old[key].url or new[key].status != old[key].status
    }
    return added, modified, removed


def active_domains(records: Dict[str, BlockedUrl]) -> set[str]:
    """Normalized domains of the active records; unusable URLs are dropped."""
    return normalize_all(record.url for record in records.values() if record.is_active)


class BlockedUrlReconciler:
    """
    Applies remote blocked URL snapshots to the rule store and hosts file.

    The last seen snapshot only advances after a successful apply, so a
    failed hosts write is retried on the next poll. The apply lock is
    shared with every other writer of the store and hosts file, and a set
    stop event turns later applies away.
    """

    def __init__(
        self,
        hosts: HostsManager,
        store: RuleStore,
        events: Optional[EventBus] = None,
        category: str = FIREBASE_SYNC_CATEGORY,
        apply_lock: Optional[threading.RLock] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.hosts = hosts
        self.store = store
        self.events = events
        self.category = category
        self.apply_lock = apply_lock or threading.RLock()
        self.stop_event = stop_event
        self._last: Dict[str, BlockedUrl] = {}
        self._lock = threading.Lock()
        self.last_path: Optional[str] = None
        self.last_sync: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.sync_count = 0

    def has_changed(self, records: Dict[str, BlockedUrl]) -> bool:
        with self._lock:
            added, modified, removed = diff_records(self._last, records)
        if removed:
            logger.info(f"Detected {len(removed)} deletions in remote data")
        return bool(added or modified or removed)

    def apply(self, path: str, records: Dict[str, BlockedUrl]) -> set[str]:
        """
        Reconcile the sync category, then write the union of all active rules.

        Returns:
            The domain set now applied to the hosts file

        Raises:
            RuleStoreError: If the store could not be reconciled
            HostsWriteError: If the hosts file could not be written
            AgentStoppedError: If the agent is shutting down
        """
        domains = active_domains(records)
        with self.apply_lock:
            if self.stop_event is not None and self.stop_event.is_set():
                raise AgentStoppedError(f"Agent is stopping, remote changes from {path} not applied")
            logger.info(f"Remote data changed at {path}: {len(records)} records, {len(domains)} active")

            added, removed = self.store.reconcile_category(
                self.category, domains, reason=FIREBASE_SYNC_REASON
            )
            applied = self.hosts.replace_all(self.store.active_domains())

            with self._lock:
                self._last = dict(records)
                self.last_path = path
                self.last_sync = datetime.now()
                self.last_error = None
                self.sync_count += 1

        audit_log("SYNC", f"{path} +{len(added)} -{len(removed)} total={len(applied)}", prefix="REMOTE")
        if self.events is not None:
            self.events.publish(
                SYNC_APPLIED,
                path=path,
                added=sorted(added),
                removed=sorted(removed),
                blocked=sorted(applied),
            )
        return applied

    def handle(self, path: str, records: Dict[str, BlockedUrl]) -> bool:
        """Poller handler; never raises for store or hosts failures."""
        if not self.has_changed(records):
            return False
        try:
            self.apply(path, records)
        except AgentStoppedError as e:
            logger.info(str(e))
            return False
        except (HostsWriteError, RuleStoreError) as e:
            logger.error(f"Failed to apply remote changes from {path}: {e}")
            with self._lock:
                self.last_error = str(e)
            if self.events is not None:
                self.events.publish(HOSTS_WRITE_FAILED, path=path, error=str(e))
        return True

    def force_sync(self, poller: AdaptivePoller) -> set[str]:
        """
        Probe every candidate path now and apply the first data found.

        Raises:
            RemoteStoreError: If no path holds data
            RuleStoreError: If the store could not be reconciled
            HostsWriteError: If the hosts file could not be written
            AgentStoppedError: If the agent is shutting down
        """
        logger.info("Manual remote sync triggered")
        result = poller.probe()
        if result is None:
            raise RemoteStoreError(
                f"No remote data found in any of the {len(poller.paths)} paths checked"
            )
        return self.apply(result.path, result.records)

    def snapshot(self) -> Dict[str, BlockedUrl]:
        with self._lock:
            return dict(self._last)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "blocked_count": len(self._last),
                "active_count": sum(1 for r in self._last.values() if r.is_active),
                "last_path": self.last_path,
                "last_sync": self.last_sync.isoformat() if self.last_sync else None,
                "last_error": self.last_error,
                "sync_count": self.sync_count,
            }
