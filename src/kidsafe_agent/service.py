"""Agent service: wires hosts blocking, the rule store and remote sync together."""

import logging
import os
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from . import __version__
from .common import audit_log
from .config import remote_sync_enabled
from .events import HOSTS_UPDATED, RULES_CHANGED, EventBus, Subscription
from .exceptions import HostsWriteError, KidSafeError, RemoteStoreError, RuleStoreError
from .hosts_manager import HostsManager
from .hosts_writer import HostsWriter
from .identity import build_candidate_paths, derive_identities
from .poller import AdaptivePoller, BackoffPolicy
from .reconciler import BlockedUrlReconciler
from .remote import RemoteStoreClient, parse_blocked_urls
from .rule_store import MANUAL_CATEGORY, BlockRule, RuleStore
from .timekeeper import TimeKeeper, parse_time_rules

THREAD_JOIN_TIMEOUT = 5.0

logger = logging.getLogger(__name__)


class AgentService:
    """
    Owns every long-lived component and their background threads.

    One stop event cancels all loops; stop() then removes the managed
    hosts section so the machine is left unblocked. Every change that
    touches the store and the hosts file runs under one apply lock.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        hosts: Optional[HostsManager] = None,
        store: Optional[RuleStore] = None,
        remote: Optional[RemoteStoreClient] = None,
        events: Optional[EventBus] = None,
        timekeeper: Optional[TimeKeeper] = None,
    ) -> None:
        self.config = config
        self.stop_event = threading.Event()
        self.events = events or EventBus()
        self.hosts = hosts or HostsManager(
            config["hosts_path"],
            writer=HostsWriter(config["hosts_path"], timeout=config.get("write_timeout", 15)),
        )
        self.store = store or RuleStore(config["db_path"])
        self._apply_lock = threading.RLock()
        self.reconciler = BlockedUrlReconciler(
            self.hosts,
            self.store,
            self.events,
            apply_lock=self._apply_lock,
            stop_event=self.stop_event,
        )

        self.remote = remote
        if self.remote is None and remote_sync_enabled(config):
            self.remote = RemoteStoreClient(
                config["database_url"],
                auth_token=config.get("auth_token"),
                timeout=config.get("timeout", 10),
                retries=config.get("retries", 3),
            )

        self.timekeeper = timekeeper
        self.blocked_poller: Optional[AdaptivePoller] = None
        self.time_poller: Optional[AdaptivePoller] = None
        if self.remote is not None:
            self._build_pollers()
            if self.timekeeper is None:
                self.timekeeper = TimeKeeper(events=self.events)

        self._threads: List[threading.Thread] = []
        self.started_at: Optional[datetime] = None

    def _policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_interval=self.config.get("poll_base_interval", 2.0),
            max_interval=self.config.get("poll_max_interval", 30.0),
            factor=self.config.get("poll_backoff_factor", 1.2),
        )

    def _build_pollers(self) -> None:
        identities = derive_identities(self.config["family_id"], self.config.get("user_email"))
        blocked_paths = build_candidate_paths(self.config["path_templates"], identities)
        time_paths = build_candidate_paths(self.config["time_rule_templates"], identities)
        logger.debug(f"Blocked URL paths: {blocked_paths}")
        logger.debug(f"Time rule paths: {time_paths}")

        self.blocked_poller = AdaptivePoller(
            "blocked-urls",
            blocked_paths,
            fetch=self.remote.get,
            parse=parse_blocked_urls,
            handle=self._handle_blocked_urls,
            policy=self._policy(),
            stop_event=self.stop_event,
        )
        self.time_poller = AdaptivePoller(
            "time-rules",
            time_paths,
            fetch=self.remote.get,
            parse=parse_time_rules,
            handle=self._handle_time_rules,
            policy=self._policy(),
            stop_event=self.stop_event,
        )

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Take the hosts snapshot and apply every active stored rule.

        Raises:
            HostsReadError: If the hosts file cannot be read
        """
        if not self.hosts.initialized:
            self.hosts.initialize()
        self.sync_rules_to_hosts()

    def start(self) -> None:
        """Initialize, then start every background loop."""
        self.initialize()
        self.stop_event.clear()
        self.started_at = datetime.now()

        if self.blocked_poller is not None:
            self._threads.append(self.blocked_poller.start())
        if self.time_poller is not None:
            self._threads.append(self.time_poller.start())
        if self.remote is not None:
            thread = threading.Thread(target=self._status_loop, name="pc-status", daemon=True)
            thread.start()
            self._threads.append(thread)
        if self.timekeeper is not None:
            self._threads.append(self.timekeeper.start(self.stop_event))

        logger.info(f"Agent started ({len(self._threads)} background threads)")

    def stop(self, cleanup: bool = True) -> None:
        """
        Cancel all loops, then optionally strip the managed hosts section.

        A sync still applying when the join times out finishes first; any
        sync after it sees the stop event and leaves the hosts file alone.
        """
        logger.info("Stopping agent")
        self.stop_event.set()
        for thread in self._threads:
            thread.join(THREAD_JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not stop in time")
        self._threads = []

        if self.timekeeper is not None:
            self.timekeeper.stop()

        with self._apply_lock:
            if cleanup and self.hosts.initialized:
                try:
                    self.hosts.cleanup()
                except KidSafeError as e:
                    logger.error(f"Hosts cleanup failed: {e}")

            self.store.close()
        logger.info("Agent stopped")

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self.stop_event.is_set()

    # -------------------------------------------------------------------------
    # RULES
    # -------------------------------------------------------------------------

    def add_rule(
        self, domain: str, category: str = MANUAL_CATEGORY, reason: str = ""
    ) -> BlockRule:
        """
        Store a rule and block its domain immediately.

        When the hosts file cannot be written the store is put back as it
        was before the call.

        Raises:
            DomainValidationError: If the domain is unusable
            RuleStoreError: On database errors
            HostsWriteError: If the hosts file could not be written
        """
        with self._apply_lock:
            prior = self.store.find_rule(domain, category)
            rule = self.store.add_rule(domain, category=category, reason=reason)
            try:
                self.hosts.add_domain(rule.domain)
            except HostsWriteError:
                if prior is None:
                    self._undo(lambda: self.store.delete_rule(rule.id), rule.domain)
                else:
                    self._undo(lambda: self.store.restore_rule(prior), rule.domain)
                raise
        self.events.publish(RULES_CHANGED, action="add", rule=rule.to_dict())
        return rule

    def delete_rule(self, rule_id: int) -> BlockRule:
        """
        Delete a rule and unblock its domain unless another active rule still covers it.

        When the hosts file cannot be written the rule is put back.

        Raises:
            RuleStoreError: If no rule has this id
            HostsWriteError: If the hosts file could not be written
        """
        with self._apply_lock:
            rule = self.store.delete_rule(rule_id)
            if rule is None:
                raise RuleStoreError(f"Rule {rule_id} not found")
            if rule.domain not in self.store.active_domains():
                try:
                    self.hosts.remove_domain(rule.domain)
                except HostsWriteError:
                    self._undo(lambda: self.store.restore_rule(rule), rule.domain)
                    raise
            else:
                logger.info(f"{rule.domain} stays blocked by another rule")
        self.events.publish(RULES_CHANGED, action="delete", rule=rule.to_dict())
        return rule

    def _undo(self, revert: Callable[[], Any], domain: str) -> None:
        """Revert a store change after a failed hosts write; the write error still propagates."""
        try:
            revert()
        except RuleStoreError as e:
            logger.error(f"Could not roll back rule for {domain}: {e}")
            return
        logger.warning(f"Rolled back rule for {domain} after failed hosts write")

    def list_rules(self, category: Optional[str] = None) -> List[BlockRule]:
        return self.store.list_rules(category)

    def sync_rules_to_hosts(self) -> set[str]:
        """Write the union of all active stored rules to the hosts file."""
        with self._apply_lock:
            domains = self.hosts.replace_all(self.store.active_domains())
        logger.info(f"Synced {len(domains)} stored rules to hosts file")
        self.events.publish(HOSTS_UPDATED, blocked=sorted(domains))
        return domains

    def get_blocked_domains(self) -> List[str]:
        return self.hosts.get_blocked_domains()

    def restore_original(self) -> None:
        self.hosts.restore_original()

    def verify_hosts_file(self) -> Dict[str, bool]:
        return self.hosts.verify_hosts_file()

    def test_domain_blocking(self, domain: str) -> bool:
        return self.hosts.test_domain_blocking(domain)

    def subscribe(self, *types: str) -> Subscription:
        return self.events.subscribe(*types)

    # -------------------------------------------------------------------------
    # REMOTE SYNC
    # -------------------------------------------------------------------------

    def _require_remote(self) -> RemoteStoreClient:
        if self.remote is None or self.blocked_poller is None:
            raise RemoteStoreError("Remote sync is not configured (set KIDSAFE_FAMILY_ID)")
        return self.remote

    def _handle_blocked_urls(self, path: str, records: Dict[str, Any]) -> bool:
        changed = self.reconciler.handle(path, records)
        if changed:
            self.report_status()
        return changed

    def _handle_time_rules(self, path: str, records: Dict[str, Any]) -> bool:
        if self.timekeeper is None:
            return False
        return self.timekeeper.handle_remote_rules(path, records)

    def force_sync(self) -> set[str]:
        """
        Fetch the remote block list now and apply it.

        Raises:
            RemoteStoreError: If sync is not configured or no data was found
        """
        self._require_remote()
        domains = self.reconciler.force_sync(self.blocked_poller)
        self.report_status()
        return domains

    def test_connection(self) -> None:
        self._require_remote().test_connection(self.config["family_id"])

    def report_status(self) -> bool:
        """Publish this PC's status record; failures are logged only."""
        if self.remote is None:
            return False
        blocked_count = len(self.reconciler.snapshot())
        status = {
            "lastSeen": int(datetime.now().timestamp() * 1000),
            "status": "connected",
            "version": __version__,
            "hostFileStatus": "active" if blocked_count else "inactive",
            "blockedCount": blocked_count,
        }
        try:
            self.remote.put(f"kidsafe/families/{self.config['family_id']}/pcStatus", status)
        except RemoteStoreError as e:
            logger.warning(f"Error updating PC status: {e}")
            return False
        logger.debug(f"PC status updated: {blocked_count} blocked URLs")
        return True

    def _status_loop(self) -> None:
        interval = self.config.get("status_interval", 30)
        while not self.stop_event.is_set():
            self.report_status()
            self.stop_event.wait(interval)

    # -------------------------------------------------------------------------
    # REPORTING
    # -------------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "version": __version__,
            "running": self.running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "hosts_path": str(self.hosts.hosts_path),
            "blocked_domains": self.get_blocked_domains(),
            "active_rules": self.store.count_active(),
            "remote_enabled": self.remote is not None,
        }
        if self.remote is not None:
            status["remote"] = self.stats()
        if self.timekeeper is not None:
            status["time"] = self.timekeeper.status()
        return status

    def stats(self) -> Dict[str, Any]:
        stats = self.reconciler.stats()
        stats.update({
            "family_id": self.config.get("family_id"),
            "user_email": self.config.get("user_email"),
            "is_listening": self.running,
            "candidate_paths": self.blocked_poller.paths if self.blocked_poller else [],
            "preferred_path": self.blocked_poller.preferred_path if self.blocked_poller else None,
        })
        if self.timekeeper is not None:
            stats["time_rules_count"] = len(self.timekeeper.remote_rules)
            stats["active_time_rules"] = sum(
                1 for r in self.timekeeper.remote_rules.values() if r.active
            )
        return stats

    def health(self) -> Dict[str, bool]:
        """Run quick self checks; each entry is True when healthy."""
        path = self.hosts.hosts_path
        checks = {
            "hosts_readable": os.access(path, os.R_OK),
            "hosts_writable": os.access(path, os.W_OK),
        }
        try:
            self.store.count_active()
            checks["rule_store"] = True
        except RuleStoreError:
            checks["rule_store"] = False
        if self.remote is not None:
            try:
                self.test_connection()
                checks["remote_store"] = True
            except RemoteStoreError:
                checks["remote_store"] = False
        audit_log("HEALTH", ",".join(f"{k}={v}" for k, v in checks.items()))
        return checks
