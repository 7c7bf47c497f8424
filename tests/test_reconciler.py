"""Tests for the blocked URL reconciler."""

from unittest.mock import MagicMock

import pytest

from kidsafe_agent.common import FIREBASE_SYNC_CATEGORY
from kidsafe_agent.events import HOSTS_WRITE_FAILED, SYNC_APPLIED, EventBus
from kidsafe_agent.exceptions import HostsWriteError, RemoteStoreError
from kidsafe_agent.hosts_manager import HostsManager
from kidsafe_agent.hosts_writer import DirectWrite, HostsWriter
from kidsafe_agent.poller import AdaptivePoller
from kidsafe_agent.reconciler import BlockedUrlReconciler, active_domains, diff_records
from kidsafe_agent.remote import BlockedUrl, parse_blocked_urls
from kidsafe_agent.rule_store import RuleStore


def records(*urls, status="active"):
    return {f"k{i}": BlockedUrl(id=f"k{i}", url=url, status=status) for i, url in enumerate(urls)}


@pytest.fixture
def hosts(tmp_path):
    path = tmp_path / "hosts"
    path.write_text("127.0.0.1 localhost\n", encoding="utf-8")
    writer = HostsWriter(path, strategies=[DirectWrite()], flush_dns=False)
    manager = HostsManager(path, writer=writer)
    manager.initialize()
    return manager


@pytest.fixture
def store():
    rule_store = RuleStore(":memory:")
    yield rule_store
    rule_store.close()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def reconciler(hosts, store, bus):
    return BlockedUrlReconciler(hosts, store, bus)


class TestDiffRecords:
    """Tests for diff_records and active_domains."""

    def test_added_modified_removed(self):
        old = {"a": BlockedUrl("a", "a.com", status="active"), "b": BlockedUrl("b", "b.com", status="active")}
        new = {"a": BlockedUrl("a", "a.com", status="inactive"), "c": BlockedUrl("c", "c.com", status="active")}
        assert diff_records(old, new) == ({"c"}, {"a"}, {"b"})

    def test_added_by_changes_are_ignored(self):
        old = {"a": BlockedUrl("a", "a.com", added_by="x", status="active")}
        new = {"a": BlockedUrl("a", "a.com", added_by="y", status="active")}
        assert diff_records(old, new) == (set(), set(), set())

    def test_active_domains_filters_and_normalizes(self):
        recs = records("https://www.a.com/x", "b.com")
        recs["k9"] = BlockedUrl("k9", "c.com", status="inactive")
        recs["k10"] = BlockedUrl("k10", "   ", status="active")
        assert active_domains(recs) == {"a.com", "b.com"}


class TestConvergence:
    """Tests for applying successive remote snapshots."""

    def test_sequence_converges(self, reconciler, hosts, store):
        for urls in (["a.com"], ["a.com", "b.com"], ["b.com"]):
            assert reconciler.handle("path", records(*urls)) is True
            assert set(hosts.get_blocked_domains()) == set(urls)
            assert store.active_domains(FIREBASE_SYNC_CATEGORY) == set(urls)

    def test_unchanged_snapshot_is_noop(self, reconciler):
        snapshot = records("a.com")
        assert reconciler.handle("path", snapshot) is True
        assert reconciler.handle("path", dict(snapshot)) is False
        assert reconciler.sync_count == 1

    def test_manual_rules_survive_sync(self, reconciler, hosts, store):
        store.add_rule("manual.com")
        reconciler.handle("path", records("remote.com"))
        reconciler.handle("path", records("other.com"))
        assert set(hosts.get_blocked_domains()) == {"manual.com", "other.com"}

    def test_manual_and_synced_same_domain(self, reconciler, hosts, store):
        store.add_rule("shared.com")
        reconciler.handle("path", records("shared.com"))
        reconciler.handle("path", records())
        assert hosts.get_blocked_domains() == ["shared.com"]

    def test_inactive_status_unblocks(self, reconciler, hosts):
        reconciler.handle("path", records("a.com"))
        reconciler.handle("path", records("a.com", status="inactive"))
        assert hosts.get_blocked_domains() == []

    def test_publishes_sync_event(self, reconciler, bus):
        subscription = bus.subscribe(SYNC_APPLIED)
        reconciler.handle("fam/blockedUrls", records("a.com"))
        event = subscription.get(timeout=1)
        assert event.data["path"] == "fam/blockedUrls"
        assert event.data["added"] == ["a.com"]


class TestWriteFailure:
    """Tests for hosts write failures during reconciliation."""

    def test_failed_write_is_retried_next_cycle(self, store, bus, tmp_path):
        path = tmp_path / "hosts"
        path.write_text("127.0.0.1 localhost\n")
        writer = MagicMock()
        hosts = HostsManager(path, writer=writer)
        hosts.initialize()
        reconciler = BlockedUrlReconciler(hosts, store, bus)
        failures = bus.subscribe(HOSTS_WRITE_FAILED)

        writer.write.side_effect = HostsWriteError("all strategies failed")
        assert reconciler.handle("path", records("a.com")) is True
        assert reconciler.snapshot() == {}
        assert "all strategies failed" in reconciler.last_error
        assert failures.get(timeout=1).data["error"] == "all strategies failed"

        writer.write.side_effect = None
        assert reconciler.handle("path", records("a.com")) is True
        assert hosts.get_blocked_domains() == ["a.com"]
        assert reconciler.last_error is None


class TestForceSync:
    """Tests for force_sync."""

    def test_applies_first_data(self, reconciler, hosts):
        payloads = {"p2": {"x": {"url": "a.com", "status": "active"}}}
        poller = AdaptivePoller(
            "blocked", ["p1", "p2"], fetch=payloads.get, parse=parse_blocked_urls,
            handle=reconciler.handle,
        )
        assert reconciler.force_sync(poller) == {"a.com"}
        assert reconciler.last_path == "p2"

    def test_no_data_raises(self, reconciler):
        poller = AdaptivePoller(
            "blocked", ["p1"], fetch=lambda p: None, parse=parse_blocked_urls,
            handle=reconciler.handle,
        )
        with pytest.raises(RemoteStoreError):
            reconciler.force_sync(poller)

    def test_stats(self, reconciler):
        reconciler.handle("p", records("a.com", "b.com"))
        stats = reconciler.stats()
        assert stats["blocked_count"] == 2
        assert stats["active_count"] == 2
        assert stats["sync_count"] == 1
        assert stats["last_path"] == "p"


class TestNoDataCycle:
    """Tests for poll cycles that find nothing at any candidate path."""

    def test_no_data_keeps_blocking_state(self, reconciler, hosts, store):
        store.add_rule("manual.com")
        reconciler.handle("fam/blockedUrls", records("a.com", "b.com"))
        blocked = hosts.get_blocked_domains()
        synced = store.active_domains(FIREBASE_SYNC_CATEGORY)

        payloads = {
            "fam/blockedUrls": RemoteStoreError("HTTP 401"),
            "kidsafe/blockedUrls": None,
            "users/kid/blockedUrls": {},
        }

        def fetch(path):
            value = payloads[path]
            if isinstance(value, Exception):
                raise value
            return value

        poller = AdaptivePoller(
            "blocked", list(payloads), fetch=fetch, parse=parse_blocked_urls,
            handle=reconciler.handle,
        )

        assert poller.run_cycle() is False
        assert hosts.get_blocked_domains() == blocked == ["a.com", "b.com", "manual.com"]
        assert store.active_domains(FIREBASE_SYNC_CATEGORY) == synced == {"a.com", "b.com"}
        assert reconciler.snapshot().keys() == {"k0", "k1"}
