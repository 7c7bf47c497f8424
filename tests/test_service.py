"""Tests for AgentService wiring."""

import threading
from unittest.mock import MagicMock

import pytest

from kidsafe_agent.common import FIREBASE_SYNC_CATEGORY
from kidsafe_agent.events import HOSTS_UPDATED, RULES_CHANGED
from kidsafe_agent.exceptions import HostsWriteError, RemoteStoreError, RuleStoreError
from kidsafe_agent.hosts_manager import HostsManager
from kidsafe_agent.hosts_writer import DirectWrite, HostsWriter
from kidsafe_agent.identity import DEFAULT_BLOCKED_URL_TEMPLATES, DEFAULT_TIME_RULE_TEMPLATES
from kidsafe_agent.remote import BlockedUrl
from kidsafe_agent.service import AgentService

ORIGINAL = "127.0.0.1 localhost\n"


def failing_writer():
    writer = MagicMock()
    writer.write.side_effect = HostsWriteError("all strategies failed")
    return writer


def remote_records(*urls):
    return {f"k{i}": BlockedUrl(id=f"k{i}", url=url, status="active") for i, url in enumerate(urls)}


@pytest.fixture
def config(tmp_path):
    hosts_path = tmp_path / "hosts"
    hosts_path.write_text(ORIGINAL, encoding="utf-8")
    return {
        "family_id": None,
        "user_email": None,
        "database_url": None,
        "auth_token": None,
        "hosts_path": hosts_path,
        "db_path": tmp_path / "rules.db",
        "path_templates": DEFAULT_BLOCKED_URL_TEMPLATES,
        "time_rule_templates": DEFAULT_TIME_RULE_TEMPLATES,
        "poll_base_interval": 0.01,
        "poll_max_interval": 0.05,
        "poll_backoff_factor": 1.2,
        "write_timeout": 15,
        "timeout": 10,
        "retries": 0,
        "status_interval": 30,
    }


@pytest.fixture
def hosts(config):
    writer = HostsWriter(config["hosts_path"], strategies=[DirectWrite()], flush_dns=False)
    return HostsManager(config["hosts_path"], writer=writer)


@pytest.fixture
def service(config, hosts):
    svc = AgentService(config, hosts=hosts)
    yield svc
    svc.stop(cleanup=False)


@pytest.fixture
def remote_service(config, hosts):
    config.update({"family_id": "fam1", "database_url": "https://kidsafe.firebaseio.com"})
    remote = MagicMock()
    remote.get.return_value = None
    timekeeper = MagicMock()
    svc = AgentService(config, hosts=hosts, remote=remote, timekeeper=timekeeper)
    yield svc
    svc.stop(cleanup=False)


class TestLocalRules:
    """Tests for rule operations without remote sync."""

    def test_local_only_has_no_pollers(self, service):
        assert service.remote is None
        assert service.blocked_poller is None
        assert service.timekeeper is None

    def test_add_rule_blocks_domain(self, service, config):
        service.initialize()
        events = service.subscribe(RULES_CHANGED)

        rule = service.add_rule("https://www.games.com/play", reason="homework")

        assert rule.domain == "games.com"
        assert service.get_blocked_domains() == ["games.com"]
        assert "127.0.0.1 games.com" in config["hosts_path"].read_text()
        assert events.get(timeout=1).data["action"] == "add"

    def test_initialize_applies_stored_rules(self, config, hosts):
        first = AgentService(config, hosts=hosts)
        first.store.add_rule("a.com")
        first.store.close()

        second = AgentService(config, hosts=hosts)
        events = second.subscribe(HOSTS_UPDATED)
        second.initialize()
        assert second.get_blocked_domains() == ["a.com"]
        assert events.get(timeout=1).data["blocked"] == ["a.com"]
        second.stop(cleanup=False)

    def test_delete_rule_unblocks(self, service):
        service.initialize()
        rule = service.add_rule("a.com")
        service.delete_rule(rule.id)
        assert service.get_blocked_domains() == []

    def test_delete_keeps_domain_covered_by_other_rule(self, service):
        service.initialize()
        manual = service.add_rule("a.com")
        service.add_rule("a.com", category=FIREBASE_SYNC_CATEGORY)
        service.delete_rule(manual.id)
        assert service.get_blocked_domains() == ["a.com"]

    def test_delete_missing_rule(self, service):
        with pytest.raises(RuleStoreError):
            service.delete_rule(999)

    def test_remote_operations_need_configuration(self, service):
        with pytest.raises(RemoteStoreError, match="not configured"):
            service.force_sync()
        assert service.report_status() is False

    def test_health(self, service):
        checks = service.health()
        assert checks["hosts_readable"] is True
        assert checks["rule_store"] is True
        assert "remote_store" not in checks


class TestLifecycle:
    """Tests for start and stop."""

    def test_stop_cleans_hosts_file(self, config, hosts):
        svc = AgentService(config, hosts=hosts)
        svc.start()
        svc.add_rule("a.com")
        assert "a.com" in config["hosts_path"].read_text()

        svc.stop()

        assert config["hosts_path"].read_text() == ORIGINAL
        assert not svc.running

    def test_stop_without_cleanup_keeps_entries(self, config, hosts):
        svc = AgentService(config, hosts=hosts)
        svc.start()
        svc.add_rule("a.com")
        svc.stop(cleanup=False)
        assert "127.0.0.1 a.com" in config["hosts_path"].read_text()

    def test_remote_threads_start_and_stop(self, remote_service):
        remote_service.start()
        assert remote_service.running
        assert len(remote_service._threads) == 4
        remote_service.stop(cleanup=False)
        assert remote_service._threads == []
        assert not remote_service.running
        remote_service.timekeeper.stop.assert_called_once()


class TestRemoteSync:
    """Tests for remote sync through the service."""

    def test_candidate_paths(self, remote_service):
        assert remote_service.blocked_poller.paths[0] == "kidsafe/families/fam1/blockedUrls"
        assert remote_service.time_poller.paths[0] == "fam1/syncStatus/timeRules"

    def test_force_sync_and_status_report(self, remote_service, hosts):
        remote_service.initialize()
        remote_service.store.add_rule("manual.com")

        def fetch(path):
            if path == "kidsafe/blockedUrls":
                return {"-Nabc": {"url": "https://www.tiktok.com", "status": "active"}}
            return None

        remote_service.remote.get.side_effect = fetch

        assert remote_service.force_sync() == {"manual.com", "tiktok.com"}

        put_path, status = remote_service.remote.put.call_args[0]
        assert put_path == "kidsafe/families/fam1/pcStatus"
        assert status["status"] == "connected"
        assert status["hostFileStatus"] == "active"
        assert status["blockedCount"] == 1

    def test_force_sync_without_data(self, remote_service):
        remote_service.initialize()
        with pytest.raises(RemoteStoreError):
            remote_service.force_sync()

    def test_status_report_failure_is_logged(self, remote_service):
        remote_service.remote.put.side_effect = RemoteStoreError("offline")
        assert remote_service.report_status() is False

    def test_health_includes_remote(self, remote_service):
        remote_service.remote.test_connection.side_effect = RemoteStoreError("offline")
        assert remote_service.health()["remote_store"] is False

    def test_time_rules_forwarded(self, remote_service):
        remote_service.timekeeper.handle_remote_rules.return_value = True
        assert remote_service._handle_time_rules("p", {"r": {}}) is True
        remote_service.timekeeper.handle_remote_rules.assert_called_once_with("p", {"r": {}})

    def test_stats(self, remote_service):
        stats = remote_service.stats()
        assert stats["family_id"] == "fam1"
        assert stats["preferred_path"] is None
        assert "kidsafe/blockedUrls" in stats["candidate_paths"]
class TestFailedHostsWrite:
    """Tests for rule changes whose hosts file write fails."""

    def test_failed_add_leaves_no_rule(self, config):
        svc = AgentService(config, hosts=HostsManager(config["hosts_path"], writer=failing_writer()))

        with pytest.raises(HostsWriteError):
            svc.add_rule("x.com")

        assert svc.list_rules() == []
        assert svc.store.active_domains() == set()
        assert svc.get_blocked_domains() == []
        svc.stop(cleanup=False)

    def test_failed_add_keeps_inactive_rule_inactive(self, config):
        svc = AgentService(config, hosts=HostsManager(config["hosts_path"], writer=failing_writer()))
        before = svc.store.add_rule("x.com", reason="old")
        svc.store.set_active("x.com", "manual", False)

        with pytest.raises(HostsWriteError):
            svc.add_rule("x.com", reason="new")

        rule = svc.store.get_rule(before.id)
        assert rule.is_active is False
        assert rule.reason == "old"
        svc.stop(cleanup=False)

    def test_failed_delete_restores_rule(self, service, hosts):
        service.initialize()
        rule = service.add_rule("a.com")
        hosts.writer = failing_writer()

        with pytest.raises(HostsWriteError):
            service.delete_rule(rule.id)

        assert service.store.get_rule(rule.id) == rule
        assert service.get_blocked_domains() == ["a.com"]


class TestSerializedChanges:
    """Tests for manual changes racing a remote sync."""

    def test_manual_add_during_sync_is_kept(self, service, monkeypatch):
        service.initialize()
        real_active_domains = service.store.active_domains
        adders = []

        def active_domains_with_concurrent_add(category=None):
            domains = real_active_domains(category)
            if not adders:
                adder = threading.Thread(target=service.add_rule, args=("manual.com",))
                adders.append(adder)
                adder.start()
                adder.join(0.2)
            return domains

        monkeypatch.setattr(service.store, "active_domains", active_domains_with_concurrent_add)
        service.reconciler.apply("fam/blockedUrls", remote_records("remote.com"))
        adders[0].join(5)

        assert service.get_blocked_domains() == ["manual.com", "remote.com"]
        assert "127.0.0.1 manual.com" in service.hosts.hosts_path.read_text()

    def test_stop_waits_for_sync_in_progress(self, config, hosts, monkeypatch):
        svc = AgentService(config, hosts=hosts)
        svc.initialize()
        real_active_domains = svc.store.active_domains
        reading = threading.Event()
        release = threading.Event()

        def slow_active_domains(category=None):
            domains = real_active_domains(category)
            reading.set()
            release.wait(5)
            return domains

        monkeypatch.setattr(svc.store, "active_domains", slow_active_domains)
        sync = threading.Thread(
            target=svc.reconciler.handle, args=("fam/blockedUrls", remote_records("remote.com"))
        )
        sync.start()
        assert reading.wait(5)

        stopper = threading.Thread(target=svc.stop)
        stopper.start()
        stopper.join(0.2)
        assert stopper.is_alive()

        release.set()
        sync.join(5)
        stopper.join(5)
        assert config["hosts_path"].read_text() == ORIGINAL

    def test_sync_after_stop_leaves_hosts_alone(self, config, hosts):
        svc = AgentService(config, hosts=hosts)
        svc.initialize()
        svc.stop()

        assert svc.reconciler.handle("fam/blockedUrls", remote_records("remote.com")) is False
        assert config["hosts_path"].read_text() == ORIGINAL
        assert svc.reconciler.sync_count == 0
