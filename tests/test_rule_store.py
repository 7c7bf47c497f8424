"""Tests for the SQLite rule store."""

import sqlite3

import pytest

from kidsafe_agent.common import FIREBASE_SYNC_CATEGORY
from kidsafe_agent.exceptions import DomainValidationError, RuleStoreError
from kidsafe_agent.rule_store import MANUAL_CATEGORY, RuleStore


@pytest.fixture
def store(tmp_path):
    rule_store = RuleStore(tmp_path / "db" / "parental_control.db")
    yield rule_store
    rule_store.close()


class TestAddRule:
    """Tests for add_rule and friends."""

    def test_add_normalizes_domain(self, store):
        rule = store.add_rule("https://www.Example.com/x", reason="testing")
        assert rule.domain == "example.com"
        assert rule.category == MANUAL_CATEGORY
        assert rule.reason == "testing"
        assert rule.is_active
        assert rule.profile_id == 1

    def test_add_same_domain_and_category_upserts(self, store):
        first = store.add_rule("a.com")
        store.set_active("a.com", MANUAL_CATEGORY, False)
        second = store.add_rule("www.a.com", reason="again")
        assert second.id == first.id
        assert second.is_active
        assert second.reason == "again"
        assert len(store.list_rules()) == 1

    def test_same_domain_in_two_categories(self, store):
        store.add_rule("a.com")
        store.add_rule("a.com", category=FIREBASE_SYNC_CATEGORY)
        assert len(store.list_rules()) == 2
        assert store.active_domains() == {"a.com"}

    def test_invalid_domain(self, store):
        with pytest.raises(DomainValidationError):
            store.add_rule("")

    def test_delete_rule(self, store):
        rule = store.add_rule("a.com")
        deleted = store.delete_rule(rule.id)
        assert deleted.domain == "a.com"
        assert store.get_rule(rule.id) is None
        assert store.delete_rule(rule.id) is None

    def test_set_active_missing_row(self, store):
        assert store.set_active("nothing.com", MANUAL_CATEGORY, False) is False


    def test_find_rule(self, store):
        rule = store.add_rule("a.com", category=FIREBASE_SYNC_CATEGORY)
        assert store.find_rule("https://www.a.com", FIREBASE_SYNC_CATEGORY) == rule
        assert store.find_rule("a.com") is None

    def test_restore_rule_undoes_upsert(self, store):
        before = store.add_rule("a.com", reason="first")
        store.set_active("a.com", MANUAL_CATEGORY, False)
        before = store.get_rule(before.id)
        store.add_rule("a.com", reason="second")

        store.restore_rule(before)

        assert store.get_rule(before.id) == before
        assert store.active_domains() == set()

    def test_restore_rule_after_delete(self, store):
        rule = store.add_rule("a.com")
        store.delete_rule(rule.id)

        store.restore_rule(rule)

        assert store.get_rule(rule.id) == rule
        assert store.active_domains() == {"a.com"}


class TestQueries:
    """Tests for list_rules, active_domains and count_active."""

    def test_list_newest_first(self, store):
        store.add_rule("a.com")
        store.add_rule("b.com")
        assert [r.domain for r in store.list_rules()] == ["b.com", "a.com"]

    def test_list_by_category(self, store):
        store.add_rule("a.com")
        store.add_rule("b.com", category="games")
        assert [r.domain for r in store.list_rules("games")] == ["b.com"]

    def test_inactive_rules_excluded(self, store):
        store.add_rule("a.com")
        store.add_rule("b.com")
        store.set_active("b.com", MANUAL_CATEGORY, False)
        assert store.active_domains() == {"a.com"}
        assert store.count_active() == 1

    def test_to_dict(self, store):
        data = store.add_rule("a.com").to_dict()
        assert data["domain"] == "a.com"
        assert set(data) == {
            "id", "domain", "category", "profile_id", "reason", "created_at", "is_active",
        }


class TestReconcileCategory:
    """Tests for reconcile_category."""

    def test_converges_on_wanted_set(self, store):
        added, removed = store.reconcile_category(FIREBASE_SYNC_CATEGORY, ["a.com", "b.com"])
        assert added == {"a.com", "b.com"}
        assert removed == set()

        added, removed = store.reconcile_category(FIREBASE_SYNC_CATEGORY, ["b.com", "c.com"])
        assert added == {"c.com"}
        assert removed == {"a.com"}
        assert store.active_domains(FIREBASE_SYNC_CATEGORY) == {"b.com", "c.com"}

    def test_other_categories_untouched(self, store):
        store.add_rule("manual.com")
        store.reconcile_category(FIREBASE_SYNC_CATEGORY, ["remote.com"])
        store.reconcile_category(FIREBASE_SYNC_CATEGORY, [])
        assert store.active_domains() == {"manual.com"}

    def test_reactivates_inactive_rows(self, store):
        store.reconcile_category(FIREBASE_SYNC_CATEGORY, ["a.com"])
        store.set_active("a.com", FIREBASE_SYNC_CATEGORY, False)
        added, _ = store.reconcile_category(FIREBASE_SYNC_CATEGORY, ["a.com"])
        assert added == {"a.com"}
        assert store.active_domains() == {"a.com"}

    def test_noop_when_already_converged(self, store):
        store.reconcile_category(FIREBASE_SYNC_CATEGORY, ["a.com"])
        assert store.reconcile_category(FIREBASE_SYNC_CATEGORY, ["www.a.com"]) == (set(), set())


class TestOpen:
    """Tests for opening and migrating databases."""

    def test_memory_database(self):
        store = RuleStore(":memory:")
        store.add_rule("a.com")
        assert store.count_active() == 1
        store.close()

    def test_old_duplicates_are_removed(self, tmp_path):
        path = tmp_path / "old.db"
        conn = sqlite3.connect(path)
        conn.execute(
            "CREATE TABLE block_rules (id INTEGER PRIMARY KEY AUTOINCREMENT, domain TEXT NOT NULL, "
            "category TEXT, profile_id INTEGER DEFAULT 1, reason TEXT, is_active BOOLEAN DEFAULT 1, "
            "created_at DATETIME DEFAULT CURRENT_TIMESTAMP)"
        )
        conn.execute("INSERT INTO block_rules (domain, category) VALUES ('a.com', 'manual')")
        conn.execute("INSERT INTO block_rules (domain, category) VALUES ('a.com', 'manual')")
        conn.commit()
        conn.close()

        store = RuleStore(path)
        rules = store.list_rules()
        store.close()
        assert [r.id for r in rules] == [1]

    def test_unopenable_path_raises(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(RuleStoreError):
            RuleStore(blocker / "sub" / "rules.db")
