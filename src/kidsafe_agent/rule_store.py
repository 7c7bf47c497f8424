"""SQLite-backed local store of block rules from every origin."""

import logging
import os
import sqlite3
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from .common import DEFAULT_PROFILE_ID
from .exceptions import RuleStoreError
from .normalizer import normalize_all, normalize_domain, require_domain

MANUAL_CATEGORY = "manual"

SCHEMA = [
    """CREATE TABLE IF NOT EXISTS profiles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT,
        is_active BOOLEAN DEFAULT 1,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )""",
    """CREATE TABLE IF NOT EXISTS block_rules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        domain TEXT NOT NULL,
        category TEXT,
        profile_id INTEGER DEFAULT 1,
        reason TEXT,
        is_active BOOLEAN DEFAULT 1,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (profile_id) REFERENCES profiles(id)
    )""",
    # Older databases may hold duplicates; keep the oldest row of each pair
    """DELETE FROM block_rules WHERE id NOT IN (
        SELECT MIN(id) FROM block_rules GROUP BY domain, category
    )""",
    """CREATE UNIQUE INDEX IF NOT EXISTS block_rules_domain_category_idx
        ON block_rules(domain, category)""",
    """INSERT OR IGNORE INTO profiles (id, name, description)
        VALUES (1, 'Default', 'Default profile')""",
]

RULE_COLUMNS = "id, domain, category, profile_id, reason, created_at, is_active"

logger = logging.getLogger(__name__)


@dataclass
class BlockRule:
    """A single row of the block_rules table."""
    id: int
    domain: str
    category: str
    profile_id: int
    reason: str
    created_at: str
    is_active: bool

    @classmethod
    def from_row(cls, row: tuple) -> "BlockRule":
        return cls(
            id=row[0],
            domain=row[1],
            category=row[2] or "",
            profile_id=row[3] if row[3] is not None else DEFAULT_PROFILE_ID,
            reason=row[4] or "",
            created_at=str(row[5] or ""),
            is_active=bool(row[6]),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RuleStore:
    """
    Durable block rules keyed by (domain, category).

    All access goes through one connection guarded by an RLock, so the
    store can be shared between the sync threads and CLI or API callers.
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        """
        Open (and if needed create) the rule database.

        Args:
            db_path: SQLite file path, or ':memory:'

        Raises:
            RuleStoreError: If the database cannot be opened or migrated
        """
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        try:
            self._conn = self._connect()
        except (sqlite3.Error, OSError) as e:
            raise RuleStoreError(f"Failed to open rule database {self.db_path}: {e}")

    def _connect(self) -> sqlite3.Connection:
        if self.db_path != ":memory:":
            directory = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(directory, exist_ok=True)

        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        for statement in SCHEMA:
            conn.execute(statement)
        conn.commit()
        return conn

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise RuleStoreError(f"Rule store query failed: {e}")

    # -------------------------------------------------------------------------
    # SINGLE RULES
    # -------------------------------------------------------------------------

    def add_rule(
        self,
        raw_domain: str,
        category: str = MANUAL_CATEGORY,
        reason: str = "",
        profile_id: int = DEFAULT_PROFILE_ID,
    ) -> BlockRule:
        """
        Insert a rule, or reactivate the existing one for the same domain and category.

        Raises:
            DomainValidationError: If the domain is unusable
            RuleStoreError: On database errors
        """
        domain = require_domain(raw_domain)
        category = category or MANUAL_CATEGORY
        with self._lock:
            self._execute(
                "INSERT INTO block_rules (domain, category, profile_id, reason, is_active) "
                "VALUES (?, ?, ?, ?, 1) "
                "ON CONFLICT(domain, category) DO UPDATE SET is_active = 1, reason = excluded.reason",
                (domain, category, profile_id, reason),
            )
            self._conn.commit()
            row = self._execute(
                f"SELECT {RULE_COLUMNS} FROM block_rules WHERE domain = ? AND category = ?",
                (domain, category),
            ).fetchone()
        logger.debug(f"Stored rule {domain} ({category})")
        return BlockRule.from_row(row)

    def find_rule(self, raw_domain: str, category: str = MANUAL_CATEGORY) -> Optional[BlockRule]:
        """Look up the rule for a (domain, category) pair."""
        domain = normalize_domain(raw_domain)
        with self._lock:
            row = self._execute(
                f"SELECT {RULE_COLUMNS} FROM block_rules WHERE domain = ? AND category = ?",
                (domain, category or MANUAL_CATEGORY),
            ).fetchone()
        return BlockRule.from_row(row) if row else None

    def restore_rule(self, rule: BlockRule) -> None:
        """
        Put a rule back exactly as it was, id and timestamp included.

        Used to undo an add or delete whose hosts file write failed.
        """
        with self._lock:
            self._execute(
                "INSERT OR REPLACE INTO block_rules "
                "(id, domain, category, profile_id, reason, created_at, is_active) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    rule.id, rule.domain, rule.category, rule.profile_id,
                    rule.reason, rule.created_at, 1 if rule.is_active else 0,
                ),
            )
            self._conn.commit()
        logger.debug(f"Restored rule {rule.id} ({rule.domain})")

    def get_rule(self, rule_id: int) -> Optional[BlockRule]:
        with self._lock:
            row = self._execute(
                f"SELECT {RULE_COLUMNS} FROM block_rules WHERE id = ?", (rule_id,)
            ).fetchone()
        return BlockRule.from_row(row) if row else None

    def delete_rule(self, rule_id: int) -> Optional[BlockRule]:
        """
        Delete a rule by id.

        Returns:
            The deleted rule, or None if no rule had that id
        """
        with self._lock:
            rule = self.get_rule(rule_id)
            if rule is None:
                return None
            self._execute("DELETE FROM block_rules WHERE id = ?", (rule_id,))
            self._conn.commit()
        return rule

    def set_active(self, raw_domain: str, category: str, active: bool) -> bool:
        """Update the active flag of one (domain, category) row; False if no row matched."""
        domain = normalize_domain(raw_domain)
        with self._lock:
            cursor = self._execute(
                "UPDATE block_rules SET is_active = ? WHERE domain = ? AND category = ?",
                (1 if active else 0, domain, category),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    def list_rules(self, category: Optional[str] = None) -> list[BlockRule]:
        """List rules, newest first, optionally for one category."""
        sql = f"SELECT {RULE_COLUMNS} FROM block_rules"
        params: tuple = ()
        if category is not None:
            sql += " WHERE category = ?"
            params = (category,)
        sql += " ORDER BY created_at DESC, id DESC"
        with self._lock:
            rows = self._execute(sql, params).fetchall()
        return [BlockRule.from_row(row) for row in rows]

    def active_domains(self, category: Optional[str] = None) -> set[str]:
        """Normalized domains of all active rows, deduplicated across categories."""
        sql = "SELECT domain FROM block_rules WHERE is_active = 1"
        params: tuple = ()
        if category is not None:
            sql += " AND category = ?"
            params = (category,)
        with self._lock:
            rows = self._execute(sql, params).fetchall()
        return normalize_all(row[0] for row in rows)

    def count_active(self) -> int:
        with self._lock:
            return self._execute(
                "SELECT COUNT(*) FROM block_rules WHERE is_active = 1"
            ).fetchone()[0]

    # -------------------------------------------------------------------------
    # CATEGORY RECONCILIATION
    # -------------------------------------------------------------------------

    def reconcile_category(
        self,
        category: str,
        domains: Iterable[str],
        reason: str = "",
        profile_id: int = DEFAULT_PROFILE_ID,
    ) -> tuple[set[str], set[str]]:
        """
        Make the active rows of a category match a domain set exactly.

        Missing domains are inserted, inactive ones reactivated and rows
        whose domain is not in the set are deleted. Other categories are
        never touched. Runs in a single transaction.

        Returns:
            (added, removed) domain sets

        Raises:
            RuleStoreError: On database errors; nothing is changed in that case
        """
        wanted = normalize_all(domains)
        with self._lock:
            try:
                rows = self._conn.execute(
                    "SELECT id, domain, is_active FROM block_rules WHERE category = ?",
                    (category,),
                ).fetchall()
                existing = {row[1]: (row[0], bool(row[2])) for row in rows}

                removed = set()
                for domain, (rule_id, _active) in existing.items():
                    if domain not in wanted:
                        self._conn.execute("DELETE FROM block_rules WHERE id = ?", (rule_id,))
                        removed.add(domain)

                added = set()
                for domain in sorted(wanted):
                    if domain not in existing:
                        self._conn.execute(
                            "INSERT INTO block_rules (domain, category, profile_id, reason, is_active) "
                            "VALUES (?, ?, ?, ?, 1)",
                            (domain, category, profile_id, reason),
                        )
                        added.add(domain)
                    elif not existing[domain][1]:
                        self._conn.execute(
                            "UPDATE block_rules SET is_active = 1 WHERE id = ?",
                            (existing[domain][0],),
                        )
                        added.add(domain)
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise RuleStoreError(f"Failed to reconcile category {category}: {e}")

        if added or removed:
            logger.info(f"Rule store category '{category}': +{len(added)} -{len(removed)}")
        return added, removed
