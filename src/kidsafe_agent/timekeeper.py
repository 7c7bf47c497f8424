"""Screen-time rules: daily limits, allowed hours and mandatory breaks."""

import hashlib
import json
import logging
import subprocess
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .common import get_data_dir, is_windows, read_secure_file, write_secure_file
from .events import ACCESS_STATE_CHANGED, TIME_RULES_CHANGED, EventBus
from .hosts_writer import CommandRunner
from .remote import payload_to_records

FIREWALL_RULE_NAME = "KidSafe Time Block"
USAGE_FILE_NAME = "time_usage.json"
DEFAULT_CHECK_INTERVAL = 30  # seconds

ALL_DAY = ("00:00", "23:59")

logger = logging.getLogger(__name__)


# =============================================================================
# REMOTE TIME RULES
# =============================================================================

def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class TimeRule:
    """A time rule as stored by the companion app."""
    name: str = ""
    active: bool = False
    added_by: str = ""
    rule_type: str = ""
    description: str = ""
    daily_limit_minutes: int = 0
    break_interval_minutes: int = 0
    break_duration_minutes: int = 0
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeRule":
        return cls(
            name=str(data.get("name") or ""),
            active=bool(data.get("active", False)),
            added_by=str(data.get("addedBy") or ""),
            rule_type=str(data.get("ruleType") or ""),
            description=str(data.get("description") or ""),
            daily_limit_minutes=_as_int(data.get("dailyLimitMinutes")),
            break_interval_minutes=_as_int(data.get("breakIntervalMinutes")),
            break_duration_minutes=_as_int(data.get("breakDurationMinutes")),
            created_at=_as_int(data.get("createdAt")),
            updated_at=_as_int(data.get("updatedAt")),
        )


def parse_time_rules(payload: Any) -> Dict[str, TimeRule]:
    return {key: TimeRule.from_dict(value) for key, value in payload_to_records(payload).items()}


def time_rules_fingerprint(rules: Dict[str, TimeRule]) -> str:
    """Stable digest of the fields that affect enforcement."""
    parts = [
        f"{key}:{rule.active}:{rule.daily_limit_minutes}:{rule.break_interval_minutes}:"
        f"{rule.break_duration_minutes}:{rule.updated_at}"
        for key, rule in sorted(rules.items())
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


# =============================================================================
# LOCAL RULE FORMAT
# =============================================================================

@dataclass
class TimeSlot:
    start: str
    end: str


@dataclass
class DayRule:
    enabled: bool = False
    daily_limit_minutes: int = 0
    break_interval_minutes: int = 0
    break_duration_minutes: int = 0
    allowed_slots: List[TimeSlot] = field(default_factory=list)


@dataclass
class TimeRules:
    weekdays: DayRule = field(default_factory=DayRule)
    weekends: DayRule = field(default_factory=DayRule)

    def for_day(self, when: datetime) -> DayRule:
        return self.weekends if when.weekday() >= 5 else self.weekdays


def convert_time_rules(rules: Dict[str, TimeRule]) -> TimeRules:
    """
    Fold the app's active rules into one DayRule applied to every day.

    The most restrictive (largest) limit, interval and duration win. With
    no daily limit the whole day is an allowed slot.
    """
    active = [rule for rule in rules.values() if rule.active]
    if not active:
        return TimeRules()

    day_rule = DayRule(
        enabled=True,
        daily_limit_minutes=max(rule.daily_limit_minutes for rule in active),
        break_interval_minutes=max(rule.break_interval_minutes for rule in active),
        break_duration_minutes=max(rule.break_duration_minutes for rule in active),
    )
    if day_rule.daily_limit_minutes == 0:
        day_rule.allowed_slots = [TimeSlot(*ALL_DAY)]

    logger.info(
        f"Time rules: daily limit={day_rule.daily_limit_minutes} min, "
        f"break every {day_rule.break_interval_minutes} min for {day_rule.break_duration_minutes} min"
    )
    return TimeRules(weekdays=day_rule, weekends=day_rule)


def parse_time(time_str: str) -> time:
    """
    Parse a time string (HH:MM) into a time object.

    Raises:
        ValueError: If time format is invalid
    """
    if not time_str or not isinstance(time_str, str) or ":" not in time_str:
        raise ValueError(f"Invalid time format: {time_str}")
    parts = time_str.split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid time format: {time_str}")
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid time format: {time_str}")
    if not (0 <= hours <= 23) or not (0 <= minutes <= 59):
        raise ValueError(f"Invalid time format: {time_str}")
    return time(hours, minutes)


def is_time_in_range(current: time, start: time, end: time) -> bool:
    """Check a time against a range; handles overnight ranges (e.g., 22:00 - 02:00)."""
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def in_allowed_slot(slots: List[TimeSlot], when: datetime) -> bool:
    if not slots:
        return True  # no slot restriction
    current = when.time().replace(second=0, microsecond=0)
    for slot in slots:
        try:
            if is_time_in_range(current, parse_time(slot.start), parse_time(slot.end)):
                return True
        except ValueError as e:
            logger.warning(f"Ignoring time slot: {e}")
    return False


# =============================================================================
# ACCESS STATE MACHINE
# =============================================================================

class AccessState(Enum):
    ACTIVE = "active"
    ON_BREAK = "on_break"
    BLOCKED = "blocked"


ALLOWED_TRANSITIONS = {
    AccessState.ACTIVE: {AccessState.ON_BREAK, AccessState.BLOCKED},
    AccessState.ON_BREAK: {AccessState.ACTIVE, AccessState.BLOCKED},
    AccessState.BLOCKED: {AccessState.ACTIVE},
}


class AccessStateMachine:
    """Tracks the current access state and when it was entered."""

    def __init__(self, now: datetime) -> None:
        self.state = AccessState.ACTIVE
        self.entered_at = now
        self.reason = ""

    def can_transition(self, target: AccessState) -> bool:
        return target in ALLOWED_TRANSITIONS[self.state]

    def transition(self, target: AccessState, now: datetime, reason: str = "") -> None:
        """
        Move to a new state.

        Raises:
            ValueError: If the transition is not allowed
        """
        if not self.can_transition(target):
            raise ValueError(f"Invalid access transition: {self.state.value} -> {target.value}")
        logger.info(f"Access state {self.state.value} -> {target.value} ({reason})")
        self.state = target
        self.entered_at = now
        self.reason = reason

    @property
    def blocked(self) -> bool:
        return self.state != AccessState.ACTIVE


# =============================================================================
# USAGE TRACKING
# =============================================================================

class UsageTracker:
    """Per-day usage sessions persisted as JSON in the data directory."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or get_data_dir() / USAGE_FILE_NAME
        self.daily: Dict[str, Dict[str, Any]] = {}
        self.session_start: Optional[datetime] = None
        self.load()

    def load(self) -> None:
        content = read_secure_file(self.path)
        if not content:
            return
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt usage file {self.path}: {e}")
            return
        if isinstance(data, dict):
            self.daily = data

    def save(self) -> None:
        try:
            write_secure_file(self.path, json.dumps(self.daily, indent=2))
        except OSError as e:
            logger.warning(f"Failed to save usage data: {e}")

    def start_session(self, now: datetime) -> None:
        if self.session_start is None:
            self.session_start = now

    def end_session(self, now: datetime) -> int:
        """Close the running session; returns its length in whole minutes."""
        if self.session_start is None:
            return 0
        minutes = int((now - self.session_start).total_seconds() // 60)
        day = self.daily.setdefault(
            now.strftime("%Y-%m-%d"),
            {"date": now.strftime("%Y-%m-%d"), "sessions": [], "total_minutes": 0},
        )
        day["sessions"].append({
            "start_time": self.session_start.isoformat(),
            "end_time": now.isoformat(),
            "duration_minutes": minutes,
        })
        day["total_minutes"] += minutes
        self.session_start = None
        self.save()
        return minutes

    def session_minutes(self, now: datetime) -> int:
        if self.session_start is None:
            return 0
        return int((now - self.session_start).total_seconds() // 60)

    def today_minutes(self, now: datetime) -> int:
        """Recorded usage today plus the running session."""
        day = self.daily.get(now.strftime("%Y-%m-%d"), {})
        return int(day.get("total_minutes", 0)) + self.session_minutes(now)


# =============================================================================
# NETWORK ENFORCEMENT
# =============================================================================

class NetworkEnforcer:
    """Cuts or restores web access while the state machine says blocked."""

    def block(self) -> None:
        logger.info("Network block requested (no enforcer on this platform)")

    def unblock(self) -> None:
        logger.info("Network unblock requested (no enforcer on this platform)")


class FirewallEnforcer(NetworkEnforcer):
    """Windows Firewall rules dropping outbound HTTP and HTTPS."""

    def __init__(self, runner: Optional[CommandRunner] = None) -> None:
        self.runner = runner or CommandRunner()

    def _run(self, args: List[str]) -> bool:
        try:
            return self.runner.run(args).returncode == 0
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"netsh failed: {e}")
            return False

    def block(self) -> None:
        self.unblock()
        for label, port in (("HTTP", "80"), ("HTTPS", "443")):
            ok = self._run([
                "netsh", "advfirewall", "firewall", "add", "rule",
                f"name={FIREWALL_RULE_NAME} {label}",
                "dir=out", "action=block", "protocol=TCP", f"remoteport={port}",
            ])
            if not ok:
                logger.error(f"Failed to add firewall rule for {label}")

    def unblock(self) -> None:
        for label in ("HTTP", "HTTPS"):
            # The rule may not exist; failure is expected then
            self._run([
                "netsh", "advfirewall", "firewall", "delete", "rule",
                f"name={FIREWALL_RULE_NAME} {label}",
            ])


def default_enforcer() -> NetworkEnforcer:
    return FirewallEnforcer() if is_windows() else NetworkEnforcer()


# =============================================================================
# TIME KEEPER
# =============================================================================

class TimeKeeper:
    """Evaluates the current DayRule and drives the access state machine."""

    def __init__(
        self,
        usage: Optional[UsageTracker] = None,
        enforcer: Optional[NetworkEnforcer] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.now,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
    ) -> None:
        self.clock = clock
        self.usage = usage or UsageTracker()
        self.enforcer = enforcer or default_enforcer()
        self.events = events
        self.check_interval = check_interval
        self.rules: Optional[TimeRules] = None
        self.remote_rules: Dict[str, TimeRule] = {}
        self._fingerprint = ""
        self._lock = threading.RLock()
        self.machine = AccessStateMachine(self.clock())
        self._thread: Optional[threading.Thread] = None

    # -------------------------------------------------------------------------
    # RULE UPDATES
    # -------------------------------------------------------------------------

    def handle_remote_rules(self, path: str, records: Dict[str, Any]) -> bool:
        """Poller handler: apply the app's time rules when they changed."""
        rules = {
            key: value if isinstance(value, TimeRule) else TimeRule.from_dict(value)
            for key, value in records.items()
        }
        fingerprint = time_rules_fingerprint(rules)
        with self._lock:
            if fingerprint == self._fingerprint:
                return False
            self._fingerprint = fingerprint
            self.remote_rules = rules
        logger.info(f"Time rules changed at {path}: {len(rules)} rules")
        self.update_rules(convert_time_rules(rules))
        if self.events is not None:
            self.events.publish(
                TIME_RULES_CHANGED,
                path=path,
                rules=len(rules),
                active=sum(1 for r in rules.values() if r.active),
            )
        return True

    def update_rules(self, rules: TimeRules) -> None:
        with self._lock:
            self.rules = rules
        self.check()

    # -------------------------------------------------------------------------
    # EVALUATION
    # -------------------------------------------------------------------------

    def evaluate(self, now: datetime) -> tuple[AccessState, str]:
        """Decide the state the rules require right now; caller holds the lock."""
        current = self.machine.state
        if self.rules is None:
            return AccessState.ACTIVE, "No time rules"

        rule = self.rules.for_day(now)
        if not rule.enabled:
            return AccessState.ACTIVE, "Time rules disabled for today"

        if not in_allowed_slot(rule.allowed_slots, now):
            return AccessState.BLOCKED, "Outside allowed hours"

        used = self.usage.today_minutes(now)
        if rule.daily_limit_minutes and used >= rule.daily_limit_minutes:
            return AccessState.BLOCKED, (
                f"Daily limit of {rule.daily_limit_minutes} min reached ({used} min used)"
            )

        if rule.break_interval_minutes and rule.break_duration_minutes:
            if current == AccessState.ON_BREAK:
                if now - self.machine.entered_at < timedelta(minutes=rule.break_duration_minutes):
                    return AccessState.ON_BREAK, "Mandatory break in progress"
                return AccessState.ACTIVE, "Break finished"
            if (current == AccessState.ACTIVE
                    and self.usage.session_minutes(now) >= rule.break_interval_minutes):
                return AccessState.ON_BREAK, f"Mandatory {rule.break_duration_minutes} min break"

        return AccessState.ACTIVE, "Within allowed time"

    def check(self) -> AccessState:
        """Evaluate the rules once and enforce any state change."""
        now = self.clock()
        with self._lock:
            target, reason = self.evaluate(now)
            previous = self.machine.state
            if target == previous:
                return previous
            if not self.machine.can_transition(target):
                # BLOCKED -> ON_BREAK: stay blocked until access is allowed again
                return previous

            self.machine.transition(target, now, reason)
            if target == AccessState.ACTIVE:
                self.enforcer.unblock()
                self.usage.start_session(now)
            elif previous == AccessState.ACTIVE:
                self.usage.end_session(now)
                self.enforcer.block()

        if self.events is not None:
            self.events.publish(
                ACCESS_STATE_CHANGED,
                state=target.value,
                previous=previous.value,
                blocked=target != AccessState.ACTIVE,
                reason=reason,
            )
        return target

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    def run(self, stop_event: threading.Event) -> None:
        logger.info("Time keeper started")
        self.usage.start_session(self.clock())
        while not stop_event.is_set():
            try:
                self.check()
            except Exception as e:
                logger.error(f"Time rule check failed: {e}", exc_info=True)
            stop_event.wait(self.check_interval)

    def start(self, stop_event: threading.Event) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run, args=(stop_event,), name="time-keeper", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        """End the running session and lift any network block."""
        now = self.clock()
        with self._lock:
            self.usage.end_session(now)
            if self.machine.blocked:
                self.enforcer.unblock()
                self.machine.transition(AccessState.ACTIVE, now, "Agent stopping")
        if self._thread is not None:
            self._thread.join(timeout=5)
        logger.info("Time keeper stopped")

    def status(self) -> Dict[str, Any]:
        now = self.clock()
        with self._lock:
            status: Dict[str, Any] = {
                "state": self.machine.state.value,
                "reason": self.machine.reason,
                "is_blocked": self.machine.blocked,
                "is_break_time": self.machine.state == AccessState.ON_BREAK,
                "today_usage": self.usage.today_minutes(now),
                "has_rules": self.rules is not None,
                "remote_rules": len(self.remote_rules),
                "active_remote_rules": sum(1 for r in self.remote_rules.values() if r.active),
            }
            if self.rules is not None:
                rule = self.rules.for_day(now)
                status["current_rule"] = asdict(rule)
                status["daily_limit"] = rule.daily_limit_minutes
            if self.usage.session_start is not None:
                status["session_duration"] = self.usage.session_minutes(now)
        return status
