"""Tests for the adaptive poller and its backoff policy."""

import threading
from unittest.mock import MagicMock

import pytest

from kidsafe_agent.exceptions import RemoteStoreError
from kidsafe_agent.poller import AdaptivePoller, BackoffPolicy


def identity_parse(payload):
    return payload or {}


class TestBackoffPolicy:
    """Tests for BackoffPolicy."""

    def test_stays_at_base_during_grace(self):
        policy = BackoffPolicy()
        for _ in range(5):
            assert policy.on_quiet() == 2.0

    def test_grows_after_grace_and_caps(self):
        policy = BackoffPolicy()
        for _ in range(5):
            policy.on_quiet()
        assert policy.on_quiet() == pytest.approx(2.4)
        assert policy.on_quiet() == pytest.approx(2.88)
        for _ in range(50):
            policy.on_quiet()
        assert policy.interval == 30.0

    def test_change_resets(self):
        policy = BackoffPolicy()
        for _ in range(20):
            policy.on_quiet()
        assert policy.on_change() == 2.0
        assert policy.quiet_cycles == 0

    @pytest.mark.parametrize("kwargs", [
        {"base_interval": 0},
        {"base_interval": 10, "max_interval": 5},
        {"factor": 0.5},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            BackoffPolicy(**kwargs)


class TestAdaptivePoller:
    """Tests for AdaptivePoller."""

    def make_poller(self, data, handle=None):
        def fetch(path):
            value = data.get(path)
            if isinstance(value, Exception):
                raise value
            return value

        return AdaptivePoller(
            "test",
            ["first", "second", "third"],
            fetch=fetch,
            parse=identity_parse,
            handle=handle or MagicMock(return_value=True),
        )

    def test_first_path_with_data_wins(self):
        handle = MagicMock(return_value=True)
        poller = self.make_poller({"second": {"k": 1}, "third": {"k": 2}}, handle)

        assert poller.run_cycle() is True
        handle.assert_called_once_with("second", {"k": 1})
        assert poller.preferred_path == "second"

    def test_preferred_path_probed_first(self):
        poller = self.make_poller({})
        poller.preferred_path = "third"
        assert poller.ordered_paths() == ["third", "first", "second"]

    def test_errors_skip_to_next_path(self):
        handle = MagicMock(return_value=True)
        poller = self.make_poller({"first": RemoteStoreError("HTTP 401"), "third": {"k": 1}}, handle)

        poller.run_cycle()

        handle.assert_called_once_with("third", {"k": 1})
        assert poller.last_error == "HTTP 401"

    def test_no_data_does_not_call_handler(self):
        handle = MagicMock()
        poller = self.make_poller({"first": RemoteStoreError("down")}, handle)

        assert poller.run_cycle() is False
        handle.assert_not_called()
        assert poller.policy.quiet_cycles == 1

    def test_unchanged_data_counts_as_quiet(self):
        poller = self.make_poller({"first": {"k": 1}}, MagicMock(return_value=False))
        poller.run_cycle()
        assert poller.policy.quiet_cycles == 1

    def test_run_stops_on_event(self):
        stop = threading.Event()
        calls = []

        def handle(path, records):
            calls.append(path)
            stop.set()
            return True

        poller = AdaptivePoller(
            "test", ["p"], fetch=lambda p: {"k": 1}, parse=identity_parse,
            handle=handle, stop_event=stop,
        )
        thread = poller.start()
        thread.join(5)

        assert not thread.is_alive()
        assert calls == ["p"]

    def test_run_survives_unexpected_errors(self):
        stop = threading.Event()
        attempts = []

        def fetch(path):
            attempts.append(path)
            if len(attempts) >= 2:
                stop.set()
            raise ValueError("bad payload")

        poller = AdaptivePoller(
            "test", ["p"], fetch=fetch, parse=identity_parse, handle=MagicMock(),
            policy=BackoffPolicy(base_interval=0.01, max_interval=0.01), stop_event=stop,
        )
        poller.run()

        assert len(attempts) == 2
        assert poller.last_error == "bad payload"
