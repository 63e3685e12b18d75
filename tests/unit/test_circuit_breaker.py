"""Tests for the file-backed no-progress circuit breaker."""
import json
from datetime import timedelta

import pytest

from conftest import FakeClock
from spec_loop.circuit_breaker import BREAKER_FILENAME, BreakerDecision, CircuitBreaker, format_iso
from spec_loop.models import CircuitState


@pytest.fixture
def clock():
    return FakeClock(step=0)


@pytest.fixture
def breaker_path(tmp_path):
    return tmp_path / BREAKER_FILENAME


def make_breaker(path, clock, threshold=3, cooldown_minutes=30):
    return CircuitBreaker(path, threshold=threshold, cooldown_minutes=cooldown_minutes, clock=clock)


class TestInitialState:

    def test_missing_file_starts_closed(self, breaker_path, clock):
        breaker = make_breaker(breaker_path, clock)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failures == 0
        assert breaker.check().allowed

    def test_corrupt_json_starts_closed(self, breaker_path, clock):
        breaker_path.write_text("{not json", encoding="utf-8")
        breaker = make_breaker(breaker_path, clock)
        assert breaker.state == CircuitState.CLOSED

    def test_unknown_state_value_starts_closed(self, breaker_path, clock):
        breaker_path.write_text(json.dumps({"state": "SIDEWAYS", "failures": 2}), encoding="utf-8")
        breaker = make_breaker(breaker_path, clock)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failures == 0

    def test_for_session_dir(self, tmp_path, clock):
        breaker = CircuitBreaker.for_session_dir(tmp_path, clock=clock)
        assert breaker.path == tmp_path / BREAKER_FILENAME


class TestRecord:

    def test_opens_at_threshold(self, breaker_path, clock):
        breaker = make_breaker(breaker_path, clock)
        assert breaker.record(False) == CircuitState.CLOSED
        assert breaker.record(False) == CircuitState.CLOSED
        assert breaker.record(False) == CircuitState.OPEN
        assert breaker.failures == 3
        assert breaker.opened_at == format_iso(clock.now)

    def test_progress_resets_and_closes(self, breaker_path, clock):
        breaker = make_breaker(breaker_path, clock, threshold=1)
        breaker.record(False)
        assert breaker.state == CircuitState.OPEN

        assert breaker.record(True) == CircuitState.CLOSED
        assert breaker.failures == 0
        assert breaker.opened_at == ""

    def test_persisted_shape(self, breaker_path, clock):
        breaker = make_breaker(breaker_path, clock, threshold=1)
        breaker.record(False, "abc123")

        data = json.loads(breaker_path.read_text(encoding="utf-8"))
        assert data == {
            "state": "OPEN",
            "failures": 1,
            "opened_at": format_iso(clock.now),
            "last_progress_marker": "abc123",
        }

    def test_state_survives_reload(self, breaker_path, clock):
        make_breaker(breaker_path, clock).record(False, "m1")
        reloaded = make_breaker(breaker_path, clock)
        assert reloaded.failures == 1
        assert reloaded.last_progress_marker == "m1"

    def test_half_open_failure_reopens_with_new_timestamp(self, breaker_path, clock):
        breaker = make_breaker(breaker_path, clock, threshold=1, cooldown_minutes=1)
        breaker.record(False)
        first_opened = breaker.opened_at

        clock.advance(minutes=2)
        assert breaker.check().state == CircuitState.HALF_OPEN

        assert breaker.record(False) == CircuitState.OPEN
        assert breaker.opened_at != first_opened

    def test_empty_marker_keeps_previous(self, breaker_path, clock):
        breaker = make_breaker(breaker_path, clock)
        breaker.record(True, "m1")
        breaker.record(True)
        assert breaker.last_progress_marker == "m1"


class TestCheck:

    def test_open_denies_during_cooldown(self, breaker_path, clock):
        breaker = make_breaker(breaker_path, clock, threshold=1, cooldown_minutes=30)
        breaker.record(False)

        clock.advance(minutes=10)
        decision = breaker.check()

        assert not decision.allowed
        assert decision.state == CircuitState.OPEN
        assert decision.remaining_seconds == 20 * 60
        assert decision.remaining_minutes == 20

    def test_cooldown_elapsed_allows_half_open(self, breaker_path, clock):
        breaker = make_breaker(breaker_path, clock, threshold=1, cooldown_minutes=30)
        breaker.record(False)

        clock.advance(minutes=30)
        decision = breaker.check()

        assert decision.allowed
        assert decision.state == CircuitState.HALF_OPEN
        assert make_breaker(breaker_path, clock).state == CircuitState.HALF_OPEN

    def test_open_with_bad_timestamp_self_heals(self, breaker_path, clock):
        breaker_path.write_text(json.dumps({
            "state": "OPEN",
            "failures": 5,
            "opened_at": "yesterday-ish",
            "last_progress_marker": "",
        }), encoding="utf-8")
        breaker = make_breaker(breaker_path, clock)

        decision = breaker.check()

        assert decision.allowed
        assert decision.state == CircuitState.CLOSED
        assert breaker.failures == 0
        assert json.loads(breaker_path.read_text(encoding="utf-8"))["state"] == "CLOSED"

    def test_open_with_missing_timestamp_self_heals(self, breaker_path, clock):
        breaker_path.write_text(json.dumps({"state": "OPEN", "failures": 3}), encoding="utf-8")
        assert make_breaker(breaker_path, clock).check().allowed

    def test_remaining_minutes_rounds_up(self):
        decision = BreakerDecision(allowed=False, state=CircuitState.OPEN, remaining_seconds=61)
        assert decision.remaining_minutes == 2


class TestProgressPolicy:

    def test_no_marker_yet_counts_as_progress(self, breaker_path, clock):
        assert make_breaker(breaker_path, clock).made_progress("abc")

    def test_same_marker_is_no_progress(self, breaker_path, clock):
        breaker = make_breaker(breaker_path, clock)
        breaker.record(True, "abc")
        assert not breaker.made_progress("abc")
        assert breaker.made_progress("def")

    def test_cooldown_compared_in_seconds(self, breaker_path, clock):
        breaker = make_breaker(breaker_path, clock, threshold=1, cooldown_minutes=1)
        breaker.record(False)
        clock.now = clock.now + timedelta(seconds=59)
        assert not breaker.check().allowed
        clock.now = clock.now + timedelta(seconds=1)
        assert breaker.check().allowed
