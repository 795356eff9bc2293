"""
Circuit Breaker Tests
=====================

INVARIANTS TESTED:
1. threshold violations inside the window trip the circuit; fewer do not
2. Identical action refs inside the dedup window count once
3. Violations outside the window are pruned and never count
4. OPEN -> HALF_OPEN only after cooldown; the probe decides CLOSED or OPEN
5. Manual reset requires a reason and is audited
6. State survives a restart unchanged (timestamps, not counters)
"""

from datetime import timedelta

import pytest

from constraint_memory.circuit import CircuitBreaker, CircuitConfig
from constraint_memory.circuit.breaker import CIRCUIT_KEY
from constraint_memory.clock import ManualClock
from constraint_memory.contracts.base import (
    CircuitStatus, InvalidInputError, NotFoundError, ReasonRequiredError,
    ThresholdBlockedError
)
from constraint_memory.contracts.events import EventType
from constraint_memory.observability import EventCollector
from constraint_memory.storage import FileStateStore

from tests.fixtures import EPOCH, FORCE_PUSH_ID


def make_breaker(store, clock, collector=None, audit=None, **config):
    return CircuitBreaker(
        store, clock, CircuitConfig(**config),
        audit_sink=(lambda cid, entry: audit.append((cid, entry))) if audit is not None else None,
        on_event=collector or EventCollector(),
    )


def record_many(breaker, clock, count, prefix="push", spacing=timedelta(minutes=1)):
    state = None
    for n in range(count):
        state = breaker.record(FORCE_PUSH_ID, f"{prefix}-{n}")
        clock.advance(spacing)
    return state


def tripped_breaker(store, clock, collector=None, audit=None):
    breaker = make_breaker(store, clock, collector, audit)
    breaker.ensure(FORCE_PUSH_ID)
    record_many(breaker, clock, 5)
    return breaker


# =============================================================================
# TRIPPING
# =============================================================================

class TestTrip:

    def test_below_threshold_stays_closed(self, store, clock):
        breaker = make_breaker(store, clock)
        breaker.ensure(FORCE_PUSH_ID)
        state = record_many(breaker, clock, 4)

        assert state.state == CircuitStatus.CLOSED
        assert len(state.violations) == 4
        assert breaker.check(FORCE_PUSH_ID).allowed

    def test_threshold_trips_open(self, store, clock):
        collector = EventCollector()
        breaker = make_breaker(store, clock, collector)
        breaker.ensure(FORCE_PUSH_ID)
        record_many(breaker, clock, 4)
        tripped_at = clock.now()
        state = breaker.record(FORCE_PUSH_ID, "push-final")

        assert state.state == CircuitStatus.OPEN
        assert state.tripped_at == tripped_at
        assert state.cooldown_until == tripped_at + timedelta(hours=24)
        assert state.trips == (tripped_at,)
        assert len(collector.get_events(EventType.CIRCUIT_TRIPPED)) == 1

    def test_unknown_constraint(self, store, clock):
        breaker = make_breaker(store, clock)
        with pytest.raises(NotFoundError):
            breaker.record("cst-missing", "push-1")
        with pytest.raises(NotFoundError):
            breaker.check("cst-missing")

    def test_ensure_is_idempotent(self, store, clock):
        breaker = make_breaker(store, clock)
        breaker.ensure(FORCE_PUSH_ID)
        breaker.record(FORCE_PUSH_ID, "push-1")
        assert len(breaker.ensure(FORCE_PUSH_ID).violations) == 1


class TestDedup:

    def test_same_ref_inside_window_counts_once(self, store, clock):
        collector = EventCollector()
        breaker = make_breaker(store, clock, collector)
        breaker.ensure(FORCE_PUSH_ID)
        breaker.record(FORCE_PUSH_ID, "push-1")
        clock.advance(minutes=2)
        state = breaker.record(FORCE_PUSH_ID, "push-1")

        assert len(state.violations) == 1
        assert len(collector.get_events(EventType.VIOLATION_DEDUPLICATED)) == 1

    def test_same_ref_after_window_counts_again(self, store, clock):
        breaker = make_breaker(store, clock)
        breaker.ensure(FORCE_PUSH_ID)
        breaker.record(FORCE_PUSH_ID, "push-1")
        clock.advance(minutes=10)
        assert len(breaker.record(FORCE_PUSH_ID, "push-1").violations) == 2

    def test_repeated_ref_cannot_trip(self, store, clock):
        breaker = make_breaker(store, clock)
        breaker.ensure(FORCE_PUSH_ID)
        for _ in range(10):
            state = breaker.record(FORCE_PUSH_ID, "push-1")
            clock.advance(seconds=20)
        assert state.state == CircuitStatus.CLOSED


class TestWindow:

    def test_old_violations_pruned(self, store, clock):
        breaker = make_breaker(store, clock)
        breaker.ensure(FORCE_PUSH_ID)
        record_many(breaker, clock, 4)
        clock.advance(days=31)
        state = breaker.record(FORCE_PUSH_ID, "push-late")

        assert state.state == CircuitStatus.CLOSED
        assert [v.action_ref for v in state.violations] == ["push-late"]

    def test_violations_in_window(self, store, clock):
        breaker = make_breaker(store, clock, window_days=1)
        breaker.ensure(FORCE_PUSH_ID)
        record_many(breaker, clock, 3)
        clock.advance(hours=23)
        state = breaker.get(FORCE_PUSH_ID)
        assert len(breaker.violations_in_window(state, clock.now())) == 3
        clock.advance(hours=2)
        assert breaker.violations_in_window(state, clock.now()) == []


# =============================================================================
# COOLDOWN AND PROBE
# =============================================================================

class TestCooldown:

    def test_blocked_during_cooldown(self, store, clock):
        breaker = tripped_breaker(store, clock)
        clock.advance(hours=1)
        result = breaker.check(FORCE_PUSH_ID)

        assert not result.allowed
        assert result.state == CircuitStatus.OPEN
        assert 0 < result.cooldown_remaining < 24 * 3600

    def test_guard_raises_with_hint(self, store, clock):
        breaker = tripped_breaker(store, clock)
        with pytest.raises(ThresholdBlockedError) as exc_info:
            breaker.guard(FORCE_PUSH_ID)
        error = exc_info.value
        assert error.constraint_id == FORCE_PUSH_ID
        assert error.cooldown_remaining_seconds > 0
        assert "override" in error.override_hint

    def test_half_open_after_cooldown(self, store, clock):
        collector = EventCollector()
        breaker = tripped_breaker(store, clock, collector)
        clock.advance(hours=24)
        result = breaker.check(FORCE_PUSH_ID)

        assert result.allowed
        assert result.state == CircuitStatus.HALF_OPEN
        assert breaker.get(FORCE_PUSH_ID).state == CircuitStatus.HALF_OPEN
        assert len(collector.get_events(EventType.CIRCUIT_HALF_OPEN)) == 1

    def test_probe_success_closes(self, store, clock):
        breaker = tripped_breaker(store, clock)
        clock.advance(hours=24)
        breaker.check(FORCE_PUSH_ID)
        state = breaker.record_success(FORCE_PUSH_ID)

        assert state.state == CircuitStatus.CLOSED
        assert state.violations == ()
        assert state.cooldown_until is None

    def test_probe_violation_reopens(self, store, clock):
        breaker = tripped_breaker(store, clock)
        clock.advance(hours=24)
        breaker.check(FORCE_PUSH_ID)
        state = breaker.record(FORCE_PUSH_ID, "push-probe")

        assert state.state == CircuitStatus.OPEN
        assert state.cooldown_until == clock.now() + timedelta(hours=24)
        assert len(state.trips) == 2
        assert breaker.trips_within(state, 30, clock.now()) == 2

    def test_success_while_closed_is_noop(self, store, clock):
        breaker = make_breaker(store, clock)
        breaker.ensure(FORCE_PUSH_ID)
        breaker.record(FORCE_PUSH_ID, "push-1")
        assert len(breaker.record_success(FORCE_PUSH_ID).violations) == 1


# =============================================================================
# HUMAN CONTROLS
# =============================================================================

class TestReset:

    @pytest.mark.parametrize("reason", [None, "", "  "])
    def test_reason_required(self, store, clock, reason):
        breaker = make_breaker(store, clock)
        breaker.ensure(FORCE_PUSH_ID)
        with pytest.raises(ReasonRequiredError):
            breaker.reset(FORCE_PUSH_ID, "oncall", reason)

    def test_reset_closes_and_audits(self, store, clock):
        audit = []
        breaker = tripped_breaker(store, clock, audit=audit)
        state = breaker.reset(FORCE_PUSH_ID, "oncall", "fixed the deploy script")

        assert state.state == CircuitStatus.CLOSED
        assert state.violations == ()
        assert state.last_reset_at == clock.now()
        assert len(state.trips) == 1

        (cid, entry), = audit
        assert cid == FORCE_PUSH_ID
        assert (entry.actor, entry.action, entry.from_state, entry.to_state) == (
            "oncall", "circuit_reset", "OPEN", "CLOSED"
        )
        assert entry.reason == "fixed the deploy script"


class TestConfigure:

    def test_per_constraint_threshold(self, store, clock):
        breaker = make_breaker(store, clock)
        breaker.ensure(FORCE_PUSH_ID)
        breaker.configure(FORCE_PUSH_ID, threshold=2, cooldown_hours=1)
        state = record_many(breaker, clock, 2)

        assert state.state == CircuitStatus.OPEN
        assert state.cooldown_until == state.tripped_at + timedelta(hours=1)
        assert breaker.settings(FORCE_PUSH_ID).threshold == 2
        assert breaker.settings("cst-other").threshold == 5

    def test_unknown_setting_rejected(self, store, clock):
        breaker = make_breaker(store, clock)
        breaker.ensure(FORCE_PUSH_ID)
        with pytest.raises(InvalidInputError):
            breaker.configure(FORCE_PUSH_ID, color=3)

    @pytest.mark.parametrize("value", [0, -1])
    def test_non_positive_rejected(self, store, clock, value):
        breaker = make_breaker(store, clock)
        breaker.ensure(FORCE_PUSH_ID)
        with pytest.raises(InvalidInputError):
            breaker.configure(FORCE_PUSH_ID, threshold=value)


# =============================================================================
# PERSISTENCE
# =============================================================================

class TestPersistence:

    def test_archive_keeps_history(self, store, clock):
        breaker = make_breaker(store, clock)
        breaker.ensure(FORCE_PUSH_ID)
        record_many(breaker, clock, 3)
        breaker.archive(FORCE_PUSH_ID, "retired")

        assert breaker.find(FORCE_PUSH_ID) is None
        (record,) = breaker.archived(FORCE_PUSH_ID)[FORCE_PUSH_ID]
        assert record['reason'] == "retired"
        assert len(record['circuit']['violations']) == 3
        assert breaker.archive(FORCE_PUSH_ID) is None

    def test_corrupt_file_quarantined(self, store, clock, caplog):
        collector = EventCollector()
        breaker = make_breaker(store, clock, collector)
        store.write_raw_for_testing(CIRCUIT_KEY, "{not json")

        assert breaker.all() == {}
        assert store.get_text(CIRCUIT_KEY) is None
        preserved = f"{CIRCUIT_KEY}.corrupt-20260101T000000"
        assert store.get_text(preserved) == "{not json"
        recovered = collector.get_events(EventType.CIRCUIT_STATE_RECOVERED)
        assert [e.detail('preserved_as') for e in recovered] == [preserved]
        assert "unreadable" in caplog.text

        breaker.ensure(FORCE_PUSH_ID)
        assert breaker.get(FORCE_PUSH_ID).state == CircuitStatus.CLOSED

    def test_restart_preserves_state(self, tmp_path):
        clock = ManualClock(EPOCH)
        breaker = make_breaker(FileStateStore(str(tmp_path), clock), clock)
        breaker.ensure(FORCE_PUSH_ID)
        before = record_many(breaker, clock, 5)

        # New process: fresh store and breaker over the same directory
        restarted = make_breaker(FileStateStore(str(tmp_path), clock), clock)
        after = restarted.get(FORCE_PUSH_ID)

        assert after == before
        assert not restarted.check(FORCE_PUSH_ID).allowed
        clock.advance(hours=24)
        assert restarted.check(FORCE_PUSH_ID).state == CircuitStatus.HALF_OPEN
