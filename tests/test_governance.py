"""
Governance Tests
================

INVARIANTS TESTED:
1. At most one holder owns the governance lock; contention fails fast
2. Expiry is the only recovery from an abandoned lock
3. Bulk operations are dry runs unless confirmed and go through the lifecycle
4. Alerts are edge-triggered: one per breach episode, resolved when it clears
5. dashboard() and check_alerts() agree on the same health snapshot
6. Every session holds the lock under its own token, even for one actor name
7. Bulk items that stop qualifying before the session are skipped
8. Alert delivery goes to digest mode under fatigue and back once it clears
"""

import threading
from datetime import timedelta

import pytest

from constraint_memory.contracts.base import (
    AdoptionPhase, AlertStatus, ConcurrentModificationError, ConstraintState,
    InvalidInputError, InvalidTransitionError, NotFoundError
)
from constraint_memory.contracts.events import EventType
from constraint_memory.contracts.models import GovernanceAlert, GovernanceLock
from constraint_memory.governance import (
    ALERT_MODE_DIGEST, ALERT_MODE_PER_EVENT, ALERT_STATE_KEY, LOCK_KEY,
    METRIC_DORMANCY, METRIC_FALSE_POSITIVE, METRIC_TRIP_FREQUENCY,
    GovernanceConfig, GovernanceLockManager, adoption_phase, assess_alert_fatigue,
    violation_trend, weekly_violations
)
from constraint_memory.storage import InMemoryStateStore

from tests.fixtures import EPOCH, FORCE_PUSH_ID, FORCE_PUSH_SLUG, make_engine, seed_active_constraint


class TakeoverAfterRead(InMemoryStateStore):
    """Lets another holder write the lock right after the next lock read."""

    def __init__(self, clock):
        super().__init__(clock=clock)
        self.takeover = None

    def get(self, key):
        data = super().get(key)
        if key == LOCK_KEY and self.takeover is not None:
            takeover, self.takeover = self.takeover, None
            super().put(LOCK_KEY, takeover.to_dict())
        return data


# =============================================================================
# LOCK
# =============================================================================

class TestGovernanceLock:

    def test_acquire_and_contention(self, store, clock):
        locks = GovernanceLockManager(store, clock)
        lock = locks.acquire("alice")

        assert locks.current().holder_id == "alice"
        assert lock.expires_at == clock.now() + timedelta(seconds=300)
        with pytest.raises(ConcurrentModificationError) as exc_info:
            locks.acquire("bob")
        assert "alice" in exc_info.value.message

    def test_reacquire_renews(self, store, clock):
        locks = GovernanceLockManager(store, clock)
        first = locks.acquire("alice")
        clock.advance(seconds=100)
        again = locks.acquire("alice")

        assert again.acquired_at == first.acquired_at
        assert again.expires_at == first.expires_at + timedelta(seconds=100)

    def test_heartbeat_and_release_require_ownership(self, store, clock):
        locks = GovernanceLockManager(store, clock)
        locks.acquire("alice")
        with pytest.raises(NotFoundError):
            locks.heartbeat("bob")
        with pytest.raises(NotFoundError):
            locks.release("bob")

        locks.release("alice")
        assert locks.current() is None
        with pytest.raises(NotFoundError):
            locks.release("alice")

    def test_heartbeat_extends(self, store, clock):
        locks = GovernanceLockManager(store, clock)
        lock = locks.acquire("alice")
        assert not locks.needs_heartbeat(lock)

        clock.advance(seconds=61)
        assert locks.needs_heartbeat(lock)
        renewed = locks.heartbeat("alice")
        assert renewed.expires_at == clock.now() + timedelta(seconds=300)

    def test_expired_lock_taken_over(self, store, clock):
        locks = GovernanceLockManager(store, clock)
        locks.acquire("alice")
        clock.advance(seconds=301)

        assert locks.current() is None
        assert locks.acquire("bob").holder_id == "bob"
        assert locks.release_if_held("alice") is False

    def test_stale_release_keeps_new_holder(self, clock):
        store = TakeoverAfterRead(clock)
        locks = GovernanceLockManager(store, clock)
        locks.acquire("alice")
        clock.advance(seconds=301)
        # bob takes the expired lock between alice's read and her delete
        store.takeover = GovernanceLock("bob", clock.now(), clock.now() + timedelta(seconds=300))

        assert locks.release_if_held("alice") is False
        assert locks.current().holder_id == "bob"

    def test_release_after_takeover_raises(self, clock):
        store = TakeoverAfterRead(clock)
        locks = GovernanceLockManager(store, clock)
        locks.acquire("alice")
        store.takeover = GovernanceLock("bob", clock.now(), clock.now() + timedelta(seconds=300))

        with pytest.raises(NotFoundError):
            locks.release("alice")
        assert locks.current().holder_id == "bob"

    def test_single_winner_across_threads(self, store, clock):
        # One manager per thread: exclusion has to come from the store
        barrier = threading.Barrier(8)
        winners, losers = [], []

        def contend(n):
            locks = GovernanceLockManager(store, clock)
            barrier.wait()
            try:
                locks.acquire(f"worker-{n}")
                winners.append(n)
            except ConcurrentModificationError:
                losers.append(n)

        threads = [threading.Thread(target=contend, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1
        assert len(losers) == 7


class TestSessions:

    def test_nested_session_same_holder(self, engine):
        coordinator = engine.coordinator
        with coordinator.session("alice") as outer:
            assert outer.holder_id.startswith("alice:")
            with coordinator.session("alice") as inner:
                assert inner.holder_id == outer.holder_id
            assert coordinator.current_lock().holder_id == outer.holder_id
        assert coordinator.current_lock() is None
        assert coordinator.session_holder() is None

    def test_each_session_gets_its_own_holder(self, engine):
        holders = []
        for _ in range(2):
            with engine.coordinator.session("alice") as lock:
                holders.append(lock.holder_id)
        assert holders[0] != holders[1]

    def test_same_actor_on_two_engines_is_excluded(self, clock, store):
        first = make_engine(clock=clock, store=store)
        second = make_engine(clock=clock, store=store)
        seed_active_constraint(first)

        with first.coordinator.session("agent"):
            with pytest.raises(ConcurrentModificationError):
                second.evaluate_action(FORCE_PUSH_ID, "push-1", violates=True, actor="agent")
            # Nested mutation on the engine holding the session still works
            verdict = first.evaluate_action(FORCE_PUSH_ID, "push-2", violates=True, actor="agent")

        assert verdict.outcome == "BLOCK"
        assert [v.action_ref for v in first.circuit(FORCE_PUSH_ID).violations] == ["push-2"]
        assert second.evaluate_action(FORCE_PUSH_ID, "push-3", violates=True, actor="agent").outcome == "BLOCK"

    def test_audit_names_actor_not_session_holder(self, engine):
        seed_active_constraint(engine)
        actors = {e.actor for e in engine.get_constraint(FORCE_PUSH_ID).audit_log}
        assert actors == {engine.config.system_actor, "maintainer"}

    def test_mutation_fails_fast_while_locked(self, engine):
        engine.record_evidence("Agent skipped the test suite", "a.log:1", "s1", "alice", slug="skipped-tests")
        engine.coordinator.acquire("maintenance")

        with pytest.raises(ConcurrentModificationError):
            engine.confirm("skipped-tests", "bob")
        assert engine.get_observation("skipped-tests").c_count == 0

        engine.coordinator.release("maintenance")
        assert engine.confirm("skipped-tests", "bob").c_count == 1

    def test_lock_released_after_error(self, engine):
        with pytest.raises(NotFoundError):
            engine.confirm("missing", "bob")
        assert engine.coordinator.current_lock() is None


# =============================================================================
# BULK OPERATIONS
# =============================================================================

class TestBulkRetire:

    def test_dry_run_changes_nothing(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        result = engine.bulk_retire("janitor")

        assert result.dry_run
        assert result.matched == (FORCE_PUSH_ID,)
        assert result.committed == ()
        assert engine.get_constraint(FORCE_PUSH_ID).state == ConstraintState.ACTIVE

    def test_confirmed_run_goes_through_lifecycle(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        result = engine.bulk_retire("janitor", confirm=True)

        assert result.committed == (FORCE_PUSH_ID,)
        assert result.failed == ()
        retired = engine.get_constraint(FORCE_PUSH_ID)
        assert retired.state == ConstraintState.RETIRED
        assert [e.action for e in retired.audit_log][-2:] == ['retire', 'complete_retire']
        assert "dormant" in retired.audit_log[-1].reason
        assert engine.breaker.find(FORCE_PUSH_ID) is None
        assert engine.coordinator.current_lock() is None

    def test_recent_violation_not_dormant(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        engine.evaluate_action(FORCE_PUSH_ID, "push-1", violates=True, actor="agent")
        engine.clock.advance(days=1)

        assert engine.bulk_retire("janitor").matched == ()

    def test_young_constraint_not_dormant(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=30)
        assert engine.bulk_retire("janitor").matched == ()
        assert engine.bulk_retire("janitor", dormant_days=20).matched == (FORCE_PUSH_ID,)

    def test_violation_after_scan_skips_item(self, engine, monkeypatch):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        scanned = list(engine.bulk_retire("janitor").matched)
        # A writer lands a violation between the scan and the bulk session
        engine.evaluate_action(FORCE_PUSH_ID, "push-1", violates=True, actor="agent")
        monkeypatch.setattr(engine.coordinator, "dormant_constraints", lambda dormant_days=None: scanned)

        result = engine.bulk_retire("janitor", confirm=True)

        assert result.matched == (FORCE_PUSH_ID,)
        assert result.skipped == (FORCE_PUSH_ID,)
        assert result.committed == ()
        assert result.to_dict()['skipped'] == [FORCE_PUSH_ID]
        assert engine.get_constraint(FORCE_PUSH_ID).state == ConstraintState.ACTIVE


class TestArchiveObservations:

    def test_stale_observations_archived(self, engine):
        engine.record_evidence("Agent skipped the test suite", "a.log:1", "s1", "alice", slug="stale-one")
        engine.clock.advance(days=40)
        engine.record_evidence("Agent edited the lockfile by hand", "b.log:1", "s2", "bob", slug="fresh-one")

        dry = engine.archive_observations("janitor", older_than_days=30)
        assert dry.dry_run and dry.matched == ("stale-one",)
        assert len(engine.observations()) == 2

        done = engine.archive_observations("janitor", older_than_days=30, confirm=True)
        assert done.committed == ("stale-one",)
        assert [o.slug for o in engine.observations()] == ["fresh-one"]

        restored = engine.restore_observation("stale-one", "janitor")
        assert restored.slug == "stale-one"
        assert len(engine.events.get_events(EventType.OBSERVATION_RESTORED)) == 1

    def test_observation_touched_after_scan_skipped(self, engine, monkeypatch):
        engine.record_evidence("Agent skipped the test suite", "a.log:1", "s1", "alice", slug="stale-one")
        engine.clock.advance(days=40)
        scanned = engine.coordinator.stale_observations(30)
        engine.record_evidence("Agent skipped the test suite", "b.log:7", "s2", "bob", slug="stale-one")
        monkeypatch.setattr(engine.coordinator, "stale_observations", lambda older_than_days: scanned)

        result = engine.archive_observations("janitor", older_than_days=30, confirm=True)

        assert (result.matched, result.skipped, result.committed) == (("stale-one",), ("stale-one",), ())
        assert [o.slug for o in engine.observations()] == ["stale-one"]

    def test_observation_with_live_constraint_kept(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=40)
        assert engine.archive_observations("janitor", older_than_days=30).matched == ()

    def test_observation_with_retired_constraint_archivable(self, engine):
        seed_active_constraint(engine)
        engine.emergency_retire(FORCE_PUSH_ID, "maintainer", reason="obsolete")
        engine.clock.advance(days=40)
        assert engine.archive_observations("janitor", older_than_days=30).matched == (FORCE_PUSH_SLUG,)


# =============================================================================
# ALERTS
# =============================================================================

class TestAlerts:

    def test_dormancy_alert_is_edge_triggered(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)

        (alert,) = engine.check_alerts()
        assert alert.metric == METRIC_DORMANCY
        assert alert.constraint_id == FORCE_PUSH_ID
        assert alert.status == AlertStatus.OPEN
        assert engine.check_alerts() == []
        assert len(engine.alerts(AlertStatus.OPEN)) == 1

        name = f"governance-alert-{engine.clock.now().date().isoformat()}-dormancy-{FORCE_PUSH_ID}"
        assert engine.store.get(f"{name}.json")['alert_id'] == alert.alert_id
        assert engine.store.get_text(f"{name}.md").startswith("# Governance Alert: dormancy")

    def test_alert_resolves_when_breach_clears(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        (alert,) = engine.check_alerts()

        engine.evaluate_action(FORCE_PUSH_ID, "push-1", violates=True, actor="agent")
        assert engine.check_alerts() == []

        (resolved,) = engine.alerts(AlertStatus.RESOLVED)
        assert resolved.alert_id == alert.alert_id
        assert resolved.resolved_at == engine.clock.now()
        assert len(engine.events.get_events(EventType.ALERT_RESOLVED)) == 1

    def test_repeat_breach_gets_new_file(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        engine.check_alerts()
        engine.evaluate_action(FORCE_PUSH_ID, "push-1", violates=True, actor="agent")
        engine.check_alerts()
        # Same day again: only a short dormancy period can breach
        engine.clock.set(engine.clock.now().replace(hour=23))
        engine.config.governance.dormant_days = 0.5

        (again,) = engine.check_alerts()
        base = f"governance-alert-{engine.clock.now().date().isoformat()}-dormancy-{FORCE_PUSH_ID}"
        assert engine.store.exists(f"{base}-2.json")
        assert again.alert_id != engine.alerts(AlertStatus.RESOLVED)[0].alert_id

    def test_acknowledge(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        (alert,) = engine.check_alerts()

        acked = engine.acknowledge_alert(alert.alert_id, "oncall")
        assert acked.status == AlertStatus.ACKNOWLEDGED
        assert [a['status'] for a in engine.dashboard()['alerts']] == ["acknowledged"]
        # Still the same episode: no new alert
        assert engine.check_alerts() == []

    def test_acknowledge_resolved_rejected(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        (alert,) = engine.check_alerts()
        engine.evaluate_action(FORCE_PUSH_ID, "push-1", violates=True, actor="agent")
        engine.check_alerts()

        with pytest.raises(InvalidTransitionError):
            engine.acknowledge_alert(alert.alert_id, "oncall")
        with pytest.raises(NotFoundError):
            engine.acknowledge_alert("alert-missing", "oncall")

    def test_false_positive_rate_above_baseline(self, engine):
        seed_active_constraint(engine)
        assert engine.check_alerts() == []

        engine.disconfirm(FORCE_PUSH_SLUG, "carol")
        (alert,) = engine.check_alerts()

        assert alert.metric == METRIC_FALSE_POSITIVE
        assert alert.current_value == pytest.approx(0.3333, abs=1e-4)
        assert FORCE_PUSH_ID in engine.dashboard()['high_false_positive']

    def test_false_positive_rate_at_baseline_is_quiet(self, engine):
        seed_active_constraint(engine)
        engine.disconfirm(FORCE_PUSH_SLUG, "carol")
        # First check records the current rate as the baseline
        assert engine.check_alerts() == []
        assert engine.check_alerts() == []

    def test_trip_frequency(self, engine):
        seed_active_constraint(engine)
        engine.configure_circuit(FORCE_PUSH_ID, "oncall", threshold=1, cooldown_hours=1)
        for n in range(4):
            engine.evaluate_action(FORCE_PUSH_ID, f"push-{n}", violates=True, actor="agent")
            engine.clock.advance(hours=2)

        assert len(engine.circuit(FORCE_PUSH_ID).trips) == 4
        metrics = [a.metric for a in engine.check_alerts()]
        assert metrics == [METRIC_TRIP_FREQUENCY]


def backlog_alert(n, created_at, status=AlertStatus.OPEN, acknowledged_at=None, resolved_at=None):
    return GovernanceAlert(
        alert_id=f"alert-backlog-{n}",
        metric=METRIC_DORMANCY,
        current_value=91.0,
        threshold=90.0,
        constraint_id=f"cst-backlog-{n}",
        created_at=created_at,
        status=status,
        acknowledged_at=acknowledged_at,
        resolved_at=resolved_at,
    )


def closed_after(n, closed_at, days):
    return backlog_alert(n, closed_at - timedelta(days=days), AlertStatus.ACKNOWLEDGED, acknowledged_at=closed_at)


class TestAlertFatigue:

    NOW = EPOCH + timedelta(days=60)

    def test_slow_time_to_close(self):
        fatigue = assess_alert_fatigue([closed_after(1, self.NOW - timedelta(days=1), 11)], self.NOW, GovernanceConfig())

        assert fatigue.time_to_close_days == pytest.approx(11.0)
        assert fatigue.fatigued
        assert fatigue.mode == ALERT_MODE_DIGEST
        assert "time-to-close" in fatigue.reasons[0]

    def test_open_backlog(self):
        config = GovernanceConfig()
        ten = [backlog_alert(n, self.NOW) for n in range(10)]

        assert not assess_alert_fatigue(ten, self.NOW, config).fatigued
        eleven = assess_alert_fatigue(ten + [backlog_alert(10, self.NOW)], self.NOW, config)
        assert eleven.open_alerts == 11
        assert eleven.reasons == ("11 open alerts above 10",)

    def test_rising_for_three_weeks(self):
        alerts = [
            closed_after(1, self.NOW - timedelta(days=20), 1),
            closed_after(2, self.NOW - timedelta(days=10), 2),
            closed_after(3, self.NOW - timedelta(days=2), 3),
        ]
        fatigue = assess_alert_fatigue(alerts, self.NOW, GovernanceConfig())

        assert fatigue.weekly_time_to_close == (1.0, 2.0, 3.0)
        assert fatigue.time_to_close_days == pytest.approx(2.0)
        assert fatigue.reasons == ("time-to-close rising for 3 weeks",)

    @pytest.mark.parametrize("durations", [(3, 3, 2), (1, 3, 3), (4, 2, 3)])
    def test_not_rising(self, durations):
        alerts = [
            closed_after(n, self.NOW - timedelta(days=days_ago), duration)
            for n, (days_ago, duration) in enumerate(zip((20, 10, 2), durations))
        ]
        fatigue = assess_alert_fatigue(alerts, self.NOW, GovernanceConfig())
        assert not fatigue.fatigued
        assert fatigue.mode == ALERT_MODE_PER_EVENT

    def test_quiet_week_breaks_the_streak(self):
        alerts = [
            closed_after(1, self.NOW - timedelta(days=20), 1),
            closed_after(2, self.NOW - timedelta(days=2), 3),
        ]
        fatigue = assess_alert_fatigue(alerts, self.NOW, GovernanceConfig())
        assert fatigue.weekly_time_to_close == (1.0, None, 3.0)
        assert not fatigue.fatigued

    def test_acknowledgement_closes_before_resolution(self):
        created = self.NOW - timedelta(days=10)
        alert = backlog_alert(1, created, AlertStatus.RESOLVED,
                              acknowledged_at=created + timedelta(days=1), resolved_at=self.NOW)
        assert assess_alert_fatigue([alert], self.NOW, GovernanceConfig()).time_to_close_days == pytest.approx(1.0)

    def test_old_closures_ignored(self):
        alerts = [closed_after(1, self.NOW - timedelta(days=30), 20)]
        fatigue = assess_alert_fatigue(alerts, self.NOW, GovernanceConfig())
        assert fatigue.time_to_close_days == 0.0
        assert not fatigue.fatigued


class TestAlertDeliveryMode:

    def seed_backlog(self, engine, count=11):
        created = engine.clock.now() - timedelta(hours=1)
        backlog = [backlog_alert(n, created) for n in range(count)]
        engine.store.put(ALERT_STATE_KEY, {'alerts': {a.alert_id: a.to_dict() for a in backlog}})
        return backlog

    def test_backlog_switches_to_digest(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        self.seed_backlog(engine)

        (alert,) = engine.check_alerts()

        today = engine.clock.now().date().isoformat()
        assert alert.metric == METRIC_DORMANCY
        assert not engine.store.exists(f"governance-alert-{today}-dormancy-{FORCE_PUSH_ID}.json")
        digest = engine.store.get(f"governance-alert-digest-{today}.json")
        assert [a['alert_id'] for a in digest['alerts']] == [alert.alert_id]
        assert digest['mode'] == ALERT_MODE_DIGEST
        assert engine.store.get_text(f"governance-alert-digest-{today}.md").startswith("# Governance Alert Digest")

        mode = engine.dashboard()['alert_mode']
        assert mode['mode'] == ALERT_MODE_DIGEST
        assert "open alerts" in mode['reason']
        (changed,) = engine.events.get_events(EventType.ALERT_MODE_CHANGED)
        assert changed.detail('mode') == ALERT_MODE_DIGEST

    def test_recovers_to_per_event(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        backlog = self.seed_backlog(engine)
        engine.check_alerts()

        for alert in backlog:
            engine.acknowledge_alert(alert.alert_id, "oncall")
        engine.disconfirm(FORCE_PUSH_SLUG, "carol")
        (alert,) = engine.check_alerts()

        today = engine.clock.now().date().isoformat()
        assert alert.metric == METRIC_FALSE_POSITIVE
        assert engine.store.exists(f"governance-alert-{today}-{METRIC_FALSE_POSITIVE}-{FORCE_PUSH_ID}.json")
        assert engine.dashboard()['alert_mode']['mode'] == ALERT_MODE_PER_EVENT
        assert engine.dashboard()['alert_fatigue']['open_alerts'] == 2
        modes = [e.detail('mode') for e in engine.events.get_events(EventType.ALERT_MODE_CHANGED)]
        assert modes == [ALERT_MODE_DIGEST, ALERT_MODE_PER_EVENT]

    def test_acknowledge_records_time(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        (alert,) = engine.check_alerts()
        engine.clock.advance(hours=5)

        acked = engine.acknowledge_alert(alert.alert_id, "oncall")
        assert acked.acknowledged_at == engine.clock.now()
        assert engine.dashboard()['alert_fatigue']['time_to_close_days'] == pytest.approx(5 / 24, abs=0.01)


# =============================================================================
# DASHBOARD
# =============================================================================

class TestDashboard:

    def test_fields(self, engine):
        seed_active_constraint(engine)
        data = engine.dashboard()

        assert data['distribution'] == {
            'draft': 0, 'active': 1, 'retiring': 0, 'retired': 0, 'deleted': 0
        }
        assert data['observation_count'] == 1
        assert data['pending_candidates'] == []
        assert data['adoption_phases']['LEARNING'] == 1
        assert sorted(t['action'] for t in data['recent_transitions']) == ['activate', 'create']
        (health,) = data['constraints']
        assert health['constraint_id'] == FORCE_PUSH_ID
        assert health['circuit_state'] == "CLOSED"
        assert data['alerts'] == []

    def test_review_due(self, engine):
        seed_active_constraint(engine)
        engine.clock.advance(days=91)
        assert engine.dashboard()['due_for_review'] == [FORCE_PUSH_ID]

        engine.mark_reviewed(FORCE_PUSH_ID, "maintainer", note="still needed")
        assert engine.dashboard()['due_for_review'] == []

    def test_retirement_suggestion(self, engine):
        seed_active_constraint(engine)
        for user in ("carol", "dave", "erin"):
            engine.disconfirm(FORCE_PUSH_SLUG, user)
        assert engine.dashboard()['retirement_suggestions'] == [FORCE_PUSH_ID]

    def test_reads_take_no_lock(self, engine):
        seed_active_constraint(engine)
        engine.coordinator.acquire("maintenance")
        assert engine.dashboard()['distribution']['active'] == 1
        assert engine.compute_health().by_id(FORCE_PUSH_ID) is not None


class TestAdoptionTrend:

    def test_weekly_buckets(self, clock):
        now = clock.now()
        stamps = [now - timedelta(days=1), now - timedelta(days=2), now - timedelta(days=8),
                  now - timedelta(days=35)]
        assert weekly_violations(stamps, now) == [0, 0, 1, 2]

    @pytest.mark.parametrize("weekly,trend", [
        ([0, 0, 5, 10], "increasing"),
        ([0, 0, 10, 5], "decreasing"),
        ([0, 0, 10, 11], "stable"),
        ([0, 0, 0, 0], "stable"),
    ])
    def test_trend(self, weekly, trend):
        assert violation_trend(weekly) == trend

    @pytest.mark.parametrize("age,trend,phase", [
        (3, "increasing", AdoptionPhase.LEARNING),
        (14, "decreasing", AdoptionPhase.STABILIZING),
        (14, "stable", AdoptionPhase.PROBLEMATIC),
        (30, "stable", AdoptionPhase.MATURE),
        (30, "decreasing", AdoptionPhase.MATURE),
        (30, "increasing", AdoptionPhase.PROBLEMATIC),
    ])
    def test_phase(self, age, trend, phase):
        assert adoption_phase(age, trend, GovernanceConfig()) == phase


class TestMergeKeepsHealthLinked:

    def test_duplicate_folds_into_constraint_source(self, engine):
        seed_active_constraint(engine)
        engine.record_evidence("Agent rewrote main history", "d.log:3", "s9", "carol", slug="history-rewrite")
        for user in ("carol", "dave", "erin"):
            engine.disconfirm("history-rewrite", user)

        with pytest.raises(InvalidInputError):
            engine.merge_observations(FORCE_PUSH_SLUG, "history-rewrite", "maintainer")

        engine.merge_observations("history-rewrite", FORCE_PUSH_SLUG, "maintainer")
        constraint = engine.get_constraint(FORCE_PUSH_ID)
        assert engine.get_observation(constraint.source_observation_id).d_count == 3

        health = engine.compute_health().by_id(FORCE_PUSH_ID)
        assert (health.c_count, health.d_count) == (2, 3)
        assert health.suggest_retirement
        assert engine.dashboard()['retirement_suggestions'] == [FORCE_PUSH_ID]
