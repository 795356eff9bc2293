"""
Governance Coordinator
======================

Serializes writers, runs bulk state operations and raises health alerts.

GUARANTEES:
===========
1. Every bulk item is its own atomic unit: a cancelled run leaves only
   already-committed transitions applied
2. Bulk operations are dry-run unless confirm=True
3. Alerts are edge-triggered: one alert per breach episode, resolved when
   the breach clears
4. While alerts pile up unhandled, new alerts go into one digest file per
   check instead of one file each; per-event delivery resumes once the
   backlog clears
5. dashboard() and check_alerts() read the same compute_health() snapshot
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Tuple
import logging
import threading
import uuid

from ..circuit import CircuitBreaker
from ..clock import Clock, SystemClock
from ..contracts.base import (
    AlertStatus, ConstraintMemoryError, ConstraintState, InvalidTransitionError,
    NotFoundError, require_text, short_hash, to_iso
)
from ..contracts.events import DomainEvent, EventSink, EventType, discard_event
from ..contracts.models import GovernanceAlert, GovernanceLock, Observation
from ..lifecycle import ConstraintLifecycle
from ..observation import DEFAULT_POLICY, EligibilityPolicy, ObservationAggregator, is_eligible
from ..storage import StateStore
from .health import (
    ALERT_MODE_DIGEST, ALERT_MODE_PER_EVENT, METRIC_DORMANCY, METRIC_FALSE_POSITIVE,
    METRIC_TRIP_FREQUENCY, AlertFatigue, Breach, GovernanceConfig, HealthReport,
    assess_alert_fatigue, assess_constraint, recent_transitions
)
from .lock import GovernanceLockManager, LockConfig

logger = logging.getLogger(__name__)

ALERT_STATE_KEY = ".governance-alert-state.json"

_METRIC_DESCRIPTIONS = {
    METRIC_DORMANCY: "Constraint has been enforced with no violations for the dormancy period. "
                     "Consider retiring it (bulk_retire).",
    METRIC_FALSE_POSITIVE: "Disconfirmation ratio is at or above the threshold and rising. "
                           "Review the constraint scope or retire it.",
    METRIC_TRIP_FREQUENCY: "Circuit breaker tripped more often than allowed in the window. "
                           "The constraint may be too broad.",
}


@dataclass(frozen=True)
class BulkResult:
    """Outcome of a bulk operation; committed/failed are empty for a dry run."""
    operation: str
    dry_run: bool
    matched: Tuple[str, ...]
    committed: Tuple[str, ...] = field(default_factory=tuple)
    failed: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    # Matched by the scan but no longer eligible once the lock was held
    skipped: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            'operation': self.operation,
            'dry_run': self.dry_run,
            'matched': list(self.matched),
            'committed': list(self.committed),
            'failed': [{'id': item_id, 'error': error} for item_id, error in self.failed],
            'skipped': list(self.skipped),
        }


class GovernanceCoordinator:
    """
    Governance over the constraint memory.

    Reads (compute_health, dashboard, alerts) never take the lock.
    """

    def __init__(
        self,
        store: StateStore,
        lifecycle: ConstraintLifecycle,
        aggregator: ObservationAggregator,
        breaker: CircuitBreaker,
        clock: Optional[Clock] = None,
        config: Optional[GovernanceConfig] = None,
        policy: Optional[EligibilityPolicy] = None,
        on_event: EventSink = discard_event
    ):
        self._store = store
        self._lifecycle = lifecycle
        self._aggregator = aggregator
        self._breaker = breaker
        self._clock = clock or SystemClock()
        self._config = config or GovernanceConfig()
        self._policy = policy or DEFAULT_POLICY
        self._on_event = on_event
        self._locks = GovernanceLockManager(
            store,
            clock=self._clock,
            config=LockConfig(
                ttl_seconds=self._config.lock_ttl_seconds,
                heartbeat_interval_seconds=self._config.heartbeat_interval_seconds,
            ),
            on_event=on_event,
        )
        self._local = threading.local()

    @property
    def config(self) -> GovernanceConfig:
        return self._config

    # =========================================================================
    # LOCKING
    # =========================================================================

    def acquire(self, holder_id: str) -> GovernanceLock:
        return self._locks.acquire(holder_id)

    def heartbeat(self, holder_id: str) -> GovernanceLock:
        return self._locks.heartbeat(holder_id)

    def release(self, holder_id: str) -> None:
        self._locks.release(holder_id)

    def current_lock(self) -> Optional[GovernanceLock]:
        return self._locks.current()

    @contextmanager
    def session(self, actor: str) -> Iterator[GovernanceLock]:
        """
        Hold the governance lock for one mutation.

        The lock holder is a per-session token "<actor>:<hex>", so two
        writers acting under the same name still exclude each other.
        A session opened inside another on the same thread reuses the
        outer token, renews the lock and leaves the release to the outer one.
        """
        actor = require_text(actor, "actor")
        outer = getattr(self._local, 'holder_id', None)
        if outer is not None:
            yield self._locks.acquire(outer)
            return

        holder_id = f"{actor}:{uuid.uuid4().hex}"
        lock = self._locks.acquire(holder_id)
        self._local.holder_id = holder_id
        try:
            yield lock
        finally:
            self._local.holder_id = None
            if not self._locks.release_if_held(holder_id):
                logger.warning("Governance lock for %s expired before release", holder_id)

    def session_holder(self) -> Optional[str]:
        """Holder token of the session open on this thread, if any."""
        return getattr(self._local, 'holder_id', None)

    # =========================================================================
    # HEALTH
    # =========================================================================

    def compute_health(self) -> HealthReport:
        now = self._clock.now()
        constraints = sorted(self._lifecycle.all(), key=lambda c: c.id)
        observations = {o.slug: o for o in self._aggregator.all()}
        circuits = self._breaker.all()
        baselines = self._alert_state().get('baselines', {})

        healths = tuple(
            assess_constraint(
                c,
                observations.get(c.source_observation_id),
                circuits.get(c.id),
                now,
                self._config,
                baselines.get(c.id),
            )
            for c in constraints
        )
        distribution = {s.value: 0 for s in ConstraintState}
        for c in constraints:
            distribution[c.state.value] += 1
        pending = tuple(sorted(
            slug for slug, o in observations.items()
            if o.constraint_id is None and is_eligible(o, self._policy)
        ))
        return HealthReport(
            generated_at=now,
            constraints=healths,
            distribution=distribution,
            recent_transitions=recent_transitions(constraints, now, self._config.recent_transition_days),
            pending_candidates=pending,
            observation_count=len(observations),
        )

    def dashboard(self) -> dict:
        report = self.compute_health()
        data = report.to_dict()
        data['alerts'] = [a.to_dict() for a in self.alerts(AlertStatus.OPEN) + self.alerts(AlertStatus.ACKNOWLEDGED)]
        data['alert_mode'] = self.alert_mode()
        data['alert_fatigue'] = self.alert_fatigue().to_dict()
        return data

    # =========================================================================
    # ALERTING (edge-triggered)
    # =========================================================================

    def _alert_state(self) -> dict:
        state = self._store.get(ALERT_STATE_KEY) or {}
        state.setdefault('baselines', {})
        state.setdefault('open', {})
        state.setdefault('alerts', {})
        state.setdefault('mode', {'mode': ALERT_MODE_PER_EVENT, 'reason': None, 'switched_at': None})
        return state

    def alert_mode(self) -> dict:
        """Current delivery mode: per-event or digest, with why and since when."""
        return dict(self._alert_state()['mode'])

    def alert_fatigue(self) -> AlertFatigue:
        return assess_alert_fatigue(self.alerts(), self._clock.now(), self._config)

    def alerts(self, status: Optional[AlertStatus] = None) -> List[GovernanceAlert]:
        records = [GovernanceAlert.from_dict(a) for a in self._alert_state()['alerts'].values()]
        if status is not None:
            records = [a for a in records if a.status == status]
        return sorted(records, key=lambda a: (a.created_at, a.alert_id))

    def check_alerts(self) -> List[GovernanceAlert]:
        """
        Compare current breaches with open episodes.

        Breaches that cleared resolve their alert, then the delivery mode
        is re-evaluated from the alert backlog, then new breaches raise
        exactly one alert each. Returns the newly raised alerts.
        """
        report = self.compute_health()
        now = report.generated_at
        state = self._alert_state()

        for health in report.constraints:
            if health.state.is_enforced and health.constraint_id not in state['baselines']:
                state['baselines'][health.constraint_id] = health.false_positive_rate

        breached = {f"{b.metric}:{b.constraint_id}": b for b in report.breaches}
        raised = []

        for episode, alert_id in sorted(state['open'].items()):
            if episode in breached:
                continue
            resolved = replace(
                GovernanceAlert.from_dict(state['alerts'][alert_id]),
                status=AlertStatus.RESOLVED,
                resolved_at=now,
            )
            state['alerts'][alert_id] = resolved.to_dict()
            del state['open'][episode]
            logger.info("Alert %s resolved (%s)", alert_id, episode)
            self._emit(EventType.ALERT_RESOLVED, now, resolved.constraint_id,
                       alert_id=alert_id, metric=resolved.metric)

        digest = self._update_mode(state, now) == ALERT_MODE_DIGEST

        for episode, breach in sorted(breached.items()):
            if episode in state['open']:
                continue
            alert = self._raise(breach, now, write_files=not digest)
            state['open'][episode] = alert.alert_id
            state['alerts'][alert.alert_id] = alert.to_dict()
            raised.append(alert)

        if digest and raised:
            self._write_digest(raised, state['mode'], now)
        self._store.put(ALERT_STATE_KEY, state)
        return raised

    def _update_mode(self, state: dict, now: datetime) -> str:
        alerts = [GovernanceAlert.from_dict(a) for a in state['alerts'].values()]
        fatigue = assess_alert_fatigue(alerts, now, self._config)
        current = state['mode']['mode']
        if fatigue.mode == current:
            return current

        reason = "; ".join(fatigue.reasons) or "alert backlog recovered"
        state['mode'] = {'mode': fatigue.mode, 'reason': reason, 'switched_at': to_iso(now)}
        if fatigue.fatigued:
            logger.warning("Alert fatigue (%s): switching to digest alerts", reason)
        else:
            logger.info("Alert backlog recovered: switching to per-event alerts")
        self._emit(EventType.ALERT_MODE_CHANGED, now, ALERT_STATE_KEY,
                   mode=fatigue.mode, previous=current, reason=reason)
        return fatigue.mode

    def _raise(self, breach: Breach, now: datetime, write_files: bool = True) -> GovernanceAlert:
        alert = GovernanceAlert(
            alert_id=f"alert-{short_hash(f'{breach.metric}|{breach.constraint_id}|{to_iso(now)}')}",
            metric=breach.metric,
            current_value=breach.current_value,
            threshold=breach.threshold,
            constraint_id=breach.constraint_id,
            created_at=now,
        )
        if write_files:
            name = self._unused_name(f"governance-alert-{now.date().isoformat()}-{breach.metric}-{breach.constraint_id}")
            self._store.put(f"{name}.json", alert.to_dict())
            self._store.put_text(f"{name}.md", render_alert_markdown(alert))

        logger.warning(
            "Governance alert %s: %s=%s (threshold %s) for %s",
            alert.alert_id, alert.metric, alert.current_value, alert.threshold, alert.constraint_id
        )
        self._emit(EventType.ALERT_RAISED, now, alert.constraint_id,
                   alert_id=alert.alert_id, metric=alert.metric)
        return alert

    def _write_digest(self, alerts: List[GovernanceAlert], mode: dict, now: datetime) -> None:
        name = self._unused_name(f"governance-alert-digest-{now.date().isoformat()}")
        self._store.put(f"{name}.json", {
            'generated_at': to_iso(now),
            'mode': mode['mode'],
            'reason': mode['reason'],
            'alerts': [a.to_dict() for a in alerts],
        })
        self._store.put_text(f"{name}.md", render_digest_markdown(alerts, mode, now))
        logger.info("Governance alert digest %s: %d alert(s)", name, len(alerts))

    def _unused_name(self, base: str) -> str:
        name, n = base, 2
        while self._store.exists(f"{name}.json"):
            name = f"{base}-{n}"
            n += 1
        return name

    def acknowledge_alert(self, alert_id: str, actor: str) -> GovernanceAlert:
        actor = require_text(actor, "actor")
        state = self._alert_state()
        data = state['alerts'].get(alert_id)
        if data is None:
            raise NotFoundError(f"Alert not found: {alert_id}", context=(("alert_id", alert_id),))
        alert = GovernanceAlert.from_dict(data)
        if alert.status == AlertStatus.RESOLVED:
            raise InvalidTransitionError(
                f"Alert {alert_id} is already resolved",
                allowed=(),
                context=(("alert_id", alert_id),)
            )
        alert = replace(alert, status=AlertStatus.ACKNOWLEDGED, acknowledged_at=self._clock.now())
        state['alerts'][alert_id] = alert.to_dict()
        self._store.put(ALERT_STATE_KEY, state)
        logger.info("Alert %s acknowledged by %s", alert_id, actor)
        return alert

    # =========================================================================
    # BULK OPERATIONS
    # =========================================================================

    def dormant_constraints(self, dormant_days: Optional[float] = None) -> List[str]:
        days = self._config.dormant_days if dormant_days is None else dormant_days
        report = self.compute_health()
        return [h.constraint_id for h in report.constraints if _is_dormant(h, report.generated_at, days)]

    def is_dormant(self, constraint_id: str, dormant_days: Optional[float] = None) -> bool:
        days = self._config.dormant_days if dormant_days is None else dormant_days
        report = self.compute_health()
        health = report.by_id(constraint_id)
        return health is not None and _is_dormant(health, report.generated_at, days)

    def bulk_retire(self, actor: str, dormant_days: Optional[float] = None, confirm: bool = False) -> BulkResult:
        """
        Retire dormant constraints through the normal lifecycle.

        active -> retiring -> retired; retiring -> retired. Dry run unless
        confirm=True.
        """
        actor = require_text(actor, "actor")
        matched = tuple(self.dormant_constraints(dormant_days))
        if not confirm:
            logger.info("bulk_retire dry run: %d constraint(s) would be retired", len(matched))
            return BulkResult(operation="bulk_retire", dry_run=True, matched=matched)

        reason = f"dormant for {dormant_days or self._config.dormant_days:g} days (bulk retire)"

        def retire(constraint_id: str) -> None:
            if self._lifecycle.get(constraint_id).state == ConstraintState.ACTIVE:
                self._lifecycle.retire(constraint_id, actor, reason)
            self._lifecycle.complete_retire(constraint_id, actor, reason)

        return self._run_bulk(
            "bulk_retire", actor, matched, retire,
            still_matches=lambda constraint_id: self.is_dormant(constraint_id, dormant_days),
        )

    def stale_observations(self, older_than_days: float) -> List[str]:
        cutoff = self._clock.now() - timedelta(days=older_than_days)
        return sorted(o.slug for o in self._aggregator.all() if self._is_stale(o, cutoff))

    def _still_stale(self, slug: str, older_than_days: float) -> bool:
        try:
            observation = self._aggregator.get(slug)
        except NotFoundError:
            return False
        return self._is_stale(observation, self._clock.now() - timedelta(days=older_than_days))

    def _is_stale(self, observation: Observation, cutoff: datetime) -> bool:
        if observation.updated_at > cutoff:
            return False
        if observation.constraint_id is not None:
            constraint = self._lifecycle.find(observation.constraint_id)
            if constraint is not None and not constraint.state.is_terminal:
                return False
        return True

    def archive_observations(self, older_than_days: float, actor: str, confirm: bool = False) -> BulkResult:
        """Soft-delete observations untouched for `older_than_days` with no live constraint."""
        actor = require_text(actor, "actor")
        matched = tuple(self.stale_observations(older_than_days))
        if not confirm:
            logger.info("archive_observations dry run: %d observation(s) would be archived", len(matched))
            return BulkResult(operation="archive_observations", dry_run=True, matched=matched)
        return self._run_bulk(
            "archive_observations", actor, matched,
            lambda slug: self._aggregator.archive(slug, actor),
            still_matches=lambda slug: self._still_stale(slug, older_than_days),
        )

    def restore_observation(self, slug: str, actor: str) -> Observation:
        actor = require_text(actor, "actor")
        with self.session(actor):
            return self._aggregator.restore(slug, actor)

    def _run_bulk(self, operation: str, actor: str, matched: Tuple[str, ...], apply, still_matches) -> BulkResult:
        """
        Apply `apply` to each matched item under one governance session.

        The scan ran before the lock was held, so each item is checked again
        with `still_matches` and skipped if a writer changed it meanwhile.
        """
        committed: List[str] = []
        failed: List[Tuple[str, str]] = []
        skipped: List[str] = []
        with self.session(actor) as lock:
            for item_id in matched:
                if not still_matches(item_id):
                    logger.info("%s: %s no longer matches, skipped", operation, item_id)
                    skipped.append(item_id)
                    continue
                try:
                    apply(item_id)
                    committed.append(item_id)
                except ConstraintMemoryError as exc:
                    logger.warning("%s: %s failed: %s", operation, item_id, exc.message)
                    failed.append((item_id, exc.message))
                self._locks.heartbeat(lock.holder_id)
        logger.info("%s: %d committed, %d failed, %d skipped",
                    operation, len(committed), len(failed), len(skipped))
        return BulkResult(
            operation=operation,
            dry_run=False,
            matched=matched,
            committed=tuple(committed),
            failed=tuple(failed),
            skipped=tuple(skipped),
        )

    def _emit(self, event_type: EventType, at: datetime, entity_id: str, **details: str) -> None:
        self._on_event(DomainEvent(
            event_type=event_type,
            timestamp=at,
            entity_id=entity_id,
            details=tuple(sorted(details.items())),
        ))


def _is_dormant(health, now: datetime, days: float) -> bool:
    """Enforced for `days` with no violation inside the last `days`."""
    if health.enforced_since is None or health.enforced_days < days:
        return False
    horizon = now - timedelta(days=days)
    return health.last_violation_at is None or health.last_violation_at <= horizon


def render_alert_markdown(alert: GovernanceAlert) -> str:
    return "\n".join([
        f"# Governance Alert: {alert.metric}",
        "",
        f"- **Alert ID**: {alert.alert_id}",
        f"- **Constraint**: {alert.constraint_id}",
        f"- **Current value**: {alert.current_value}",
        f"- **Threshold**: {alert.threshold}",
        f"- **Created**: {to_iso(alert.created_at)}",
        f"- **Status**: {alert.status.value}",
        "",
        _METRIC_DESCRIPTIONS.get(alert.metric, ""),
        "",
    ])


def render_digest_markdown(alerts: List[GovernanceAlert], mode: dict, now: datetime) -> str:
    lines = [
        f"# Governance Alert Digest: {now.date().isoformat()}",
        "",
        f"Delivery switched to digest: {mode['reason']}",
        "",
        "| Alert ID | Metric | Constraint | Value | Threshold |",
        "|---|---|---|---|---|",
    ]
    lines.extend(
        f"| {a.alert_id} | {a.metric} | {a.constraint_id} | {a.current_value} | {a.threshold} |"
        for a in alerts
    )
    lines.append("")
    return "\n".join(lines)
