"""
Constraint Health
=================

One health computation shared by the on-demand dashboard and the
edge-triggered alert emitter. Both read the same snapshot; neither
writes anything here.

METRICS:
- dormancy:             enforced >= 90 days with zero violations in 90 days
- false_positive_rate:  d/(c+d) >= 0.10 and above the recorded baseline
- trip_frequency:       more than 3 OPEN trips in 30 days

ALERT FATIGUE (switches alert delivery to a digest):
- average time-to-close over the last 3 weeks above 7 days
- more than 10 alerts still open
- weekly average time-to-close rising for 3 consecutive weeks
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from ..contracts.base import AdoptionPhase, AlertStatus, ConstraintState, to_iso
from ..contracts.models import CircuitState, Constraint, GovernanceAlert, Observation
from ..observation.eligibility import suggest_retirement

METRIC_DORMANCY = "dormancy"
METRIC_FALSE_POSITIVE = "false_positive_rate"
METRIC_TRIP_FREQUENCY = "trip_frequency"

ALERT_MODE_PER_EVENT = "per-event"
ALERT_MODE_DIGEST = "digest"


@dataclass
class GovernanceConfig:
    """Configuration for locking, bulk operations and health alerting."""
    lock_ttl_seconds: float = 300
    heartbeat_interval_seconds: float = 60
    dormant_days: float = 90
    review_interval_days: float = 90
    false_positive_threshold: float = 0.10
    trip_frequency_threshold: int = 3
    trip_frequency_window_days: float = 30
    recent_transition_days: float = 7
    learning_days: float = 7
    stabilizing_days: float = 21
    trend_tolerance: float = 0.20
    trend_weeks: int = 4
    fatigue_time_to_close_days: float = 7
    fatigue_open_alerts: int = 10
    fatigue_trend_weeks: int = 3


# =============================================================================
# ADOPTION TREND
# =============================================================================

def weekly_violations(timestamps: Sequence[datetime], now: datetime, weeks: int = 4) -> List[int]:
    """Violation counts per trailing week, oldest week first."""
    counts = [0] * weeks
    for ts in timestamps:
        age_weeks = int((now - ts) / timedelta(weeks=1))
        if 0 <= age_weeks < weeks:
            counts[weeks - 1 - age_weeks] += 1
    return counts


def violation_trend(weekly: Sequence[int], tolerance: float = 0.20) -> str:
    """Compare the last two weeks: >20% up is increasing, >20% down is decreasing."""
    if len(weekly) < 2:
        return "stable"
    recent, previous = weekly[-1], weekly[-2]
    if recent > previous * (1 + tolerance):
        return "increasing"
    if recent < previous * (1 - tolerance):
        return "decreasing"
    return "stable"


def adoption_phase(age_days: float, trend: str, config: GovernanceConfig) -> AdoptionPhase:
    if age_days <= config.learning_days:
        return AdoptionPhase.LEARNING
    if age_days <= config.stabilizing_days and trend == "decreasing":
        return AdoptionPhase.STABILIZING
    if age_days > config.stabilizing_days and trend != "increasing":
        return AdoptionPhase.MATURE
    return AdoptionPhase.PROBLEMATIC


# =============================================================================
# HEALTH RECORDS
# =============================================================================

@dataclass(frozen=True)
class Breach:
    metric: str
    constraint_id: str
    current_value: float
    threshold: float


@dataclass(frozen=True)
class ConstraintHealth:
    constraint_id: str
    state: ConstraintState
    enforced_since: Optional[datetime]
    enforced_days: float
    last_violation_at: Optional[datetime]
    idle_days: float
    c_count: int
    d_count: int
    false_positive_rate: float
    false_positive_baseline: Optional[float]
    trips_in_window: int
    circuit_state: Optional[str]
    days_since_review: float
    weekly_violations: Tuple[int, ...]
    trend: str
    phase: Optional[AdoptionPhase]
    dormant: bool
    due_for_review: bool
    high_false_positive: bool
    suggest_retirement: bool
    breaches: Tuple[Breach, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            'constraint_id': self.constraint_id,
            'state': self.state.value,
            'enforced_since': to_iso(self.enforced_since),
            'enforced_days': round(self.enforced_days, 2),
            'last_violation_at': to_iso(self.last_violation_at),
            'idle_days': round(self.idle_days, 2),
            'c_count': self.c_count,
            'd_count': self.d_count,
            'false_positive_rate': round(self.false_positive_rate, 4),
            'false_positive_baseline': self.false_positive_baseline,
            'trips_in_window': self.trips_in_window,
            'circuit_state': self.circuit_state,
            'days_since_review': round(self.days_since_review, 2),
            'weekly_violations': list(self.weekly_violations),
            'violation_trend': self.trend,
            'adoption_phase': self.phase.value if self.phase else None,
            'dormant': self.dormant,
            'due_for_review': self.due_for_review,
            'high_false_positive': self.high_false_positive,
            'suggest_retirement': self.suggest_retirement,
            'breaches': [b.metric for b in self.breaches],
        }


@dataclass(frozen=True)
class HealthReport:
    """Snapshot consumed by dashboard() and check_alerts()."""
    generated_at: datetime
    constraints: Tuple[ConstraintHealth, ...]
    distribution: Dict[str, int]
    recent_transitions: Tuple[dict, ...]
    pending_candidates: Tuple[str, ...]
    observation_count: int

    def by_id(self, constraint_id: str) -> Optional[ConstraintHealth]:
        for health in self.constraints:
            if health.constraint_id == constraint_id:
                return health
        return None

    @property
    def breaches(self) -> List[Breach]:
        return [b for h in self.constraints for b in h.breaches]

    def ids_where(self, attribute: str) -> List[str]:
        return [h.constraint_id for h in self.constraints if getattr(h, attribute)]

    def to_dict(self) -> dict:
        phases: Dict[str, int] = {p.value: 0 for p in AdoptionPhase}
        for h in self.constraints:
            if h.phase is not None:
                phases[h.phase.value] += 1
        return {
            'generated_at': to_iso(self.generated_at),
            'distribution': dict(self.distribution),
            'observation_count': self.observation_count,
            'pending_candidates': list(self.pending_candidates),
            'dormant': self.ids_where('dormant'),
            'due_for_review': self.ids_where('due_for_review'),
            'high_false_positive': self.ids_where('high_false_positive'),
            'retirement_suggestions': self.ids_where('suggest_retirement'),
            'adoption_phases': phases,
            'recent_transitions': list(self.recent_transitions),
            'constraints': [h.to_dict() for h in self.constraints],
        }


# =============================================================================
# ASSESSMENT
# =============================================================================

def enforced_since(constraint: Constraint) -> Optional[datetime]:
    """When the constraint last entered active, from its audit trail."""
    for entry in reversed(constraint.audit_log):
        if entry.to_state == ConstraintState.ACTIVE.value and entry.from_state != entry.to_state:
            return entry.timestamp
    return None


def _days(delta: timedelta) -> float:
    return delta.total_seconds() / 86400.0


def assess_constraint(
    constraint: Constraint,
    observation: Optional[Observation],
    circuit: Optional[CircuitState],
    now: datetime,
    config: GovernanceConfig,
    baseline: Optional[float] = None
) -> ConstraintHealth:
    since = enforced_since(constraint) if constraint.state.is_enforced else None
    enforced_days = _days(now - since) if since else 0.0

    last_violation = circuit.last_violation_at if circuit else None
    marks = [t for t in (since, last_violation) if t is not None]
    idle_days = _days(now - max(marks)) if marks else 0.0

    c_count = observation.c_count if observation else 0
    d_count = observation.d_count if observation else 0
    fp_rate = observation.disconfirmation_ratio if observation else 0.0

    trip_horizon = timedelta(days=config.trip_frequency_window_days)
    trips = sum(1 for t in circuit.trips if now - t <= trip_horizon) if circuit else 0

    reviewed_at = constraint.last_review_at or constraint.created_at
    days_since_review = _days(now - reviewed_at)

    weekly = weekly_violations([v.timestamp for v in circuit.violations] if circuit else [], now, config.trend_weeks)
    trend = violation_trend(weekly, config.trend_tolerance)
    phase = adoption_phase(enforced_days, trend, config) if since else None

    dormant = (
        since is not None
        and enforced_days >= config.dormant_days
        and (last_violation is None or _days(now - last_violation) >= config.dormant_days)
    )
    high_fp = fp_rate > config.false_positive_threshold
    trending_up = fp_rate >= config.false_positive_threshold and fp_rate > (baseline if baseline is not None else fp_rate)

    breaches = []
    if dormant:
        breaches.append(Breach(METRIC_DORMANCY, constraint.id, round(idle_days, 2), config.dormant_days))
    if constraint.state.is_enforced and trending_up:
        breaches.append(Breach(METRIC_FALSE_POSITIVE, constraint.id, round(fp_rate, 4), config.false_positive_threshold))
    if trips > config.trip_frequency_threshold:
        breaches.append(Breach(METRIC_TRIP_FREQUENCY, constraint.id, float(trips), float(config.trip_frequency_threshold)))

    return ConstraintHealth(
        constraint_id=constraint.id,
        state=constraint.state,
        enforced_since=since,
        enforced_days=enforced_days,
        last_violation_at=last_violation,
        idle_days=idle_days,
        c_count=c_count,
        d_count=d_count,
        false_positive_rate=fp_rate,
        false_positive_baseline=baseline,
        trips_in_window=trips,
        circuit_state=circuit.state.value if circuit else None,
        days_since_review=days_since_review,
        weekly_violations=tuple(weekly),
        trend=trend,
        phase=phase,
        dormant=dormant,
        due_for_review=constraint.state.is_enforced and days_since_review > config.review_interval_days,
        high_false_positive=high_fp,
        suggest_retirement=constraint.state.is_enforced and observation is not None and suggest_retirement(observation),
        breaches=tuple(breaches),
    )


def recent_transitions(constraints: Sequence[Constraint], now: datetime, days: float) -> Tuple[dict, ...]:
    horizon = now - timedelta(days=days)
    items = [
        {
            'constraint_id': c.id,
            'timestamp': to_iso(e.timestamp),
            'action': e.action,
            'from_state': e.from_state,
            'to_state': e.to_state,
            'actor': e.actor,
        }
        for c in constraints
        for e in c.audit_log
        if e.from_state != e.to_state and e.to_state in {s.value for s in ConstraintState}
        and e.timestamp >= horizon
    ]
    return tuple(sorted(items, key=lambda item: item['timestamp'], reverse=True))


# =============================================================================
# ALERT FATIGUE
# =============================================================================

@dataclass(frozen=True)
class AlertFatigue:
    """Backlog signals deciding between per-event and digest alert delivery."""
    time_to_close_days: float
    open_alerts: int
    weekly_time_to_close: Tuple[Optional[float], ...]
    reasons: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def fatigued(self) -> bool:
        return bool(self.reasons)

    @property
    def mode(self) -> str:
        return ALERT_MODE_DIGEST if self.fatigued else ALERT_MODE_PER_EVENT

    def to_dict(self) -> dict:
        return {
            'time_to_close_days': round(self.time_to_close_days, 2),
            'open_alerts': self.open_alerts,
            'weekly_time_to_close': [
                None if days is None else round(days, 2) for days in self.weekly_time_to_close
            ],
            'fatigued': self.fatigued,
            'reasons': list(self.reasons),
        }


def closed_at(alert: GovernanceAlert) -> Optional[datetime]:
    """When someone (or the breach clearing) first reacted to the alert."""
    return alert.acknowledged_at or alert.resolved_at


def assess_alert_fatigue(alerts: Sequence[GovernanceAlert], now: datetime, config: GovernanceConfig) -> AlertFatigue:
    """
    Time-to-close is closed_at - created_at for alerts closed inside the
    trailing `fatigue_trend_weeks`; weeks without a closed alert are None
    and break the rising streak.
    """
    weeks = config.fatigue_trend_weeks
    buckets: List[List[float]] = [[] for _ in range(weeks)]
    for alert in alerts:
        closed = closed_at(alert)
        if closed is None:
            continue
        age_weeks = int((now - closed) / timedelta(weeks=1))
        if 0 <= age_weeks < weeks:
            buckets[weeks - 1 - age_weeks].append(_days(closed - alert.created_at))

    durations = [days for bucket in buckets for days in bucket]
    average = sum(durations) / len(durations) if durations else 0.0
    weekly = tuple(sum(bucket) / len(bucket) if bucket else None for bucket in buckets)
    open_alerts = sum(1 for a in alerts if a.status == AlertStatus.OPEN)
    rising = (
        weeks >= 2
        and None not in weekly
        and all(later > earlier for earlier, later in zip(weekly, weekly[1:]))
    )

    reasons = []
    if average > config.fatigue_time_to_close_days:
        reasons.append(f"average time-to-close {average:.1f}d above {config.fatigue_time_to_close_days:g}d")
    if open_alerts > config.fatigue_open_alerts:
        reasons.append(f"{open_alerts} open alerts above {config.fatigue_open_alerts}")
    if rising:
        reasons.append(f"time-to-close rising for {weeks} weeks")
    return AlertFatigue(
        time_to_close_days=average,
        open_alerts=open_alerts,
        weekly_time_to_close=weekly,
        reasons=tuple(reasons),
    )
