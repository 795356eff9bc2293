"""
Circuit Breaker
===============

Per-constraint runtime protection against runaway enforcement.

STATES:
    CLOSED --(threshold violations in window)--> OPEN
    OPEN --(check() after cooldown)--> HALF_OPEN
    HALF_OPEN --(record_success)--> CLOSED
    HALF_OPEN --(record violation)--> OPEN (fresh cooldown)
    any --(reset by a human)--> CLOSED

INVARIANTS:
- Every time-based decision reads stored timestamps; a restart changes nothing
- Identical action_refs inside the dedup window count once
- Only violations inside the trailing window count toward a trip
- Circuits exist only for enforced (active/retiring) constraints
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import logging

from ..clock import Clock, SystemClock
from ..contracts.base import (
    CircuitStatus, CorruptStateError, InvalidInputError, NotFoundError,
    ReasonRequiredError, ThresholdBlockedError, require_text, to_iso
)
from ..contracts.events import DomainEvent, EventSink, EventType, discard_event
from ..contracts.models import AuditEntry, CircuitState, Violation
from ..storage import StateStore

logger = logging.getLogger(__name__)

CIRCUIT_KEY = ".circuit-state.json"
ARCHIVE_KEY = ".circuit-state-archive.json"

AuditSink = Callable[[str, AuditEntry], object]


@dataclass
class CircuitConfig:
    """System defaults; each constraint may override any of them."""
    threshold: int = 5
    window_days: float = 30
    cooldown_hours: float = 24
    dedup_seconds: float = 300
    trip_history_days: float = 30

    def merged(self, overrides: Dict[str, float]) -> 'CircuitConfig':
        known = {f.name for f in fields(self)}
        values = {k: v for k, v in overrides.items() if k in known}
        if 'threshold' in values:
            values['threshold'] = int(values['threshold'])
        return replace(self, **values)


@dataclass(frozen=True)
class CheckResult:
    """Outcome of check(): Allowed or Blocked, with the reason when blocked."""
    constraint_id: str
    allowed: bool
    state: CircuitStatus
    cooldown_remaining: float = 0.0
    cooldown_until: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'constraint_id': self.constraint_id,
            'allowed': self.allowed,
            'state': self.state.value,
            'cooldown_remaining_seconds': self.cooldown_remaining,
            'cooldown_until': to_iso(self.cooldown_until),
        }


def override_hint(constraint_id: str) -> str:
    return (
        f"request an emergency override for {constraint_id} "
        f"(request_override, then approve with the issued token), "
        f"or reset the circuit with an actor and reason"
    )


class CircuitBreaker:
    """
    Violation tracker backed by .circuit-state.json.

    The whole map is read, changed and written back per operation; callers
    serialize writers through the governance lock.
    """

    def __init__(
        self,
        store: StateStore,
        clock: Optional[Clock] = None,
        config: Optional[CircuitConfig] = None,
        audit_sink: Optional[AuditSink] = None,
        on_event: EventSink = discard_event
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._config = config or CircuitConfig()
        self._audit_sink = audit_sink
        self._on_event = on_event

    @property
    def config(self) -> CircuitConfig:
        return self._config

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _load(self) -> Dict[str, CircuitState]:
        try:
            data = self._store.get(CIRCUIT_KEY) or {}
        except CorruptStateError as exc:
            preserved = self._store.quarantine(CIRCUIT_KEY)
            logger.warning(
                "Circuit state file unreadable (%s); preserved as %s and starting empty",
                exc.message, preserved
            )
            self._emit(EventType.CIRCUIT_STATE_RECOVERED, self._clock.now(), CIRCUIT_KEY,
                       preserved_as=str(preserved))
            return {}
        return {cid: CircuitState.from_dict(record) for cid, record in data.items()}

    def _save(self, states: Dict[str, CircuitState]) -> None:
        self._store.put(CIRCUIT_KEY, {cid: s.to_dict() for cid, s in sorted(states.items())})

    def _require(self, states: Dict[str, CircuitState], constraint_id: str) -> CircuitState:
        state = states.get(constraint_id)
        if state is None:
            raise NotFoundError(
                f"No circuit for constraint {constraint_id}",
                context=(("constraint_id", constraint_id),)
            )
        return state

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get(self, constraint_id: str) -> CircuitState:
        return self._require(self._load(), constraint_id)

    def find(self, constraint_id: str) -> Optional[CircuitState]:
        return self._load().get(constraint_id)

    def all(self) -> Dict[str, CircuitState]:
        return self._load()

    def settings(self, constraint_id: str) -> CircuitConfig:
        """Effective configuration: system defaults merged with overrides."""
        state = self.find(constraint_id)
        return self._config.merged(dict(state.config) if state else {})

    def violations_in_window(self, state: CircuitState, now: datetime) -> List[Violation]:
        window = timedelta(days=self._config.merged(dict(state.config)).window_days)
        return [v for v in state.violations if now - v.timestamp <= window]

    def trips_within(self, state: CircuitState, days: float, now: datetime) -> int:
        return sum(1 for t in state.trips if now - t <= timedelta(days=days))

    def archived(self, constraint_id: Optional[str] = None) -> Dict[str, List[dict]]:
        data = self._store.get(ARCHIVE_KEY) or {}
        if constraint_id is not None:
            return {constraint_id: data.get(constraint_id, [])}
        return data

    # =========================================================================
    # LIFECYCLE HOOKS
    # =========================================================================

    def ensure(self, constraint_id: str) -> CircuitState:
        """Create a CLOSED circuit if absent (constraint became enforced)."""
        states = self._load()
        if constraint_id in states:
            return states[constraint_id]
        state = CircuitState(constraint_id=constraint_id)
        states[constraint_id] = state
        self._save(states)
        logger.debug("Created CLOSED circuit for %s", constraint_id)
        return state

    def archive(self, constraint_id: str, reason: Optional[str] = None) -> Optional[CircuitState]:
        """
        Move the circuit to the archive store and drop it from the live map.

        The archived record keeps the full violation history; the live map
        no longer carries any violations for the constraint.
        """
        states = self._load()
        state = states.pop(constraint_id, None)
        if state is None:
            return None
        now = self._clock.now()
        archive = self._store.get(ARCHIVE_KEY) or {}
        archive.setdefault(constraint_id, []).append({
            'archived_at': to_iso(now),
            'reason': reason,
            'circuit': state.to_dict(),
        })
        self._store.put(ARCHIVE_KEY, archive)
        self._save(states)
        self._emit(EventType.CIRCUIT_ARCHIVED, now, constraint_id, violations=str(len(state.violations)))
        return state

    def configure(self, constraint_id: str, **overrides: float) -> CircuitState:
        """Per-constraint overrides of threshold/window_days/cooldown_hours/dedup_seconds."""
        known = {f.name for f in fields(CircuitConfig)}
        unknown = set(overrides) - known
        if unknown:
            raise InvalidInputError(
                f"Unknown circuit settings: {', '.join(sorted(unknown))}",
                context=(("constraint_id", constraint_id),)
            )
        for name, value in overrides.items():
            if value is None or value <= 0:
                raise InvalidInputError(
                    f"{name} must be positive",
                    context=(("constraint_id", constraint_id), ("setting", name))
                )
        states = self._load()
        state = self._require(states, constraint_id)
        merged = dict(state.config)
        merged.update(overrides)
        states[constraint_id] = replace(state, config=tuple(sorted(merged.items())))
        self._save(states)
        return states[constraint_id]

    # =========================================================================
    # RUNTIME
    # =========================================================================

    def check(self, constraint_id: str) -> CheckResult:
        """
        Allowed unless OPEN and still cooling down.

        An OPEN circuit whose cooldown has elapsed moves to HALF_OPEN here
        and the probing action is allowed.
        """
        states = self._load()
        state = self._require(states, constraint_id)
        now = self._clock.now()

        if state.state == CircuitStatus.OPEN:
            if state.cooldown_until is not None and now < state.cooldown_until:
                return CheckResult(
                    constraint_id=constraint_id,
                    allowed=False,
                    state=CircuitStatus.OPEN,
                    cooldown_remaining=(state.cooldown_until - now).total_seconds(),
                    cooldown_until=state.cooldown_until,
                )
            state = replace(state, state=CircuitStatus.HALF_OPEN)
            states[constraint_id] = state
            self._save(states)
            logger.info("Circuit %s cooled down, now HALF_OPEN", constraint_id)
            self._emit(EventType.CIRCUIT_HALF_OPEN, now, constraint_id)

        return CheckResult(constraint_id=constraint_id, allowed=True, state=state.state)

    def guard(self, constraint_id: str) -> CheckResult:
        """check(), raising ThresholdBlockedError when blocked."""
        result = self.check(constraint_id)
        if not result.allowed:
            raise ThresholdBlockedError(
                f"Constraint {constraint_id} circuit is OPEN; "
                f"cooldown remaining {result.cooldown_remaining:.0f}s",
                constraint_id=constraint_id,
                cooldown_remaining_seconds=result.cooldown_remaining,
                override_hint=override_hint(constraint_id),
                context=(("cooldown_until", to_iso(result.cooldown_until)),),
            )
        return result

    def record(self, constraint_id: str, action_ref: str) -> CircuitState:
        """Record a violation; may trip the circuit."""
        action_ref = require_text(action_ref, "action_ref")
        states = self._load()
        state = self._require(states, constraint_id)
        now = self._clock.now()
        settings = self._config.merged(dict(state.config))

        dedup = timedelta(seconds=settings.dedup_seconds)
        for violation in state.violations:
            if violation.action_ref == action_ref and now - violation.timestamp <= dedup:
                logger.debug("Duplicate violation %s for %s ignored", action_ref, constraint_id)
                self._emit(EventType.VIOLATION_DEDUPLICATED, now, constraint_id, action_ref=action_ref)
                return state

        window = timedelta(days=settings.window_days)
        trip_horizon = timedelta(days=settings.trip_history_days)
        violations = tuple(v for v in state.violations if now - v.timestamp <= window)
        violations += (Violation(timestamp=now, action_ref=action_ref),)
        trips = tuple(t for t in state.trips if now - t <= trip_horizon)

        state = replace(state, violations=violations, trips=trips, last_violation_at=now)
        self._emit(EventType.VIOLATION_RECORDED, now, constraint_id,
                   action_ref=action_ref, count=str(len(violations)))

        if state.state == CircuitStatus.HALF_OPEN:
            state = self._trip(state, now, settings, "violation while HALF_OPEN")
        elif state.state == CircuitStatus.CLOSED and len(violations) >= settings.threshold:
            state = self._trip(state, now, settings, f"{len(violations)} violations in window")

        states[constraint_id] = state
        self._save(states)
        return state

    def _trip(self, state: CircuitState, now: datetime, settings: CircuitConfig, cause: str) -> CircuitState:
        cooldown_until = now + timedelta(hours=settings.cooldown_hours)
        logger.warning("Circuit %s tripped OPEN (%s) until %s", state.constraint_id, cause, cooldown_until.isoformat())
        self._emit(EventType.CIRCUIT_TRIPPED, now, state.constraint_id,
                   cause=cause, cooldown_until=to_iso(cooldown_until))
        return replace(
            state,
            state=CircuitStatus.OPEN,
            tripped_at=now,
            cooldown_until=cooldown_until,
            trips=state.trips + (now,),
        )

    def record_success(self, constraint_id: str) -> CircuitState:
        """A non-violating action: HALF_OPEN closes and the window is cleared."""
        states = self._load()
        state = self._require(states, constraint_id)
        if state.state != CircuitStatus.HALF_OPEN:
            return state
        now = self._clock.now()
        state = replace(state, state=CircuitStatus.CLOSED, violations=(), tripped_at=None, cooldown_until=None)
        states[constraint_id] = state
        self._save(states)
        logger.info("Circuit %s probe succeeded, now CLOSED", constraint_id)
        self._emit(EventType.CIRCUIT_CLOSED, now, constraint_id)
        return state

    def reset(self, constraint_id: str, actor: str, reason: str) -> CircuitState:
        """Manual reset to CLOSED. Requires an actor and a reason; audited."""
        actor = require_text(actor, "actor")
        if reason is None or not reason.strip():
            raise ReasonRequiredError(
                "Circuit reset requires a reason",
                context=(("constraint_id", constraint_id),)
            )
        states = self._load()
        state = self._require(states, constraint_id)
        now = self._clock.now()
        previous = state.state

        state = replace(
            state,
            state=CircuitStatus.CLOSED,
            violations=(),
            tripped_at=None,
            cooldown_until=None,
            last_reset_at=now,
        )
        # Audit first: an unknown constraint aborts before the circuit changes
        if self._audit_sink is not None:
            self._audit_sink(constraint_id, AuditEntry(
                timestamp=now,
                actor=actor,
                action="circuit_reset",
                from_state=previous.value,
                to_state=CircuitStatus.CLOSED.value,
                reason=reason.strip(),
            ))
        states[constraint_id] = state
        self._save(states)
        logger.info("Circuit %s reset by %s: %s", constraint_id, actor, reason.strip())
        self._emit(EventType.CIRCUIT_RESET, now, constraint_id, actor=actor, from_state=previous.value)
        return state

    def _emit(self, event_type: EventType, at: datetime, entity_id: str, **details: str) -> None:
        self._on_event(DomainEvent(
            event_type=event_type,
            timestamp=at,
            entity_id=entity_id,
            details=tuple(sorted(details.items())),
        ))
