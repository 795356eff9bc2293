"""
Constraint Lifecycle State Machine
==================================

Owns Constraint state and its append-only audit trail.

TRANSITIONS (exactly these, nothing else):
    (none)   --create-->            draft
    draft    --activate-->          active
    draft    --delete-->            deleted
    active   --retire-->            retiring
    active   --emergency_retire-->  retired    (reason required)
    active   --rollback-->          draft      (reason required)
    retiring --complete_retire-->   retired
    retiring --reactivate-->        active

SIDE EFFECTS:
- Entering active/retiring creates a CLOSED circuit if absent
- Leaving enforcement (retired, or rollback to draft) archives the circuit
  and invalidates every live override

ENFORCEMENT:
    active -> BLOCK, retiring -> WARN, draft/retired/deleted -> never evaluated
"""

from __future__ import annotations
from typing import Dict, List, Optional, Tuple
import logging

from .circuit import CircuitBreaker, OverrideManager
from .clock import Clock, SystemClock
from .contracts.base import (
    ConcurrentModificationError, ConstraintState, EnforcementMode,
    InvalidInputError, InvalidTransitionError, NotFoundError, ObservationKind,
    ReasonRequiredError, Severity, require_text
)
from .contracts.events import DomainEvent, EventSink, EventType, discard_event
from .contracts.models import AuditEntry, Constraint, Observation
from .storage import StateStore

logger = logging.getLogger(__name__)

CONSTRAINTS_DIR = "constraints"


def constraint_id_for(observation_slug: str) -> str:
    return f"cst-{observation_slug}"


class ConstraintLifecycle:
    """
    Deterministic constraint state machine.

    Invalid transitions are rejected with explicit errors that list the
    actions allowed from the current state.
    """

    # (from_state, action) -> to_state; None is the "not yet created" state
    _TRANSITIONS: Dict[Tuple[Optional[ConstraintState], str], ConstraintState] = {
        (None, 'create'): ConstraintState.DRAFT,
        (ConstraintState.DRAFT, 'activate'): ConstraintState.ACTIVE,
        (ConstraintState.DRAFT, 'delete'): ConstraintState.DELETED,
        (ConstraintState.ACTIVE, 'retire'): ConstraintState.RETIRING,
        (ConstraintState.ACTIVE, 'emergency_retire'): ConstraintState.RETIRED,
        (ConstraintState.ACTIVE, 'rollback'): ConstraintState.DRAFT,
        (ConstraintState.RETIRING, 'complete_retire'): ConstraintState.RETIRED,
        (ConstraintState.RETIRING, 'reactivate'): ConstraintState.ACTIVE,
    }

    _REASON_REQUIRED = frozenset({'emergency_retire', 'rollback'})

    ACTIONS = tuple(sorted({action for (_, action) in _TRANSITIONS}))

    def __init__(
        self,
        store: StateStore,
        clock: Optional[Clock] = None,
        breaker: Optional[CircuitBreaker] = None,
        overrides: Optional[OverrideManager] = None,
        on_event: EventSink = discard_event
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._breaker = breaker
        self._overrides = overrides
        self._on_event = on_event

    # =========================================================================
    # TRANSITION TABLE
    # =========================================================================

    @classmethod
    def allowed_actions(cls, state: Optional[ConstraintState]) -> Tuple[str, ...]:
        return tuple(sorted(action for (src, action) in cls._TRANSITIONS if src == state))

    @classmethod
    def target_state(cls, state: Optional[ConstraintState], action: str) -> Optional[ConstraintState]:
        return cls._TRANSITIONS.get((state, action))

    @staticmethod
    def enforcement_mode_for(state: ConstraintState) -> EnforcementMode:
        return EnforcementMode.for_state(state)

    # =========================================================================
    # CREATE
    # =========================================================================

    def create(
        self,
        observation: Observation,
        actor: str,
        scope_text: Optional[str] = None,
        severity: Optional[Severity] = None,
        reason: Optional[str] = None
    ) -> Constraint:
        """Create a draft constraint from an eligible observation."""
        actor = require_text(actor, "actor")
        if observation.kind != ObservationKind.FAILURE:
            raise InvalidInputError(
                f"Observation {observation.slug} is a {observation.kind.value}; "
                f"only failures produce constraints",
                context=(("slug", observation.slug),)
            )
        constraint_id = constraint_id_for(observation.slug)
        if observation.constraint_id and observation.constraint_id != constraint_id:
            raise InvalidInputError(
                f"Observation {observation.slug} already backs {observation.constraint_id}",
                context=(("slug", observation.slug),)
            )
        existing = self.find(constraint_id)
        if existing is not None:
            raise InvalidTransitionError(
                f"Constraint {constraint_id} already exists in state {existing.state.value}",
                allowed=self.allowed_actions(existing.state),
                context=(("constraint_id", constraint_id),)
            )

        now = self._clock.now()
        entry = AuditEntry(
            timestamp=now,
            actor=actor,
            action='create',
            from_state=None,
            to_state=ConstraintState.DRAFT.value,
            reason=reason,
        )
        constraint = Constraint(
            id=constraint_id,
            scope_text=(scope_text or observation.description).strip(),
            severity=severity or observation.severity,
            state=ConstraintState.DRAFT,
            source_observation_id=observation.slug,
            created_at=now,
            updated_at=now,
            state_entered_at=now,
            version=1,
            audit_log=(entry,),
        )
        if not self._store.create_exclusive(self._key(constraint.state, constraint_id), constraint.to_dict()):
            raise ConcurrentModificationError(
                f"Constraint {constraint_id} was created concurrently",
                context=(("constraint_id", constraint_id),)
            )
        self._emit_transition(constraint, entry)
        return constraint

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def transition(
        self,
        constraint_id: str,
        action: str,
        actor: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> Constraint:
        """
        Apply one transition from the table.

        Raises:
            InvalidInputError: blank actor
            NotFoundError: unknown constraint
            InvalidTransitionError: action not allowed from the current state
            ReasonRequiredError: emergency_retire/rollback without a reason
            ConcurrentModificationError: stored version differs
        """
        actor = require_text(actor, "actor")
        current = self.get(constraint_id)
        if expected_version is not None and expected_version != current.version:
            raise ConcurrentModificationError(
                f"Constraint {constraint_id} is at version {current.version}, expected {expected_version}",
                context=(("constraint_id", constraint_id),)
            )

        target = self.target_state(current.state, action)
        if target is None:
            allowed = self.allowed_actions(current.state)
            raise InvalidTransitionError(
                f"Cannot {action} constraint {constraint_id} in state {current.state.value}; "
                f"allowed: {', '.join(allowed) or 'none'}",
                allowed=allowed,
                context=(("constraint_id", constraint_id), ("state", current.state.value))
            )

        reason = reason.strip() if reason and reason.strip() else None
        if action in self._REASON_REQUIRED and reason is None:
            raise ReasonRequiredError(
                f"{action} requires a reason",
                context=(("constraint_id", constraint_id), ("action", action))
            )

        now = self._clock.now()
        entry = AuditEntry(
            timestamp=now,
            actor=actor,
            action=action,
            from_state=current.state.value,
            to_state=target.value,
            reason=reason,
        )
        updated = current.with_audit(entry, state=target, state_entered_at=now)
        self._persist(current, updated)
        self._apply_side_effects(updated, reason or action)
        self._emit_transition(updated, entry)
        return updated

    def activate(self, constraint_id: str, actor: str, reason: Optional[str] = None) -> Constraint:
        return self.transition(constraint_id, 'activate', actor, reason)

    def delete(self, constraint_id: str, actor: str, reason: Optional[str] = None) -> Constraint:
        return self.transition(constraint_id, 'delete', actor, reason)

    def retire(self, constraint_id: str, actor: str, reason: Optional[str] = None) -> Constraint:
        return self.transition(constraint_id, 'retire', actor, reason)

    def emergency_retire(self, constraint_id: str, actor: str, reason: str) -> Constraint:
        return self.transition(constraint_id, 'emergency_retire', actor, reason)

    def rollback(self, constraint_id: str, actor: str, reason: str) -> Constraint:
        return self.transition(constraint_id, 'rollback', actor, reason)

    def complete_retire(self, constraint_id: str, actor: str, reason: Optional[str] = None) -> Constraint:
        return self.transition(constraint_id, 'complete_retire', actor, reason)

    def reactivate(self, constraint_id: str, actor: str, reason: Optional[str] = None) -> Constraint:
        return self.transition(constraint_id, 'reactivate', actor, reason)

    def _apply_side_effects(self, constraint: Constraint, reason: str) -> None:
        if constraint.state.is_enforced:
            if self._breaker is not None:
                self._breaker.ensure(constraint.id)
            return
        if constraint.state in (ConstraintState.RETIRED, ConstraintState.DRAFT):
            if self._breaker is not None:
                self._breaker.archive(constraint.id, reason)
            if self._overrides is not None:
                self._overrides.invalidate_all(constraint.id, f"constraint {constraint.state.value}: {reason}")

    # =========================================================================
    # NON-TRANSITION AUDIT
    # =========================================================================

    def record_audit(self, constraint_id: str, entry: AuditEntry) -> Constraint:
        """Append an audit entry that does not change state (circuit reset, overrides)."""
        require_text(entry.actor, "actor")
        current = self.get(constraint_id)
        updated = current.with_audit(entry)
        self._persist(current, updated)
        return updated

    def mark_reviewed(self, constraint_id: str, actor: str, note: Optional[str] = None) -> Constraint:
        actor = require_text(actor, "actor")
        current = self.get(constraint_id)
        now = self._clock.now()
        entry = AuditEntry(
            timestamp=now,
            actor=actor,
            action='review',
            from_state=current.state.value,
            to_state=current.state.value,
            reason=note,
        )
        updated = current.with_audit(entry, last_review_at=now)
        self._persist(current, updated)
        return updated

    # =========================================================================
    # QUERIES (read-only)
    # =========================================================================

    def find(self, constraint_id: str) -> Optional[Constraint]:
        for state in ConstraintState:
            data = self._store.get(self._key(state, constraint_id))
            if data is not None:
                return Constraint.from_dict(data)
        return None

    def get(self, constraint_id: str) -> Constraint:
        constraint = self.find(constraint_id)
        if constraint is None:
            raise NotFoundError(
                f"Constraint not found: {constraint_id}",
                context=(("constraint_id", constraint_id),)
            )
        return constraint

    def all(self, state: Optional[ConstraintState] = None) -> List[Constraint]:
        states = [state] if state is not None else list(ConstraintState)
        constraints = []
        for s in states:
            for key in self._store.list(f"{CONSTRAINTS_DIR}/{s.value}"):
                constraints.append(Constraint.from_dict(self._store.get(key)))
        return constraints

    def enforced(self) -> List[Constraint]:
        return self.all(ConstraintState.ACTIVE) + self.all(ConstraintState.RETIRING)

    def enforcement_mode(self, constraint_id: str) -> EnforcementMode:
        return EnforcementMode.for_state(self.get(constraint_id).state)

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _persist(self, before: Constraint, after: Constraint) -> None:
        """Write `after` if the stored version still equals `before.version`."""
        old_key = self._key(before.state, before.id)
        new_key = self._key(after.state, after.id)
        stored = self._store.get(old_key)
        if stored is None or stored.get('version') != before.version:
            raise ConcurrentModificationError(
                f"Constraint {before.id} changed since it was read "
                f"(expected version {before.version}, found {stored.get('version') if stored else 'none'})",
                context=(("constraint_id", before.id),)
            )
        if old_key == new_key:
            if not self._store.compare_and_put(old_key, stored, after.to_dict()):
                raise ConcurrentModificationError(
                    f"Constraint {before.id} changed during write",
                    context=(("constraint_id", before.id),)
                )
        else:
            self._store.move(old_key, new_key, after.to_dict())

    def _emit_transition(self, constraint: Constraint, entry: AuditEntry) -> None:
        logger.info(
            "Constraint %s: %s -> %s (%s by %s)",
            constraint.id, entry.from_state, entry.to_state, entry.action, entry.actor
        )
        self._on_event(DomainEvent(
            event_type=EventType.CONSTRAINT_TRANSITION,
            timestamp=entry.timestamp,
            entity_id=constraint.id,
            details=(
                ('action', entry.action),
                ('actor', entry.actor),
                ('from_state', entry.from_state or ''),
                ('to_state', entry.to_state or ''),
            ),
        ))

    @staticmethod
    def _key(state: ConstraintState, constraint_id: str) -> str:
        return f"{CONSTRAINTS_DIR}/{state.value}/{constraint_id}.json"
