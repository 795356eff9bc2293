"""
Engine Orchestration Module

This module provides the unified interface for coordinating all
constraint-memory layers while maintaining strict boundary separation.

DESIGN PRINCIPLES:
==================
1. Layers communicate ONLY through contracts and domain events
2. Every mutation runs inside a governance session (single writer)
3. All operations are traceable through the event collector
4. Reads never take the lock

LAYER FLOW:
===========
1. Evidence: raw occurrence -> append-only evidence log
2. Aggregation: Evidence -> Observation (R/C/D counters)
3. Eligibility: counter mutation -> CandidateReady -> draft Constraint
4. Lifecycle: human-driven transitions with audit trail
5. Enforcement: proposed action -> circuit breaker -> BLOCK / WARN / PASS
6. Governance: health, alerts, bulk retirement
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
import logging

from .circuit import (
    CheckResult, CircuitBreaker, CircuitConfig, OverrideConfig, OverrideManager
)
from .circuit.overrides import TokenFactory
from .clock import Clock, SystemClock
from .contracts.base import (
    AlertStatus, ConstraintState, EnforcementMode, InvalidInputError,
    ObservationKind, Severity, require_text, sha256_digest
)
from .contracts.events import DomainEvent, EventType
from .contracts.models import (
    AuditEntry, CircuitState, Constraint, Evidence, GovernanceAlert,
    Observation, Override
)
from .evidence import EvidenceStore, Hasher, Verifier
from .governance import BulkResult, GovernanceConfig, GovernanceCoordinator, HealthReport
from .lifecycle import ConstraintLifecycle, constraint_id_for
from .observability import EventCollector, ObservabilityConfig
from .observation import (
    AggregatorConfig, EligibilityEngine, EligibilityPolicy, ObservationAggregator,
    Similarity, TokenVectorSimilarity, eligibility_gates, is_eligible
)
from .storage import StateStore, StorageConfig, create_store

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Unified configuration for the entire engine."""
    storage: StorageConfig = None
    aggregator: AggregatorConfig = None
    eligibility: EligibilityPolicy = None
    circuit: CircuitConfig = None
    overrides: OverrideConfig = None
    governance: GovernanceConfig = None
    observability: ObservabilityConfig = None
    system_actor: str = "constraint-engine"

    def __post_init__(self):
        self.storage = self.storage or StorageConfig()
        self.aggregator = self.aggregator or AggregatorConfig()
        self.eligibility = self.eligibility or EligibilityPolicy()
        self.circuit = self.circuit or CircuitConfig()
        self.overrides = self.overrides or OverrideConfig()
        self.governance = self.governance or GovernanceConfig()
        self.observability = self.observability or ObservabilityConfig()


@dataclass(frozen=True)
class Verdict:
    """
    Result of evaluating one proposed action against one constraint.

    outcome is BLOCK (refused), WARN (logged, allowed) or PASS.
    """
    constraint_id: str
    action_ref: str
    mode: EnforcementMode
    outcome: str
    violated: bool
    circuit_state: Optional[str] = None
    override_used: bool = False
    message: str = ""

    @property
    def allowed(self) -> bool:
        return self.outcome != "BLOCK"

    def to_dict(self) -> dict:
        return {
            'constraint_id': self.constraint_id,
            'action_ref': self.action_ref,
            'mode': self.mode.value,
            'outcome': self.outcome,
            'allowed': self.allowed,
            'violated': self.violated,
            'circuit_state': self.circuit_state,
            'override_used': self.override_used,
            'message': self.message,
        }


class ConstraintMemoryEngine:
    """
    Unified facade for the constraint memory and enforcement engine.

    Components remain usable standalone; the engine wires them together,
    routes domain events and serializes every mutation through the
    governance lock.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[StateStore] = None,
        clock: Optional[Clock] = None,
        similarity: Optional[Similarity] = None,
        hasher: Hasher = sha256_digest,
        verifier: Optional[Verifier] = None,
        token_factory: Optional[TokenFactory] = None
    ):
        self._config = config or EngineConfig()
        self._clock = clock or SystemClock()
        self._store = store or create_store(self._config.storage, self._clock)
        self._collector = EventCollector(self._config.observability.max_events)

        self._evidence = EvidenceStore(
            self._store, self._clock, hasher=hasher, verifier=verifier, on_event=self._dispatch
        )
        self._breaker = CircuitBreaker(
            self._store, self._clock, self._config.circuit,
            audit_sink=self._record_audit, on_event=self._dispatch
        )
        self._overrides = OverrideManager(
            self._store, self._clock, self._config.overrides,
            token_factory=token_factory, audit_sink=self._record_audit, on_event=self._dispatch
        )
        self._lifecycle = ConstraintLifecycle(
            self._store, self._clock, breaker=self._breaker, overrides=self._overrides,
            on_event=self._dispatch
        )
        self._eligibility = EligibilityEngine(self._config.eligibility, on_event=self._dispatch)
        self._aggregator = ObservationAggregator(
            self._store,
            similarity or TokenVectorSimilarity(),
            self._clock,
            self._config.aggregator,
            eligibility=self._eligibility,
            on_event=self._dispatch,
        )
        self._coordinator = GovernanceCoordinator(
            self._store, self._lifecycle, self._aggregator, self._breaker,
            clock=self._clock,
            config=self._config.governance,
            policy=self._config.eligibility,
            on_event=self._dispatch,
        )

    # =========================================================================
    # COMPONENT ACCESS
    # =========================================================================

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def events(self) -> EventCollector:
        return self._collector

    @property
    def evidence_store(self) -> EvidenceStore:
        return self._evidence

    @property
    def aggregator(self) -> ObservationAggregator:
        return self._aggregator

    @property
    def lifecycle(self) -> ConstraintLifecycle:
        return self._lifecycle

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def override_manager(self) -> OverrideManager:
        return self._overrides

    @property
    def coordinator(self) -> GovernanceCoordinator:
        return self._coordinator

    # =========================================================================
    # EVENT ROUTING
    # =========================================================================

    def _dispatch(self, event: DomainEvent) -> None:
        self._collector.collect(event)
        if event.event_type == EventType.CANDIDATE_READY and event.observation is not None:
            self._on_candidate_ready(event.observation)

    def _on_candidate_ready(self, observation: Observation) -> None:
        """Create the draft constraint. Never goes past draft."""
        current = self._aggregator.get(observation.slug)
        if current.constraint_id is not None:
            return
        existing = self._lifecycle.find(constraint_id_for(current.slug))
        if existing is None:
            existing = self._lifecycle.create(
                current, self._config.system_actor, reason="eligibility threshold reached"
            )
            logger.info("Candidate %s -> draft constraint %s", current.slug, existing.id)
        self._aggregator.link_constraint(current.slug, existing.id)

    def _record_audit(self, constraint_id: str, entry: AuditEntry) -> Constraint:
        return self._lifecycle.record_audit(constraint_id, entry)

    # =========================================================================
    # EVIDENCE & OBSERVATIONS
    # =========================================================================

    def record_evidence(
        self,
        description: str,
        source: str,
        session_id: str,
        user_id: str,
        kind: ObservationKind = ObservationKind.FAILURE,
        severity: Severity = Severity.IMPORTANT,
        timestamp: Optional[datetime] = None,
        signature: Optional[str] = None,
        slug: Optional[str] = None
    ) -> Tuple[Evidence, Observation, bool]:
        """
        Write evidence and aggregate it.

        Returns (stored evidence, observation after aggregation, matched).
        """
        evidence = self._evidence.build(
            description, source, session_id, user_id,
            kind=kind, severity=severity, timestamp=timestamp, signature=signature,
        )
        with self._coordinator.session(evidence.user_id):
            stored = self._evidence.write(evidence)
            observation, matched = self._aggregator.record(stored, slug=slug)
        return stored, self._aggregator.get(observation.slug), matched

    def confirm(self, slug: str, user_id: str, decision_latency: Optional[float] = None) -> Observation:
        with self._coordinator.session(require_text(user_id, "user_id")):
            observation = self._aggregator.confirm(slug, user_id, decision_latency)
        return self._aggregator.get(observation.slug)

    def disconfirm(self, slug: str, user_id: str, decision_latency: Optional[float] = None) -> Observation:
        with self._coordinator.session(require_text(user_id, "user_id")):
            observation = self._aggregator.disconfirm(slug, user_id, decision_latency)
        return self._aggregator.get(observation.slug)

    def merge_observations(self, source_slug: str, target_slug: str, actor: str) -> Observation:
        with self._coordinator.session(require_text(actor, "actor")):
            return self._aggregator.merge(source_slug, target_slug)

    def restore_observation(self, slug: str, actor: str) -> Observation:
        return self._coordinator.restore_observation(slug, actor)

    def get_observation(self, slug: str) -> Observation:
        return self._aggregator.get(slug)

    def observations(self, kind: Optional[ObservationKind] = None) -> List[Observation]:
        return self._aggregator.all(kind)

    def is_eligible(self, slug: str) -> bool:
        return is_eligible(self._aggregator.get(slug), self._config.eligibility)

    def eligibility_report(self, slug: str) -> Dict[str, bool]:
        return eligibility_gates(self._aggregator.get(slug), self._config.eligibility)

    def get_evidence(self, evidence_id: str) -> Evidence:
        return self._evidence.get(evidence_id)

    def verify_evidence(self) -> Tuple[bool, Optional[str]]:
        return self._evidence.verify_integrity()

    # =========================================================================
    # CONSTRAINT LIFECYCLE
    # =========================================================================

    def create_constraint(
        self,
        slug: str,
        actor: str,
        scope_text: Optional[str] = None,
        severity: Optional[Severity] = None
    ) -> Constraint:
        """Manually create a draft for an eligible observation without one."""
        with self._coordinator.session(require_text(actor, "actor")):
            observation = self._aggregator.get(slug)
            if not is_eligible(observation, self._config.eligibility):
                failing = [g for g, ok in eligibility_gates(observation, self._config.eligibility).items() if not ok]
                raise InvalidInputError(
                    f"Observation {slug} is not eligible: {', '.join(failing)}",
                    context=(("slug", slug),)
                )
            constraint = self._lifecycle.create(observation, actor, scope_text=scope_text, severity=severity)
            self._aggregator.link_constraint(slug, constraint.id)
            return constraint

    def transition(self, constraint_id: str, action: str, actor: str, reason: Optional[str] = None) -> Constraint:
        with self._coordinator.session(require_text(actor, "actor")):
            return self._lifecycle.transition(constraint_id, action, actor, reason)

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

    def mark_reviewed(self, constraint_id: str, actor: str, note: Optional[str] = None) -> Constraint:
        with self._coordinator.session(require_text(actor, "actor")):
            return self._lifecycle.mark_reviewed(constraint_id, actor, note)

    def get_constraint(self, constraint_id: str) -> Constraint:
        return self._lifecycle.get(constraint_id)

    def constraints(self, state: Optional[ConstraintState] = None) -> List[Constraint]:
        return self._lifecycle.all(state)

    # =========================================================================
    # ENFORCEMENT
    # =========================================================================

    def evaluate_action(
        self,
        constraint_id: str,
        action_ref: str,
        violates: bool,
        actor: str
    ) -> Verdict:
        """
        Evaluate one proposed action against one constraint.

        active (BLOCK): a violation is recorded and the action refused unless
        an approved override is consumed. While the circuit is OPEN every
        action raises ThresholdBlockedError unless an override is consumed.
        retiring (WARN): violations are recorded and logged, never blocked.
        draft/retired/deleted: never evaluated.
        """
        action_ref = require_text(action_ref, "action_ref")
        with self._coordinator.session(require_text(actor, "actor")):
            constraint = self._lifecycle.get(constraint_id)
            mode = EnforcementMode.for_state(constraint.state)

            if mode == EnforcementMode.NONE:
                return Verdict(constraint_id, action_ref, mode, "PASS", violates,
                               message=f"constraint is {constraint.state.value}; not evaluated")

            if mode == EnforcementMode.WARN:
                circuit = self._breaker.ensure(constraint_id)
                if violates:
                    circuit = self._breaker.record(constraint_id, action_ref)
                    logger.warning("Constraint %s (retiring) violated by %s", constraint_id, action_ref)
                    self._dispatch(DomainEvent(
                        event_type=EventType.VIOLATION_WARNED,
                        timestamp=self._clock.now(),
                        entity_id=constraint_id,
                        details=(('action_ref', action_ref),),
                    ))
                return Verdict(constraint_id, action_ref, mode, "WARN" if violates else "PASS", violates,
                               circuit_state=circuit.state.value)

            check = self._breaker.check(constraint_id)
            if not check.allowed:
                override = self._overrides.consume(constraint_id)
                if override is None:
                    self._breaker.guard(constraint_id)
                if violates:
                    self._breaker.record(constraint_id, action_ref)
                return Verdict(constraint_id, action_ref, mode, "PASS", violates,
                               circuit_state=check.state.value, override_used=True,
                               message="circuit OPEN; bypassed by approved override")

            if not violates:
                circuit = self._breaker.record_success(constraint_id)
                return Verdict(constraint_id, action_ref, mode, "PASS", False,
                               circuit_state=circuit.state.value)

            circuit = self._breaker.record(constraint_id, action_ref)
            if self._overrides.consume(constraint_id) is not None:
                return Verdict(constraint_id, action_ref, mode, "PASS", True,
                               circuit_state=circuit.state.value, override_used=True,
                               message="violation allowed by approved override")
            return Verdict(constraint_id, action_ref, mode, "BLOCK", True,
                           circuit_state=circuit.state.value,
                           message=f"action violates {constraint_id}: {constraint.scope_text}")

    def check_circuit(self, constraint_id: str, actor: str) -> CheckResult:
        """check() under the lock (it may move OPEN -> HALF_OPEN)."""
        with self._coordinator.session(require_text(actor, "actor")):
            return self._breaker.check(constraint_id)

    def reset_circuit(self, constraint_id: str, actor: str, reason: str) -> CircuitState:
        with self._coordinator.session(require_text(actor, "actor")):
            return self._breaker.reset(constraint_id, actor, reason)

    def configure_circuit(self, constraint_id: str, actor: str, **settings: float) -> CircuitState:
        with self._coordinator.session(require_text(actor, "actor")):
            return self._breaker.configure(constraint_id, **settings)

    def circuit(self, constraint_id: str) -> CircuitState:
        return self._breaker.get(constraint_id)

    def circuits(self) -> Dict[str, CircuitState]:
        return self._breaker.all()

    # =========================================================================
    # OVERRIDES
    # =========================================================================

    def request_override(
        self,
        constraint_id: str,
        requested_by: str,
        reason: str,
        duration: Optional[timedelta] = None,
        single_use: bool = True
    ) -> Override:
        with self._coordinator.session(require_text(requested_by, "requested_by")):
            constraint = self._lifecycle.get(constraint_id)
            if constraint.state != ConstraintState.ACTIVE:
                raise InvalidInputError(
                    f"Overrides apply only to active constraints; {constraint_id} is {constraint.state.value}",
                    context=(("constraint_id", constraint_id),)
                )
            return self._overrides.request(constraint_id, requested_by, reason, duration, single_use)

    def approve_override(self, constraint_id: str, approver: str, token: str) -> Override:
        with self._coordinator.session(require_text(approver, "approver")):
            return self._overrides.approve(constraint_id, approver, token)

    def deny_override(self, constraint_id: str, approver: str, reason: Optional[str] = None) -> Override:
        with self._coordinator.session(require_text(approver, "approver")):
            return self._overrides.deny(constraint_id, approver, reason)

    def revoke_override(self, constraint_id: str, actor: str, reason: Optional[str] = None) -> Override:
        with self._coordinator.session(require_text(actor, "actor")):
            return self._overrides.revoke(constraint_id, actor, reason)

    def current_override(self, constraint_id: str) -> Optional[Override]:
        return self._overrides.current(constraint_id)

    # =========================================================================
    # GOVERNANCE
    # =========================================================================

    def bulk_retire(self, actor: str, dormant_days: Optional[float] = None, confirm: bool = False) -> BulkResult:
        return self._coordinator.bulk_retire(actor, dormant_days=dormant_days, confirm=confirm)

    def archive_observations(self, actor: str, older_than_days: float, confirm: bool = False) -> BulkResult:
        return self._coordinator.archive_observations(older_than_days, actor, confirm=confirm)

    def compute_health(self) -> HealthReport:
        return self._coordinator.compute_health()

    def dashboard(self) -> dict:
        return self._coordinator.dashboard()

    def check_alerts(self, actor: Optional[str] = None) -> List[GovernanceAlert]:
        with self._coordinator.session(actor or self._config.system_actor):
            return self._coordinator.check_alerts()

    def acknowledge_alert(self, alert_id: str, actor: str) -> GovernanceAlert:
        with self._coordinator.session(require_text(actor, "actor")):
            return self._coordinator.acknowledge_alert(alert_id, actor)

    def alerts(self, status: Optional[AlertStatus] = None) -> List[GovernanceAlert]:
        return self._coordinator.alerts(status)

    def alert_mode(self) -> dict:
        return self._coordinator.alert_mode()
