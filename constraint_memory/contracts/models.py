"""
Domain Records
==============

Immutable records exchanged between layers and persisted by the state store.

DESIGN PRINCIPLES:
==================
1. All records are frozen dataclasses; updates produce new instances
2. Collections are tuples/frozensets so a record can never be mutated in place
3. Every record round-trips through to_dict()/from_dict() as plain JSON
4. All timestamps are UTC
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import FrozenSet, Optional, Tuple
import re

from .base import (
    AlertStatus, CircuitStatus, ConstraintState, EvidenceTier,
    ObservationKind, OverrideState, Severity, from_iso, to_iso
)


_LOCATION_SUFFIX = re.compile(r"(:\d+)+$")


def source_file(provenance: str) -> str:
    """File path of a provenance string: session, date and :line[:col] removed."""
    source = provenance.split("|", 1)[0].strip()
    return _LOCATION_SUFFIX.sub("", source)


# =============================================================================
# EVIDENCE (written once, never mutated)
# =============================================================================

@dataclass(frozen=True)
class Evidence:
    """
    A single raw occurrence of a failure or pattern with provenance.

    WHY THIS TYPE:
    - Observations reference evidence by id, never copy it
    - Hash chain fields make the store verifiable after the fact
    """
    id: str
    description: str
    source: str                 # file:line or event reference
    session_id: str
    user_id: str
    timestamp: datetime
    kind: ObservationKind = ObservationKind.FAILURE
    severity: Severity = Severity.IMPORTANT
    content_hash: str = ""
    signature: Optional[str] = None

    # Hash chain (assigned by the store on append)
    sequence: int = 0
    previous_hash: str = ""
    entry_hash: str = ""

    @property
    def provenance(self) -> str:
        """Provenance tuple: source + session + date."""
        return f"{self.source}|{self.session_id}|{self.timestamp.date().isoformat()}"

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'description': self.description,
            'source': self.source,
            'session_id': self.session_id,
            'user_id': self.user_id,
            'timestamp': to_iso(self.timestamp),
            'kind': self.kind.value,
            'severity': self.severity.value,
            'content_hash': self.content_hash,
            'signature': self.signature,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'entry_hash': self.entry_hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Evidence':
        return cls(
            id=data['id'],
            description=data['description'],
            source=data['source'],
            session_id=data['session_id'],
            user_id=data['user_id'],
            timestamp=from_iso(data['timestamp']),
            kind=ObservationKind(data.get('kind', 'failure')),
            severity=Severity(data.get('severity', 'IMPORTANT')),
            content_hash=data.get('content_hash', ''),
            signature=data.get('signature'),
            sequence=data.get('sequence', 0),
            previous_hash=data.get('previous_hash', ''),
            entry_hash=data.get('entry_hash', ''),
        )


# =============================================================================
# OBSERVATION (aggregated, counters mutate by replacement)
# =============================================================================

@dataclass(frozen=True)
class Observation:
    """
    Aggregated record of a recurring failure or pattern.

    INVARIANTS:
    - r_count >= len(evidence_ids)
    - tier == EvidenceTier.from_recurrence(r_count)
    - kind == PATTERN never yields a constraint
    """
    slug: str
    kind: ObservationKind
    description: str
    severity: Severity
    created_at: datetime
    updated_at: datetime
    r_count: int = 0
    c_count: int = 0
    d_count: int = 0
    c_unique_users: FrozenSet[str] = field(default_factory=frozenset)
    d_unique_users: FrozenSet[str] = field(default_factory=frozenset)
    sources: FrozenSet[str] = field(default_factory=frozenset)
    evidence_ids: Tuple[str, ...] = field(default_factory=tuple)
    constraint_id: Optional[str] = None

    @property
    def tier(self) -> EvidenceTier:
        return EvidenceTier.from_recurrence(self.r_count)

    @property
    def source_files(self) -> FrozenSet[str]:
        """Distinct files behind the evidence; source diversity counts these."""
        return frozenset(source_file(p) for p in self.sources)

    @property
    def disconfirmation_ratio(self) -> float:
        """d/(c+d); zero when no human decisions were recorded yet."""
        decisions = self.c_count + self.d_count
        if decisions == 0:
            return 0.0
        return self.d_count / decisions

    def link_evidence(self, evidence: Evidence, at: datetime) -> 'Observation':
        return replace(
            self,
            r_count=self.r_count + 1,
            sources=self.sources | {evidence.provenance},
            evidence_ids=self.evidence_ids + (evidence.id,),
            updated_at=at,
        )

    def to_dict(self) -> dict:
        return {
            'slug': self.slug,
            'kind': self.kind.value,
            'description': self.description,
            'severity': self.severity.value,
            'r_count': self.r_count,
            'c_count': self.c_count,
            'd_count': self.d_count,
            'c_unique_users': sorted(self.c_unique_users),
            'd_unique_users': sorted(self.d_unique_users),
            'sources': sorted(self.sources),
            'evidence_ids': list(self.evidence_ids),
            'tier': self.tier.value,
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at),
            'constraint_id': self.constraint_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Observation':
        return cls(
            slug=data['slug'],
            kind=ObservationKind(data['kind']),
            description=data.get('description', ''),
            severity=Severity(data.get('severity', 'IMPORTANT')),
            created_at=from_iso(data['created_at']),
            updated_at=from_iso(data['updated_at']),
            r_count=data.get('r_count', 0),
            c_count=data.get('c_count', 0),
            d_count=data.get('d_count', 0),
            c_unique_users=frozenset(data.get('c_unique_users', ())),
            d_unique_users=frozenset(data.get('d_unique_users', ())),
            sources=frozenset(data.get('sources', ())),
            evidence_ids=tuple(data.get('evidence_ids', ())),
            constraint_id=data.get('constraint_id'),
        )


# =============================================================================
# CONSTRAINT + AUDIT TRAIL
# =============================================================================

@dataclass(frozen=True)
class AuditEntry:
    """One immutable line of a constraint's history."""
    timestamp: datetime
    actor: str
    action: str
    from_state: Optional[str]
    to_state: Optional[str]
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'timestamp': to_iso(self.timestamp),
            'actor': self.actor,
            'action': self.action,
            'from_state': self.from_state,
            'to_state': self.to_state,
            'reason': self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'AuditEntry':
        return cls(
            timestamp=from_iso(data['timestamp']),
            actor=data['actor'],
            action=data['action'],
            from_state=data.get('from_state'),
            to_state=data.get('to_state'),
            reason=data.get('reason'),
        )


@dataclass(frozen=True)
class Constraint:
    """
    Enforceable rule derived from an eligible observation.

    The audit log is append-only: every new instance carries the previous
    entries as a prefix.
    """
    id: str
    scope_text: str
    severity: Severity
    state: ConstraintState
    source_observation_id: str
    created_at: datetime
    updated_at: datetime
    state_entered_at: datetime
    version: int = 1
    audit_log: Tuple[AuditEntry, ...] = field(default_factory=tuple)
    last_review_at: Optional[datetime] = None

    def with_audit(self, entry: AuditEntry, **changes) -> 'Constraint':
        return replace(
            self,
            audit_log=self.audit_log + (entry,),
            version=self.version + 1,
            updated_at=entry.timestamp,
            **changes
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'scope_text': self.scope_text,
            'severity': self.severity.value,
            'state': self.state.value,
            'source_observation_id': self.source_observation_id,
            'version': self.version,
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at),
            'state_entered_at': to_iso(self.state_entered_at),
            'last_review_at': to_iso(self.last_review_at),
            'audit_log': [entry.to_dict() for entry in self.audit_log],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Constraint':
        return cls(
            id=data['id'],
            scope_text=data['scope_text'],
            severity=Severity(data['severity']),
            state=ConstraintState(data['state']),
            source_observation_id=data['source_observation_id'],
            version=data.get('version', 1),
            created_at=from_iso(data['created_at']),
            updated_at=from_iso(data['updated_at']),
            state_entered_at=from_iso(data.get('state_entered_at') or data['updated_at']),
            last_review_at=from_iso(data.get('last_review_at')),
            audit_log=tuple(AuditEntry.from_dict(e) for e in data.get('audit_log', ())),
        )


# =============================================================================
# CIRCUIT STATE
# =============================================================================

@dataclass(frozen=True)
class Violation:
    timestamp: datetime
    action_ref: str

    def to_dict(self) -> dict:
        return {'timestamp': to_iso(self.timestamp), 'action_ref': self.action_ref}

    @classmethod
    def from_dict(cls, data: dict) -> 'Violation':
        return cls(timestamp=from_iso(data['timestamp']), action_ref=data['action_ref'])


@dataclass(frozen=True)
class CircuitState:
    """
    Runtime violation tracker for one enforced constraint.

    All time-based decisions read the stored timestamps, never
    in-memory counters, so a restart changes nothing.
    """
    constraint_id: str
    state: CircuitStatus = CircuitStatus.CLOSED
    violations: Tuple[Violation, ...] = field(default_factory=tuple)
    tripped_at: Optional[datetime] = None
    cooldown_until: Optional[datetime] = None
    trips: Tuple[datetime, ...] = field(default_factory=tuple)
    last_violation_at: Optional[datetime] = None
    last_reset_at: Optional[datetime] = None
    # Per-constraint overrides: threshold, window_days, cooldown_hours, dedup_seconds
    config: Tuple[Tuple[str, float], ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            'constraint_id': self.constraint_id,
            'state': self.state.value,
            'violations': [v.to_dict() for v in self.violations],
            'tripped_at': to_iso(self.tripped_at),
            'cooldown_until': to_iso(self.cooldown_until),
            'trips': [to_iso(t) for t in self.trips],
            'last_violation_at': to_iso(self.last_violation_at),
            'last_reset_at': to_iso(self.last_reset_at),
            'config': dict(self.config),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CircuitState':
        return cls(
            constraint_id=data['constraint_id'],
            state=CircuitStatus(data.get('state', 'CLOSED')),
            violations=tuple(Violation.from_dict(v) for v in data.get('violations', ())),
            tripped_at=from_iso(data.get('tripped_at')),
            cooldown_until=from_iso(data.get('cooldown_until')),
            trips=tuple(from_iso(t) for t in data.get('trips', ())),
            last_violation_at=from_iso(data.get('last_violation_at')),
            last_reset_at=from_iso(data.get('last_reset_at')),
            config=tuple(sorted((data.get('config') or {}).items())),
        )


# =============================================================================
# OVERRIDE
# =============================================================================

@dataclass(frozen=True)
class Override:
    """Emergency, human-approved bypass of a BLOCK verdict."""
    constraint_id: str
    reason: str
    requested_by: str
    requested_at: datetime
    expires_at: datetime
    token: str
    state: OverrideState = OverrideState.REQUESTED
    approver: Optional[str] = None
    single_use: bool = True
    used: bool = False
    invalidated_reason: Optional[str] = None

    def is_usable(self, now: datetime) -> bool:
        return self.state == OverrideState.ACTIVE and not self.used and now < self.expires_at

    def to_dict(self) -> dict:
        return {
            'constraint_id': self.constraint_id,
            'reason': self.reason,
            'requested_by': self.requested_by,
            'requested_at': to_iso(self.requested_at),
            'expires_at': to_iso(self.expires_at),
            'token': self.token,
            'state': self.state.value,
            'approver': self.approver,
            'single_use': self.single_use,
            'used': self.used,
            'invalidated_reason': self.invalidated_reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Override':
        return cls(
            constraint_id=data['constraint_id'],
            reason=data['reason'],
            requested_by=data['requested_by'],
            requested_at=from_iso(data['requested_at']),
            expires_at=from_iso(data['expires_at']),
            token=data['token'],
            state=OverrideState(data['state']),
            approver=data.get('approver'),
            single_use=data.get('single_use', True),
            used=data.get('used', False),
            invalidated_reason=data.get('invalidated_reason'),
        )


# =============================================================================
# GOVERNANCE
# =============================================================================

@dataclass(frozen=True)
class GovernanceLock:
    """Single-writer token for the governed resource."""
    holder_id: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            'holder_id': self.holder_id,
            'acquired_at': to_iso(self.acquired_at),
            'expires_at': to_iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'GovernanceLock':
        return cls(
            holder_id=data['holder_id'],
            acquired_at=from_iso(data['acquired_at']),
            expires_at=from_iso(data['expires_at']),
        )


@dataclass(frozen=True)
class GovernanceAlert:
    """One edge-triggered threshold breach."""
    alert_id: str
    metric: str
    current_value: float
    threshold: float
    constraint_id: str
    created_at: datetime
    status: AlertStatus = AlertStatus.OPEN
    resolved_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            'alert_id': self.alert_id,
            'metric': self.metric,
            'current_value': self.current_value,
            'threshold': self.threshold,
            'constraint_id': self.constraint_id,
            'created_at': to_iso(self.created_at),
            'status': self.status.value,
            'resolved_at': to_iso(self.resolved_at),
            'acknowledged_at': to_iso(self.acknowledged_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'GovernanceAlert':
        return cls(
            alert_id=data['alert_id'],
            metric=data['metric'],
            current_value=data['current_value'],
            threshold=data['threshold'],
            constraint_id=data['constraint_id'],
            created_at=from_iso(data['created_at']),
            status=AlertStatus(data.get('status', 'open')),
            resolved_at=from_iso(data.get('resolved_at')),
            acknowledged_at=from_iso(data.get('acknowledged_at')),
        )
