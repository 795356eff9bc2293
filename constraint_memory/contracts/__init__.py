"""
Contracts Module

Explicit data types and error taxonomy shared by every layer.
No layer may import implementation details from another layer;
they exchange only the records defined here.

DESIGN PRINCIPLES:
==================
1. All contract types are immutable (frozen dataclasses)
2. Every failure is a typed exception with an ErrorCode
3. All timestamps use UTC and are never mutated
4. Content hashes give evidence a deterministic identity
"""

from .base import (
    ErrorCode, ConstraintMemoryError, NotFoundError, InvalidInputError,
    ReasonRequiredError, InvalidTransitionError, ConcurrentModificationError,
    ThresholdBlockedError, RecoveryExpiredError, SchemaMigrationError,
    CorruptStateError,
    ObservationKind, Severity, EvidenceTier, ConstraintState, EnforcementMode,
    CircuitStatus, OverrideState, AlertStatus, AdoptionPhase,
)
from .models import (
    Evidence, Observation, AuditEntry, Constraint, Violation, CircuitState,
    Override, GovernanceLock, GovernanceAlert,
)
from .events import DomainEvent, EventType, EventSink, candidate_ready

__all__ = [
    'ErrorCode', 'ConstraintMemoryError', 'NotFoundError', 'InvalidInputError',
    'ReasonRequiredError', 'InvalidTransitionError', 'ConcurrentModificationError',
    'ThresholdBlockedError', 'RecoveryExpiredError', 'SchemaMigrationError',
    'CorruptStateError',
    'ObservationKind', 'Severity', 'EvidenceTier', 'ConstraintState',
    'EnforcementMode', 'CircuitStatus', 'OverrideState', 'AlertStatus',
    'AdoptionPhase',
    'Evidence', 'Observation', 'AuditEntry', 'Constraint', 'Violation',
    'CircuitState', 'Override', 'GovernanceLock', 'GovernanceAlert',
    'DomainEvent', 'EventType', 'EventSink', 'candidate_ready',
]
