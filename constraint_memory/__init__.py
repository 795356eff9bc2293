"""
Constraint Memory Engine

This package learns durable behavioral constraints from recurring
failures and enforces them at runtime. It is a strictly layered
architecture with hard boundaries between responsibilities. Each layer
communicates only through explicit contracts and domain events, never
through shared mutable state.

LAYER STRUCTURE:
================

1. EVIDENCE LAYER (evidence.py)
   - Responsibility: Append-only, hash-chained record of raw occurrences
   - Allowed inputs: Description plus provenance (source, session, user)
   - Outputs: Evidence (immutable, content-addressed)
   - MUST NOT: Interpret, merge or delete evidence

2. OBSERVATION LAYER (observation/)
   - Responsibility: Aggregate evidence by similarity, track R/C/D counters,
     decide candidacy
   - Allowed inputs: Evidence, human confirm/disconfirm decisions
   - Outputs: Observation, CandidateReady events
   - MUST NOT: Create or transition constraints

3. LIFECYCLE LAYER (lifecycle.py)
   - Responsibility: Constraint state machine and audit trail
   - Allowed inputs: Draft creation for candidates, human-initiated transitions
   - Outputs: Constraint (versioned, audited)
   - MUST NOT: Skip states or transition without an actor

4. ENFORCEMENT PROTECTION LAYER (circuit/)
   - Responsibility: Circuit breaker per enforced constraint, emergency overrides
   - Allowed inputs: Violations and successes, override decisions
   - Outputs: CircuitState, CheckResult, Override
   - MUST NOT: Change lifecycle state

5. GOVERNANCE LAYER (governance/)
   - Responsibility: Single-writer lock, bulk operations, health and alerts
   - Allowed inputs: Lifecycle, aggregator and breaker components
   - Outputs: HealthReport, GovernanceAlert, BulkResult
   - MUST NOT: Bypass the lifecycle for bulk transitions

6. STORAGE LAYER (storage/)
   - Responsibility: Atomic, schema-versioned JSON persistence
   - MUST NOT: Execute business rules

7. OBSERVABILITY LAYER (observability/)
   - Responsibility: Logging setup and domain event collection
   - MUST NOT: Modify system behavior

CONSTRAINTS ENFORCED:
=====================
- Immutability-first: all records are frozen dataclasses
- Human in the loop: nothing is promoted past draft automatically
- Deterministic: an injectable clock drives every time-based rule
- Explicit errors: typed exceptions, no silent retries
"""

from .clock import Clock, ManualClock, SystemClock
from .contracts import (
    AlertStatus, CircuitStatus, ConstraintMemoryError, ConstraintState,
    EnforcementMode, ObservationKind, OverrideState, Severity
)
from .engine import ConstraintMemoryEngine, EngineConfig, Verdict

__version__ = "0.1.0"

__all__ = [
    'Clock', 'ManualClock', 'SystemClock',
    'AlertStatus', 'CircuitStatus', 'ConstraintMemoryError', 'ConstraintState',
    'EnforcementMode', 'ObservationKind', 'OverrideState', 'Severity',
    'ConstraintMemoryEngine', 'EngineConfig', 'Verdict',
]
