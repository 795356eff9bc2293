"""
Domain Events
=============

Immutable notifications emitted by the core layers.

Events describe what already happened; they never carry commands.
The engine facade routes them to subscribers (lifecycle, collectors,
alert consumers).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Tuple

from .base import to_iso
from .models import Observation


class EventType(Enum):
    EVIDENCE_RECORDED = "evidence_recorded"
    OBSERVATION_CREATED = "observation_created"
    OBSERVATION_MATCHED = "observation_matched"
    OBSERVATION_MERGED = "observation_merged"
    OBSERVATION_ARCHIVED = "observation_archived"
    OBSERVATION_RESTORED = "observation_restored"
    CONFIRMED = "confirmed"
    DISCONFIRMED = "disconfirmed"
    FAST_DECISION = "fast_decision"
    CANDIDATE_READY = "candidate_ready"
    CONSTRAINT_TRANSITION = "constraint_transition"
    VIOLATION_RECORDED = "violation_recorded"
    VIOLATION_DEDUPLICATED = "violation_deduplicated"
    VIOLATION_WARNED = "violation_warned"
    CIRCUIT_TRIPPED = "circuit_tripped"
    CIRCUIT_HALF_OPEN = "circuit_half_open"
    CIRCUIT_CLOSED = "circuit_closed"
    CIRCUIT_RESET = "circuit_reset"
    CIRCUIT_ARCHIVED = "circuit_archived"
    CIRCUIT_STATE_RECOVERED = "circuit_state_recovered"
    OVERRIDE_CHANGED = "override_changed"
    LOCK_ACQUIRED = "lock_acquired"
    LOCK_RELEASED = "lock_released"
    ALERT_RAISED = "alert_raised"
    ALERT_RESOLVED = "alert_resolved"
    ALERT_MODE_CHANGED = "alert_mode_changed"


@dataclass(frozen=True)
class DomainEvent:
    """
    Immutable event record.

    `details` is a tuple of string pairs so events stay hashable and
    can be stored or compared without aliasing.
    """
    event_type: EventType
    timestamp: datetime
    entity_id: str
    details: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    observation: Optional[Observation] = None

    def detail(self, key: str) -> Optional[str]:
        for k, v in self.details:
            if k == key:
                return v
        return None

    def to_dict(self) -> dict:
        return {
            'event_type': self.event_type.value,
            'timestamp': to_iso(self.timestamp),
            'entity_id': self.entity_id,
            'details': dict(self.details),
        }


def candidate_ready(observation: Observation, at: datetime) -> DomainEvent:
    """CandidateReady(observation): eligibility flipped false -> true."""
    return DomainEvent(
        event_type=EventType.CANDIDATE_READY,
        timestamp=at,
        entity_id=observation.slug,
        details=(
            ('r_count', str(observation.r_count)),
            ('c_count', str(observation.c_count)),
            ('d_count', str(observation.d_count)),
        ),
        observation=observation,
    )


EventSink = Callable[[DomainEvent], None]


def discard_event(event: DomainEvent) -> None:
    """Default sink for components used standalone."""
    return None
